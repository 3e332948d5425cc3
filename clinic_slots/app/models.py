# models.py
from sqlalchemy import Column, Integer, String, Date, DateTime, Boolean, JSON, Text, Index
from sqlalchemy.orm import declarative_base
from datetime import datetime

Base = declarative_base()


class Slot(Base):
    __tablename__ = 'slots'
    id = Column(Integer, primary_key=True, index=True)
    room_id = Column(String, nullable=False)
    sub_room_id = Column(String, nullable=True)
    date = Column(Date, nullable=False)
    start_time = Column(DateTime, nullable=False)
    end_time = Column(DateTime, nullable=False)
    shift_name = Column(String, nullable=True)  # 'Ca Sáng', 'Ca Chiều', 'Ca Tối'
    dentist_ids = Column(JSON, nullable=False, default=list)
    nurse_ids = Column(JSON, nullable=False, default=list)
    status = Column(String, nullable=False, default='available')  # 'available', 'booked' or 'disabled'
    appointment_id = Column(String, nullable=True)
    has_carried_appointment = Column(Boolean, nullable=False, default=False)
    queue_number = Column(String, nullable=True)
    called_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    disabled_reason = Column(Text, nullable=True)
    status_changed_at = Column(DateTime, nullable=True)
    status_changed_by = Column(String, nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        Index('idx_slot_room_date', 'room_id', 'sub_room_id', 'date'),
        Index('idx_slot_date_status', 'date', 'status'),
        Index('idx_slot_appointment', 'appointment_id'),
    )


class QueueCounter(Base):
    __tablename__ = 'queue_counters'
    scope_key = Column(String, primary_key=True)  # "{date}:{room_id}:{sub_room_id or '-'}"
    room_id = Column(String, nullable=False)
    sub_room_id = Column(String, nullable=True)
    date = Column(Date, nullable=False)
    value = Column(Integer, nullable=False, default=0)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)


class ClosureOperation(Base):
    __tablename__ = 'closure_operations'
    id = Column(Integer, primary_key=True, index=True)
    operation_type = Column(String, nullable=False, index=True)
    action = Column(String, nullable=False, index=True)  # 'enable' or 'disable'
    date_from = Column(Date, nullable=True, index=True)
    date_to = Column(Date, nullable=True)
    criteria = Column(JSON, nullable=False, default=dict)
    reason = Column(Text, nullable=True)
    closure_type = Column(String, nullable=False, default='other')
    stats = Column(JSON, nullable=False, default=dict)
    affected_rooms = Column(JSON, nullable=False, default=list)
    cancelled_appointments = Column(JSON, nullable=False, default=list)
    affected_staff_without_appointments = Column(JSON, nullable=False, default=list)
    slot_ids = Column(JSON, nullable=False, default=list)
    errors = Column(JSON, nullable=False, default=list)
    closed_by = Column(JSON, nullable=False, default=dict)
    status = Column(String, nullable=False, default='active', index=True)
    restored_at = Column(DateTime, nullable=True)
    restored_by = Column(JSON, nullable=True)
    restoration_reason = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        Index('idx_closure_status_date', 'status', 'date_from'),
        Index('idx_closure_created', 'created_at'),
    )
