# slot_store.py
"""
Canonical owner of slot state.

Every mutation is one conditional UPDATE committed on its own: the WHERE clause pins the
status (and appointment reference) the caller read, so a concurrent writer makes the
update match zero rows and the caller gets InvalidTransition instead of a lost update.
No other module writes slot rows.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from typing import List, Optional
import logging

from sqlalchemy import update, delete
from sqlalchemy.orm import Session

from .errors import NotFound, InvalidTransition, ValidationError
from .models import Slot

AVAILABLE = "available"
BOOKED = "booked"
DISABLED = "disabled"
STATUSES = (AVAILABLE, BOOKED, DISABLED)

LEGAL_TRANSITIONS = {
    AVAILABLE: {BOOKED, DISABLED},
    BOOKED: {AVAILABLE, DISABLED},
    DISABLED: {AVAILABLE},
}

# Requesting the state a slot is already in is accepted without a write
NO_OP_TRANSITIONS = {(AVAILABLE, AVAILABLE), (DISABLED, DISABLED)}


@dataclass
class SlotCriteria:
    date: Optional[date] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    shift_name: Optional[str] = None
    room_id: Optional[str] = None
    sub_room_id: Optional[str] = None
    dentist_id: Optional[str] = None
    nurse_id: Optional[str] = None
    slot_ids: Optional[List[int]] = None
    status: Optional[str] = None

    def is_empty(self) -> bool:
        return not any([
            self.date, self.start_date, self.end_date, self.shift_name, self.room_id,
            self.sub_room_id, self.dentist_id, self.nurse_id, self.slot_ids, self.status,
        ])

    def to_dict(self) -> dict:
        data = {}
        for key, value in self.__dict__.items():
            if value is None:
                continue
            data[key] = value.isoformat() if isinstance(value, date) else value
        return data


class SlotStore:
    def __init__(self, db: Session):
        self.db = db

    def get_slot(self, slot_id: int) -> Slot:
        slot = self.db.get(Slot, slot_id)
        if slot is None:
            raise NotFound(f"Slot {slot_id} not found")
        return slot

    def find_slots(self, criteria: SlotCriteria) -> List[Slot]:
        query = self.db.query(Slot)

        if criteria.slot_ids is not None:
            query = query.filter(Slot.id.in_(criteria.slot_ids))
        if criteria.date:
            query = query.filter(Slot.date == criteria.date)
        else:
            if criteria.start_date:
                query = query.filter(Slot.date >= criteria.start_date)
            if criteria.end_date:
                query = query.filter(Slot.date <= criteria.end_date)
        if criteria.shift_name:
            query = query.filter(Slot.shift_name == criteria.shift_name)
        if criteria.room_id:
            query = query.filter(Slot.room_id == criteria.room_id)
        if criteria.sub_room_id:
            query = query.filter(Slot.sub_room_id == criteria.sub_room_id)
        if criteria.status:
            query = query.filter(Slot.status == criteria.status)

        slots = query.order_by(Slot.date, Slot.start_time, Slot.room_id, Slot.id).all()

        # Staff assignments are JSON lists, filtered here to stay portable across dialects
        if criteria.dentist_id:
            slots = [s for s in slots if criteria.dentist_id in (s.dentist_ids or [])]
        if criteria.nurse_id:
            slots = [s for s in slots if criteria.nurse_id in (s.nurse_ids or [])]
        return slots

    def create_slot(self, room_id: str, slot_date: date, start_time: datetime, end_time: datetime,
                    sub_room_id: str = None, shift_name: str = None, dentist_ids=None, nurse_ids=None) -> Slot:
        if end_time <= start_time:
            raise ValidationError("end_time must be after start_time")
        if start_time.date() != slot_date:
            raise ValidationError("start_time must fall on the slot date")
        slot = Slot(
            room_id=room_id,
            sub_room_id=sub_room_id,
            date=slot_date,
            start_time=start_time,
            end_time=end_time,
            shift_name=shift_name,
            dentist_ids=list(dentist_ids or []),
            nurse_ids=list(nurse_ids or []),
            status=AVAILABLE,
        )
        self.db.add(slot)
        self.db.commit()
        self.db.refresh(slot)
        return slot

    def delete_slot(self, slot_id: int):
        slot = self.get_slot(slot_id)
        if slot.has_carried_appointment or slot.appointment_id:
            raise InvalidTransition(f"Slot {slot_id} has carried an appointment and can only be disabled")
        result = self.db.execute(
            delete(Slot)
            .where(Slot.id == slot_id, Slot.has_carried_appointment.is_(False), Slot.appointment_id.is_(None))
            .execution_options(synchronize_session=False)
        )
        self.db.commit()
        if result.rowcount == 0:
            raise InvalidTransition(f"Slot {slot_id} was booked concurrently and can only be disabled")
        self.db.expunge(slot)

    def set_status(self, slot_id: int, status: str, expected_status: str = None,
                   expected_appointment_id: str = None, **transition_metadata):
        """
        Move a slot to `status`. Returns (slot, changed).

        expected_status / expected_appointment_id let a caller holding an older snapshot
        insist the slot is still in the state it saw. Metadata: appointment_id (required
        when booking), actor_id, reason.
        """
        if status not in STATUSES:
            raise ValidationError(f"Unknown slot status '{status}'")

        slot = self.get_slot(slot_id)
        current = slot.status
        current_appointment = slot.appointment_id

        if expected_status is not None and current != expected_status:
            raise InvalidTransition(f"Slot {slot_id} is {current}, expected {expected_status}")
        if expected_appointment_id is not None and current_appointment != expected_appointment_id:
            raise InvalidTransition(f"Slot {slot_id} no longer carries appointment {expected_appointment_id}")

        if (current, status) in NO_OP_TRANSITIONS:
            return slot, False
        if status not in LEGAL_TRANSITIONS[current]:
            raise InvalidTransition(f"Slot {slot_id} cannot move from {current} to {status}")

        values = self._transition_values(current, status, transition_metadata)

        stmt = update(Slot).where(Slot.id == slot_id, Slot.status == current)
        if current_appointment is None:
            stmt = stmt.where(Slot.appointment_id.is_(None))
        else:
            stmt = stmt.where(Slot.appointment_id == current_appointment)
        result = self.db.execute(stmt.values(**values).execution_options(synchronize_session=False))
        self.db.commit()

        if result.rowcount == 0:
            raise InvalidTransition(f"Slot {slot_id} changed concurrently; {current} -> {status} not applied")

        logging.info(f"Slot {slot_id}: {current} -> {status}")
        self.db.expire_all()
        return self.get_slot(slot_id), True

    def _transition_values(self, current: str, status: str, metadata: dict) -> dict:
        values = {
            "status": status,
            "status_changed_at": datetime.utcnow(),
            "status_changed_by": metadata.get("actor_id"),
        }
        if status == BOOKED:
            appointment_id = metadata.get("appointment_id")
            if not appointment_id:
                raise ValidationError("appointment_id is required to book a slot")
            values.update(appointment_id=appointment_id, has_carried_appointment=True)
        elif status == DISABLED:
            # The cancelled appointment lives on in the closure audit snapshot
            values.update(appointment_id=None, disabled_reason=metadata.get("reason"))
        else:
            values.update(appointment_id=None, disabled_reason=None, queue_number=None,
                          called_at=None, completed_at=None)
        return values

    def book(self, slot_id: int, appointment_id: str, actor_id: str = None) -> Slot:
        slot, _ = self.set_status(slot_id, BOOKED, expected_status=AVAILABLE,
                                  appointment_id=appointment_id, actor_id=actor_id)
        return slot

    def release(self, slot_id: int, actor_id: str = None) -> Slot:
        slot, _ = self.set_status(slot_id, AVAILABLE, expected_status=BOOKED, actor_id=actor_id)
        return slot

    def mark_called(self, slot_id: int) -> Slot:
        result = self.db.execute(
            update(Slot)
            .where(Slot.id == slot_id, Slot.status == BOOKED, Slot.called_at.is_(None))
            .values(called_at=datetime.utcnow())
            .execution_options(synchronize_session=False)
        )
        self.db.commit()
        if result.rowcount == 0:
            slot = self.get_slot(slot_id)
            if slot.status != BOOKED:
                raise InvalidTransition(f"Slot {slot_id} is {slot.status}, only booked slots can be called")
            raise InvalidTransition(f"Slot {slot_id} has already been called")
        self.db.expire_all()
        return self.get_slot(slot_id)

    def clear_call(self, slot_id: int):
        """Undo a call claim that never received a queue number."""
        self.db.execute(
            update(Slot)
            .where(Slot.id == slot_id, Slot.queue_number.is_(None))
            .values(called_at=None)
            .execution_options(synchronize_session=False)
        )
        self.db.commit()
        self.db.expire_all()

    def assign_queue_number(self, slot_id: int, number: str) -> Slot:
        result = self.db.execute(
            update(Slot)
            .where(Slot.id == slot_id, Slot.status == BOOKED, Slot.queue_number.is_(None))
            .values(queue_number=number)
            .execution_options(synchronize_session=False)
        )
        self.db.commit()
        if result.rowcount == 0:
            slot = self.get_slot(slot_id)
            if slot.queue_number:
                raise InvalidTransition(f"Slot {slot_id} already holds queue number {slot.queue_number}")
            raise InvalidTransition(f"Slot {slot_id} is {slot.status}, only booked slots get a queue number")
        self.db.expire_all()
        return self.get_slot(slot_id)

    def mark_completed(self, slot_id: int, actor_id: str = None) -> Slot:
        result = self.db.execute(
            update(Slot)
            .where(
                Slot.id == slot_id,
                Slot.status == BOOKED,
                Slot.queue_number.isnot(None),
                Slot.completed_at.is_(None),
            )
            .values(completed_at=datetime.utcnow(), status_changed_by=actor_id)
            .execution_options(synchronize_session=False)
        )
        self.db.commit()
        if result.rowcount == 0:
            slot = self.get_slot(slot_id)
            if slot.completed_at:
                raise InvalidTransition(f"Slot {slot_id} is already completed")
            raise InvalidTransition(f"Slot {slot_id} must be called before it can be completed")
        self.db.expire_all()
        return self.get_slot(slot_id)
