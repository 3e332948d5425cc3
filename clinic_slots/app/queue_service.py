# queue_service.py
"""
Queue numbers for called patients, one sequence per (room, sub-room, day).

Issuing is a single INSERT ... ON CONFLICT DO UPDATE ... RETURNING against the counter
row for the scope, so concurrent callers serialize on that row and each receives a
distinct, gap-free number.
"""
from datetime import date, datetime
from typing import Optional
import logging

from prometheus_client import Counter
from sqlalchemy.orm import Session
from sqlalchemy.dialects import postgresql, sqlite

from .errors import QueueNumberOverflow, SlotError
from .events import EventPublisher
from .models import QueueCounter, Slot
from .slot_store import SlotStore, BOOKED
from .utils import day_scope_key, serialize_slot

QUEUE_NUMBERS_ISSUED = Counter("queue_numbers_issued_total", "Queue numbers issued")

_UPSERT_DIALECTS = {
    "postgresql": postgresql.insert,
    "sqlite": sqlite.insert,
}


class QueueNumberAllocator:
    def __init__(self, db: Session, width: int = 3):
        self.db = db
        self.width = width

    def format_number(self, value: int) -> str:
        formatted = str(value).zfill(self.width)
        if len(formatted) > self.width:
            raise QueueNumberOverflow(f"Queue number {value} does not fit in {self.width} digits")
        return formatted

    def next_queue_number(self, slot_date: date, room_id: str, sub_room_id: Optional[str] = None) -> str:
        insert = _UPSERT_DIALECTS.get(self.db.get_bind().dialect.name)
        if insert is None:
            raise NotImplementedError(f"No atomic upsert for dialect {self.db.get_bind().dialect.name}")

        key = day_scope_key(slot_date, room_id, sub_room_id)
        stmt = insert(QueueCounter).values(
            scope_key=key, room_id=room_id, sub_room_id=sub_room_id, date=slot_date, value=1,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[QueueCounter.scope_key],
            set_={"value": QueueCounter.value + 1, "updated_at": datetime.utcnow()},
        ).returning(QueueCounter.value)

        value = self.db.execute(stmt).scalar_one()
        self.db.commit()

        QUEUE_NUMBERS_ISSUED.inc()
        return self.format_number(value)

    def peek_queue_number(self, slot_date: date, room_id: str, sub_room_id: Optional[str] = None) -> Optional[str]:
        """Next number that would be issued, or None once the day's numbers are used up. Nothing is reserved."""
        counter = self.db.get(QueueCounter, day_scope_key(slot_date, room_id, sub_room_id))
        value = (counter.value if counter else 0) + 1
        if len(str(value)) > self.width:
            return None
        return self.format_number(value)


class QueueService:
    def __init__(self, store: SlotStore, allocator: QueueNumberAllocator, publisher: EventPublisher):
        self.store = store
        self.allocator = allocator
        self.publisher = publisher

    def call(self, slot_id: int, actor) -> Slot:
        # Claim first so a lost race issues nothing and leaves no gap in the sequence
        slot = self.store.mark_called(slot_id)
        try:
            number = self.allocator.next_queue_number(slot.date, slot.room_id, slot.sub_room_id)
        except SlotError:
            self.store.clear_call(slot_id)
            raise
        slot = self.store.assign_queue_number(slot_id, number)
        logging.info(f"Slot {slot_id} called by {actor.user_id} with queue number {number}")
        return slot

    def complete(self, slot_id: int, actor, service_ids=None, total_amount: float = 0,
                 deposit_amount: float = 0) -> dict:
        slot = self.store.mark_completed(slot_id, actor.user_id)

        events = {
            "record_completed": self.publisher.record_completed(slot.id, slot.appointment_id, actor, slot.queue_number),
            "services_marked_used": sum(
                1 for service_id in (service_ids or [])
                if self.publisher.service_mark_as_used(service_id, slot.appointment_id, slot.id)
            ),
            "payment_requested": self.publisher.payment_create(
                slot.id, slot.appointment_id, actor, total_amount, deposit_amount,
            ),
        }
        logging.info(f"Slot {slot_id} completed by {actor.user_id}")
        return {
            "slot": serialize_slot(slot, include_private_info=True),
            "amount_due": max(0, total_amount - deposit_amount),
            "events": events,
        }

    def queue_status(self, slot_date: date, room_id: str, sub_room_id: Optional[str] = None) -> dict:
        query = self.store.db.query(Slot).filter(
            Slot.date == slot_date, Slot.room_id == room_id, Slot.status == BOOKED,
        )
        if sub_room_id:
            query = query.filter(Slot.sub_room_id == sub_room_id)
        slots = query.order_by(Slot.start_time, Slot.id).all()

        current = [s for s in slots if s.called_at and not s.completed_at]
        waiting = [s for s in slots if not s.called_at]
        completed = [s for s in slots if s.completed_at]
        return {
            "current": [serialize_slot(s, include_private_info=True) for s in current],
            "next": serialize_slot(waiting[0], include_private_info=True) if waiting else None,
            "waiting": [serialize_slot(s, include_private_info=True) for s in waiting],
            "completed": [serialize_slot(s, include_private_info=True) for s in completed],
            "next_queue_number": self.allocator.peek_queue_number(slot_date, room_id, sub_room_id),
            "summary": {
                "total": len(slots),
                "waiting": len(waiting),
                "in_progress": len(current),
                "completed": len(completed),
            },
        }
