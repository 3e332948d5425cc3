import math
from datetime import date, datetime
from typing import Optional

from .models import Slot, ClosureOperation


def format_display_date(value) -> str:
    """DD/MM/YYYY, the format the clinic staff screens show."""
    if not value:
        return ''
    if isinstance(value, str):
        try:
            value = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return value
    return value.strftime("%d/%m/%Y")


def format_clock(value: Optional[datetime]) -> str:
    return value.strftime("%H:%M") if value else ''


def day_scope_key(slot_date: date, room_id: str, sub_room_id: Optional[str]) -> str:
    return f"{slot_date.isoformat()}:{room_id}:{sub_room_id or '-'}"


def paginate(total: int, page: int, limit: int) -> dict:
    return {
        "total": total,
        "page": page,
        "limit": limit,
        "pages": math.ceil(total / limit) if limit else 0,
    }


def serialize_slot(slot: Slot, include_private_info: bool = False):
    serialized = {
        "id": slot.id,
        "room_id": slot.room_id,
        "sub_room_id": slot.sub_room_id,
        "date": slot.date.isoformat(),
        "start_time": slot.start_time.isoformat(),
        "end_time": slot.end_time.isoformat(),
        "shift_name": slot.shift_name,
        "dentist_ids": list(slot.dentist_ids or []),
        "nurse_ids": list(slot.nurse_ids or []),
        "status": slot.status,
        "queue_number": slot.queue_number,
    }
    if include_private_info:
        serialized.update({
            "appointment_id": slot.appointment_id,
            "has_carried_appointment": slot.has_carried_appointment,
            "called_at": slot.called_at.isoformat() if slot.called_at else None,
            "completed_at": slot.completed_at.isoformat() if slot.completed_at else None,
            "disabled_reason": slot.disabled_reason,
            "status_changed_at": slot.status_changed_at.isoformat() if slot.status_changed_at else None,
            "status_changed_by": slot.status_changed_by,
        })
    return serialized


def count_staff_affected(record: ClosureOperation) -> int:
    staff = len(record.affected_staff_without_appointments or [])
    for appointment in record.cancelled_appointments or []:
        staff += len(appointment.get("dentists") or []) + len(appointment.get("nurses") or [])
    return staff


def serialize_closure(record: ClosureOperation):
    date_value = record.date_from or record.created_at
    return {
        "id": record.id,
        "operation_type": record.operation_type,
        "action": record.action,
        "date_from": record.date_from.isoformat() if record.date_from else None,
        "date_to": record.date_to.isoformat() if record.date_to else None,
        "formatted_date": format_display_date(date_value),
        "criteria": record.criteria,
        "reason": record.reason,
        "closure_type": record.closure_type,
        "stats": record.stats,
        "affected_rooms": record.affected_rooms,
        "cancelled_appointments": record.cancelled_appointments,
        "affected_staff_without_appointments": record.affected_staff_without_appointments,
        "slot_ids": record.slot_ids,
        "errors": record.errors,
        "closed_by": record.closed_by,
        "status": record.status,
        "restored_at": record.restored_at.isoformat() if record.restored_at else None,
        "restored_by": record.restored_by,
        "restoration_reason": record.restoration_reason,
        "created_at": record.created_at.isoformat() if record.created_at else None,
        "total_patients": len(record.cancelled_appointments or []),
        "total_staff_affected": count_staff_affected(record),
    }
