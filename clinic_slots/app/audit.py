# audit.py
"""
Closure audit trail.

One ClosureOperation per orchestrator run, written once with snapshots of the slots and
appointments it touched. Names for rooms, staff and patients are looked up from the
collaborator services at write time; an unreachable service leaves placeholder text
and the record is still written. Afterwards only the restoration fields change.
"""
import logging
from collections import OrderedDict
from datetime import date, datetime
from typing import Iterable, List, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from .collaborators import IdentityClient, RoomClient
from .errors import NotFound, SlotError
from .models import ClosureOperation, Slot
from .utils import format_clock, format_display_date, paginate, serialize_closure

UNKNOWN = "Unknown"
UNKNOWN_ROOM = "Unknown Room"
UNKNOWN_PATIENT = "Unknown Patient"

ACTIVE = "active"
PARTIALLY_RESTORED = "partially_restored"
FULLY_RESTORED = "fully_restored"


class NameResolver:
    """Per-operation memo in front of the identity and room services."""

    def __init__(self, identity: IdentityClient, rooms: RoomClient):
        self.identity = identity
        self.rooms = rooms
        self._users = {}
        self._rooms = {}

    def user(self, user_id: str) -> Optional[dict]:
        if not user_id:
            return None
        if user_id not in self._users:
            try:
                self._users[user_id] = self.identity.get_user_by_id(user_id)
            except SlotError as e:
                logging.warning(f"Could not resolve user {user_id}: {e.message}")
                self._users[user_id] = None
        return self._users[user_id]

    def user_name(self, user_id: str, default: str = UNKNOWN) -> str:
        user = self.user(user_id)
        return (user or {}).get("name") or default

    def room_name(self, room_id: str) -> str:
        if room_id not in self._rooms:
            try:
                room = self.rooms.get_room_by_id(room_id)
            except SlotError as e:
                logging.warning(f"Could not resolve room {room_id}: {e.message}")
                room = None
            self._rooms[room_id] = (room or {}).get("name") or UNKNOWN_ROOM
        return self._rooms[room_id]


class AuditLogBuilder:
    def __init__(self, db: Session, identity: IdentityClient, rooms: RoomClient):
        self.db = db
        self.identity = identity
        self.rooms = rooms

    def record(self, operation_type: str, action: str, criteria: dict, reason: Optional[str], actor,
               affected_slots: List[dict], cascade_results: list, errors: List[dict] = None,
               closure_type: str = None, notified_appointment_ids: Iterable[str] = ()) -> ClosureOperation:
        names = NameResolver(self.identity, self.rooms)
        notified = set(notified_appointment_ids)
        slots_by_id = {slot["id"]: slot for slot in affected_slots}

        affected_rooms = self._affected_rooms(affected_slots, action, names)
        cancelled_appointments = [
            self._cancelled_appointment(bundle, slots_by_id[bundle.slot_id], names, bundle.appointment_id in notified)
            for bundle in cascade_results
        ]
        staff_without_appointments = (
            self._staff_without_appointments(affected_slots, names) if action == "disable" else []
        )

        dates = [date.fromisoformat(slot["date"]) for slot in affected_slots]
        date_from, date_to = (min(dates), max(dates)) if dates else self._criteria_dates(criteria)

        record = ClosureOperation(
            operation_type=operation_type,
            action=action,
            date_from=date_from,
            date_to=date_to,
            criteria=criteria,
            reason=reason or None,
            closure_type=closure_type or ("emergency" if "all_day" in operation_type else "other"),
            stats={
                "total_slots_disabled": len(affected_slots) if action == "disable" else 0,
                "slots_enabled_count": len(affected_slots) if action == "enable" else 0,
                "affected_rooms_count": len(affected_rooms),
                "appointments_cancelled_count": len(cancelled_appointments),
                "notifications_sent_count": sum(1 for a in cancelled_appointments if a["notification_queued"]),
                "errors_count": len(errors or []),
            },
            affected_rooms=affected_rooms,
            cancelled_appointments=cancelled_appointments,
            affected_staff_without_appointments=staff_without_appointments,
            slot_ids=[slot["id"] for slot in affected_slots],
            errors=list(errors or []),
            closed_by={
                "user_id": actor.user_id,
                "user_name": actor.name or "System",
                "user_role": actor.role,
            },
            status=ACTIVE if action == "disable" else FULLY_RESTORED,
        )
        self.db.add(record)
        self.db.commit()
        self.db.refresh(record)
        logging.info(f"Saved closure record {record.id}: {operation_type}/{action}, "
                     f"{len(affected_slots)} slots, {len(cancelled_appointments)} appointments cancelled")
        return record

    def _affected_rooms(self, slots: List[dict], action: str, names: NameResolver) -> List[dict]:
        grouped = OrderedDict()
        for slot in slots:
            grouped.setdefault(slot["room_id"], []).append(slot)

        count_key = "slots_disabled" if action == "disable" else "slots_enabled"
        rooms = []
        for room_id, room_slots in grouped.items():
            rooms.append({
                "room_id": room_id,
                "room_name": names.room_name(room_id),
                count_key: len(room_slots),
                "slots": [
                    {
                        "slot_id": slot["id"],
                        "appointment_id": slot.get("appointment_id"),
                        "sub_room_id": slot.get("sub_room_id"),
                        "date": slot["date"],
                        "start_time": format_clock(datetime.fromisoformat(slot["start_time"])),
                        "end_time": format_clock(datetime.fromisoformat(slot["end_time"])),
                        "shift_name": slot.get("shift_name") or UNKNOWN,
                        "dentist_names": [names.user_name(d) for d in slot["dentist_ids"]],
                        "nurse_names": [names.user_name(n) for n in slot["nurse_ids"]],
                        "has_appointment": bool(slot.get("appointment_id")),
                    }
                    for slot in room_slots
                ],
            })
        return rooms

    def _cancelled_appointment(self, bundle, slot: dict, names: NameResolver, notified: bool) -> dict:
        patient = bundle.patient
        patient_name = patient.get("name")
        patient_email = patient.get("email") or ""
        patient_phone = patient.get("phone") or ""
        # Embedded patient info wins; registered patients fall back to the identity service
        if not patient_name and patient.get("id"):
            user = names.user(patient["id"])
            if user:
                patient_name = user.get("name")
                patient_email = patient_email or user.get("email") or ""
                patient_phone = patient_phone or user.get("phone") or ""

        return {
            "appointment_id": bundle.appointment_id,
            "slot_id": bundle.slot_id,
            "appointment_date": slot["date"],
            "cancelled_at": bundle.cancelled_at,
            "shift_name": slot.get("shift_name") or UNKNOWN,
            "start_time": format_clock(datetime.fromisoformat(slot["start_time"])),
            "end_time": format_clock(datetime.fromisoformat(slot["end_time"])),
            "patient_id": patient.get("id"),
            "patient_name": patient_name or UNKNOWN_PATIENT,
            "patient_email": patient_email,
            "patient_phone": patient_phone,
            "room_id": slot["room_id"],
            "room_name": names.room_name(slot["room_id"]),
            "dentists": [self._staff_entry("dentist", d, names) for d in bundle.dentist_ids],
            "nurses": [self._staff_entry("nurse", n, names) for n in bundle.nurse_ids],
            "payment_info": {"payment_id": bundle.payment_ref, "status": "has_payment"} if bundle.payment_ref else None,
            "invoice_info": {"invoice_id": bundle.invoice_ref, "status": "has_invoice"} if bundle.invoice_ref else None,
            "notification_queued": notified,
        }

    def _staff_entry(self, role: str, user_id: str, names: NameResolver) -> dict:
        user = names.user(user_id) or {}
        return {
            f"{role}_id": user_id,
            f"{role}_name": user.get("name") or UNKNOWN,
            f"{role}_email": user.get("email") or "",
        }

    def _staff_without_appointments(self, slots: List[dict], names: NameResolver) -> List[dict]:
        seen = set()
        staff = []
        for slot in slots:
            if slot.get("appointment_id"):
                continue
            for role, ids in (("dentist", slot["dentist_ids"]), ("nurse", slot["nurse_ids"])):
                for user_id in ids:
                    if user_id in seen:
                        continue
                    seen.add(user_id)
                    user = names.user(user_id) or {}
                    staff.append({
                        "user_id": user_id,
                        "name": user.get("name") or UNKNOWN,
                        "email": user.get("email") or "",
                        "role": role,
                        "notification_queued": False,
                    })
        return staff

    def _criteria_dates(self, criteria: dict):
        single = criteria.get("date")
        start = criteria.get("start_date") or single
        end = criteria.get("end_date") or single or start
        return (date.fromisoformat(start) if start else None, date.fromisoformat(end) if end else None)

    def restore_for_slots(self, slot_ids: Iterable[int], slot_dates: Iterable[date], actor,
                          reason: Optional[str]) -> List[dict]:
        """Update restoration status on every open disable record that covered one of slot_ids."""
        slot_ids = set(slot_ids)
        slot_dates = list(slot_dates)
        if not slot_ids:
            return []

        candidates = (
            self.db.query(ClosureOperation)
            .filter(
                ClosureOperation.action == "disable",
                ClosureOperation.status.in_([ACTIVE, PARTIALLY_RESTORED]),
                ClosureOperation.date_from <= max(slot_dates),
                ClosureOperation.date_to >= min(slot_dates),
            )
            .all()
        )

        restored = []
        for record in candidates:
            record_slot_ids = set(record.slot_ids or [])
            if not record_slot_ids & slot_ids:
                continue
            still_disabled = (
                self.db.query(func.count(Slot.id))
                .filter(Slot.id.in_(record_slot_ids), Slot.status == "disabled")
                .scalar()
            )
            status = FULLY_RESTORED if still_disabled == 0 else PARTIALLY_RESTORED
            self.mark_restoration(record, status, actor, reason)
            restored.append({"id": record.id, "status": status})

        self.db.commit()
        return restored

    def mark_restoration(self, record: ClosureOperation, status: str, actor, reason: Optional[str]):
        record.status = status
        record.restored_at = datetime.utcnow()
        record.restored_by = {"user_id": actor.user_id, "user_name": actor.name or "System"}
        record.restoration_reason = reason
        logging.info(f"Closure record {record.id} marked {status}")

    # Query side

    def get_record(self, closure_id: int) -> ClosureOperation:
        record = self.db.get(ClosureOperation, closure_id)
        if record is None:
            raise NotFound(f"Closure record {closure_id} not found")
        return record

    def _date_filtered(self, start_date: Optional[date], end_date: Optional[date]):
        query = self.db.query(ClosureOperation)
        if start_date:
            query = query.filter(ClosureOperation.date_from >= start_date)
        if end_date:
            query = query.filter(ClosureOperation.date_from <= end_date)
        return query

    def list_closures(self, start_date: date = None, end_date: date = None, status: str = None,
                      room_id: str = None, page: int = 1, limit: int = 20) -> dict:
        query = self._date_filtered(start_date, end_date)
        if status:
            query = query.filter(ClosureOperation.status == status)
        query = query.order_by(ClosureOperation.date_from.desc(), ClosureOperation.created_at.desc(),
                               ClosureOperation.id.desc())

        skip = (page - 1) * limit
        if room_id:
            records = [
                r for r in query.all()
                if any(room.get("room_id") == room_id for room in r.affected_rooms or [])
            ]
            total = len(records)
            records = records[skip:skip + limit]
        else:
            total = query.count()
            records = query.offset(skip).limit(limit).all()

        return {
            "data": [serialize_closure(r) for r in records],
            "pagination": paginate(total, page, limit),
        }

    def get_closure(self, closure_id: int) -> dict:
        return serialize_closure(self.get_record(closure_id))

    def get_cancelled_patients(self, closure_id: int) -> dict:
        record = self.get_record(closure_id)
        return {
            "closure_id": record.id,
            "closure_date": record.date_from.isoformat() if record.date_from else None,
            "reason": record.reason,
            "patients": [
                {
                    "appointment_id": p["appointment_id"],
                    "patient_name": p["patient_name"],
                    "patient_email": p["patient_email"],
                    "patient_phone": p["patient_phone"],
                    "appointment_time": f"{p['start_time']} - {p['end_time']}",
                    "shift_name": p["shift_name"],
                    "room_name": p["room_name"],
                    "dentists": ", ".join(d["dentist_name"] for d in p["dentists"]) or "N/A",
                    "nurses": ", ".join(n["nurse_name"] for n in p["nurses"]) or "N/A",
                    "payment_status": (p.get("payment_info") or {}).get("status", "N/A"),
                    "invoice_status": (p.get("invoice_info") or {}).get("status", "N/A"),
                    "notification_queued": p["notification_queued"],
                }
                for p in record.cancelled_appointments or []
            ],
        }

    def get_all_cancelled_patients(self, start_date: date = None, end_date: date = None, room_id: str = None,
                                   dentist_id: str = None, patient_name: str = None, page: int = 1,
                                   limit: int = 50) -> dict:
        records = (
            self._date_filtered(start_date, end_date)
            .filter(ClosureOperation.action == "disable")
            .order_by(ClosureOperation.date_from.desc(), ClosureOperation.created_at.desc(),
                      ClosureOperation.id.desc())
            .all()
        )

        patients = []
        for record in records:
            for p in record.cancelled_appointments or []:
                dentist_ids = [d["dentist_id"] for d in p["dentists"]]
                if room_id and p["room_id"] != room_id:
                    continue
                if dentist_id and dentist_id not in dentist_ids:
                    continue
                cancelled_at = p.get("cancelled_at") or record.created_at.isoformat()
                patients.append({
                    "appointment_id": p["appointment_id"],
                    "patient_id": p["patient_id"],
                    "patient_name": p["patient_name"],
                    "patient_email": p["patient_email"],
                    "patient_phone": p["patient_phone"],
                    "appointment_date": p["appointment_date"],
                    "appointment_time": f"{p['start_time']} - {p['end_time']}",
                    "shift_name": p["shift_name"],
                    "room_id": p["room_id"],
                    "room_name": p["room_name"],
                    "dentists": ", ".join(d["dentist_name"] for d in p["dentists"]) or "N/A",
                    "dentist_ids": dentist_ids,
                    "nurses": ", ".join(n["nurse_name"] for n in p["nurses"]) or "N/A",
                    "payment_id": (p.get("payment_info") or {}).get("payment_id"),
                    "payment_status": (p.get("payment_info") or {}).get("status", "N/A"),
                    "invoice_id": (p.get("invoice_info") or {}).get("invoice_id"),
                    "invoice_status": (p.get("invoice_info") or {}).get("status", "N/A"),
                    "cancelled_at": cancelled_at,
                    "formatted_cancelled_date": format_display_date(cancelled_at),
                    "cancelled_reason": record.reason,
                    "cancelled_by": (record.closed_by or {}).get("user_name") or "System",
                    "operation_type": record.operation_type,
                    "notification_queued": p["notification_queued"],
                    "closure_id": record.id,
                })

        if patient_name and patient_name.strip():
            term = patient_name.strip().lower()
            patients = [
                p for p in patients
                if term in (p["patient_name"] or "").lower()
                or term in (p["patient_email"] or "").lower()
                or term in (p["patient_phone"] or "")
            ]

        skip = (page - 1) * limit
        return {
            "data": patients[skip:skip + limit],
            "pagination": paginate(len(patients), page, limit),
        }

    def get_closure_stats(self, start_date: date = None, end_date: date = None) -> dict:
        records = self._date_filtered(start_date, end_date).all()

        def total(key):
            return sum((r.stats or {}).get(key, 0) for r in records)

        by_month = {}
        for record in records:
            month = (record.date_from or record.created_at.date()).strftime("%Y-%m")
            by_month[month] = by_month.get(month, 0) + 1

        return {
            "total_closures": len(records),
            "total_slots_disabled": total("total_slots_disabled"),
            "total_slots_enabled": total("slots_enabled_count"),
            "total_appointments_cancelled": total("appointments_cancelled_count"),
            "total_rooms_affected": total("affected_rooms_count"),
            "total_notifications_sent": total("notifications_sent_count"),
            "by_status": {
                ACTIVE: sum(1 for r in records if r.status == ACTIVE),
                PARTIALLY_RESTORED: sum(1 for r in records if r.status == PARTIALLY_RESTORED),
                FULLY_RESTORED: sum(1 for r in records if r.status == FULLY_RESTORED),
            },
            "by_month": by_month,
        }
