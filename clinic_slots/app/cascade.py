# cascade.py
"""
Cancels the appointment behind a slot that is being closed and returns what the audit
record and the notification fact need about it. Any failure is returned, not raised:
one unreachable or already-finished appointment only costs its own slot.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional

from prometheus_client import Counter

from .collaborators import AppointmentClient, TERMINAL_APPOINTMENT_STATUSES
from .errors import SlotError

CASCADE_FAILURES = Counter("cascade_failures_total", "Appointment cancellations that failed during a closure", ["error"])


@dataclass
class CascadeBundle:
    slot_id: int
    appointment_id: str
    cancelled_at: str
    patient: dict
    dentist_ids: List[str]
    nurse_ids: List[str]
    payment_ref: Optional[str] = None
    invoice_ref: Optional[str] = None
    recipients: List[dict] = field(default_factory=list)


@dataclass
class CascadeOutcome:
    ok: bool
    bundle: Optional[CascadeBundle] = None
    error: Optional[str] = None
    detail: Optional[str] = None


class CascadeResolver:
    def __init__(self, appointments: AppointmentClient):
        self.appointments = appointments

    def prefetch(self, appointment_ids: List[str]) -> dict:
        """One batched lookup per operation; an unreachable service just means no prefetch."""
        try:
            return self.appointments.get_appointments_by_ids(appointment_ids)
        except SlotError as e:
            logging.warning(f"Could not prefetch {len(appointment_ids)} appointments: {e.message}")
            return {}

    def resolve(self, slot: dict, reason: str, actor, prefetched: dict = None) -> CascadeOutcome:
        appointment_id = slot["appointment_id"]

        if prefetched and prefetched.get("status") in TERMINAL_APPOINTMENT_STATUSES:
            return self._failed(slot, "InvalidTransition",
                                f"Appointment {appointment_id} is already {prefetched['status']}")

        try:
            cancelled = self.appointments.cancel_appointment(appointment_id, reason, actor.user_id)
        except SlotError as e:
            return self._failed(slot, e.error_name, e.message)

        appointment = dict(prefetched or {})
        appointment.update({k: v for k, v in cancelled.items() if v not in (None, [], "")})
        patient_info = appointment.get("patient_info") or {}

        bundle = CascadeBundle(
            slot_id=slot["id"],
            appointment_id=appointment_id,
            cancelled_at=appointment.get("cancelled_at") or datetime.utcnow().isoformat(),
            patient={
                "id": appointment.get("patient_id"),
                "name": patient_info.get("name"),
                "email": patient_info.get("email") or "",
                "phone": patient_info.get("phone") or "",
            },
            dentist_ids=appointment.get("dentist_ids") or list(slot["dentist_ids"]),
            nurse_ids=appointment.get("nurse_ids") or list(slot["nurse_ids"]),
            payment_ref=appointment.get("payment_ref"),
            invoice_ref=appointment.get("invoice_ref"),
        )
        bundle.recipients = self._recipients(bundle)
        logging.info(f"Cancelled appointment {appointment_id} for slot {slot['id']}")
        return CascadeOutcome(ok=True, bundle=bundle)

    def _recipients(self, bundle: CascadeBundle) -> List[dict]:
        recipients = []
        if bundle.patient.get("email") or bundle.patient.get("id"):
            recipients.append({"role": "patient", "user_id": bundle.patient.get("id"),
                               "email": bundle.patient.get("email")})
        recipients += [{"role": "dentist", "user_id": d} for d in bundle.dentist_ids]
        recipients += [{"role": "nurse", "user_id": n} for n in bundle.nurse_ids]
        return recipients

    def _failed(self, slot: dict, error: str, detail: str) -> CascadeOutcome:
        CASCADE_FAILURES.labels(error=error).inc()
        logging.warning(f"Cascade failed for slot {slot['id']} (appointment {slot['appointment_id']}): {detail}")
        return CascadeOutcome(ok=False, error=error, detail=detail)
