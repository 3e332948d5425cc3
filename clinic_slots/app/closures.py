# closures.py
"""
Closure orchestration: disable/enable slot sets by explicit ids, flexible criteria or a
whole day.

Input problems (missing reason, malformed criteria, unknown ids, nothing matched) raise
before anything is touched. Once the slot set is resolved, each slot is processed on
its own: cascade first, then the status flip, then the cancellation fact. A failure is
recorded against that slot and the loop moves on, so the caller always gets a summary
of what changed, what was skipped and what failed.
"""
from dataclasses import dataclass, field
from datetime import date
from typing import List, Optional
import logging

from prometheus_client import Counter

from .audit import AuditLogBuilder
from .cascade import CascadeResolver
from .errors import EmptyScope, NotFound, SlotError, ValidationError
from .events import EventPublisher
from .slot_store import SlotStore, SlotCriteria, AVAILABLE, BOOKED, DISABLED
from .utils import serialize_slot

DISABLE_ALL_DAY = "disable_all_day"
ENABLE_ALL_DAY = "enable_all_day"
DISABLE_FLEXIBLE = "disable_flexible"
ENABLE_FLEXIBLE = "enable_flexible"
TOGGLE_INDIVIDUAL = "toggle_individual"

OPERATION_ACTIONS = {
    DISABLE_ALL_DAY: "disable",
    ENABLE_ALL_DAY: "enable",
    DISABLE_FLEXIBLE: "disable",
    ENABLE_FLEXIBLE: "enable",
    TOGGLE_INDIVIDUAL: None,
}

CLOSURE_TYPES = ("emergency", "planned", "maintenance", "staff_absence", "other")

SLOTS_CHANGED = Counter("closure_slots_changed_total", "Slots whose status a closure operation changed", ["action"])
SLOT_FAILURES = Counter("closure_slot_failures_total", "Slots a closure operation could not change", ["action"])


@dataclass
class ClosureRequest:
    operation_type: str
    action: Optional[str] = None
    criteria: SlotCriteria = field(default_factory=SlotCriteria)
    slot_ids: Optional[List[int]] = None
    reason: Optional[str] = None
    closure_type: Optional[str] = None


class ResultCollector:
    """Tagged per-slot results of one operation."""

    def __init__(self):
        self.changed = []
        self.skipped = []
        self.errors = []
        self.bundles = []
        self.notified = []

    def succeeded(self, slot: dict, bundle=None, notified: bool = False):
        self.changed.append(slot)
        if bundle is not None:
            self.bundles.append(bundle)
            if notified:
                self.notified.append(bundle.appointment_id)

    def skip(self, slot: dict, why: str):
        self.skipped.append({"slot_id": slot["id"], "reason": why})

    def fail(self, slot: dict, error: str, detail: str, appointment_id: str = None):
        self.errors.append({
            "slot_id": slot["id"],
            "room_id": slot["room_id"],
            "date": slot["date"],
            "appointment_id": appointment_id or slot.get("appointment_id"),
            "error": error,
            "detail": detail,
        })


class ClosureOrchestrator:
    def __init__(self, store: SlotStore, cascade: CascadeResolver, audit: AuditLogBuilder,
                 publisher: EventPublisher):
        self.store = store
        self.cascade = cascade
        self.audit = audit
        self.publisher = publisher

    def disable_individual(self, slot_ids: List[int], reason: str, actor, closure_type: str = None) -> dict:
        criteria = self._individual_criteria(slot_ids)
        return self._disable(TOGGLE_INDIVIDUAL, criteria, reason, actor, closure_type)

    def disable_flexible(self, criteria: SlotCriteria, reason: str, actor, closure_type: str = None) -> dict:
        self._validate_flexible(criteria)
        return self._disable(DISABLE_FLEXIBLE, criteria, reason, actor, closure_type)

    def disable_all_day(self, day: date, reason: str, actor, closure_type: str = None) -> dict:
        return self._disable(DISABLE_ALL_DAY, self._all_day_criteria(day), reason, actor, closure_type)

    def enable_individual(self, slot_ids: List[int], actor, reason: str = None) -> dict:
        return self._enable(TOGGLE_INDIVIDUAL, self._individual_criteria(slot_ids), reason, actor)

    def enable_flexible(self, criteria: SlotCriteria, actor, reason: str = None) -> dict:
        self._validate_flexible(criteria)
        return self._enable(ENABLE_FLEXIBLE, criteria, reason, actor)

    def enable_all_day(self, day: date, actor, reason: str = None) -> dict:
        return self._enable(ENABLE_ALL_DAY, self._all_day_criteria(day), reason, actor)

    def run(self, request: ClosureRequest, actor) -> dict:
        if request.operation_type not in OPERATION_ACTIONS:
            raise ValidationError(f"Unknown operation type '{request.operation_type}'")

        action = OPERATION_ACTIONS[request.operation_type]
        if action is None:
            action = request.action
            if action not in ("enable", "disable"):
                raise ValidationError("toggle_individual requires action 'enable' or 'disable'")
        elif request.action and request.action != action:
            raise ValidationError(f"{request.operation_type} cannot be used with action '{request.action}'")

        if request.operation_type == TOGGLE_INDIVIDUAL:
            if action == "disable":
                return self.disable_individual(request.slot_ids, request.reason, actor, request.closure_type)
            return self.enable_individual(request.slot_ids, actor, request.reason)

        if request.operation_type in (DISABLE_ALL_DAY, ENABLE_ALL_DAY):
            day = request.criteria.date
            if action == "disable":
                return self.disable_all_day(day, request.reason, actor, request.closure_type)
            return self.enable_all_day(day, actor, request.reason)

        if action == "disable":
            return self.disable_flexible(request.criteria, request.reason, actor, request.closure_type)
        return self.enable_flexible(request.criteria, actor, request.reason)

    # Validation

    def _individual_criteria(self, slot_ids) -> SlotCriteria:
        if not slot_ids:
            raise ValidationError("slot_ids must contain at least one slot id")
        return SlotCriteria(slot_ids=list(dict.fromkeys(slot_ids)))

    def _all_day_criteria(self, day) -> SlotCriteria:
        if not day:
            raise ValidationError("date is required for all-day operations")
        return SlotCriteria(date=day)

    def _validate_flexible(self, criteria: SlotCriteria):
        if criteria.slot_ids or criteria.status:
            raise ValidationError("flexible criteria filter by date, shift, room, sub-room, dentist or nurse")
        if criteria.is_empty():
            raise ValidationError("flexible criteria need at least one filter")
        if criteria.date and (criteria.start_date or criteria.end_date):
            raise ValidationError("use either date or start_date/end_date, not both")
        if criteria.start_date and criteria.end_date and criteria.start_date > criteria.end_date:
            raise ValidationError("start_date must not be after end_date")

    def _validate_disable(self, reason: Optional[str], closure_type: Optional[str]):
        if not reason or not reason.strip():
            raise ValidationError("reason is required when disabling slots")
        if closure_type and closure_type not in CLOSURE_TYPES:
            raise ValidationError(f"closure_type must be one of {', '.join(CLOSURE_TYPES)}")

    def _resolve(self, criteria: SlotCriteria) -> List[dict]:
        # Detached snapshots: later commits must not change what this operation saw
        snapshots = [serialize_slot(slot, include_private_info=True) for slot in self.store.find_slots(criteria)]
        # End the read transaction so no database lock is held across collaborator calls
        self.store.db.rollback()
        if criteria.slot_ids:
            missing = set(criteria.slot_ids) - {slot["id"] for slot in snapshots}
            if missing:
                raise NotFound(f"Slots not found: {', '.join(str(i) for i in sorted(missing))}")
        if not snapshots:
            raise EmptyScope(f"No slots match {criteria.to_dict()}")
        return snapshots

    # Pipelines

    def _disable(self, operation_type: str, criteria: SlotCriteria, reason: str, actor,
                 closure_type: str = None) -> dict:
        self._validate_disable(reason, closure_type)
        snapshots = self._resolve(criteria)
        logging.info(f"{operation_type}: {len(snapshots)} slots matched, requested by {actor.user_id}")

        collector = ResultCollector()
        prefetched = self.cascade.prefetch(
            [s["appointment_id"] for s in snapshots if s["status"] == BOOKED and s["appointment_id"]]
        )
        for slot in snapshots:
            if slot["status"] == DISABLED:
                collector.skip(slot, "already disabled")
                continue
            self._disable_slot(slot, reason, actor, prefetched, collector)

        return self._finish(operation_type, "disable", criteria, reason, actor, snapshots, collector, closure_type)

    def _disable_slot(self, slot: dict, reason: str, actor, prefetched: dict, collector: ResultCollector):
        bundle = None
        appointment_id = slot["appointment_id"]
        if appointment_id:
            outcome = self.cascade.resolve(slot, reason, actor, prefetched.get(appointment_id))
            if not outcome.ok:
                collector.fail(slot, outcome.error, outcome.detail)
                return
            bundle = outcome.bundle

        try:
            self.store.set_status(slot["id"], DISABLED, expected_status=slot["status"],
                                  expected_appointment_id=appointment_id,
                                  actor_id=actor.user_id, reason=reason)
        except SlotError as e:
            if bundle is None:
                collector.fail(slot, e.error_name, e.message)
                return
            # The appointment service may have released the slot on its own after the cancel
            try:
                self.store.set_status(slot["id"], DISABLED, expected_status=AVAILABLE,
                                      actor_id=actor.user_id, reason=reason)
            except SlotError as retry_error:
                collector.fail(slot, retry_error.error_name,
                               f"Appointment {appointment_id} was cancelled but the slot was not disabled: "
                               f"{retry_error.message}")
                return

        notified = self.publisher.appointment_cancelled(bundle, reason, actor) if bundle else False
        collector.succeeded(slot, bundle, notified)

    def _enable(self, operation_type: str, criteria: SlotCriteria, reason: Optional[str], actor) -> dict:
        snapshots = self._resolve(criteria)
        logging.info(f"{operation_type}: {len(snapshots)} slots matched for enable, requested by {actor.user_id}")

        collector = ResultCollector()
        for slot in snapshots:
            if slot["status"] != DISABLED:
                collector.skip(slot, f"already {slot['status']}")
                continue
            try:
                self.store.set_status(slot["id"], AVAILABLE, expected_status=DISABLED, actor_id=actor.user_id)
            except SlotError as e:
                collector.fail(slot, e.error_name, e.message)
                continue
            collector.succeeded(slot)

        summary = self._finish(operation_type, "enable", criteria, reason, actor, snapshots, collector)
        summary["restored_operations"] = self.audit.restore_for_slots(
            [s["id"] for s in collector.changed],
            [date.fromisoformat(s["date"]) for s in collector.changed],
            actor,
            reason,
        )
        return summary

    def _finish(self, operation_type: str, action: str, criteria: SlotCriteria, reason: Optional[str], actor,
                snapshots: List[dict], collector: ResultCollector, closure_type: str = None) -> dict:
        SLOTS_CHANGED.labels(action=action).inc(len(collector.changed))
        SLOT_FAILURES.labels(action=action).inc(len(collector.errors))

        record = None
        if collector.changed or collector.errors:
            record = self.audit.record(
                operation_type=operation_type,
                action=action,
                criteria=criteria.to_dict(),
                reason=reason,
                actor=actor,
                affected_slots=collector.changed,
                cascade_results=collector.bundles,
                errors=collector.errors,
                closure_type=closure_type,
                notified_appointment_ids=collector.notified,
            )

        count_key = "slots_disabled" if action == "disable" else "slots_enabled"
        logging.info(f"{operation_type} finished: {len(collector.changed)} changed, "
                     f"{len(collector.skipped)} skipped, {len(collector.errors)} failed")
        return {
            "operation_id": record.id if record else None,
            "operation_type": operation_type,
            "action": action,
            "slots_matched": len(snapshots),
            "slots_changed": len(collector.changed),
            "slots_skipped": len(collector.skipped),
            "appointments_cancelled": len(collector.bundles),
            "notifications_sent": len(collector.notified),
            "affected_rooms": [
                {"room_id": room["room_id"], "room_name": room["room_name"], count_key: room[count_key]}
                for room in (record.affected_rooms if record else [])
            ],
            "skipped": collector.skipped,
            "errors": collector.errors,
        }
