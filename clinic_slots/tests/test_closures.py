from datetime import date

import pytest

from clinic_slots.app.audit import ACTIVE, FULLY_RESTORED, PARTIALLY_RESTORED
from clinic_slots.app.closures import ClosureRequest
from clinic_slots.app.errors import EmptyScope, NotFound, ValidationError
from clinic_slots.app.events import APPOINTMENT_CANCELLED
from clinic_slots.app.models import ClosureOperation
from clinic_slots.app.slot_store import AVAILABLE, BOOKED, DISABLED, SlotCriteria

DAY = date(2025, 1, 10)


@pytest.fixture
def orchestrator(services, db_session):
    return services.orchestrator(db_session)


def booked_slot(make_slot, clinic, appointment_id, **kwargs):
    clinic.add_appointment(appointment_id)
    return make_slot(appointment_id=appointment_id, **kwargs)


def closure_records(db_session):
    return db_session.query(ClosureOperation).order_by(ClosureOperation.id).all()


def test_disable_all_day_cancels_and_records(orchestrator, make_slot, clinic, store, db_session, actor, fake_redis):
    first = booked_slot(make_slot, clinic, "A1", hour=8)
    second = booked_slot(make_slot, clinic, "A2", hour=9)

    summary = orchestrator.disable_all_day(DAY, "maintenance", actor)

    assert [call[0] for call in clinic.cancel_calls] == ["A1", "A2"]
    assert clinic.cancel_calls[0][1] == {"reason": "maintenance", "cancelledBy": "u-admin"}
    assert store.get_slot(first.id).status == DISABLED
    assert store.get_slot(second.id).status == DISABLED

    assert summary["slots_changed"] == 2
    assert summary["appointments_cancelled"] == 2
    assert summary["notifications_sent"] == 2
    assert summary["errors"] == []
    assert summary["affected_rooms"] == [{"room_id": "room-1", "room_name": "Room 1", "slots_disabled": 2}]

    records = closure_records(db_session)
    assert len(records) == 1
    record = records[0]
    assert record.id == summary["operation_id"]
    assert record.operation_type == "disable_all_day"
    assert record.closure_type == "emergency"
    assert record.status == ACTIVE
    assert record.date_from == DAY and record.date_to == DAY
    assert record.stats["total_slots_disabled"] == 2
    assert record.stats["appointments_cancelled_count"] == 2
    assert record.stats["affected_rooms_count"] == 1
    assert record.affected_rooms[0]["room_id"] == "room-1"
    assert record.affected_rooms[0]["slots_disabled"] == 2
    assert record.closed_by == {"user_id": "u-admin", "user_name": "Clinic Admin", "user_role": "admin"}

    cancelled = {a["appointment_id"]: a for a in record.cancelled_appointments}
    assert cancelled["A1"]["patient_name"] == "Patient A1"
    assert cancelled["A1"]["start_time"] == "08:00"
    assert cancelled["A1"]["room_name"] == "Room 1"
    assert cancelled["A1"]["dentists"] == [
        {"dentist_id": "d-1", "dentist_name": "Dr. Lan", "dentist_email": "lan@clinic.test"}
    ]
    assert cancelled["A1"]["notification_queued"] is True

    events = fake_redis.events(APPOINTMENT_CANCELLED)
    assert [e["key"] for e in events] == ["A1", "A2"]
    assert events[0]["payload"]["reason"] == "maintenance"
    assert events[0]["payload"]["patient_email"] == "a1@mail.test"
    assert len({e["event_id"] for e in events}) == 2


def test_one_cancellation_timeout_is_isolated(orchestrator, make_slot, clinic, store, db_session, actor):
    slots = [booked_slot(make_slot, clinic, f"A{n}", hour=7 + n) for n in (1, 2, 3)]
    clinic.timeout_on_cancel.add("A2")

    summary = orchestrator.disable_all_day(DAY, "flooding", actor)

    assert [store.get_slot(s.id).status for s in slots] == [DISABLED, BOOKED, DISABLED]
    assert store.get_slot(slots[1].id).appointment_id == "A2"
    assert summary["slots_changed"] == 2
    assert summary["appointments_cancelled"] == 2
    assert len(summary["errors"]) == 1
    error = summary["errors"][0]
    assert error["slot_id"] == slots[1].id
    assert error["appointment_id"] == "A2"
    assert error["error"] == "CollaboratorUnavailable"

    record = closure_records(db_session)[0]
    assert sorted(a["appointment_id"] for a in record.cancelled_appointments) == ["A1", "A3"]
    assert record.errors == summary["errors"]
    assert record.stats["errors_count"] == 1
    assert sorted(record.slot_ids) == sorted([slots[0].id, slots[2].id])


def test_empty_scope_writes_no_record(orchestrator, make_slot, db_session, actor):
    make_slot()
    with pytest.raises(EmptyScope):
        orchestrator.disable_flexible(SlotCriteria(room_id="room-9"), "maintenance", actor)
    assert closure_records(db_session) == []


def test_disable_requires_reason(orchestrator, make_slot, store, actor):
    slot = make_slot()
    with pytest.raises(ValidationError):
        orchestrator.disable_individual([slot.id], "  ", actor)
    assert store.get_slot(slot.id).status == AVAILABLE


@pytest.mark.parametrize("criteria", [
    SlotCriteria(),
    SlotCriteria(start_date=date(2025, 1, 12), end_date=date(2025, 1, 10)),
    SlotCriteria(date=DAY, start_date=DAY),
    SlotCriteria(slot_ids=[1]),
])
def test_malformed_flexible_criteria(orchestrator, make_slot, actor, criteria):
    make_slot()
    with pytest.raises(ValidationError):
        orchestrator.disable_flexible(criteria, "maintenance", actor)


def test_unknown_closure_type_rejected(orchestrator, make_slot, actor):
    make_slot()
    with pytest.raises(ValidationError):
        orchestrator.disable_all_day(DAY, "maintenance", actor, closure_type="holiday")


def test_individual_ids_must_all_exist(orchestrator, make_slot, store, clinic, db_session, actor):
    slot = booked_slot(make_slot, clinic, "A1")
    with pytest.raises(NotFound):
        orchestrator.disable_individual([slot.id, 4242], "maintenance", actor)
    assert store.get_slot(slot.id).status == BOOKED
    assert clinic.cancel_calls == []
    assert closure_records(db_session) == []


def test_individual_ids_must_not_be_empty(orchestrator, actor):
    with pytest.raises(ValidationError):
        orchestrator.disable_individual([], "maintenance", actor)


def test_flexible_disable_by_dentist_and_shift(orchestrator, make_slot, store, actor):
    target = make_slot(hour=8, dentist_ids=["d-1"])
    other_dentist = make_slot(hour=9, dentist_ids=["d-2"])
    afternoon = make_slot(hour=14, shift_name="Afternoon", dentist_ids=["d-1"])

    summary = orchestrator.disable_flexible(
        SlotCriteria(date=DAY, dentist_id="d-1", shift_name="Morning"), "sick leave", actor,
        closure_type="staff_absence",
    )

    assert summary["operation_type"] == "disable_flexible"
    assert summary["slots_changed"] == 1
    assert store.get_slot(target.id).status == DISABLED
    assert store.get_slot(other_dentist.id).status == AVAILABLE
    assert store.get_slot(afternoon.id).status == AVAILABLE


def test_already_disabled_slots_are_skipped(orchestrator, make_slot, store, actor):
    first = make_slot(hour=8)
    make_slot(hour=9)
    store.set_status(first.id, DISABLED, reason="earlier")

    summary = orchestrator.disable_all_day(DAY, "maintenance", actor)

    assert summary["slots_matched"] == 2
    assert summary["slots_changed"] == 1
    assert summary["slots_skipped"] == 1
    assert summary["skipped"] == [{"slot_id": first.id, "reason": "already disabled"}]


def test_nothing_to_change_writes_no_record(orchestrator, make_slot, store, db_session, actor):
    slot = make_slot()
    store.set_status(slot.id, DISABLED, reason="earlier")

    summary = orchestrator.disable_individual([slot.id], "again", actor)

    assert summary["operation_id"] is None
    assert summary["slots_skipped"] == 1
    assert closure_records(db_session) == []


def test_finished_appointment_is_not_cancelled(orchestrator, make_slot, clinic, store, actor):
    clinic.add_appointment("A1", status="completed")
    slot = make_slot(appointment_id="A1")

    summary = orchestrator.disable_individual([slot.id], "maintenance", actor)

    assert clinic.cancel_calls == []
    assert store.get_slot(slot.id).status == BOOKED
    assert summary["errors"][0]["error"] == "InvalidTransition"


def test_slot_released_by_appointment_service_is_still_disabled(orchestrator, make_slot, clinic, store, actor):
    slot = booked_slot(make_slot, clinic, "A1")
    clinic.on_cancel["A1"] = lambda: store.release(slot.id)

    summary = orchestrator.disable_individual([slot.id], "maintenance", actor)

    assert summary["errors"] == []
    assert summary["appointments_cancelled"] == 1
    assert store.get_slot(slot.id).status == DISABLED


def test_slot_rebooked_after_cancel_is_reported(orchestrator, make_slot, clinic, store, actor):
    slot = booked_slot(make_slot, clinic, "A1")

    def rebook():
        store.release(slot.id)
        store.book(slot.id, "A9")

    clinic.on_cancel["A1"] = rebook

    summary = orchestrator.disable_individual([slot.id], "maintenance", actor)

    assert summary["slots_changed"] == 0
    assert summary["errors"][0]["appointment_id"] == "A1"
    assert store.get_slot(slot.id).appointment_id == "A9"


def test_event_bus_outage_does_not_block_closure(orchestrator, make_slot, clinic, store, db_session, actor,
                                                 fake_redis):
    slot = booked_slot(make_slot, clinic, "A1")
    fake_redis.xadd_failures = 10

    summary = orchestrator.disable_individual([slot.id], "maintenance", actor)

    assert store.get_slot(slot.id).status == DISABLED
    assert summary["appointments_cancelled"] == 1
    assert summary["notifications_sent"] == 0
    record = closure_records(db_session)[0]
    assert record.stats["notifications_sent_count"] == 0
    assert record.cancelled_appointments[0]["notification_queued"] is False


def test_round_trip_restores_original_record(orchestrator, make_slot, clinic, store, db_session, actor):
    first = booked_slot(make_slot, clinic, "A1", hour=8)
    second = make_slot(hour=9)
    identity = [(s.room_id, s.date, s.start_time, s.end_time) for s in (first, second)]

    disabled = orchestrator.disable_individual([first.id, second.id], "maintenance", actor)
    enabled = orchestrator.enable_individual([first.id, second.id], actor, reason="reopened")

    for slot in (first, second):
        assert store.get_slot(slot.id).status == AVAILABLE
    assert [(s.room_id, s.date, s.start_time, s.end_time)
            for s in (store.get_slot(first.id), store.get_slot(second.id))] == identity

    assert enabled["action"] == "enable"
    assert enabled["slots_changed"] == 2
    assert enabled["affected_rooms"] == [{"room_id": "room-1", "room_name": "Room 1", "slots_enabled": 2}]
    assert enabled["restored_operations"] == [{"id": disabled["operation_id"], "status": FULLY_RESTORED}]

    original = db_session.get(ClosureOperation, disabled["operation_id"])
    assert original.status == FULLY_RESTORED
    assert original.restored_by == {"user_id": "u-admin", "user_name": "Clinic Admin"}
    assert original.restoration_reason == "reopened"
    assert original.restored_at is not None

    enable_record = db_session.get(ClosureOperation, enabled["operation_id"])
    assert enable_record.action == "enable"
    assert enable_record.stats["slots_enabled_count"] == 2


def test_partial_reopen_marks_partially_restored(orchestrator, make_slot, db_session, actor):
    first = make_slot(hour=8)
    make_slot(hour=9)
    disabled = orchestrator.disable_all_day(DAY, "maintenance", actor)

    enabled = orchestrator.enable_individual([first.id], actor)

    assert enabled["restored_operations"] == [{"id": disabled["operation_id"], "status": PARTIALLY_RESTORED}]
    assert db_session.get(ClosureOperation, disabled["operation_id"]).status == PARTIALLY_RESTORED

    orchestrator.enable_all_day(DAY, actor)
    assert db_session.get(ClosureOperation, disabled["operation_id"]).status == FULLY_RESTORED


def test_enable_skips_slots_that_are_not_disabled(orchestrator, make_slot, clinic, store, actor):
    booked = booked_slot(make_slot, clinic, "A1", hour=8)
    closed = make_slot(hour=9)
    store.set_status(closed.id, DISABLED, reason="earlier")

    summary = orchestrator.enable_all_day(DAY, actor)

    assert summary["slots_changed"] == 1
    assert summary["skipped"] == [{"slot_id": booked.id, "reason": "already booked"}]
    assert store.get_slot(booked.id).appointment_id == "A1"


def test_run_dispatches_on_operation_type(orchestrator, make_slot, store, actor):
    slot = make_slot()

    summary = orchestrator.run(
        ClosureRequest(operation_type="toggle_individual", action="disable", slot_ids=[slot.id], reason="x"),
        actor,
    )
    assert summary["operation_type"] == "toggle_individual"
    assert store.get_slot(slot.id).status == DISABLED

    summary = orchestrator.run(
        ClosureRequest(operation_type="enable_flexible", criteria=SlotCriteria(room_id="room-1")), actor,
    )
    assert summary["action"] == "enable"
    assert store.get_slot(slot.id).status == AVAILABLE


@pytest.mark.parametrize("request_", [
    ClosureRequest(operation_type="close_everything"),
    ClosureRequest(operation_type="toggle_individual", slot_ids=[1], reason="x"),
    ClosureRequest(operation_type="disable_all_day", action="enable", criteria=SlotCriteria(date=DAY)),
    ClosureRequest(operation_type="disable_all_day", reason="x"),
])
def test_run_rejects_inconsistent_requests(orchestrator, make_slot, actor, request_):
    make_slot()
    with pytest.raises(ValidationError):
        orchestrator.run(request_, actor)


def test_no_transaction_is_held_while_cancelling(orchestrator, make_slot, clinic, db_session, actor):
    slot = booked_slot(make_slot, clinic, "A1")
    seen = []
    clinic.on_cancel["A1"] = lambda: seen.append(db_session.in_transaction())

    orchestrator.disable_individual([slot.id], "maintenance", actor)

    assert seen == [False]
