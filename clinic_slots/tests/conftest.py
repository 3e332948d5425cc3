# tests/conftest.py
import fnmatch
import json
from datetime import date, datetime, timedelta

import httpx
import pytest
from fastapi.testclient import TestClient
from redis.exceptions import ConnectionError as RedisConnectionError

from clinic_slots.app import create_app
from clinic_slots.app.auth import Actor, create_access_token
from clinic_slots.app.config import Settings
from clinic_slots.app.dependencies import build_engine, build_session_factory
from clinic_slots.app.models import Base
from clinic_slots.app.services import Services
from clinic_slots.app.slot_store import SlotStore

CLOSURE_DAY = date(2025, 1, 10)


class FakeConnectionPool:
    def __init__(self):
        self.disconnects = 0

    def disconnect(self):
        self.disconnects += 1


class FakeRedis:
    """Just enough of redis.Redis for the event bus and the directory cache."""

    def __init__(self):
        self.values = {}
        self.streams = {}
        self.connection_pool = FakeConnectionPool()
        self.xadd_failures = 0
        self.closed = False

    def ping(self):
        return True

    def close(self):
        self.closed = True

    def xadd(self, name, fields, maxlen=None, approximate=True):
        if self.xadd_failures:
            self.xadd_failures -= 1
            raise RedisConnectionError("Connection reset by peer")
        entries = self.streams.setdefault(name, [])
        message_id = f"{len(entries) + 1}-0"
        entries.append((message_id, dict(fields)))
        return message_id

    def get(self, key):
        return self.values.get(key)

    def setex(self, key, ttl, value):
        self.values[key] = value
        return True

    def delete(self, *keys):
        return sum(1 for key in keys if self.values.pop(key, None) is not None)

    def scan_iter(self, match="*"):
        return [key for key in list(self.values) if fnmatch.fnmatch(key, match)]

    def events(self, topic, prefix="clinic"):
        return [
            {**fields, "payload": json.loads(fields["payload"])}
            for _, fields in self.streams.get(f"{prefix}:{topic}", [])
        ]


class FakeClinicServices:
    """
    In-process stand-in for the identity, room and appointment services, served
    through httpx.MockTransport.
    """

    def __init__(self):
        self.users = {
            "u-admin": {"_id": "u-admin", "fullName": "Clinic Admin", "email": "admin@clinic.test", "role": "admin"},
            "d-1": {"_id": "d-1", "fullName": "Dr. Lan", "email": "lan@clinic.test", "role": "dentist"},
            "n-1": {"_id": "n-1", "fullName": "Nurse Minh", "email": "minh@clinic.test", "role": "nurse"},
            "p-1": {"_id": "p-1", "fullName": "Patient One", "email": "p1@mail.test", "phone": "0901"},
        }
        self.rooms = {
            "room-1": {"_id": "room-1", "name": "Room 1"},
            "room-2": {"_id": "room-2", "name": "Room 2"},
        }
        self.appointments = {}
        self.cancel_calls = []
        self.timeout_on_cancel = set()
        self.on_cancel = {}
        self.identity_down = False
        self.rooms_down = False
        self.requests = []

    def add_appointment(self, appointment_id, status="confirmed", patient_name=None, patient_id=None,
                        dentist_ids=("d-1",), nurse_ids=("n-1",), payment_id=None, invoice_id=None):
        self.appointments[appointment_id] = {
            "_id": appointment_id,
            "status": status,
            "patientId": patient_id,
            "patientInfo": {
                "name": patient_name or f"Patient {appointment_id}",
                "email": f"{appointment_id.lower()}@mail.test",
                "phone": "0900000000",
            },
            "dentistIds": list(dentist_ids),
            "nurseIds": list(nurse_ids),
            "paymentId": payment_id,
            "invoiceId": invoice_id,
        }

    def handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append((request.method, request.url.path))
        parts = request.url.path.strip("/").split("/")

        if parts[:2] == ["api", "user"]:
            if self.identity_down:
                return httpx.Response(503, json={"message": "unavailable"})
            user = self.users.get(parts[2])
            if user is None:
                return httpx.Response(404, json={"success": False})
            return httpx.Response(200, json={"success": True, "data": user})

        if parts[:2] == ["api", "room"]:
            if self.rooms_down:
                raise httpx.ConnectError("connection refused", request=request)
            room = self.rooms.get(parts[2])
            if room is None:
                return httpx.Response(404, json={"success": False})
            return httpx.Response(200, json={"success": True, "data": room})

        if parts[:3] == ["api", "appointments", "by-ids"]:
            ids = request.url.params.get("ids", "").split(",")
            docs = [self.appointments[i] for i in ids if i in self.appointments]
            return httpx.Response(200, json={"success": True, "data": docs})

        if len(parts) == 4 and parts[:2] == ["api", "appointments"] and parts[3] == "cancel":
            appointment_id = parts[2]
            self.cancel_calls.append((appointment_id, json.loads(request.content)))
            if appointment_id in self.timeout_on_cancel:
                raise httpx.ReadTimeout("timed out", request=request)
            appointment = self.appointments.get(appointment_id)
            if appointment is None:
                return httpx.Response(404, json={"success": False, "message": "not found"})
            if appointment["status"] in ("cancelled", "completed", "no-show"):
                return httpx.Response(409, json={"success": False, "message": "already final"})
            appointment["status"] = "cancelled"
            appointment["cancelledAt"] = "2025-01-09T08:00:00Z"
            if appointment_id in self.on_cancel:
                self.on_cancel[appointment_id]()
            return httpx.Response(200, json={"success": True, "data": appointment})

        return httpx.Response(404)


@pytest.fixture
def settings():
    return Settings(
        database_url="sqlite://",
        redis_url="redis://localhost:6379/15",
        jwt_secret_key="test-secret",
        collaborator_timeout_seconds=1.0,
        collaborator_retry_attempts=1,
        collaborator_retry_wait_seconds=0,
    )


@pytest.fixture
def engine():
    engine = build_engine("sqlite://")
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def db_session(engine):
    session = build_session_factory(engine)()
    yield session
    session.close()


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def clinic():
    return FakeClinicServices()


@pytest.fixture
def services(settings, fake_redis, clinic):
    services = Services(settings, fake_redis, transport=httpx.MockTransport(clinic.handle))
    yield services
    services.close()


@pytest.fixture
def actor():
    return Actor(user_id="u-admin", name="Clinic Admin", role="admin")


@pytest.fixture
def store(db_session):
    return SlotStore(db_session)


@pytest.fixture
def make_slot(store):
    def _make_slot(room_id="room-1", day=CLOSURE_DAY, hour=8, sub_room_id=None, shift_name="Morning",
                   dentist_ids=("d-1",), nurse_ids=("n-1",), appointment_id=None):
        start = datetime.combine(day, datetime.min.time()) + timedelta(hours=hour)
        slot = store.create_slot(
            room_id=room_id,
            slot_date=day,
            start_time=start,
            end_time=start + timedelta(minutes=30),
            sub_room_id=sub_room_id,
            shift_name=shift_name,
            dentist_ids=list(dentist_ids),
            nurse_ids=list(nurse_ids),
        )
        if appointment_id:
            slot = store.book(slot.id, appointment_id)
        return slot

    return _make_slot


@pytest.fixture
def api(tmp_path, settings, fake_redis, clinic):
    # File-backed so request sessions and test sessions use separate connections
    engine = build_engine(f"sqlite:///{tmp_path / 'clinic.db'}")
    Base.metadata.create_all(engine)
    app = create_app(settings, engine=engine, redis_client=fake_redis,
                     transport=httpx.MockTransport(clinic.handle))
    with TestClient(app) as client:
        yield client
    engine.dispose()


@pytest.fixture
def auth_headers(settings):
    def _auth_headers(role="admin", user_id="u-admin", name="Clinic Admin"):
        token = create_access_token(
            {"sub": user_id, "name": name, "role": role},
            settings.jwt_secret_key,
            settings.jwt_algorithm,
            timedelta(minutes=5),
        )
        return {"Authorization": f"Bearer {token}"}

    return _auth_headers
