# collaborators.py
"""
Synchronous clients for the identity, room and appointment services.

Each call carries the configured timeout and is retried on transport errors and 5xx
responses by tenacity. Whatever still fails surfaces as CollaboratorUnavailable so
callers can demote the one affected slot or name instead of aborting their operation.
"""
import json
import logging
from typing import Dict, List, Optional

import httpx
from redis import Redis
from redis.exceptions import RedisError
from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_fixed

from .errors import CollaboratorUnavailable, InvalidTransition, NotFound

TERMINAL_APPOINTMENT_STATUSES = {"cancelled", "completed", "no-show"}


class _RetryableResponse(Exception):
    def __init__(self, response: httpx.Response):
        super().__init__(f"HTTP {response.status_code}")
        self.response = response


def _unwrap(payload):
    # Collaborators answer the bare document or a {success, data} envelope; the identity
    # service names its field "user"
    if isinstance(payload, dict):
        for field in ("data", "user"):
            if field in payload and ("success" in payload or len(payload) == 1):
                return payload[field]
    return payload


class DirectoryCache:
    """Read-through JSON cache for collaborator lookups. A missing client disables it."""

    def __init__(self, client: Optional[Redis], ttl_seconds: int = 300):
        self.client = client
        self.ttl_seconds = ttl_seconds

    def get(self, kind: str, key: str):
        if self.client is None:
            return None
        try:
            cached = self.client.get(f"directory:{kind}:{key}")
        except RedisError as e:
            logging.warning(f"Directory cache read failed for {kind}:{key}: {str(e)}")
            return None
        return json.loads(cached) if cached else None

    def set(self, kind: str, key: str, value: dict):
        if self.client is None:
            return
        try:
            self.client.setex(f"directory:{kind}:{key}", self.ttl_seconds, json.dumps(value))
        except RedisError as e:
            logging.warning(f"Directory cache write failed for {kind}:{key}: {str(e)}")

    def clear(self) -> int:
        if self.client is None:
            return 0
        removed = 0
        for key in self.client.scan_iter(match="directory:*"):
            removed += self.client.delete(key)
        return removed


class ServiceClient:
    service_name = "service"

    def __init__(self, base_url: str, timeout: float = 5.0, retry_attempts: int = 2,
                 retry_wait: float = 0.5, transport: httpx.BaseTransport = None):
        self.retry_attempts = retry_attempts
        self.retry_wait = retry_wait
        self.client = httpx.Client(base_url=base_url, timeout=timeout, transport=transport)

    def close(self):
        self.client.close()

    def _send(self, method: str, path: str, **kwargs) -> httpx.Response:
        response = self.client.request(method, path, **kwargs)
        if response.status_code >= 500:
            raise _RetryableResponse(response)
        return response

    def request(self, method: str, path: str, **kwargs) -> httpx.Response:
        retrying = Retrying(
            retry=retry_if_exception_type((httpx.TransportError, _RetryableResponse)),
            stop=stop_after_attempt(self.retry_attempts),
            wait=wait_fixed(self.retry_wait),
            reraise=True,
        )
        try:
            for attempt in retrying:
                with attempt:
                    return self._send(method, path, **kwargs)
        except httpx.TimeoutException as e:
            raise CollaboratorUnavailable(self.service_name, f"timed out calling {path}") from e
        except httpx.TransportError as e:
            raise CollaboratorUnavailable(self.service_name, f"cannot reach {path}: {str(e)}") from e
        except _RetryableResponse as e:
            raise CollaboratorUnavailable(self.service_name, f"{path} answered {e.response.status_code}") from e

    def get_json(self, path: str, **kwargs):
        response = self.request("GET", path, **kwargs)
        if response.status_code == 404:
            return None
        if response.status_code >= 400:
            raise CollaboratorUnavailable(self.service_name, f"{path} answered {response.status_code}")
        try:
            return _unwrap(response.json())
        except ValueError as e:
            raise CollaboratorUnavailable(self.service_name, f"{path} returned invalid JSON") from e


class IdentityClient(ServiceClient):
    service_name = "identity-service"

    def __init__(self, *args, cache: DirectoryCache = None, **kwargs):
        super().__init__(*args, **kwargs)
        self.cache = cache or DirectoryCache(None)

    def get_user_by_id(self, user_id: str) -> Optional[dict]:
        cached = self.cache.get("user", user_id)
        if cached:
            return cached
        data = self.get_json(f"/api/user/{user_id}")
        if not data:
            return None
        user = {
            "id": str(data.get("_id") or data.get("id") or user_id),
            "name": data.get("fullName") or data.get("name"),
            "email": data.get("email") or "",
            "phone": data.get("phone") or data.get("phoneNumber") or "",
            "role": data.get("role") or data.get("activeRole"),
        }
        self.cache.set("user", user_id, user)
        return user


class RoomClient(ServiceClient):
    service_name = "room-service"

    def __init__(self, *args, cache: DirectoryCache = None, **kwargs):
        super().__init__(*args, **kwargs)
        self.cache = cache or DirectoryCache(None)

    def get_room_by_id(self, room_id: str) -> Optional[dict]:
        cached = self.cache.get("room", room_id)
        if cached:
            return cached
        data = self.get_json(f"/api/room/{room_id}")
        if not data:
            return None
        room = {"id": str(data.get("_id") or data.get("id") or room_id), "name": data.get("name")}
        self.cache.set("room", room_id, room)
        return room


def normalize_appointment(doc: dict) -> dict:
    patient_info = doc.get("patientInfo") or doc.get("patient_info") or {}
    dentists = doc.get("dentists") or doc.get("dentistIds") or ([doc["dentistId"]] if doc.get("dentistId") else [])
    nurses = doc.get("nurses") or doc.get("nurseIds") or ([doc["nurseId"]] if doc.get("nurseId") else [])
    return {
        "id": str(doc.get("_id") or doc.get("id")),
        "status": doc.get("status"),
        "patient_id": doc.get("patientId") or doc.get("patient_id"),
        "patient_info": {
            "name": patient_info.get("name") or patient_info.get("fullName"),
            "email": patient_info.get("email") or "",
            "phone": patient_info.get("phone") or "",
        },
        "dentist_ids": [str(d.get("_id") or d.get("id")) if isinstance(d, dict) else str(d) for d in dentists],
        "nurse_ids": [str(n.get("_id") or n.get("id")) if isinstance(n, dict) else str(n) for n in nurses],
        "payment_ref": doc.get("paymentRef") or doc.get("paymentId"),
        "invoice_ref": doc.get("invoiceRef") or doc.get("invoiceId"),
        "cancelled_at": doc.get("cancelledAt"),
        "service_ids": doc.get("serviceIds") or ([doc["serviceId"]] if doc.get("serviceId") else []),
    }


class AppointmentClient(ServiceClient):
    service_name = "appointment-service"

    def get_appointments_by_ids(self, ids: List[str]) -> Dict[str, dict]:
        if not ids:
            return {}
        data = self.get_json("/api/appointments/by-ids", params={"ids": ",".join(ids)}) or []
        appointments = {}
        for doc in data:
            appointment = normalize_appointment(doc)
            appointments[appointment["id"]] = appointment
        return appointments

    def cancel_appointment(self, appointment_id: str, reason: str, cancelled_by: str = None) -> dict:
        path = f"/api/appointments/{appointment_id}/cancel"
        response = self.request("POST", path, json={"reason": reason, "cancelledBy": cancelled_by})
        if response.status_code == 404:
            raise NotFound(f"Appointment {appointment_id} not found")
        if response.status_code in (400, 409):
            raise InvalidTransition(f"Appointment {appointment_id} cannot be cancelled: {response.text}")
        if response.status_code >= 400:
            raise CollaboratorUnavailable(self.service_name, f"{path} answered {response.status_code}")
        try:
            body = _unwrap(response.json())
        except ValueError:
            body = None
        if not isinstance(body, dict):
            body = {"_id": appointment_id, "status": "cancelled"}
        return normalize_appointment(body)
