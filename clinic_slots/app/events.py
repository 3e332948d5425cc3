# events.py
import json
import logging
import uuid
from datetime import datetime

from prometheus_client import Counter
from redis import Redis
from redis.exceptions import ConnectionError as RedisConnectionError, RedisError

APPOINTMENT_CANCELLED = "appointment.cancelled"
SERVICE_MARK_AS_USED = "service.mark_as_used"
RECORD_COMPLETED = "record.completed"
PAYMENT_CREATE = "payment.create"

EVENTS_PUBLISHED = Counter("events_published_total", "Events appended to the bus", ["topic"])
EVENTS_FAILED = Counter("events_failed_total", "Events that could not be appended to the bus", ["topic"])


class EventBus:
    """
    Durable fact channel on Redis Streams, one stream per topic.

    Lifecycle: the process constructs one bus and calls connect() at startup, which
    PINGs the server. publish() runs on the pooled connection; when the connection has
    dropped it disconnects the pool and retries once on a fresh connection before
    giving up. close() releases the pool at shutdown.
    """

    def __init__(self, client: Redis, stream_prefix: str = "clinic", max_len: int = 100000):
        self.client = client
        self.stream_prefix = stream_prefix
        self.max_len = max_len

    def connect(self):
        self.client.ping()
        logging.info("Event bus connected")

    def reconnect(self):
        self.client.connection_pool.disconnect()
        self.client.ping()
        logging.info("Event bus reconnected")

    def close(self):
        self.client.close()

    def stream_name(self, topic: str) -> str:
        return f"{self.stream_prefix}:{topic}"

    def publish(self, topic: str, key: str, payload: dict) -> str:
        fields = {
            "event_id": str(uuid.uuid4()),
            "key": str(key),
            "payload": json.dumps(payload, default=str),
            "published_at": datetime.utcnow().isoformat(),
        }
        stream = self.stream_name(topic)
        try:
            return self.client.xadd(stream, fields, maxlen=self.max_len, approximate=True)
        except RedisConnectionError:
            logging.warning(f"Event bus connection lost while publishing {topic}, reconnecting")
            self.reconnect()
            return self.client.xadd(stream, fields, maxlen=self.max_len, approximate=True)


class EventPublisher:
    """Fire-and-forget facts for collaborator services. Failures are logged, never raised."""

    def __init__(self, bus: EventBus):
        self.bus = bus

    def _emit(self, topic: str, key: str, payload: dict) -> bool:
        try:
            message_id = self.bus.publish(topic, key, payload)
        except RedisError as e:
            EVENTS_FAILED.labels(topic=topic).inc()
            logging.error(f"Failed to publish {topic} for {key}: {str(e)}")
            return False
        EVENTS_PUBLISHED.labels(topic=topic).inc()
        logging.info(f"Published {topic} for {key} ({message_id})")
        return True

    def appointment_cancelled(self, bundle, reason: str, actor) -> bool:
        return self._emit(APPOINTMENT_CANCELLED, bundle.appointment_id, {
            "appointment_id": bundle.appointment_id,
            "slot_id": bundle.slot_id,
            "reason": reason,
            "cancelled_at": bundle.cancelled_at,
            "cancelled_by": actor.user_id,
            "patient_id": bundle.patient.get("id"),
            "patient_name": bundle.patient.get("name"),
            "patient_email": bundle.patient.get("email"),
            "dentist_ids": bundle.dentist_ids,
            "nurse_ids": bundle.nurse_ids,
            "payment_id": bundle.payment_ref,
            "invoice_id": bundle.invoice_ref,
        })

    def service_mark_as_used(self, service_id: str, appointment_id: str, record_id) -> bool:
        return self._emit(SERVICE_MARK_AS_USED, service_id, {
            "service_id": service_id,
            "appointment_id": appointment_id,
            "record_id": record_id,
        })

    def record_completed(self, record_id, appointment_id: str, actor, queue_number: str) -> bool:
        return self._emit(RECORD_COMPLETED, record_id, {
            "record_id": record_id,
            "appointment_id": appointment_id,
            "queue_number": queue_number,
            "completed_by": actor.user_id,
        })

    def payment_create(self, record_id, appointment_id: str, actor, total_amount: float,
                       deposit_amount: float) -> bool:
        return self._emit(PAYMENT_CREATE, record_id, {
            "record_id": record_id,
            "appointment_id": appointment_id,
            "amount": max(0, total_amount - deposit_amount),
            "total_amount": total_amount,
            "deposit_amount": deposit_amount,
            "has_deposit": deposit_amount > 0,
            "method": "cash",
            "type": "payment",
            "status": "pending",
            "processed_by": actor.user_id,
        })
