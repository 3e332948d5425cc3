import logging

import httpx
from redis import Redis
from sqlalchemy.orm import Session

from .audit import AuditLogBuilder
from .cascade import CascadeResolver
from .closures import ClosureOrchestrator
from .collaborators import AppointmentClient, DirectoryCache, IdentityClient, RoomClient
from .config import Settings
from .events import EventBus, EventPublisher
from .queue_service import QueueNumberAllocator, QueueService
from .slot_store import SlotStore


class Services:
    """
    Long-lived collaborators built once per application: HTTP clients, directory cache
    and event bus. Session-bound components are assembled per request from a db session.
    """

    def __init__(self, settings: Settings, redis_client: Redis, transport: httpx.BaseTransport = None):
        self.settings = settings
        self.cache = DirectoryCache(redis_client, settings.directory_cache_ttl_seconds)

        client_options = {
            "timeout": settings.collaborator_timeout_seconds,
            "retry_attempts": settings.collaborator_retry_attempts,
            "retry_wait": settings.collaborator_retry_wait_seconds,
            "transport": transport,
        }
        self.identity = IdentityClient(settings.identity_service_url, cache=self.cache, **client_options)
        self.rooms = RoomClient(settings.room_service_url, cache=self.cache, **client_options)
        self.appointments = AppointmentClient(settings.appointment_service_url, **client_options)

        self.bus = EventBus(redis_client, settings.event_stream_prefix, settings.event_stream_max_len)
        self.publisher = EventPublisher(self.bus)

    def slot_store(self, db: Session) -> SlotStore:
        return SlotStore(db)

    def audit(self, db: Session) -> AuditLogBuilder:
        return AuditLogBuilder(db, self.identity, self.rooms)

    def orchestrator(self, db: Session) -> ClosureOrchestrator:
        return ClosureOrchestrator(
            store=SlotStore(db),
            cascade=CascadeResolver(self.appointments),
            audit=self.audit(db),
            publisher=self.publisher,
        )

    def allocator(self, db: Session) -> QueueNumberAllocator:
        return QueueNumberAllocator(db, width=self.settings.queue_number_width)

    def queue(self, db: Session) -> QueueService:
        return QueueService(SlotStore(db), self.allocator(db), self.publisher)

    def close(self):
        for client in (self.identity, self.rooms, self.appointments):
            client.close()
        self.bus.close()
        logging.info("Collaborator clients and event bus closed")
