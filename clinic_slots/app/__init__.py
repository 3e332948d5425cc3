from contextlib import asynccontextmanager
import logging

import httpx
from fastapi import FastAPI
from redis import Redis
from redis.exceptions import RedisError

from .config import Settings, get_settings
from .dependencies import build_engine, build_redis_client, build_session_factory
from .errors import SlotError, slot_error_handler
from .services import Services


def create_app(settings: Settings = None, engine=None, redis_client: Redis = None,
               transport: httpx.BaseTransport = None) -> FastAPI:
    settings = settings or get_settings()
    owns_engine = engine is None
    engine = engine or build_engine(settings.database_url)
    redis_client = redis_client or build_redis_client(settings.redis_url, settings.redis_timeout_seconds)
    services = Services(settings, redis_client, transport=transport)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        try:
            services.bus.connect()
        except RedisError as e:
            # Publishing reconnects on demand; a cold bus must not keep the API down
            logging.warning(f"Event bus unavailable at startup: {str(e)}")
        yield
        services.close()
        if owns_engine:
            engine.dispose()

    app = FastAPI(title="Clinic Slots", lifespan=lifespan)
    app.state.settings = settings
    app.state.engine = engine
    app.state.session_factory = build_session_factory(engine)
    app.state.redis_client = redis_client
    app.state.services = services

    app.add_exception_handler(SlotError, slot_error_handler)

    from .routes import router as main_router
    app.include_router(main_router)

    return app
