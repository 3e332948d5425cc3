# dependencies.py
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool
from fastapi import Request
from redis import Redis
from enum import Enum


class UserRole(str, Enum):
    ADMIN = "admin"
    MANAGER = "manager"
    RECEPTIONIST = "receptionist"
    DENTIST = "dentist"
    NURSE = "nurse"


def build_engine(database_url: str):
    if not database_url.startswith("sqlite"):
        return create_engine(database_url, pool_pre_ping=True, pool_recycle=300)

    kwargs = {"connect_args": {"check_same_thread": False, "timeout": 30}}
    if database_url in ("sqlite://", "sqlite:///:memory:"):
        kwargs["poolclass"] = StaticPool
    engine = create_engine(database_url, **kwargs)

    # pysqlite defers locking until the first write; take the write lock up front so
    # concurrent writers wait on the busy timeout instead of failing with a deadlock.
    @event.listens_for(engine, "connect")
    def _disable_pysqlite_begin(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    return engine


def build_session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


def build_redis_client(redis_url: str, timeout_seconds: float = 2.0) -> Redis:
    return Redis.from_url(redis_url, decode_responses=True, socket_timeout=timeout_seconds,
                          socket_connect_timeout=timeout_seconds)


def get_db(request: Request):
    db = request.app.state.session_factory()
    try:
        yield db
    finally:
        db.close()


def get_services(request: Request):
    return request.app.state.services
