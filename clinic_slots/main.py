import sys
import argparse
import time
import os
from datetime import timedelta

import uvicorn
from fastapi import Request
from prometheus_client import Counter, Histogram
from sqlalchemy import create_engine
from alembic import command
from alembic.config import Config
import logging
from prometheus_fastapi_instrumentator import Instrumentator
from .app import create_app
from .app.auth import create_access_token
from .app.collaborators import DirectoryCache
from .app.config import get_settings
from .app.dependencies import build_redis_client
from .app.models import Base

settings = get_settings()

# Configure logging
logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    handlers=[logging.StreamHandler(sys.stdout)]
)

app = create_app(settings)

# Custom Prometheus metrics for specific routes
ROUTE_REQUEST_COUNT = Counter("route_request_count", "Total number of requests per route", ["method", "endpoint"])
ROUTE_REQUEST_LATENCY = Histogram("route_request_latency_seconds", "Request latency in seconds per route", ["method", "endpoint"])


# Middleware to track custom metrics
@app.middleware("http")
async def add_metrics(request: Request, call_next):
    start_time = time.time()

    # Process the request
    response = await call_next(request)

    # Label by route template so /slots/{slot_id} stays one series
    route = request.scope.get("route")
    endpoint = route.path if route is not None else request.url.path
    ROUTE_REQUEST_COUNT.labels(method=request.method, endpoint=endpoint).inc()
    ROUTE_REQUEST_LATENCY.labels(method=request.method, endpoint=endpoint).observe(time.time() - start_time)

    return response


# Instrument the app with Prometheus metrics
Instrumentator().instrument(app).expose(app, include_in_schema=False, endpoint="/metrics")

MIGRATIONS_DIR = os.path.join(os.path.dirname(os.path.abspath(__file__)), "migrations")


def start_server(host: str, port: int):
    uvicorn.run(app, host=host, port=port)


def create_tables():
    print(f"Using database URL: {settings.database_url}")
    engine = create_engine(settings.database_url)
    Base.metadata.create_all(engine)
    print("Database tables created successfully.")


def run_migrations(action, revision=None, message=None):
    # Inline Alembic configuration
    alembic_cfg = Config()
    alembic_cfg.set_main_option('sqlalchemy.url', settings.database_url)
    alembic_cfg.set_main_option('script_location', MIGRATIONS_DIR)

    if action == "upgrade":
        command.upgrade(alembic_cfg, revision or "head")
    elif action == "downgrade":
        if not revision:
            print("Please specify a revision to downgrade to.")
            return
        command.downgrade(alembic_cfg, revision)
    elif action == "revision":
        if not message:
            print("Please provide a message for the migration.")
            return
        command.revision(alembic_cfg, autogenerate=True, message=message)
    elif action == "current":
        command.current(alembic_cfg)
    else:
        print("Invalid action specified for migrations.")


def clear_directory_cache():
    cache = DirectoryCache(build_redis_client(settings.redis_url, settings.redis_timeout_seconds))
    removed = cache.clear()
    print(f"Directory cache cleared successfully ({removed} keys).")


def issue_token(user_id, name=None, role=None):
    token = create_access_token(
        data={"sub": user_id, "name": name, "role": role},
        secret_key=settings.jwt_secret_key,
        algorithm=settings.jwt_algorithm,
        expires_delta=timedelta(minutes=settings.access_token_expire_minutes),
    )
    print(token)


def main():
    parser = argparse.ArgumentParser(description="Clinic Slots Application")
    parser.add_argument(
        '--mode',
        type=str,
        choices=['server', 'create-tables', 'migrate', 'clear-cache', 'issue-token'],
        required=True,
        help="Mode to run the application in. Choices are 'server' to start the FastAPI server, 'create-tables' to create the database tables, 'migrate' to manage database migrations, 'clear-cache' to clear the cached user and room directory, or 'issue-token' to print a bearer token for local use."
    )

    parser.add_argument(
        '--action',
        type=str,
        choices=['upgrade', 'downgrade', 'revision', 'current'],
        help="Action to perform with Alembic migrations. Required if mode is 'migrate'."
    )

    parser.add_argument(
        '--revision',
        type=str,
        help="Specify the revision for downgrade or other Alembic commands where needed."
    )

    parser.add_argument(
        '--message',
        type=str,
        help="Message to use with the 'revision' action in Alembic."
    )

    parser.add_argument('--host', type=str, default="0.0.0.0", help="Bind address for 'server' mode.")
    parser.add_argument('--port', type=int, default=8000, help="Port for 'server' mode.")
    parser.add_argument('--user-id', type=str, help="Token subject for 'issue-token' mode.")
    parser.add_argument('--name', type=str, help="Display name claim for 'issue-token' mode.")
    parser.add_argument(
        '--role',
        type=str,
        choices=['admin', 'manager', 'receptionist', 'dentist', 'nurse'],
        help="Role claim for 'issue-token' mode."
    )

    args = parser.parse_args()

    if args.mode == 'server':
        start_server(args.host, args.port)
    elif args.mode == 'create-tables':
        create_tables()
    elif args.mode == 'migrate':
        if not args.action:
            print("Please specify an action for the 'migrate' mode.")
        else:
            run_migrations(args.action, args.revision, args.message)
    elif args.mode == 'clear-cache':
        clear_directory_cache()
    elif args.mode == 'issue-token':
        if not args.user_id or not args.role:
            print("Please specify --user-id and --role for the 'issue-token' mode.")
        else:
            issue_token(args.user_id, args.name, args.role)


if __name__ == "__main__":
    main()
