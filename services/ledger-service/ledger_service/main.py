"""FastAPI application wiring for the ledger service."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Response
from fastapi.middleware.cors import CORSMiddleware
from psycopg_pool import ConnectionPool

from .api.routes import router as v1_router
from .config import Settings, get_settings
from .domain.contracts import AccountStore
from .domain.ledger import LedgerEngine
from .domain.lifecycle import AccountLifecycleManager
from .domain.service import AccountService
from .logging_config import setup_logging
from .memory_repository import InMemoryAccountRepository
from .repository import AccountRepository
from .security.pin_hasher import PinHasher

settings = get_settings()
setup_logging(settings.log_level)
logger = logging.getLogger(__name__)


def build_services(app: FastAPI, store: AccountStore, settings: Settings) -> None:
    """Attach the ledger engine, lifecycle manager and account service to ``app.state``."""
    retry = {
        "retry_attempts": settings.store_retry_attempts,
        "retry_backoff_seconds": settings.store_retry_backoff_seconds,
    }
    app.state.account_service = AccountService(store, PinHasher(settings.bcrypt_rounds), **retry)
    app.state.ledger_engine = LedgerEngine(store, **retry)
    app.state.lifecycle_manager = AccountLifecycleManager(
        store,
        agent_bonus=settings.agent_signup_bonus,
        user_bonus=settings.user_signup_bonus,
        cas_attempts=settings.status_cas_attempts,
        **retry,
    )
    if settings.admin_email and settings.admin_mobile and settings.admin_pin:
        app.state.account_service.ensure_admin(
            name=settings.admin_name,
            email=settings.admin_email,
            mobile_number=settings.admin_mobile,
            pin=settings.admin_pin,
        )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialise shared resources (store, services) for the app lifecycle."""
    if settings.store_backend == "memory":
        logger.warning("using the in-memory account store; balances will not survive a restart")
        build_services(app, InMemoryAccountRepository(), settings)
        yield
        return

    pool = ConnectionPool(settings.database_url, open=False, timeout=settings.store_timeout_seconds)
    pool.open()
    app.state.pool = pool
    try:
        repository = AccountRepository(pool, timeout_seconds=settings.store_timeout_seconds)
        repository.ensure_schema()
        build_services(app, repository, settings)
        yield
    finally:
        pool.close()


app = FastAPI(title=settings.app_name, version=settings.version, lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    max_age=600,
)


@app.get("/healthz", tags=["health"])
def healthz() -> dict[str, str]:
    """Return a minimal readiness indicator used by orchestration systems."""
    return {"status": "ok"}


app.include_router(v1_router)


# Prometheus metrics endpoint for Prometheus scrapes
try:
    from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

    @app.get("/metrics")
    def metrics() -> Response:
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
except ImportError:  # pragma: no cover - metrics are optional in dev
    logger.info("prometheus_client not installed, /metrics disabled")


def run() -> None:
    """Console entry point serving the app with uvicorn."""
    import uvicorn

    uvicorn.run("ledger_service.main:app", host=settings.http_host, port=settings.http_port)


if __name__ == "__main__":
    run()
