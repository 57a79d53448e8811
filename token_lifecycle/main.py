"""Application composition root -- wires the lifecycle core into a FastAPI app.

- Reads configuration from environment variables
- Selects the record store (in-memory or PostgreSQL)
- Instantiates guard, SLI metrics, outbox sink, the status and audit services
- Runs the outbox dispatcher for the lifetime of the app
- Mounts the deployment and rules routers

Configuration:
    DEPLOYMENT_STORE    memory (default) | sql
    DATABASE_URL        postgresql+asyncpg://... (required for sql)
    CORS_ORIGINS        comma-separated origins
    OUTBOX_MAX_RETRIES  delivery attempts per notification (default 5)
    OUTBOX_RETENTION    finished outbox events kept in memory (default 1000)
    OUTBOX_DISPATCH_INTERVAL  seconds between dispatch cycles (default 1.0)
    WEBHOOK_URL         receiver for outbox events; unset means log-only delivery

Entry point: uvicorn token_lifecycle.main:app --host 0.0.0.0 --port 8000
"""

from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

from token_lifecycle.gateway.api.deployments import create_deployment_router
from token_lifecycle.gateway.api.rules import create_rules_router
from token_lifecycle.gateway.app import create_app
from token_lifecycle.infra.db import create_db_engine, create_session_factory
from token_lifecycle.infra.events.outbox import (
    EventOutbox,
    OutboxDispatcher,
    OutboxNotificationSink,
    log_deliverer,
)
from token_lifecycle.infra.events.webhook import WebhookDeliverer
from token_lifecycle.infra.store.memory import InMemoryDeploymentStore
from token_lifecycle.infra.store.sql import SqlDeploymentStore
from token_lifecycle.lifecycle.audit import DeploymentAuditService
from token_lifecycle.lifecycle.guard import StateTransitionGuard
from token_lifecycle.lifecycle.sli import LifecycleSLI
from token_lifecycle.lifecycle.status_service import DeploymentStatusService

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Mapping

    from fastapi import FastAPI
    from prometheus_client import CollectorRegistry
    from sqlalchemy.ext.asyncio import AsyncEngine

    from token_lifecycle.ports.deployment_store import DeploymentRecordStore

logger = logging.getLogger(__name__)

_STORE_KINDS = frozenset({"memory", "sql"})


def _build_store(
    env: Mapping[str, str],
) -> tuple[DeploymentRecordStore, AsyncEngine | None]:
    kind = env.get("DEPLOYMENT_STORE", "memory").strip().lower()
    if kind not in _STORE_KINDS:
        msg = f"DEPLOYMENT_STORE must be one of {sorted(_STORE_KINDS)}, got {kind!r}"
        raise RuntimeError(msg)

    if kind == "memory":
        return InMemoryDeploymentStore(), None

    database_url = env.get("DATABASE_URL", "")
    if not database_url:
        msg = "DATABASE_URL environment variable is required when DEPLOYMENT_STORE=sql"
        raise RuntimeError(msg)
    db_engine = create_db_engine(database_url)
    return SqlDeploymentStore(session_factory=create_session_factory(db_engine)), db_engine


def build_app(
    env: Mapping[str, str] | None = None,
    *,
    registry: CollectorRegistry | None = None,
) -> FastAPI:
    """Build the application: instantiate adapters, wire dependencies, mount routers.

    This function is the single composition root. All DI wiring happens here.
    Pass an isolated registry to build more than one app per process.
    """
    env = os.environ if env is None else env

    # -- Configuration from environment --
    cors_origins = [o.strip() for o in env.get("CORS_ORIGINS", "").split(",") if o.strip()]
    outbox_max_retries = int(env.get("OUTBOX_MAX_RETRIES", "5"))
    outbox_retention = int(env.get("OUTBOX_RETENTION", "1000"))
    dispatch_interval = float(env.get("OUTBOX_DISPATCH_INTERVAL", "1.0"))
    webhook_url = env.get("WEBHOOK_URL", "").strip()

    # -- Infrastructure layer --
    store, db_engine = _build_store(env)
    outbox = EventOutbox(max_retries=outbox_max_retries, retention=outbox_retention)
    sink = OutboxNotificationSink(outbox)
    webhook = WebhookDeliverer(webhook_url) if webhook_url else None
    dispatcher = OutboxDispatcher(
        outbox,
        webhook if webhook is not None else log_deliverer,
        interval=dispatch_interval,
    )

    # -- Lifecycle layer --
    sli = LifecycleSLI(registry=registry)
    service = DeploymentStatusService(
        store,
        sink=sink,
        guard=StateTransitionGuard(),
        sli=sli,
    )
    audit = DeploymentAuditService(store)

    @asynccontextmanager
    async def _lifespan(_: FastAPI) -> AsyncIterator[None]:
        dispatcher.start()
        yield
        await dispatcher.stop()
        if webhook is not None:
            await webhook.aclose()
        if db_engine is not None:
            await db_engine.dispose()

    application = create_app(
        routers=[
            create_deployment_router(service=service, store=store, audit=audit),
            create_rules_router(),
        ],
        cors_origins=cors_origins,
        lifespan=_lifespan,
        registry=registry,
    )

    # -- Store references on app.state for lifespan management --
    application.state.deployment_service = service
    application.state.deployment_store = store
    application.state.audit_service = audit
    application.state.outbox = outbox
    application.state.outbox_dispatcher = dispatcher
    application.state.db_engine = db_engine

    logger.info(
        "Token lifecycle app assembled: store=%s webhook=%s routes=%d",
        type(store).__name__,
        "on" if webhook is not None else "off",
        len(application.routes),
    )
    return application


app = build_app()
