"""FastAPI application factory for the deployment lifecycle API.

- Deployment API:  /api/v1/token/deployments/*
- Rules API:       /api/v1/token/rules/*
- healthz, metrics: system endpoints

Every error response uses the uniform {error, message} body; transition
rejections add reason_code, valid_alternatives and violated_invariants.
"""

from __future__ import annotations

import os
from typing import TYPE_CHECKING

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST, REGISTRY, generate_latest
from starlette.exceptions import HTTPException as StarletteHTTPException

from token_lifecycle.gateway.metrics.golden_signals import golden_signals_middleware
from token_lifecycle.gateway.middleware.correlation import correlation_id_middleware
from token_lifecycle.shared.errors import (
    ConflictError,
    LifecycleError,
    NotFoundError,
    StoreUnavailableError,
    TransitionRejectedError,
    ValidationError,
)

if TYPE_CHECKING:
    from collections.abc import Callable
    from contextlib import AbstractAsyncContextManager

    from fastapi import APIRouter
    from prometheus_client import CollectorRegistry


def create_app(
    *,
    routers: list[APIRouter] | None = None,
    cors_origins: list[str] | None = None,
    lifespan: Callable[[FastAPI], AbstractAsyncContextManager[None]] | None = None,
    registry: CollectorRegistry | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        routers: API routers to mount (built by the composition root).
        cors_origins: Allowed CORS origins. Falls back to CORS_ORIGINS env var.
        lifespan: Async context manager factory for startup/shutdown lifecycle.
        registry: Extra CollectorRegistry served by /metrics next to the
            process default (HTTP golden signals live there).

    Returns:
        Configured FastAPI application.
    """
    registries = [REGISTRY]
    if registry is not None and registry is not REGISTRY:
        registries.append(registry)

    origins = cors_origins or [
        o.strip() for o in os.environ.get("CORS_ORIGINS", "").split(",") if o.strip()
    ]

    app = FastAPI(
        title="Token Deployment Lifecycle API",
        description="Deployment status tracking, transition guard and retry classification",
        version="0.1.0",
        docs_url="/docs",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )

    if origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=origins,
            allow_credentials=True,
            allow_methods=["GET", "POST"],
            allow_headers=["Authorization", "Content-Type", "X-Correlation-ID"],
        )

    # Registered last runs first: correlation id is bound before metrics/handlers
    app.middleware("http")(golden_signals_middleware)
    app.middleware("http")(correlation_id_middleware)

    # -- Error handlers --

    @app.exception_handler(NotFoundError)
    async def _not_found(_: Request, exc: NotFoundError) -> JSONResponse:
        return JSONResponse(
            status_code=404,
            content={"error": exc.code, "message": str(exc)},
        )

    @app.exception_handler(TransitionRejectedError)
    async def _transition_rejected(_: Request, exc: TransitionRejectedError) -> JSONResponse:
        return JSONResponse(
            status_code=409,
            content={
                "error": exc.code,
                "message": str(exc),
                "reason_code": exc.reason_code,
                "valid_alternatives": exc.valid_alternatives,
                "violated_invariants": exc.violated_invariants,
            },
        )

    @app.exception_handler(ConflictError)
    async def _conflict(_: Request, exc: ConflictError) -> JSONResponse:
        return JSONResponse(
            status_code=409,
            content={"error": exc.code, "message": str(exc)},
        )

    @app.exception_handler(ValidationError)
    async def _validation_error(_: Request, exc: ValidationError) -> JSONResponse:
        return JSONResponse(
            status_code=422,
            content={"error": exc.code, "message": str(exc), "field": exc.field},
        )

    @app.exception_handler(RequestValidationError)
    async def _request_validation(_: Request, exc: RequestValidationError) -> JSONResponse:
        first = exc.errors()[0] if exc.errors() else {}
        location = ".".join(str(p) for p in first.get("loc", ()))
        return JSONResponse(
            status_code=422,
            content={
                "error": "VALIDATION",
                "message": f"{location}: {first.get('msg', 'invalid request')}",
            },
        )

    @app.exception_handler(StoreUnavailableError)
    async def _store_unavailable(_: Request, exc: StoreUnavailableError) -> JSONResponse:
        return JSONResponse(
            status_code=503,
            content={"error": exc.code, "message": str(exc)},
        )

    @app.exception_handler(LifecycleError)
    async def _lifecycle_error(_: Request, exc: LifecycleError) -> JSONResponse:
        return JSONResponse(
            status_code=500,
            content={"error": exc.code, "message": str(exc)},
        )

    # -- Override Starlette default HTTP errors for uniform {error, message} schema --
    @app.exception_handler(StarletteHTTPException)
    async def _http_exception(_: Request, exc: StarletteHTTPException) -> JSONResponse:
        code_map = {
            404: "NOT_FOUND",
            405: "METHOD_NOT_ALLOWED",
        }
        return JSONResponse(
            status_code=exc.status_code,
            content={
                "error": code_map.get(exc.status_code, "HTTP_ERROR"),
                "message": exc.detail or f"HTTP {exc.status_code}",
            },
        )

    # -- System routes --

    @app.get("/healthz", tags=["system"])
    async def healthz() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/metrics", tags=["system"], include_in_schema=False)
    async def metrics() -> Response:
        return Response(
            content=b"".join(generate_latest(r) for r in registries),
            media_type=CONTENT_TYPE_LATEST,
        )

    for router in routers or []:
        app.include_router(router)

    return app
