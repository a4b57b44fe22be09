"""
claimflow - Institution Claim Lifecycle Engine

A person says "this institution is mine". Admins check, ask for more,
and decide. Every decision is written down and chained.
"""

import os
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from claimflow.core import (
    ClaimError,
    ClaimService,
    Conflict,
    Forbidden,
    InvalidRequest,
    InvalidState,
    InvalidTransition,
    NotFound,
)
from claimflow.db import LockTimeoutError, StoreError, create_store
from claimflow.observability import (
    setup_logging,
    get_logger,
    RequestContextMiddleware,
    check_health,
    get_metrics,
)

setup_logging()
logger = get_logger(__name__)

DEFAULT_CORS_ORIGINS = "http://localhost:3000,http://localhost:5173"


def cors_origins() -> list[str]:
    """Browser origins allowed to call the API, from CLAIMFLOW_CORS_ORIGINS."""
    raw = os.getenv("CLAIMFLOW_CORS_ORIGINS", DEFAULT_CORS_ORIGINS)
    return [origin.strip() for origin in raw.split(",") if origin.strip()]


# Most specific first; the first isinstance match wins
ERROR_STATUS = (
    (NotFound, 404),
    (InvalidTransition, 400),
    (Forbidden, 403),
    (InvalidState, 409),
    (InvalidRequest, 400),
    (Conflict, 409),
)


def status_for(error: ClaimError) -> int:
    for error_type, status_code in ERROR_STATUS:
        if isinstance(error, error_type):
            return status_code
    return 400


async def claim_error_handler(request: Request, exc: ClaimError) -> JSONResponse:
    """Map service errors to HTTP responses."""
    status_code = status_for(exc)
    logger.info(
        "Request refused",
        error=type(exc).__name__,
        detail=str(exc),
        status_code=status_code,
        path=request.url.path,
    )
    return JSONResponse(
        status_code=status_code,
        content={"detail": str(exc), "error": type(exc).__name__},
    )


async def store_error_handler(request: Request, exc: StoreError) -> JSONResponse:
    """A busy claim lock or an unreachable store is a 503 the client may retry."""
    if isinstance(exc, LockTimeoutError):
        logger.warning("Claim busy", detail=str(exc), path=request.url.path)
        return JSONResponse(
            status_code=503,
            content={"detail": str(exc), "error": "LockTimeoutError"},
            headers={"Retry-After": "1"},
        )
    logger.error("Claim store failed", detail=str(exc), path=request.url.path)
    return JSONResponse(
        status_code=503,
        content={"detail": "Claim store unavailable", "error": type(exc).__name__},
    )


def create_app(service: Optional[ClaimService] = None) -> FastAPI:
    """
    Build the application.

    Args:
        service: ClaimService to serve. If None, one is built on startup
                 over the store the environment configures.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if getattr(app.state, "claims", None) is None:
            app.state.claims = ClaimService(create_store())

        store = app.state.claims.store
        logger.info(
            "claimflow started",
            store_type=type(store).__name__,
            claim_count=store.count_claims(),
        )

        yield

        logger.info("claimflow stopped")

    app = FastAPI(
        title="claimflow",
        description="""
## Institution Claim Lifecycle

Lets a person claim an institution (or an institution group), walks the
claim through moderated review, and keeps an immutable audit trail.

### Claim Lifecycle

```
PENDING → UNDER_REVIEW ⇄ ACTION_REQUIRED
               ↓
     VERIFIED / REJECTED → ARCHIVED
```

### Identity

The identity gateway forwards the caller as `X-User-Id` and
`X-User-Role` (`ADMIN` or `USER`).

### Storage Backends

- **InMemoryClaimStore**: the default, for local runs and tests
- **PostgresClaimStore**: durable, with per-claim advisory locks

PostgreSQL is used when `DATABASE_URL` or `DATABASE_HOST` is set.
        """,
        version="0.1.0",
        lifespan=lifespan,
    )
    if service is not None:
        app.state.claims = service

    app.add_middleware(RequestContextMiddleware)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins(),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(ClaimError, claim_error_handler)
    app.add_exception_handler(StoreError, store_error_handler)

    from claimflow.api.routes import router
    app.include_router(router)

    @app.get("/health", tags=["System"])
    def health():
        """Liveness only. See /health/detailed for the store check."""
        return {"status": "healthy", "service": "claimflow"}

    @app.get("/health/detailed", tags=["System"])
    def health_detailed(request: Request):
        """Round trip to the claim store; 503 when it fails."""
        report = check_health(store=request.app.state.claims.store)
        return JSONResponse(
            status_code=200 if report.healthy else 503,
            content={
                "status": "healthy" if report.healthy else "unhealthy",
                "checks": report.checks,
                "duration_ms": report.duration_ms,
            },
        )

    @app.get("/metrics", tags=["System"])
    def metrics():
        """Workflow counters and request latency percentiles."""
        return get_metrics().get_summary()

    return app


app = create_app()
