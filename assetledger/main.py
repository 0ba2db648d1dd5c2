"""
Asset Lifecycle Ledger - HTTP application

Main application entry point:

    uvicorn assetledger.main:app

Collaborators are chosen by environment (see assetledger.config and
assetledger.db.config). create_app() accepts them explicitly for tests.
"""

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from .config import LedgerConfig
from .core import EvidenceStore, LedgerError, LedgerService
from .db import create_event_store
from .observability import (
    RequestContextMiddleware,
    check_health,
    get_logger,
    get_metrics,
    setup_logging,
)

logger = get_logger(__name__)

ERROR_STATUS = {
    "INVALID_INPUT": 400,
    "MISSING_EVIDENCE": 400,
    "USER_REJECTED": 401,
    "UNAUTHORIZED": 403,
    "ASSET_NOT_FOUND": 404,
    "DUPLICATE_SERIAL_NUMBER": 409,
    "INVALID_TRANSITION": 409,
    "EVIDENCE_NOT_FOUND": 422,
    "REVERTED": 422,
    "CHAIN_INTEGRITY": 500,
    "NETWORK_ERROR": 502,
    "LEDGER_BUSY": 503,
    "TIMEOUT": 504,
}


def create_app(
    ledger: Optional[LedgerService] = None,
    evidence_store: Optional[EvidenceStore] = None,
) -> FastAPI:
    """
    Build the FastAPI application.

    With no arguments the ledger is loaded from the configured event store
    at startup; tests pass a ready ledger instead.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if ledger is None:
            config = LedgerConfig.from_env()
            event_store = create_event_store()
            app.state.ledger = LedgerService.from_config(config, event_store=event_store)
        else:
            app.state.ledger = ledger

        app.state.event_store = app.state.ledger.event_store
        app.state.evidence_store = (
            evidence_store if evidence_store is not None
            else app.state.ledger.evidence_store
        )

        logger.info(
            "Application startup complete",
            event_count=app.state.ledger.event_count,
            asset_count=app.state.ledger.total_assets(),
            store_type=type(app.state.event_store).__name__,
            contract_owner=app.state.ledger.contract_owner,
        )

        yield

        store = app.state.event_store
        if hasattr(store, "close"):
            store.close()
            logger.info("Event store closed")

        logger.info("Application shutdown complete")

    app = FastAPI(
        title="Asset Lifecycle Ledger",
        description="""
## IT Asset Lifecycle Ledger

Tamper-evident trail of every device from registration through certified
data sanitization to recycling.

### Lifecycle

```
Registered -> Sanitized -> Recycled
```

### API Design

**Commands** are append-only transitions signed by the requesting actor
(fetch the digest from `/api/transactions/digest`, sign it, send it back).

**Queries** are projections of the event log. Status listings are
paginated against a snapshot marker (`as_of`).
        """,
        version="0.1.0",
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )

    app.add_middleware(RequestContextMiddleware)

    @app.exception_handler(LedgerError)
    async def ledger_error_handler(request: Request, exc: LedgerError):
        return JSONResponse(
            status_code=ERROR_STATUS.get(exc.code, 500),
            content={"success": False, "error": exc.to_dict()},
        )

    from .api.routes import router
    app.include_router(router)

    @app.get("/health", tags=["System"])
    async def health():
        """Returns 200 if the service is running. For details use /health/detailed."""
        return {"status": "healthy", "service": "assetledger"}

    @app.get("/health/detailed", tags=["System"])
    async def health_detailed(request: Request):
        """
        Detailed health check.

        Checks service liveness, event store connectivity and chain
        integrity (if events exist). Returns 200 if healthy, 503 if not.
        """
        health_status = check_health(
            ledger=request.app.state.ledger,
            event_store=request.app.state.event_store,
        )
        return JSONResponse(
            status_code=200 if health_status.healthy else 503,
            content={
                "status": "healthy" if health_status.healthy else "unhealthy",
                "checks": health_status.checks,
                "duration_ms": health_status.duration_ms,
            },
        )

    @app.get("/metrics", tags=["System"])
    async def metrics():
        """Counters and latency percentiles."""
        return get_metrics().get_summary()

    return app


setup_logging()
app = create_app()
