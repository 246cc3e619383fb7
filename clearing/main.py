"""
Attested Clearing Service

Main application entry point.

Claims are attested, verified and posted exactly once to the ledger.
Honoring happens afterwards and never reverses a cleared transfer.
"""

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from . import __version__
from .api import router, webhook_router
from .config import Settings
from .observability import (
    RequestContextMiddleware,
    check_health,
    get_logger,
    setup_logging,
)
from .wiring import Pipeline, build_pipeline

# Setup logging at import time
setup_logging()
logger = get_logger(__name__)


def create_app(settings: Optional[Settings] = None, pipeline: Optional[Pipeline] = None) -> FastAPI:
    """
    Build the FastAPI app.

    Args:
        settings: Used to build the pipeline at startup (default: from env)
        pipeline: Pre-built pipeline (tests); takes precedence over settings
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        active = pipeline if pipeline is not None else build_pipeline(settings)
        app.state.pipeline = active
        app.state.settings = active.settings
        app.state.metrics = active.metrics

        logger.info(
            "Application startup complete",
            production=active.settings.production,
            ledger=type(active.ledger).__name__,
            mirror=type(active.narrative_store).__name__,
        )

        yield

        await active.aclose()
        logger.info("Application shutdown complete")

    app = FastAPI(
        title="Attested Clearing",
        description="""
## Attested Clearing & Honoring Pipeline

### Flow

```
Claim -> Attest -> Verify -> Clear (ledger) -> Honor (provider)
```

- **Ledger is truth**: a claim is cleared once its transfer is posted
- **Idempotent**: replaying a finalized claim returns the same transfer
- **Honoring is downstream**: provider failures never reverse a transfer
- **Narrative mirror**: advisory observation log, never consulted for decisions
        """,
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )

    app.add_middleware(RequestContextMiddleware)

    app.include_router(router, prefix="/api/v1")
    app.include_router(webhook_router)

    @app.get("/health", tags=["System"])
    async def health():
        """
        Basic health check endpoint.

        Returns 200 if the service is running.
        For detailed health, use /health/detailed
        """
        return {"status": "healthy", "service": "attested-clearing"}

    @app.get("/health/detailed", tags=["System"])
    async def health_detailed(request: Request):
        """
        Ledger reachability, mirror and claim event log status, honoring adapters.

        Returns 200 if healthy, 503 if unhealthy. A degraded mirror alone
        does not make the service unhealthy.
        """
        active: Pipeline = request.app.state.pipeline
        health_status = check_health(
            ledger=active.ledger,
            narrative_store=active.narrative_store,
            dispatcher=active.dispatcher,
            claim_store=active.claim_store,
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
    async def metrics(request: Request):
        """
        Get application metrics.

        Returns counters and latency percentiles.
        """
        return request.app.state.metrics.get_summary()

    return app


app = create_app()


if __name__ == "__main__":
    import os

    import uvicorn

    uvicorn.run(
        "clearing.main:app",
        host=os.getenv("CLEARING_HOST", "127.0.0.1"),
        port=int(os.getenv("CLEARING_PORT", "8000")),
    )
