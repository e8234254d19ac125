"""
medverify - Medical Record Verification Client

Main application entry point.

Patients upload records against a provider, providers ask insurers to
review them, insurers approve, providers verify. The ledger decides;
this service projects its state for the dashboards and pre-checks every
write before it is submitted.
"""

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .api.routes import router
from .core.content import ContentStore, create_content_store
from .core.errors import DirectoryUnavailable
from .core.registry import Directory, DirectoryClient, RegistryCache, StaticDirectory
from .core.workflow import VerificationWorkflow
from .db.config import ContentConfig, DirectoryConfig, LedgerConfig
from .db.ledger import LedgerClient, create_ledger
from .db.projections import Projector
from .observability import (
    RequestContextMiddleware,
    check_health,
    get_logger,
    get_metrics,
    setup_logging,
)

# Setup logging at import time
setup_logging()
logger = get_logger(__name__)


def create_directory(config: DirectoryConfig) -> Directory:
    if config.base_url:
        return DirectoryClient(config)
    logger.warning("MEDVERIFY_DIRECTORY_URL not set; directory is empty")
    return StaticDirectory()


def create_app(
    ledger: Optional[LedgerClient] = None,
    directory: Optional[Directory] = None,
    content_store: Optional[ContentStore] = None,
    ledger_config: Optional[LedgerConfig] = None,
) -> FastAPI:
    """
    Build the application.

    Components not passed in are created from the environment at startup.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        config = ledger_config or LedgerConfig.from_env()
        app.state.ledger = ledger or create_ledger(config)
        app.state.registry = RegistryCache(
            directory or create_directory(DirectoryConfig.from_env())
        )
        app.state.content_store = content_store or create_content_store(ContentConfig.from_env())
        app.state.projector = Projector(app.state.ledger, config)
        app.state.workflow = VerificationWorkflow(
            app.state.ledger,
            app.state.registry,
            app.state.projector,
        )

        try:
            app.state.registry.refresh()
        except DirectoryUnavailable as e:
            # Serve with an empty directory; POST /api/registry/refresh retries.
            logger.error("Initial directory refresh failed", error=str(e))

        logger.info(
            "Application startup complete",
            ledger=type(app.state.ledger).__name__,
            target=config.describe(),
            content_store=type(app.state.content_store).__name__,
        )

        yield

        logger.info("Application shutdown complete")

    app = FastAPI(
        title="medverify",
        description="""
## Medical Record Verification

Dashboards and write pre-checks over a ledger of medical records.

### Record Lifecycle

```
Created -> RequestIssued -> InsurerApproved -> DoctorVerified
Created -----------------------------------> DoctorVerified   (no request)
```

### API Design

**Commands** (write operations):
- Every write is a ledger intent, pre-checked by the workflow guard
- The ledger's own checks are authoritative; rejections are returned verbatim

**Queries** (read operations):
- Projections rebuilt from the ledger's event log plus point lookups
- Scoped per viewer: patients see their records, insurers see requests
  addressed to them, doctors see everything

### Ledger Backends

- **InMemoryLedger**: Development/testing (default)
- **Web3Ledger**: JSON-RPC node + deployed record contract

Set `MEDVERIFY_RPC_URL` and `MEDVERIFY_CONTRACT_ADDRESS` to use a node.
        """,
        version="0.1.0",
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )

    # Add request context middleware for logging
    app.add_middleware(RequestContextMiddleware)

    # CORS configuration for the dashboard dev servers
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[
            "http://localhost:5173",  # Vite dev server
            "http://127.0.0.1:5173",
            "http://localhost:3000",  # React dev server
            "http://127.0.0.1:3000",
        ],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(router)

    @app.get("/health", tags=["System"])
    async def health():
        """
        Basic health check endpoint.

        Returns 200 if the service is running.
        For detailed health, use /health/detailed
        """
        return {"status": "healthy", "service": "medverify"}

    @app.get("/health/detailed", tags=["System"])
    def health_detailed(request: Request):
        """
        Detailed health check.

        Checks:
        - Service liveness
        - Ledger reachability (head position)
        - Directory snapshot freshness

        Returns 200 if healthy, 503 if unhealthy.
        """
        health_status = check_health(
            ledger=request.app.state.ledger,
            registry=request.app.state.registry,
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
        """
        Get application metrics.

        Returns counters and latency percentiles.
        """
        return get_metrics().get_summary()

    return app


app = create_app()
