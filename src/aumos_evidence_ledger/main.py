"""AumOS Evidence Ledger service entry point.

Initializes the FastAPI application with:
- Primary database for evidence records, mapping decisions, and work items
- Audit Wall database connection for the immutable audit trail
- Kafka publisher for ledger domain events
- HTTP clients for the file storage and ERP connector collaborators
"""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from aumos_evidence_ledger.api.errors import register_exception_handlers
from aumos_evidence_ledger.api.router import router
from aumos_evidence_ledger.container import build_container
from aumos_evidence_ledger.observability import configure_logging, get_logger
from aumos_evidence_ledger.settings import Settings

logger = get_logger(__name__)


def create_app(settings: Settings | None = None) -> FastAPI:
    """Build the FastAPI application.

    Args:
        settings: Service settings; read from the environment when omitted.

    Returns:
        The application, with routes mounted under /api/v1.
    """
    settings = settings or Settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Build the service container on startup and release it on shutdown."""
        configure_logging(settings.log_level, json_logs=settings.log_json)
        logger.info(
            "Starting evidence ledger",
            service=settings.service_name,
            environment=settings.environment,
            persistent=bool(settings.database_url),
            audit_wall=bool(settings.audit_db_url),
        )
        container = await build_container(settings)
        app.state.container = container
        app.state.settings = settings
        logger.info("Evidence ledger startup complete", rule_versions=container.rulesets.versions())

        yield

        logger.info("Shutting down evidence ledger")
        await container.close()
        logger.info("Evidence ledger shutdown complete")

    app = FastAPI(title=settings.service_name, version="0.1.0", lifespan=lifespan)
    register_exception_handlers(app)
    app.include_router(router, prefix="/api/v1")

    @app.get("/health", tags=["health"])
    async def health() -> dict[str, str]:
        return {"status": "ok", "service": settings.service_name}

    return app


app: FastAPI = create_app()


def run() -> None:
    """Serve the application with uvicorn using the configured host and port."""
    import uvicorn

    settings = Settings()
    uvicorn.run(app, host=settings.host, port=settings.port, log_config=None)
