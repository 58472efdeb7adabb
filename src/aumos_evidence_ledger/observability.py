"""Structured logging for the evidence ledger.

All modules obtain their logger through get_logger(__name__) and log events as
a short message plus keyword context:

    logger.info("Evidence sealed", evidence_id=str(evidence_id), tenant_id=str(tenant_id))

configure_logging() is called once from the application lifespan. Request ids
are bound per request with bind_request_context() so every log line emitted
while serving a request carries the same request_id that appears in the
audit trail.
"""

import logging
import sys
from typing import Any

import structlog


def configure_logging(level: str = "INFO", json_logs: bool = True) -> None:
    """Configure structlog and the stdlib root logger.

    Args:
        level: Minimum log level name (e.g. "INFO", "DEBUG").
        json_logs: Render JSON lines when True, human-readable console output otherwise.
    """
    log_level = logging.getLevelName(level.upper())
    if not isinstance(log_level, int):
        log_level = logging.INFO

    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=log_level)

    renderer: Any = structlog.processors.JSONRenderer() if json_logs else structlog.dev.ConsoleRenderer()

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_logger_name,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str) -> Any:
    """Return a structlog logger bound to the given module name.

    Args:
        name: Usually the calling module's __name__.

    Returns:
        A structlog BoundLogger.
    """
    return structlog.get_logger(name)


def bind_request_context(request_id: str, tenant_id: str | None = None) -> None:
    """Bind request-scoped context variables for all subsequent log lines.

    Args:
        request_id: Correlation id for the current request.
        tenant_id: Optional tenant identifier.
    """
    structlog.contextvars.clear_contextvars()
    context: dict[str, str] = {"request_id": request_id}
    if tenant_id is not None:
        context["tenant_id"] = tenant_id
    structlog.contextvars.bind_contextvars(**context)
