"""
Structured logging for fabric-deploy.

One ``configure_logging()`` call at CLI startup sets up structlog for every
module. Modules obtain a logger with ``get_logger(__name__)`` and log
dotted snake-case events with keyword fields::

    logger = get_logger(__name__)
    logger.info("node.created", kind="Table", name="OTELLogs", resource_id="...")

Output format:
    - ``console``: coloured key/value lines for an interactive terminal
    - ``json``: one JSON object per line for CI log ingestion

When no format is given the format is auto-detected (console on a TTY,
JSON otherwise). Level and format can also come from
``FABRIC_DEPLOY_LOG_LEVEL`` / ``FABRIC_DEPLOY_LOG_FORMAT``.

Run-scoped fields (``run_id``, ``stage``, ``node``) are bound with
``LogContext`` and carried by structlog's contextvars, so they also reach
log lines emitted from reconciler worker threads that copy the context.

Secrets (client secrets, access tokens) must never be passed as log fields.

Tags:
    logging, structlog, observability, json-logging
"""

from __future__ import annotations

import logging
import os
import sys
from typing import Any, Literal

import structlog
from structlog.types import EventDict, Processor, WrappedLogger

_SERVICE_NAME = "fabric-deploy"
_configured = False


def _add_service_metadata(
    logger: WrappedLogger, method_name: str, event_dict: EventDict
) -> EventDict:
    """Add service-level metadata to all logs."""
    event_dict.setdefault("service", _SERVICE_NAME)
    return event_dict


def configure_logging(
    level: str | None = None,
    format: Literal["json", "console"] | None = None,
    service: str = "fabric-deploy",
    force: bool = False,
) -> None:
    """Configure structured logging for the application.

    Subsequent calls are no-ops unless ``force=True``.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR); falls back to
            ``FABRIC_DEPLOY_LOG_LEVEL`` then INFO
        format: ``json`` or ``console``; falls back to
            ``FABRIC_DEPLOY_LOG_FORMAT`` then TTY auto-detection
        service: Service name included in every event
        force: Reconfigure even if already configured
    """
    global _SERVICE_NAME, _configured

    if _configured and not force:
        return

    _SERVICE_NAME = service
    log_level = (level or os.environ.get("FABRIC_DEPLOY_LOG_LEVEL", "INFO")).upper()
    log_format = format or os.environ.get("FABRIC_DEPLOY_LOG_FORMAT") or None
    if log_format is None:
        log_format = "console" if sys.stderr.isatty() else "json"

    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        _add_service_metadata,
    ]

    renderer: Processor
    if log_format == "json":
        processors.append(structlog.processors.format_exc_info)
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(
            colors=sys.stderr.isatty(),
            exception_formatter=structlog.dev.plain_traceback,
        )
    processors.append(renderer)

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level, logging.INFO)
        ),
        context_class=dict,
        # resolve sys.stderr per call so redirected streams (CLI runners) are honoured
        logger_factory=lambda *args: structlog.PrintLogger(file=sys.stderr),
        cache_logger_on_first_use=False,
    )

    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)

    _configured = True


def get_logger(name: str | None = None) -> Any:
    """Get a structured logger (usually ``get_logger(__name__)``)."""
    if name:
        return structlog.get_logger(name)
    return structlog.get_logger()


def bind_context(**kwargs: Any) -> None:
    """Bind fields to every subsequent log line in this context."""
    structlog.contextvars.bind_contextvars(**kwargs)


def unbind_context(*keys: str) -> None:
    """Remove specific keys from the logging context."""
    structlog.contextvars.unbind_contextvars(*keys)


def clear_context() -> None:
    """Clear all bound context."""
    structlog.contextvars.clear_contextvars()


def is_configured() -> bool:
    """Check if logging has been configured."""
    return _configured


class LogContext:
    """Context manager for scoped logging context.

    Example:
        with LogContext(run_id="a1b2c3", stage="data-streaming"):
            logger.info("poll.tick", attempt=3)
    """

    def __init__(self, **kwargs: Any):
        self._context = kwargs

    def __enter__(self) -> LogContext:
        bind_context(**self._context)
        return self

    def __exit__(self, *args: Any) -> None:
        unbind_context(*self._context.keys())


__all__ = [
    "configure_logging",
    "get_logger",
    "bind_context",
    "unbind_context",
    "clear_context",
    "is_configured",
    "LogContext",
]
