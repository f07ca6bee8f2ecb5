"""
Structured logging for RECETRA.

Modules log through ``structlog.get_logger(__name__)``; ``configure_logging``
routes those entries through the standard library at the configured level.
Receipt issuance, manual retries and role rejections are additionally
written to the ``recetra.audit`` logger.
"""

import logging
import sys
from typing import Any

import structlog

from recetra.settings import Settings, get_settings

AUDIT_LOGGER = "recetra.audit"


def configure_logging(observability: Settings.ObservabilitySettings | None = None) -> None:
    """
    Configure structlog and the root logger.

    JSON lines when ``log_format`` is ``json``, the console renderer otherwise.
    Values bound with ``structlog.contextvars`` are merged into every entry.
    """
    observability = observability or get_settings().observability
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stderr,
        level=observability.log_level.value,
        force=True,
    )

    renderer: Any
    if observability.log_format == "json":
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer()

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def log_audit_event(
    action: str,
    *,
    user_id: str,
    organization: str | None = None,
    receipt_id: str | None = None,
    **context: Any,
) -> None:
    """Record who performed ``action``, for which organization and receipt."""
    structlog.get_logger(AUDIT_LOGGER).info(
        action,
        audit=True,
        user_id=user_id,
        organization=organization,
        receipt_id=receipt_id,
        **context,
    )
