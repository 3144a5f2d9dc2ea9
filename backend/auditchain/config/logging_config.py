"""
structlog setup for AuditChain.

Log lines are operational telemetry, not part of the audit record: they
must never carry the personal data that anonymization later scrubs from
the chain. ``redact_personal_data`` enforces that for every record,
including those emitted by third-party libraries through stdlib logging.
"""

from __future__ import annotations

import logging
import sys
from collections.abc import MutableMapping
from typing import Any

import structlog

from auditchain.config.settings import Settings

REDACTED = "[redacted]"

# Keys that may hold personal data
PERSONAL_DATA_KEYS = frozenset(
    {
        "actor_name",
        "source_ip",
        "user_agent",
        "before_state",
        "after_state",
        "metadata",
        "event_metadata",
    }
)

_QUIET_LOGGERS = ("uvicorn.access", "sqlalchemy.engine", "aiosqlite", "redis", "alembic")


def redact_personal_data(
    _logger: Any, _method: str, event_dict: MutableMapping[str, Any]
) -> MutableMapping[str, Any]:
    for key in event_dict.keys() & PERSONAL_DATA_KEYS:
        if event_dict[key] is not None:
            event_dict[key] = REDACTED
    return event_dict


def _service_context(settings: Settings) -> structlog.types.Processor:
    static = {
        "service": settings.system_origin,
        "version": settings.app_version,
        "environment": settings.environment.value,
    }

    def add_service_context(
        _logger: Any, _method: str, event_dict: MutableMapping[str, Any]
    ) -> MutableMapping[str, Any]:
        for key, value in static.items():
            event_dict.setdefault(key, value)
        return event_dict

    return add_service_context


def configure_logging(settings: Settings) -> None:
    """
    Route structlog and stdlib logging through one redacting pipeline.

    Renders JSON when ``log_json`` is set (production), a console view
    otherwise. Safe to call more than once; the root handler is replaced.
    """
    shared: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        _service_context(settings),
        redact_personal_data,
    ]

    renderer: Any = (
        structlog.processors.JSONRenderer()
        if settings.log_json
        else structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())
    )

    structlog.configure(
        processors=[*shared, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=shared,
            processors=[
                structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                *([structlog.processors.format_exc_info] if settings.log_json else []),
                renderer,
            ],
        )
    )

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(settings.log_level.value)

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
