"""
Structured JSON logging for the Scorekeeper processes.

Two process roles log here: ``api`` (HTTP intake, corrections, queries) and
``ingest`` (one worker per provider queue). Both bind their role and instance
id once at startup; per-message context such as the provider and queue
message id is bound with ``log_context`` and merged into every entry emitted
while it is active.
"""
from __future__ import annotations

import logging
import sys
from contextlib import AbstractContextManager
from decimal import Decimal
from typing import Any

import structlog
from shared.config import get_settings

SERVICE_ROLES = frozenset({"api", "ingest"})


def render_points(_logger: Any, _method: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    """Log point values as fixed-point strings instead of ``Decimal('1.50')`` reprs."""
    for key, value in event_dict.items():
        if isinstance(value, Decimal):
            event_dict[key] = str(value)
        elif isinstance(value, dict):
            event_dict[key] = {k: str(v) if isinstance(v, Decimal) else v for k, v in value.items()}
    return event_dict


def setup_logging(service_name: str, extra_context: dict[str, Any] | None = None) -> None:
    """
    Configure structured logging for a process.

    Args:
        service_name: One of ``SERVICE_ROLES``.
        extra_context: Additional static context fields bound to every log entry.
    """
    if service_name not in SERVICE_ROLES:
        raise ValueError(f"unknown service role {service_name!r}; expected one of {sorted(SERVICE_ROLES)}")
    settings = get_settings()
    log_level = getattr(logging, settings.log_level.upper(), logging.INFO)

    shared_processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
        render_points,
    ]

    render_chain: list[structlog.types.Processor] = [structlog.stdlib.ProcessorFormatter.remove_processors_meta]
    if settings.environment.value == "dev":
        render_chain.append(structlog.dev.ConsoleRenderer(colors=True))
    else:
        # Ledger and lease failures carry exc_info; keep their tracebacks queryable.
        render_chain.extend([structlog.processors.dict_tracebacks, structlog.processors.JSONRenderer()])

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        processors=render_chain,
        foreign_pre_chain=shared_processors,
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(log_level)

    # SQL echo and driver chatter drown out ledger events
    for noisy in ("uvicorn.access", "httpx", "httpcore", "asyncio", "aiosqlite", "sqlalchemy.engine"):
        logging.getLogger(noisy).setLevel(logging.WARNING)

    structlog.contextvars.clear_contextvars()
    bound: dict[str, Any] = {"service": service_name, "instance_id": settings.instance_id}
    if extra_context:
        bound.update(extra_context)
    structlog.contextvars.bind_contextvars(**bound)


def log_context(**fields: Any) -> AbstractContextManager[None]:
    """Bind ``fields`` to every entry logged in this task until the block exits."""
    return structlog.contextvars.bound_contextvars(**fields)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a named structured logger."""
    return structlog.get_logger(name)
