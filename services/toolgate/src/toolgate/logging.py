"""
Structured logging for toolgate via structlog.

Usage:
    from .logging import get_logger
    logger = get_logger("toolgate.orchestrator")
    logger.info("tool_executed", duration_ms=12, confirmation_status="approved")

Request-scoped fields (tool, user_id, patient_id, action) are bound once with
`bind_request_context()` and merged into every entry until the request ends.
Argument values never go to the log; only the audit log sees them, sanitized.
"""

from __future__ import annotations

import logging
import os

import structlog

QUIET_LOGGERS = ("uvicorn.access", "httpx", "httpcore", "urllib3")


def _processors(log_format: str) -> tuple[list[structlog.types.Processor], structlog.types.Processor]:
    chain: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
    ]
    if log_format == "console":
        return chain, structlog.dev.ConsoleRenderer()
    # exc_info → "exception" string field, so JSON lines stay single-line
    chain += [structlog.processors.format_exc_info, structlog.processors.UnicodeDecoder()]
    return chain, structlog.processors.JSONRenderer()


def setup_logging(level: str | None = None, fmt: str | None = None) -> None:
    """
    Route structlog and stdlib records through one renderer on stderr.

    *level* and *fmt* override LOG_LEVEL (default info) and LOG_FORMAT
    (json | console).  Idempotent: the root handler is replaced, not stacked.
    """
    log_level = (level or os.getenv("LOG_LEVEL", "info")).upper()
    chain, renderer = _processors((fmt or os.getenv("LOG_FORMAT", "json")).lower())

    structlog.configure(
        processors=[*chain, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler()
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=chain,
            processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer],
        )
    )

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(getattr(logging, log_level, logging.INFO))

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name or "toolgate")  # type: ignore[no-any-return]


def bind_request_context(**fields: object) -> None:
    """Replace the request-scoped context with *fields* (None values dropped)."""
    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(**{k: v for k, v in fields.items() if v is not None})


def clear_request_context() -> None:
    structlog.contextvars.clear_contextvars()
