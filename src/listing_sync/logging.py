"""Structured logging configuration."""

import logging
import sys
from typing import TYPE_CHECKING, TextIO

import structlog

if TYPE_CHECKING:
    from listing_sync.config import Settings


def configure_logging(
    *,
    json_output: bool = False,
    level: int = logging.INFO,
    stream: TextIO | None = None,
) -> None:
    """Configure structlog for the CLI and sync scripts.

    Context bound with ``structlog.contextvars`` (the sync run id during a
    cycle) is merged into every event.

    Args:
        json_output: One JSON object per line (cron / hosted runs) instead of console output.
        level: Minimum level emitted.
        stream: Where to write; stderr by default.
    """
    out = stream or sys.stderr
    processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
    ]
    if json_output:
        processors += [structlog.processors.dict_tracebacks, structlog.processors.JSONRenderer()]
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=out.isatty()))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=out),
        cache_logger_on_first_use=True,
    )
    # aiosqlite reports through the standard library
    logging.basicConfig(
        level=max(level, logging.WARNING),
        stream=out,
        format="%(levelname)s %(name)s: %(message)s",
    )


def configure_from_settings(settings: "Settings", *, debug: bool = False) -> None:
    configure_logging(
        json_output=settings.log_json,
        level=logging.DEBUG if debug else logging.INFO,
    )


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a logger instance."""
    logger: structlog.stdlib.BoundLogger = structlog.get_logger(name)
    return logger
