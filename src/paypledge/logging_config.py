"""Structured logging configuration using structlog.

JSON output outside development, coloured console output in development.
Settlement operations bind their identifiers (transaction, escrow account,
operation id) into the context so every log line of one deposit, release or
refund can be correlated.

Usage:
    from paypledge.logging_config import setup_logging, get_logger
    setup_logging(log_level="DEBUG", json_logs=False)
    logger = get_logger(__name__)
    logger.info("settlement.deposit_completed", escrow_account_id="e-1", amount="100.00")
"""

from __future__ import annotations

import logging
import sys
from contextlib import contextmanager
from typing import TYPE_CHECKING, Any

import structlog

if TYPE_CHECKING:
    from collections.abc import Iterator


def setup_logging(log_level: str = "DEBUG", json_logs: bool = False) -> None:
    """Configure structlog on top of the standard library root logger.

    Args:
        log_level: Standard Python log level string (DEBUG, INFO, WARNING, etc.)
        json_logs: If True, output JSON. If False, coloured console.
    """
    shared_processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]

    if json_logs:
        renderer: structlog.types.Processor = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=True)

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
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(getattr(logging, log_level.upper(), logging.DEBUG))

    # Driver chatter is not useful at DEBUG
    for noisy_logger in ("sqlalchemy.engine", "aiosqlite", "asyncio", "redis"):
        logging.getLogger(noisy_logger).setLevel(logging.WARNING)


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """Get a structured logger instance."""
    return structlog.get_logger(name)


@contextmanager
def bind_settlement_context(**identifiers: Any) -> Iterator[None]:
    """Bind settlement identifiers to every log line emitted inside the block.

    ``None`` values are skipped. Previously bound values for the same keys
    are restored on exit, so nested operations do not clobber each other.
    """
    values = {k: v for k, v in identifiers.items() if v is not None}
    with structlog.contextvars.bound_contextvars(**values):
        yield
