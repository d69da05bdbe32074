"""Structured logging for subagent control.

Every command runs inside :func:`command_context`, so each event it logs
carries ``command_id``, ``action`` and ``requester`` without passing them
around explicitly.
"""

import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from uuid import uuid4

import structlog

from subagent_control.config import get_config


def configure_logging(level: str | None = None) -> None:
    """Configure structlog from the ``logging`` config section.

    Args:
        level: Optional level name overriding ``logging.level``
    """
    settings = get_config().logging
    log_level = getattr(logging, (level or settings.level).upper(), logging.INFO)

    renderer = (
        structlog.dev.ConsoleRenderer()
        if settings.format == "console"
        else structlog.processors.JSONRenderer()
    )
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        context_class=dict,
        # Replies go to stdout; keep logs off it.
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )


@contextmanager
def command_context(action: str, requester: str) -> Iterator[str]:
    """Bind per-command fields for every log event inside the block."""
    command_id = uuid4().hex[:8]
    with structlog.contextvars.bound_contextvars(
        command_id=command_id,
        action=action,
        requester=requester,
    ):
        yield command_id


def get_logger(name: str | None = None) -> structlog.BoundLogger:
    """Get a logger instance.

    Args:
        name: Optional logger name (usually __name__)

    Returns:
        Configured structlog logger
    """
    if name:
        return structlog.get_logger(name)
    return structlog.get_logger()
