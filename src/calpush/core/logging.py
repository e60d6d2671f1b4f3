"""Structured logging for calpush.

Every module logs through ``logging.getLogger(__name__)``; :func:`configure_logging`
puts a structlog ``ProcessorFormatter`` on the root logger so those records
come out as colored console lines (``text``) or JSON lines (``json``).

Records emitted inside :func:`user_context` carry a ``user`` key, and records
emitted under an active OTel span carry ``trace_id``/``span_id``.
"""

from __future__ import annotations

import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from pathlib import Path

import structlog
from opentelemetry import trace

LOG_FILE_NAME = "calpush.log"

# Chatty per-request loggers capped at WARNING.
QUIET_LOGGERS = ("uvicorn.access", "httpx", "httpcore")

_current_user: ContextVar[str | None] = ContextVar("calpush_user", default=None)


@contextmanager
def user_context(user_id: str) -> Iterator[None]:
    """Tag log records emitted inside the block with *user_id*."""
    token = _current_user.set(user_id)
    try:
        yield
    finally:
        _current_user.reset(token)


def add_sync_context(
    logger: logging.Logger,  # noqa: ARG001
    method_name: str,  # noqa: ARG001
    event_dict: dict,
) -> dict:
    """Add ``user`` and, under an active span, ``trace_id``/``span_id``."""
    user_id = _current_user.get()
    if user_id is not None:
        event_dict["user"] = user_id
    ctx = trace.get_current_span().get_span_context()
    if ctx and ctx.trace_id:
        event_dict["trace_id"] = format(ctx.trace_id, "032x")
        event_dict["span_id"] = format(ctx.span_id, "016x")
    return event_dict


def _formatter(renderer: structlog.types.Processor, time_fmt: str) -> logging.Formatter:
    return structlog.stdlib.ProcessorFormatter(
        processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer],
        foreign_pre_chain=[
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.processors.TimeStamper(fmt=time_fmt),
            add_sync_context,
            structlog.stdlib.ExtraAdder(),
        ],
    )


def configure_logging(
    level: str = "INFO",
    fmt: str = "text",
    log_root: Path | None = None,
) -> None:
    """Install the calpush handlers on the root logger, replacing any present.

    ``log_root`` adds a JSON file (``{log_root}/calpush.log``) alongside the
    console output, whatever *fmt* is.
    """
    if fmt == "json":
        console = _formatter(structlog.processors.JSONRenderer(), "iso")
    else:
        console = _formatter(structlog.dev.ConsoleRenderer(), "%H:%M:%S")

    root = logging.getLogger()
    root.handlers.clear()
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(console)
    root.addHandler(handler)
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    if log_root is not None:
        log_root = Path(log_root)
        log_root.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_root / LOG_FILE_NAME)
        file_handler.setFormatter(_formatter(structlog.processors.JSONRenderer(), "iso"))
        root.addHandler(file_handler)
