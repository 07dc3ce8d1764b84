"""Structured logging for the booking engine.

structlog renders every entry as JSON (or as console lines in development).
Two context variables travel with the asyncio task that runs a workflow:

*  ``correlation_id``: shared by the run and every event it causes, so all
   lines caused by one booking command can be grouped.
*  ``run_id``: the workflow run itself.

Bus dispatch tasks copy the context at creation, so handler logs carry the
ids of the event they are handling.
"""

from __future__ import annotations

import logging
import sys
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Any

import structlog

_correlation_id: ContextVar[str] = ContextVar("correlation_id", default="")
_run_id: ContextVar[str] = ContextVar("run_id", default="")


def get_correlation_id() -> str:
    """Get current correlation ID from context ("" outside a run)."""
    return _correlation_id.get()


def bind_correlation_id(correlation_id: str) -> None:
    """Set correlation ID in context."""
    _correlation_id.set(correlation_id)


def new_correlation_id() -> str:
    """Generate and set a new correlation ID."""
    cid = str(uuid.uuid4())
    _correlation_id.set(cid)
    return cid


@contextmanager
def workflow_log_context(run_id: str, correlation_id: str) -> Iterator[None]:
    """Tag every entry logged inside the block with the run's ids."""
    run_token = _run_id.set(run_id)
    cid_token = _correlation_id.set(correlation_id)
    try:
        yield
    finally:
        _correlation_id.reset(cid_token)
        _run_id.reset(run_token)


def _add_workflow_ids(
    logger: Any, method_name: str, event_dict: dict[str, Any]
) -> dict[str, Any]:
    """Structlog processor: add correlation_id and run_id when bound."""
    cid = _correlation_id.get()
    if cid:
        event_dict.setdefault("correlation_id", cid)
    run_id = _run_id.get()
    if run_id:
        event_dict.setdefault("run_id", run_id)
    return event_dict


def setup_logging(
    level: str = "INFO",
    format: str = "json",
) -> None:
    """Configure structured logging for the application.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR).
        format: "json" for production, "console" for development.
    """
    log_level = getattr(logging, level.upper(), logging.INFO)

    processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        _add_workflow_ids,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]

    if format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stderr,
        level=log_level,
    )


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a structured logger for a module."""
    return structlog.get_logger(name)
