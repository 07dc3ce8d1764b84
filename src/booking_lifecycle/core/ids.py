"""Canonical ID and timestamp factories.

All modules import from here instead of defining local _uuid()/_now() copies.

Timestamp Rule
--------------
All timestamps are ``datetime`` with ``tzinfo=timezone.utc``, never naive.
Timestamps stored in event payloads are ISO-8601 strings produced by
``to_iso`` and read back with ``from_iso``.
"""

from __future__ import annotations

import re
import uuid
from datetime import datetime, timezone

from .errors import ValidationError

_AGGREGATE_ID = re.compile(r"^[A-Za-z0-9_.:\-]{1,128}$")


def new_id() -> str:
    """Generate a new UUID v4 string.  Use for all internal entity IDs."""
    return str(uuid.uuid4())


def utc_now() -> datetime:
    """Return the current UTC time as a timezone-aware datetime."""
    return datetime.now(timezone.utc)


def workflow_aggregate_id(run_id: str) -> str:
    """Stream id under which a failed workflow run records its outcome."""
    return f"workflow:{run_id}"


def check_aggregate_id(aggregate_id: str) -> str:
    """Reject ids that cannot be used as a stream key or file name."""
    if not isinstance(aggregate_id, str) or not _AGGREGATE_ID.match(aggregate_id):
        raise ValidationError(f"Invalid aggregate id: {aggregate_id!r}")
    return aggregate_id


def to_iso(value: datetime) -> str:
    """Serialize an aware datetime as UTC ISO-8601."""
    if value.tzinfo is None:
        raise ValidationError(f"Naive datetime not allowed: {value!r}")
    return value.astimezone(timezone.utc).isoformat()


def from_iso(value: str) -> datetime:
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        raise ValidationError(f"Naive datetime not allowed: {value!r}")
    return parsed.astimezone(timezone.utc)
