"""Protocol interfaces for the booking engine's external collaborators.

All provider boundaries are defined here as Protocol classes.
Implementations (a real calendar API, a payment gateway, the in-memory
fakes in ``adapters.memory``) can be swapped without changing callers.

Every method is a coroutine.  Implementations signal failures with
``ExternalServiceError`` (``transient=True`` for timeouts, 429 and 5xx;
permanent otherwise).  The orchestrator wraps each call in a timeout.
"""

from __future__ import annotations

from datetime import datetime
from typing import Protocol, runtime_checkable

from pydantic import BaseModel, Field, model_validator

from booking_lifecycle.core.enums import PaymentStatus
from booking_lifecycle.domain.conflicts import Interval

__all__ = [
    "AvailabilityResult",
    "AvailabilityService",
    "CalendarAdapter",
    "CalendarEvent",
    "Notification",
    "NotificationService",
    "Payment",
    "PaymentService",
    "PaymentStatus",
    "PermissionService",
    "TimeRange",
]


# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------

class TimeRange(BaseModel):
    """Half-open ``[start, end)`` window."""

    start: datetime
    end: datetime

    @model_validator(mode="after")
    def _check_order(self) -> TimeRange:
        if not self.start < self.end:
            raise ValueError("TimeRange end must be after start")
        return self

    def to_interval(self) -> Interval:
        return Interval(self.start, self.end)


class AvailabilityResult(BaseModel):
    available: bool
    conflicts: list[str] = Field(default_factory=list)  # Calendar event ids


class CalendarEvent(BaseModel):
    """An entry on a calendar, ours or external."""

    event_id: str
    start: datetime
    end: datetime
    title: str = ""
    attendees: list[str] = Field(default_factory=list)
    booking_id: str | None = None  # Set when the entry mirrors a booking

    def interval(self) -> Interval:
        return Interval(self.start, self.end)


class Payment(BaseModel):
    payment_id: str
    booking_id: str
    status: PaymentStatus = PaymentStatus.PENDING
    idempotency_key: str | None = None


class Notification(BaseModel):
    user_id: str
    booking_id: str
    kind: str  # Command name, e.g. "create_booking"
    message: str = ""
    correlation_id: str = ""


# ---------------------------------------------------------------------------
# Availability
# ---------------------------------------------------------------------------

@runtime_checkable
class AvailabilityService(Protocol):
    """Answers whether an owner is free over a window."""

    async def check(
        self,
        owner_id: str,
        start: datetime,
        end: datetime,
        *,
        exclude_event_id: str | None = None,
    ) -> AvailabilityResult: ...


# ---------------------------------------------------------------------------
# Calendar
# ---------------------------------------------------------------------------

@runtime_checkable
class CalendarAdapter(Protocol):
    """Create, move, remove and list calendar entries."""

    async def create_event(
        self,
        *,
        booking_id: str,
        start: datetime,
        end: datetime,
        attendees: list[str],
        title: str = "",
        event_id: str | None = None,
    ) -> CalendarEvent:
        """Create an entry.  ``event_id`` restores a previously deleted one."""
        ...

    async def update_event(
        self, event_id: str, *, start: datetime, end: datetime,
    ) -> CalendarEvent: ...

    async def delete_event(self, event_id: str) -> None: ...

    async def list_events(self, window: TimeRange) -> list[CalendarEvent]: ...


# ---------------------------------------------------------------------------
# Payments
# ---------------------------------------------------------------------------

@runtime_checkable
class PaymentService(Protocol):
    """Payment lifecycle.  Amounts and billing are the provider's business."""

    async def create_payment(
        self, booking_id: str, *, idempotency_key: str,
    ) -> Payment:
        """Create (or return the existing) payment for *idempotency_key*."""
        ...

    async def confirm_payment(self, payment_id: str) -> Payment: ...

    async def refund_payment(self, payment_id: str) -> Payment: ...


# ---------------------------------------------------------------------------
# Notifications and permissions
# ---------------------------------------------------------------------------

@runtime_checkable
class NotificationService(Protocol):
    async def send(self, notification: Notification) -> None: ...


@runtime_checkable
class PermissionService(Protocol):
    """Policy evaluation lives behind this interface."""

    async def authorize(self, actor_id: str, action: str, resource_ref: str) -> bool: ...
