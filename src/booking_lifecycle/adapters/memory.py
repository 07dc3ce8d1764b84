"""In-memory collaborators: no network, deterministic ids, scriptable faults.

Used by the test suite and by local runs of the engine.  Every service owns
a ``FlakyCall`` (``service.faults``) that can be told to raise or stall on
the next N calls of an operation, which is how transient/permanent provider
failures and timeouts are simulated.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
from collections import Counter, defaultdict, deque
from collections.abc import Iterable
from datetime import datetime

from booking_lifecycle.core.enums import PaymentStatus
from booking_lifecycle.core.errors import (
    ExternalServiceError,
    PermanentServiceError,
    TransientServiceError,
)
from booking_lifecycle.domain.conflicts import Interval, overlaps

from .interfaces import (
    AvailabilityResult,
    CalendarEvent,
    Notification,
    Payment,
    TimeRange,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Fault scripting
# ---------------------------------------------------------------------------

class FlakyCall:
    """Per-operation script of failures and delays.

    >>> faults = FlakyCall("payments")
    >>> faults.fail_transient("confirm_payment", times=2)

    The next two ``confirm_payment`` calls raise ``TransientServiceError``;
    the third goes through.
    """

    def __init__(self, service: str) -> None:
        self.service = service
        self._script: dict[str, deque[BaseException | float]] = defaultdict(deque)
        self.calls: Counter[str] = Counter()

    def fail(self, operation: str, *errors: BaseException) -> None:
        """Raise *errors* in order on the next calls of *operation*."""
        self._script[operation].extend(errors)

    def fail_transient(self, operation: str, times: int = 1, status_code: int = 503) -> None:
        for _ in range(times):
            self.fail(
                operation,
                TransientServiceError(self.service, f"{operation} unavailable", status_code=status_code),
            )

    def fail_permanent(self, operation: str, message: str = "rejected", status_code: int = 400) -> None:
        self.fail(
            operation,
            PermanentServiceError(self.service, message, status_code=status_code),
        )

    def stall(self, operation: str, seconds: float, times: int = 1) -> None:
        """Sleep *seconds* before the next calls (to trip step timeouts)."""
        self._script[operation].extend([float(seconds)] * times)

    def pending(self, operation: str) -> int:
        return len(self._script[operation])

    async def __call__(self, operation: str) -> None:
        self.calls[operation] += 1
        script = self._script.get(operation)
        if not script:
            return
        item = script.popleft()
        if isinstance(item, BaseException):
            raise item
        await asyncio.sleep(item)


# ---------------------------------------------------------------------------
# Calendar
# ---------------------------------------------------------------------------

class InMemoryCalendar:
    """Calendar holding both booking reservations and external entries."""

    def __init__(self) -> None:
        self._events: dict[str, CalendarEvent] = {}
        self._ids = itertools.count(1)
        self.faults = FlakyCall("calendar")

    def _next_id(self) -> str:
        return f"cal-{next(self._ids)}"

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
        await self.faults("create_event")
        entry = CalendarEvent(
            event_id=event_id or self._next_id(),
            start=start,
            end=end,
            title=title or f"Booking {booking_id}",
            attendees=list(attendees),
            booking_id=booking_id,
        )
        self._events[entry.event_id] = entry
        return entry

    async def update_event(
        self, event_id: str, *, start: datetime, end: datetime,
    ) -> CalendarEvent:
        await self.faults("update_event")
        entry = self._events.get(event_id)
        if entry is None:
            raise PermanentServiceError("calendar", f"unknown event {event_id}", status_code=404)
        moved = entry.model_copy(update={"start": start, "end": end})
        self._events[event_id] = moved
        return moved

    async def delete_event(self, event_id: str) -> None:
        await self.faults("delete_event")
        # Deleting an absent entry is a no-op, so compensations can repeat.
        self._events.pop(event_id, None)

    async def list_events(self, window: TimeRange) -> list[CalendarEvent]:
        await self.faults("list_events")
        interval = window.to_interval()
        return sorted(
            (e for e in self._events.values() if overlaps(e.interval(), interval)),
            key=lambda e: (e.start, e.event_id),
        )

    # -- Test helpers ------------------------------------------------------

    def add_external(
        self,
        start: datetime,
        end: datetime,
        attendees: Iterable[str] = (),
        title: str = "external",
    ) -> CalendarEvent:
        """Place an entry that did not come from a booking."""
        entry = CalendarEvent(
            event_id=f"ext-{next(self._ids)}",
            start=start,
            end=end,
            title=title,
            attendees=list(attendees),
        )
        self._events[entry.event_id] = entry
        return entry

    def get(self, event_id: str) -> CalendarEvent | None:
        return self._events.get(event_id)

    def entries(self) -> list[CalendarEvent]:
        return list(self._events.values())

    def reservations(self) -> list[CalendarEvent]:
        """Entries created for bookings."""
        return [e for e in self._events.values() if e.booking_id is not None]

    def __len__(self) -> int:
        return len(self._events)


class CalendarAvailability:
    """Availability derived from an ``InMemoryCalendar``.

    An owner is busy when any entry they attend overlaps the window.
    """

    def __init__(self, calendar: InMemoryCalendar) -> None:
        self._calendar = calendar
        self.faults = FlakyCall("availability")

    async def check(
        self,
        owner_id: str,
        start: datetime,
        end: datetime,
        *,
        exclude_event_id: str | None = None,
    ) -> AvailabilityResult:
        await self.faults("check")
        window = Interval(start, end)
        conflicts = [
            entry.event_id
            for entry in self._calendar.entries()
            if entry.event_id != exclude_event_id
            and owner_id in entry.attendees
            and overlaps(entry.interval(), window)
        ]
        return AvailabilityResult(available=not conflicts, conflicts=sorted(conflicts))


# ---------------------------------------------------------------------------
# Payments
# ---------------------------------------------------------------------------

class InMemoryPaymentService:
    """Payments that succeed unless scripted otherwise.

    ``decline(booking_id)`` makes every confirmation for that booking fail
    permanently (HTTP 402).
    """

    def __init__(self) -> None:
        self.payments: dict[str, Payment] = {}
        self._by_key: dict[str, str] = {}
        self._declined: set[str] = set()
        self._ids = itertools.count(1)
        self.faults = FlakyCall("payments")

    def decline(self, booking_id: str) -> None:
        self._declined.add(booking_id)

    def _get(self, payment_id: str) -> Payment:
        payment = self.payments.get(payment_id)
        if payment is None:
            raise PermanentServiceError("payments", f"unknown payment {payment_id}", status_code=404)
        return payment

    async def create_payment(self, booking_id: str, *, idempotency_key: str) -> Payment:
        await self.faults("create_payment")
        existing = self._by_key.get(idempotency_key)
        if existing is not None:
            return self.payments[existing]
        payment = Payment(
            payment_id=f"pay-{next(self._ids)}",
            booking_id=booking_id,
            idempotency_key=idempotency_key,
        )
        self.payments[payment.payment_id] = payment
        self._by_key[idempotency_key] = payment.payment_id
        return payment

    async def confirm_payment(self, payment_id: str) -> Payment:
        await self.faults("confirm_payment")
        payment = self._get(payment_id)
        if payment.booking_id in self._declined:
            self.payments[payment_id] = payment.model_copy(
                update={"status": PaymentStatus.FAILED}
            )
            raise ExternalServiceError.from_status("payments", 402, "card declined")
        confirmed = payment.model_copy(update={"status": PaymentStatus.SUCCEEDED})
        self.payments[payment_id] = confirmed
        return confirmed

    async def refund_payment(self, payment_id: str) -> Payment:
        await self.faults("refund_payment")
        refunded = self._get(payment_id).model_copy(
            update={"status": PaymentStatus.REFUNDED}
        )
        self.payments[payment_id] = refunded
        return refunded

    def by_status(self, status: PaymentStatus) -> list[Payment]:
        return [p for p in self.payments.values() if p.status is status]


# ---------------------------------------------------------------------------
# Notifications and permissions
# ---------------------------------------------------------------------------

class RecordingNotificationService:
    """Keeps every notification it was asked to send."""

    def __init__(self) -> None:
        self.sent: list[Notification] = []
        self.faults = FlakyCall("notifications")

    async def send(self, notification: Notification) -> None:
        await self.faults("send")
        self.sent.append(notification)

    def for_user(self, user_id: str) -> list[Notification]:
        return [n for n in self.sent if n.user_id == user_id]


class StaticPermissionService:
    """Allows everything except explicitly denied ``(actor_id, action)`` pairs."""

    def __init__(self, denied: Iterable[tuple[str, str]] = ()) -> None:
        self._denied = set(denied)
        self.checks: list[tuple[str, str, str]] = []

    def deny(self, actor_id: str, action: str) -> None:
        self._denied.add((actor_id, action))

    async def authorize(self, actor_id: str, action: str, resource_ref: str) -> bool:
        self.checks.append((actor_id, action, resource_ref))
        allowed = (actor_id, action) not in self._denied
        if not allowed:
            logger.info("Denied %s for %s on %s", action, actor_id, resource_ref)
        return allowed
