"""Booking aggregate: a pure state-machine fold over its event stream.

Lifecycle (initial state Draft)::

    Draft          -> PendingPayment   (submit with payment)
    Draft          -> Confirmed        (submit without payment)
    PendingPayment -> Confirmed        (payment succeeded)
    PendingPayment -> PaymentFailed    (payment failed)
    PaymentFailed  -> PendingPayment   (retry payment)
    PaymentFailed  -> Cancelled        (abandon)
    Confirmed      -> Rescheduled      (reschedule requested)
    Confirmed      -> Cancelled        (cancel requested)
    Confirmed      -> Completed        (time elapsed)
    Rescheduled    -> Confirmed        (new time confirmed)
    Rescheduled    -> Cancelled        (reschedule cancelled)

Cancelled and Completed are terminal.

Commands validate against ``TRANSITIONS`` and either raise
``InvalidTransition`` (no event, no state change) or record exactly one
event at ``version + 1``, fold it into the aggregate and queue it in
``pending_events`` for the repository to append.

``BookingCreated`` is the submit edge.  When the creating workflow already
settled the payment, the same event also carries the
``PendingPayment -> Confirmed`` edge; both edges are checked during the
fold.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterable, Callable, Iterable
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Any

from booking_lifecycle.core.enums import AggregateType, BookingStatus, EventType
from booking_lifecycle.core.errors import InvalidTransition, ValidationError
from booking_lifecycle.core.ids import check_aggregate_id, from_iso, to_iso
from booking_lifecycle.domain.events import (
    BOOKING_EVENT_TYPES,
    DomainEvent,
    EventMetadata,
)

if TYPE_CHECKING:
    from booking_lifecycle.infrastructure.event_store import IEventStore

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# State table
# ---------------------------------------------------------------------------

TERMINAL_STATUSES: frozenset[BookingStatus] = frozenset({
    BookingStatus.CANCELLED,
    BookingStatus.COMPLETED,
})

TRANSITIONS: dict[BookingStatus, frozenset[BookingStatus]] = {
    BookingStatus.DRAFT: frozenset({
        BookingStatus.PENDING_PAYMENT, BookingStatus.CONFIRMED,
    }),
    BookingStatus.PENDING_PAYMENT: frozenset({
        BookingStatus.CONFIRMED, BookingStatus.PAYMENT_FAILED,
    }),
    BookingStatus.PAYMENT_FAILED: frozenset({
        BookingStatus.PENDING_PAYMENT, BookingStatus.CANCELLED,
    }),
    BookingStatus.CONFIRMED: frozenset({
        BookingStatus.RESCHEDULED, BookingStatus.CANCELLED, BookingStatus.COMPLETED,
    }),
    BookingStatus.RESCHEDULED: frozenset({
        BookingStatus.CONFIRMED, BookingStatus.CANCELLED,
    }),
    # Terminal states -- no further transitions allowed.
    BookingStatus.CANCELLED: frozenset(),
    BookingStatus.COMPLETED: frozenset(),
}

# Target status of every command except ``create`` (which depends on
# whether payment is required).
COMMAND_TARGETS: dict[str, BookingStatus] = {
    "reschedule": BookingStatus.RESCHEDULED,
    "confirm_reschedule": BookingStatus.CONFIRMED,
    "cancel": BookingStatus.CANCELLED,
    "confirm_payment": BookingStatus.CONFIRMED,
    "fail_payment": BookingStatus.PAYMENT_FAILED,
    "retry_payment": BookingStatus.PENDING_PAYMENT,
    "complete": BookingStatus.COMPLETED,
}


def is_legal(current: BookingStatus, target: BookingStatus) -> bool:
    """Whether ``current -> target`` is an edge of the state table."""
    return target in TRANSITIONS.get(current, frozenset())


def _check_interval(start: datetime, end: datetime) -> None:
    if start.tzinfo is None or end.tzinfo is None:
        raise ValidationError("Booking times must be timezone-aware")
    if not start < end:
        raise ValidationError(
            f"Booking must end after it starts: {start.isoformat()} >= {end.isoformat()}"
        )


# ---------------------------------------------------------------------------
# Aggregate
# ---------------------------------------------------------------------------

@dataclass
class BookingAggregate:
    """Current state of one booking, derived from its events.

    Two aggregates folded from the same events compare equal;
    ``pending_events`` is excluded from the comparison.
    """

    id: str
    status: BookingStatus = BookingStatus.DRAFT
    start_time: datetime | None = None
    end_time: datetime | None = None
    organizer_id: str = ""
    participants: tuple[str, ...] = ()
    team_member_ids: tuple[str, ...] = ()
    requires_payment: bool = False
    payment_id: str | None = None
    calendar_event_id: str | None = None
    cancellation_reason: str | None = None
    failure_reason: str | None = None
    version: int = 0
    pending_events: list[DomainEvent] = field(
        default_factory=list, compare=False, repr=False,
    )

    # -- Construction ------------------------------------------------------

    @classmethod
    def new(cls, booking_id: str) -> BookingAggregate:
        """Blank Draft aggregate at version 0."""
        return cls(id=check_aggregate_id(booking_id))

    @classmethod
    def from_events(
        cls, events: Iterable[DomainEvent], booking_id: str | None = None,
    ) -> BookingAggregate:
        """Fold *events* (ascending version) into a fresh aggregate."""
        aggregate: BookingAggregate | None = (
            cls.new(booking_id) if booking_id is not None else None
        )
        for event in events:
            if aggregate is None:
                aggregate = cls.new(event.aggregate_id)
            aggregate.apply(event)
        if aggregate is None:
            raise ValidationError("Cannot fold an empty event sequence without an id")
        return aggregate

    @classmethod
    async def from_stream(
        cls, events: AsyncIterable[DomainEvent], booking_id: str,
    ) -> BookingAggregate:
        aggregate = cls.new(booking_id)
        async for event in events:
            aggregate.apply(event)
        return aggregate

    @classmethod
    async def load_current_state(
        cls, store: IEventStore, booking_id: str,
    ) -> BookingAggregate:
        """Rebuild the aggregate from the store.  Unknown ids give a Draft."""
        return await cls.from_stream(store.load(booking_id), booking_id)

    # -- Properties --------------------------------------------------------

    @property
    def exists(self) -> bool:
        return self.version > 0

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def committed_version(self) -> int:
        """Version the store holds, i.e. before any pending events."""
        return self.version - len(self.pending_events)

    def affected_users(self) -> tuple[str, ...]:
        """Organizer, participants and team members, de-duplicated."""
        seen: dict[str, None] = {}
        for user in (self.organizer_id, *self.participants, *self.team_member_ids):
            if user:
                seen.setdefault(user, None)
        return tuple(seen)

    # -- Fold --------------------------------------------------------------

    def apply(self, event: DomainEvent) -> None:
        """Fold one stored event into the state."""
        if event.aggregate_id != self.id:
            raise ValidationError(
                f"Event for {event.aggregate_id!r} applied to booking {self.id!r}"
            )
        if event.aggregate_type is not AggregateType.BOOKING:
            raise ValidationError(f"{event.event_type.value} is not a booking event")
        if event.version != self.version + 1:
            raise ValidationError(
                f"Version gap on booking {self.id!r}: "
                f"expected {self.version + 1}, got {event.version}"
            )
        _APPLIERS[event.event_type](self, event.payload)
        self.version = event.version

    def _enter(self, target: BookingStatus, command: str) -> None:
        if not is_legal(self.status, target):
            raise InvalidTransition(self.id, self.status, command)
        self.status = target

    def _apply_created(self, p: Any) -> None:
        start = from_iso(p["start"])
        end = from_iso(p["end"])
        _check_interval(start, end)
        requires_payment = bool(p.get("requires_payment", False))
        if requires_payment:
            self._enter(BookingStatus.PENDING_PAYMENT, "create")
            if p.get("payment_settled"):
                self._enter(BookingStatus.CONFIRMED, "create")
        else:
            self._enter(BookingStatus.CONFIRMED, "create")
        self.start_time = start
        self.end_time = end
        self.organizer_id = p.get("organizer_id", "")
        self.participants = tuple(p.get("participants", ()))
        self.team_member_ids = tuple(p.get("team_member_ids", ()))
        self.requires_payment = requires_payment
        self.payment_id = p.get("payment_id")
        self.calendar_event_id = p.get("calendar_event_id")

    def _apply_rescheduled(self, p: Any) -> None:
        start = from_iso(p["start"])
        end = from_iso(p["end"])
        _check_interval(start, end)
        self._enter(BookingStatus.RESCHEDULED, "reschedule")
        self.start_time = start
        self.end_time = end
        if p.get("calendar_event_id"):
            self.calendar_event_id = p["calendar_event_id"]

    def _apply_reschedule_confirmed(self, p: Any) -> None:
        self._enter(BookingStatus.CONFIRMED, "confirm_reschedule")

    def _apply_cancelled(self, p: Any) -> None:
        self._enter(BookingStatus.CANCELLED, "cancel")
        self.cancellation_reason = p.get("reason") or None
        self.calendar_event_id = None

    def _apply_payment_confirmed(self, p: Any) -> None:
        self._enter(BookingStatus.CONFIRMED, "confirm_payment")
        self.payment_id = p.get("payment_id") or self.payment_id
        self.failure_reason = None

    def _apply_payment_failed(self, p: Any) -> None:
        self._enter(BookingStatus.PAYMENT_FAILED, "fail_payment")
        self.failure_reason = p.get("reason") or None

    def _apply_payment_retried(self, p: Any) -> None:
        self._enter(BookingStatus.PENDING_PAYMENT, "retry_payment")
        self.payment_id = p.get("payment_id") or self.payment_id

    def _apply_completed(self, p: Any) -> None:
        self._enter(BookingStatus.COMPLETED, "complete")

    # -- Commands ----------------------------------------------------------

    def ensure_can(self, command: str, *, requires_payment: bool = False) -> BookingStatus:
        """Dry-run a command.  Returns the target status or raises.

        Does not change the aggregate.
        """
        if command == "create":
            if self.exists:
                self._reject(command)
            target = (
                BookingStatus.PENDING_PAYMENT if requires_payment
                else BookingStatus.CONFIRMED
            )
        else:
            if not self.exists or command not in COMMAND_TARGETS:
                self._reject(command)
            target = COMMAND_TARGETS[command]
        if not is_legal(self.status, target):
            self._reject(command)
        return target

    def _reject(self, command: str) -> None:
        logger.error(
            "Invalid transition: booking=%s status=%s command=%s",
            self.id, self.status.value, command,
        )
        raise InvalidTransition(self.id, self.status, command)

    def _record(
        self,
        event_type: EventType,
        payload: dict[str, Any],
        metadata: EventMetadata | None,
    ) -> DomainEvent:
        event = DomainEvent(
            event_type=event_type,
            aggregate_id=self.id,
            version=self.version + 1,
            payload=payload,
            metadata=metadata or EventMetadata(),
        )
        self.apply(event)
        self.pending_events.append(event)
        return event

    def create(
        self,
        *,
        start: datetime,
        end: datetime,
        organizer_id: str,
        participants: Iterable[str] = (),
        team_member_ids: Iterable[str] = (),
        requires_payment: bool = False,
        payment_id: str | None = None,
        payment_settled: bool = False,
        calendar_event_id: str | None = None,
        metadata: EventMetadata | None = None,
    ) -> DomainEvent:
        self.ensure_can("create", requires_payment=requires_payment)
        _check_interval(start, end)
        if not organizer_id:
            raise ValidationError("Booking needs an organizer")
        return self._record(
            EventType.BOOKING_CREATED,
            {
                "start": to_iso(start),
                "end": to_iso(end),
                "organizer_id": organizer_id,
                "participants": list(participants),
                "team_member_ids": list(team_member_ids),
                "requires_payment": requires_payment,
                "payment_id": payment_id,
                "payment_settled": bool(requires_payment and payment_settled),
                "calendar_event_id": calendar_event_id,
            },
            metadata,
        )

    def reschedule(
        self,
        *,
        new_start: datetime,
        new_end: datetime,
        calendar_event_id: str | None = None,
        metadata: EventMetadata | None = None,
    ) -> DomainEvent:
        self.ensure_can("reschedule")
        _check_interval(new_start, new_end)
        return self._record(
            EventType.BOOKING_RESCHEDULED,
            {
                "start": to_iso(new_start),
                "end": to_iso(new_end),
                "previous_start": to_iso(self.start_time) if self.start_time else None,
                "previous_end": to_iso(self.end_time) if self.end_time else None,
                "calendar_event_id": calendar_event_id,
            },
            metadata,
        )

    def confirm_reschedule(self, *, metadata: EventMetadata | None = None) -> DomainEvent:
        self.ensure_can("confirm_reschedule")
        return self._record(EventType.RESCHEDULE_CONFIRMED, {}, metadata)

    def cancel(
        self, *, reason: str = "", refund_id: str | None = None,
        metadata: EventMetadata | None = None,
    ) -> DomainEvent:
        self.ensure_can("cancel")
        return self._record(
            EventType.BOOKING_CANCELLED,
            {"reason": reason, "refund_id": refund_id},
            metadata,
        )

    def confirm_payment(
        self, *, payment_id: str | None = None, metadata: EventMetadata | None = None,
    ) -> DomainEvent:
        self.ensure_can("confirm_payment")
        return self._record(
            EventType.PAYMENT_CONFIRMED,
            {"payment_id": payment_id or self.payment_id},
            metadata,
        )

    def fail_payment(
        self, *, reason: str = "", metadata: EventMetadata | None = None,
    ) -> DomainEvent:
        self.ensure_can("fail_payment")
        return self._record(EventType.PAYMENT_FAILED, {"reason": reason}, metadata)

    def retry_payment(
        self, *, payment_id: str | None = None, metadata: EventMetadata | None = None,
    ) -> DomainEvent:
        self.ensure_can("retry_payment")
        return self._record(
            EventType.PAYMENT_RETRIED, {"payment_id": payment_id}, metadata,
        )

    def complete(
        self, *, now: datetime, metadata: EventMetadata | None = None,
    ) -> DomainEvent:
        self.ensure_can("complete")
        if self.end_time is not None and now < self.end_time:
            raise ValidationError(
                f"Booking {self.id!r} ends at {self.end_time.isoformat()}; "
                "it cannot be completed before then"
            )
        return self._record(EventType.BOOKING_COMPLETED, {}, metadata)

    def mark_committed(self) -> list[DomainEvent]:
        """Drain ``pending_events`` after a successful append."""
        drained = self.pending_events[:]
        self.pending_events.clear()
        return drained


# ---------------------------------------------------------------------------
# Applier registry (checked for exhaustiveness at import)
# ---------------------------------------------------------------------------

_APPLIERS: dict[EventType, Callable[[BookingAggregate, Any], None]] = {
    EventType.BOOKING_CREATED: BookingAggregate._apply_created,
    EventType.BOOKING_RESCHEDULED: BookingAggregate._apply_rescheduled,
    EventType.RESCHEDULE_CONFIRMED: BookingAggregate._apply_reschedule_confirmed,
    EventType.BOOKING_CANCELLED: BookingAggregate._apply_cancelled,
    EventType.PAYMENT_CONFIRMED: BookingAggregate._apply_payment_confirmed,
    EventType.PAYMENT_FAILED: BookingAggregate._apply_payment_failed,
    EventType.PAYMENT_RETRIED: BookingAggregate._apply_payment_retried,
    EventType.BOOKING_COMPLETED: BookingAggregate._apply_completed,
}

_missing = BOOKING_EVENT_TYPES - _APPLIERS.keys()
if _missing:
    raise RuntimeError(
        f"No booking applier for: {sorted(t.value for t in _missing)}"
    )
