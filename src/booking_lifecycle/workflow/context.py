"""Per-run workflow context.

A ``WorkflowExecution`` lives only for the duration of one ``run()``.  It
holds the booking *id* and a snapshot of what was observed when the run
validated, never the aggregate object itself, so concurrent runs cannot
share mutable state.  Only the events a run causes are durable.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime

from booking_lifecycle.core.enums import BookingStatus, PaymentStatus
from booking_lifecycle.core.ids import new_id
from booking_lifecycle.domain.booking import BookingAggregate
from booking_lifecycle.domain.events import DomainEvent, EventMetadata
from booking_lifecycle.workflow.commands import BookingCommand, CreateBooking


@dataclass
class WorkflowExecution:
    command: BookingCommand
    run_id: str = field(default_factory=new_id)
    correlation_id: str = ""

    # Snapshot taken by the validate step
    observed_version: int = 0
    status: BookingStatus = BookingStatus.DRAFT
    start_time: datetime | None = None
    end_time: datetime | None = None
    requires_payment: bool = False
    affected_users: tuple[str, ...] = ()
    hosts: tuple[str, ...] = ()  # Organizer and team members

    # Side effects accumulated by later steps
    calendar_event_id: str | None = None
    payment_id: str | None = None
    payment_status: PaymentStatus | None = None
    refund_id: str | None = None
    restored_payment_id: str | None = None
    notified: list[str] = field(default_factory=list)

    # Progress
    current_step: str = ""
    completed_steps: list[str] = field(default_factory=list)
    cancel_requested: bool = False

    # Outcome of the terminal step
    final_state: BookingAggregate | None = None
    events: list[DomainEvent] = field(default_factory=list)

    def __post_init__(self) -> None:
        if not self.correlation_id:
            self.correlation_id = self.command.correlation_id or new_id()

    @property
    def booking_id(self) -> str:
        return self.command.booking_id

    @property
    def is_create(self) -> bool:
        return isinstance(self.command, CreateBooking)

    def observe(self, aggregate: BookingAggregate) -> None:
        """Record the loaded state the run is based on."""
        self.observed_version = aggregate.version
        self.status = aggregate.status
        self.start_time = aggregate.start_time
        self.end_time = aggregate.end_time
        self.requires_payment = aggregate.requires_payment
        self.payment_id = aggregate.payment_id
        self.calendar_event_id = aggregate.calendar_event_id
        self.affected_users = aggregate.affected_users()
        self.hosts = _unique((aggregate.organizer_id, *aggregate.team_member_ids))

        cmd = self.command
        if isinstance(cmd, CreateBooking):
            self.start_time = cmd.start
            self.end_time = cmd.end
            self.requires_payment = cmd.requires_payment
            self.affected_users = _unique(
                (cmd.organizer_id, *cmd.participants, *cmd.team_member_ids)
            )
            self.hosts = _unique((cmd.organizer_id, *cmd.team_member_ids))

    def metadata(self, timestamp: datetime) -> EventMetadata:
        return EventMetadata(
            actor_id=self.command.actor_id,
            organization_id=self.command.organization_id,
            timestamp=timestamp,
            correlation_id=self.correlation_id,
            causation_id=self.run_id,
        )


def _unique(users: tuple[str, ...]) -> tuple[str, ...]:
    return tuple(dict.fromkeys(u for u in users if u))
