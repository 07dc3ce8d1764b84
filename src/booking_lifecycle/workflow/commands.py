"""Booking commands accepted by the workflow orchestrator.

Commands are immutable requests.  ``check()`` covers what can be verified
without loading state (ids, time ordering, required fields) and raises
``ValidationError``; legality against the current status is checked later
by the aggregate.
"""

from __future__ import annotations

from typing import ClassVar

from pydantic import AwareDatetime, BaseModel, ConfigDict

from booking_lifecycle.core.errors import ValidationError
from booking_lifecycle.core.ids import check_aggregate_id


class BookingCommand(BaseModel):
    """Fields every command carries."""

    model_config = ConfigDict(frozen=True)

    # Permission action name, also used for metrics and notifications.
    name: ClassVar[str] = "booking_command"
    # ``BookingAggregate`` command the run ends with.
    aggregate_command: ClassVar[str] = ""

    booking_id: str
    actor_id: str
    organization_id: str = ""
    correlation_id: str = ""

    def check(self) -> None:
        check_aggregate_id(self.booking_id)
        if not self.actor_id:
            raise ValidationError(f"{self.name} needs an actor_id")


class CreateBooking(BookingCommand):
    name: ClassVar[str] = "create_booking"
    aggregate_command: ClassVar[str] = "create"

    start: AwareDatetime
    end: AwareDatetime
    organizer_id: str
    participants: tuple[str, ...] = ()
    team_member_ids: tuple[str, ...] = ()
    requires_payment: bool = False

    def check(self) -> None:
        super().check()
        if not self.start < self.end:
            raise ValidationError(
                f"Booking must end after it starts: {self.start} >= {self.end}"
            )
        if not self.organizer_id:
            raise ValidationError("Booking needs an organizer")


class RescheduleBooking(BookingCommand):
    name: ClassVar[str] = "reschedule_booking"
    aggregate_command: ClassVar[str] = "reschedule"

    new_start: AwareDatetime
    new_end: AwareDatetime

    def check(self) -> None:
        super().check()
        if not self.new_start < self.new_end:
            raise ValidationError(
                f"New time must end after it starts: {self.new_start} >= {self.new_end}"
            )


class ConfirmReschedule(BookingCommand):
    name: ClassVar[str] = "confirm_reschedule"
    aggregate_command: ClassVar[str] = "confirm_reschedule"


class CancelBooking(BookingCommand):
    name: ClassVar[str] = "cancel_booking"
    aggregate_command: ClassVar[str] = "cancel"

    reason: str = ""


class ConfirmPayment(BookingCommand):
    name: ClassVar[str] = "confirm_payment"
    aggregate_command: ClassVar[str] = "confirm_payment"

    payment_id: str | None = None


class FailPayment(BookingCommand):
    name: ClassVar[str] = "fail_payment"
    aggregate_command: ClassVar[str] = "fail_payment"

    reason: str = ""


class RetryPayment(BookingCommand):
    name: ClassVar[str] = "retry_payment"
    aggregate_command: ClassVar[str] = "retry_payment"


class CompleteBooking(BookingCommand):
    name: ClassVar[str] = "complete_booking"
    aggregate_command: ClassVar[str] = "complete"
