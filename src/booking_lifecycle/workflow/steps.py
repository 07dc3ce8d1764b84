"""The booking pipeline: ordered steps with their compensations.

Pipeline (fixed order, every command)::

    validate -> check_availability -> reserve_calendar -> process_payment
             -> send_notifications -> append_terminal_event

A step whose ``applies(ctx)`` is false for the command is skipped and does
not count as completed.  Each collaborator call goes through ``call()``,
which bounds it with the step timeout and turns a timeout into
``StepTimeout`` (transient).

Compensations must tolerate running after a partial action: a step marked
``compensate_partial`` gets its own compensation run when it fails, before
the completed steps are unwound.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, TypeVar

from booking_lifecycle.adapters.interfaces import (
    AvailabilityService,
    CalendarAdapter,
    Notification,
    NotificationService,
    Payment,
    PaymentService,
    PermissionService,
)
from booking_lifecycle.core.clock import IClock, WallClock
from booking_lifecycle.core.enums import BookingStatus, PaymentStatus
from booking_lifecycle.core.errors import (
    AuthorizationDenied,
    ConcurrencyConflict,
    PermanentServiceError,
    StepTimeout,
    ValidationError,
)
from booking_lifecycle.domain.booking import BookingAggregate
from booking_lifecycle.domain.events import EventMetadata
from booking_lifecycle.infrastructure.event_bus import EventBus
from booking_lifecycle.infrastructure.repository import BookingRepository
from booking_lifecycle.workflow.commands import (
    CancelBooking,
    CompleteBooking,
    ConfirmPayment,
    ConfirmReschedule,
    CreateBooking,
    FailPayment,
    RescheduleBooking,
    RetryPayment,
)
from booking_lifecycle.workflow.context import WorkflowExecution

logger = logging.getLogger(__name__)

T = TypeVar("T")

StepAction = Callable[[WorkflowExecution], Awaitable[WorkflowExecution]]
Compensation = Callable[[WorkflowExecution], Awaitable[None]]


def _always(ctx: WorkflowExecution) -> bool:
    return True


@dataclass(frozen=True)
class Step:
    name: str
    action: StepAction
    compensate: Compensation | None = None
    retryable: bool = False
    applies: Callable[[WorkflowExecution], bool] = _always
    compensate_partial: bool = False


async def call(service: str, awaitable: Awaitable[T], timeout: float) -> T:
    """Await a collaborator call, bounded by *timeout* seconds."""
    try:
        return await asyncio.wait_for(awaitable, timeout)
    except asyncio.TimeoutError as exc:
        raise StepTimeout(service, timeout) from exc


# Statuses in which a paid booking holds a settled charge.
_PAID_STATUSES = frozenset({BookingStatus.CONFIRMED, BookingStatus.RESCHEDULED})
_REFUNDABLE = frozenset({PaymentStatus.PENDING, PaymentStatus.SUCCEEDED})


def _require_not_declined(payment: Payment) -> Payment:
    """Turn a decline reported through ``Payment.status`` into a failure."""
    if payment.status is PaymentStatus.FAILED:
        raise PermanentServiceError(
            "payments", f"payment {payment.payment_id} declined", status_code=402,
        )
    return payment


class BookingSteps:
    """Step implementations bound to their collaborators.

    Args:
        repository: Loads and saves booking aggregates.
        bus: Receives the terminal event once it is durable.
        availability, calendar, payments, notifications, permissions:
            External collaborators.
        clock: Time source for event metadata and completion checks.
        timeout: Per-call timeout in seconds.
    """

    def __init__(
        self,
        *,
        repository: BookingRepository,
        bus: EventBus,
        availability: AvailabilityService,
        calendar: CalendarAdapter,
        payments: PaymentService,
        notifications: NotificationService,
        permissions: PermissionService,
        clock: IClock | None = None,
        timeout: float = 10.0,
    ) -> None:
        self._repository = repository
        self._bus = bus
        self._availability = availability
        self._calendar = calendar
        self._payments = payments
        self._notifications = notifications
        self._permissions = permissions
        self._clock = clock or WallClock()
        self._timeout = timeout

    def _call(self, service: str, awaitable: Awaitable[T]) -> Awaitable[T]:
        return call(service, awaitable, self._timeout)

    def pipeline(self) -> list[Step]:
        return [
            Step("validate", self.validate),
            Step(
                "check_availability",
                self.check_availability,
                retryable=True,
                applies=lambda ctx: isinstance(ctx.command, (CreateBooking, RescheduleBooking)),
            ),
            Step(
                "reserve_calendar",
                self.reserve_calendar,
                compensate=self.release_calendar,
                retryable=True,
                applies=self._needs_calendar,
            ),
            Step(
                "process_payment",
                self.process_payment,
                compensate=self.refund_payment,
                retryable=True,
                applies=self._needs_payment,
                compensate_partial=True,
            ),
            Step("send_notifications", self.send_notifications, retryable=True),
            Step("append_terminal_event", self.append_terminal_event),
        ]

    # -- validate ----------------------------------------------------------

    async def validate(self, ctx: WorkflowExecution) -> WorkflowExecution:
        cmd = ctx.command
        cmd.check()
        resource = f"booking:{cmd.booking_id}"
        allowed = await self._call(
            "permissions",
            self._permissions.authorize(cmd.actor_id, cmd.name, resource),
        )
        if not allowed:
            raise AuthorizationDenied(cmd.actor_id, cmd.name, resource)

        aggregate = await self._repository.load_current_state(cmd.booking_id)
        aggregate.ensure_can(
            cmd.aggregate_command,
            requires_payment=getattr(cmd, "requires_payment", False),
        )
        if isinstance(cmd, CompleteBooking) and aggregate.end_time is not None:
            now = self._clock.now()
            if now < aggregate.end_time:
                raise ValidationError(
                    f"Booking {cmd.booking_id!r} ends at "
                    f"{aggregate.end_time.isoformat()}; it cannot be completed yet"
                )
        ctx.observe(aggregate)
        return ctx

    # -- check_availability ------------------------------------------------

    async def check_availability(self, ctx: WorkflowExecution) -> WorkflowExecution:
        cmd = ctx.command
        if isinstance(cmd, RescheduleBooking):
            start, end = cmd.new_start, cmd.new_end
            exclude = ctx.calendar_event_id
        else:
            start, end = ctx.start_time, ctx.end_time
            exclude = None
        for owner in ctx.hosts:
            result = await self._call(
                "availability",
                self._availability.check(owner, start, end, exclude_event_id=exclude),
            )
            if not result.available:
                raise PermanentServiceError(
                    "availability",
                    f"{owner} is busy ({', '.join(result.conflicts) or 'unavailable'})",
                    status_code=409,
                )
        return ctx

    # -- reserve_calendar --------------------------------------------------

    @staticmethod
    def _needs_calendar(ctx: WorkflowExecution) -> bool:
        if isinstance(ctx.command, CreateBooking):
            return True
        if isinstance(ctx.command, (RescheduleBooking, CancelBooking)):
            return ctx.calendar_event_id is not None
        return False

    async def reserve_calendar(self, ctx: WorkflowExecution) -> WorkflowExecution:
        cmd = ctx.command
        if isinstance(cmd, CreateBooking):
            entry = await self._call(
                "calendar",
                self._calendar.create_event(
                    booking_id=cmd.booking_id,
                    start=cmd.start,
                    end=cmd.end,
                    attendees=list(ctx.affected_users),
                ),
            )
            ctx.calendar_event_id = entry.event_id
        elif isinstance(cmd, RescheduleBooking):
            await self._call(
                "calendar",
                self._calendar.update_event(
                    ctx.calendar_event_id, start=cmd.new_start, end=cmd.new_end,
                ),
            )
        else:
            await self._call("calendar", self._calendar.delete_event(ctx.calendar_event_id))
        return ctx

    async def release_calendar(self, ctx: WorkflowExecution) -> None:
        cmd = ctx.command
        if isinstance(cmd, CreateBooking):
            if ctx.calendar_event_id is not None:
                await self._call("calendar", self._calendar.delete_event(ctx.calendar_event_id))
                ctx.calendar_event_id = None
        elif isinstance(cmd, RescheduleBooking):
            await self._call(
                "calendar",
                self._calendar.update_event(
                    ctx.calendar_event_id, start=ctx.start_time, end=ctx.end_time,
                ),
            )
        else:
            current = await self._repository.load_current_state(ctx.booking_id)
            if current.status is BookingStatus.CANCELLED:
                # A concurrent run finished the cancellation.
                return
            await self._call(
                "calendar",
                self._calendar.create_event(
                    booking_id=cmd.booking_id,
                    start=ctx.start_time,
                    end=ctx.end_time,
                    attendees=list(ctx.affected_users),
                    event_id=ctx.calendar_event_id,
                ),
            )

    # -- process_payment ---------------------------------------------------

    @staticmethod
    def _needs_payment(ctx: WorkflowExecution) -> bool:
        cmd = ctx.command
        if isinstance(cmd, CreateBooking):
            return cmd.requires_payment
        if isinstance(cmd, RetryPayment):
            return True
        if isinstance(cmd, CancelBooking):
            return (
                ctx.requires_payment
                and ctx.payment_id is not None
                and ctx.status in _PAID_STATUSES
            )
        return False

    async def process_payment(self, ctx: WorkflowExecution) -> WorkflowExecution:
        cmd = ctx.command
        if isinstance(cmd, CancelBooking):
            refund = await self._call("payments", self._payments.refund_payment(ctx.payment_id))
            ctx.refund_id = refund.payment_id
            ctx.payment_status = refund.status
            return ctx

        # The run id keys the payment, so a retried step reuses it.
        payment = await self._call(
            "payments",
            self._payments.create_payment(cmd.booking_id, idempotency_key=ctx.run_id),
        )
        ctx.payment_id = payment.payment_id
        ctx.payment_status = payment.status
        _require_not_declined(payment)
        if isinstance(cmd, CreateBooking):
            confirmed = await self._call(
                "payments", self._payments.confirm_payment(payment.payment_id),
            )
            ctx.payment_status = confirmed.status
            _require_not_declined(confirmed)
        return ctx

    async def refund_payment(self, ctx: WorkflowExecution) -> None:
        if isinstance(ctx.command, CancelBooking):
            await self._restore_charge(ctx)
            return
        if ctx.payment_id is None or ctx.payment_status not in _REFUNDABLE:
            return
        refund = await self._call("payments", self._payments.refund_payment(ctx.payment_id))
        ctx.payment_status = refund.status

    async def _restore_charge(self, ctx: WorkflowExecution) -> None:
        """Charge again for a cancel refund whose booking stays active.

        A refund has no inverse at the provider, so the charge is restored
        as a new payment keyed on the run.  Its id is reported in the
        run's ``WorkflowFailed`` record as ``restored_payment_id``.
        """
        if ctx.refund_id is None:
            return
        current = await self._repository.load_current_state(ctx.booking_id)
        if current.status is BookingStatus.CANCELLED:
            return
        payment = await self._call(
            "payments",
            self._payments.create_payment(
                ctx.booking_id, idempotency_key=f"{ctx.run_id}:restore",
            ),
        )
        confirmed = _require_not_declined(await self._call(
            "payments", self._payments.confirm_payment(payment.payment_id),
        ))
        ctx.restored_payment_id = confirmed.payment_id
        ctx.payment_status = confirmed.status
        logger.warning(
            "Refund %s for booking %s reversed by new charge %s (run %s)",
            ctx.refund_id, ctx.booking_id, confirmed.payment_id, ctx.run_id,
        )

    # -- send_notifications ------------------------------------------------

    async def send_notifications(self, ctx: WorkflowExecution) -> WorkflowExecution:
        cmd = ctx.command
        for user_id in ctx.affected_users:
            if user_id in ctx.notified:
                continue
            await self._call(
                "notifications",
                self._notifications.send(Notification(
                    user_id=user_id,
                    booking_id=cmd.booking_id,
                    kind=cmd.name,
                    message=f"{cmd.name.replace('_', ' ')}: {cmd.booking_id}",
                    correlation_id=ctx.correlation_id,
                )),
            )
            ctx.notified.append(user_id)
        return ctx

    # -- append_terminal_event ---------------------------------------------

    async def append_terminal_event(self, ctx: WorkflowExecution) -> WorkflowExecution:
        aggregate = await self._repository.load_current_state(ctx.booking_id)
        if aggregate.version != ctx.observed_version:
            raise ConcurrencyConflict(ctx.booking_id, ctx.observed_version, aggregate.version)

        self._apply_command(aggregate, ctx, ctx.metadata(self._clock.now()))
        events = await self._repository.save(aggregate)
        for event in events:
            await self._bus.publish(event)
        ctx.final_state = aggregate
        ctx.events = events
        return ctx

    def _apply_command(
        self, aggregate: BookingAggregate, ctx: WorkflowExecution, metadata: EventMetadata,
    ) -> None:
        cmd: Any = ctx.command
        if isinstance(cmd, CreateBooking):
            aggregate.create(
                start=cmd.start,
                end=cmd.end,
                organizer_id=cmd.organizer_id,
                participants=cmd.participants,
                team_member_ids=cmd.team_member_ids,
                requires_payment=cmd.requires_payment,
                payment_id=ctx.payment_id,
                payment_settled=ctx.payment_status is PaymentStatus.SUCCEEDED,
                calendar_event_id=ctx.calendar_event_id,
                metadata=metadata,
            )
        elif isinstance(cmd, RescheduleBooking):
            aggregate.reschedule(
                new_start=cmd.new_start,
                new_end=cmd.new_end,
                calendar_event_id=ctx.calendar_event_id,
                metadata=metadata,
            )
        elif isinstance(cmd, ConfirmReschedule):
            aggregate.confirm_reschedule(metadata=metadata)
        elif isinstance(cmd, CancelBooking):
            aggregate.cancel(reason=cmd.reason, refund_id=ctx.refund_id, metadata=metadata)
        elif isinstance(cmd, ConfirmPayment):
            aggregate.confirm_payment(payment_id=cmd.payment_id, metadata=metadata)
        elif isinstance(cmd, FailPayment):
            aggregate.fail_payment(reason=cmd.reason, metadata=metadata)
        elif isinstance(cmd, RetryPayment):
            aggregate.retry_payment(payment_id=ctx.payment_id, metadata=metadata)
        elif isinstance(cmd, CompleteBooking):
            aggregate.complete(now=self._clock.now(), metadata=metadata)
        else:
            raise ValidationError(f"Unsupported command {type(cmd).__name__}")
        logger.debug(
            "Recorded %s for booking %s (run %s)",
            cmd.aggregate_command, ctx.booking_id, ctx.run_id,
        )
