"""Workflow orchestrator: runs the booking pipeline for one command.

Design invariants
-----------------
1.  Steps of one run execute strictly in order.  Runs share nothing but the
    event store, so any number may execute concurrently.
2.  Only ``retryable`` steps are retried, and only for transient
    ``ExternalServiceError`` failures (timeouts, 429, 5xx), under bounded
    exponential backoff with jitter.  Everything else fails the step.
3.  On failure every completed step is compensated exactly once, in strict
    reverse order.  Compensation errors are collected, never raised.
4.  Cancellation (``cancel(run_id)``) is checked between steps only; an
    in-flight collaborator call is never interrupted.
5.  Outcome: on success exactly one terminal booking event has been
    persisted and published.  On failure one ``WorkflowFailed`` event
    carrying the cause chain is appended to the run's own stream
    (``workflow:<run_id>``), except for malformed or illegal commands,
    which produce no event at all.  ``run()`` reports failures through
    ``WorkflowResult`` instead of raising.
"""

from __future__ import annotations

import asyncio
import random
import time
from dataclasses import dataclass, field

from booking_lifecycle.core.clock import IClock, WallClock
from booking_lifecycle.core.config import WorkflowConfig
from booking_lifecycle.core.enums import EventType
from booking_lifecycle.core.errors import (
    BookingError,
    ExternalServiceError,
    InvalidTransition,
    ValidationError,
    WorkflowCancelled,
    WorkflowError,
)
from booking_lifecycle.core.ids import workflow_aggregate_id
from booking_lifecycle.domain.booking import BookingAggregate
from booking_lifecycle.domain.events import DomainEvent
from booking_lifecycle.infrastructure.event_bus import EventBus
from booking_lifecycle.infrastructure.event_store import IEventStore
from booking_lifecycle.infrastructure.retry import RetryPolicy
from booking_lifecycle.observability import metrics
from booking_lifecycle.observability.logger import get_logger, workflow_log_context
from booking_lifecycle.workflow.commands import BookingCommand
from booking_lifecycle.workflow.context import WorkflowExecution
from booking_lifecycle.workflow.steps import BookingSteps, Step

logger = get_logger(__name__)


# ---------------------------------------------------------------------------
# Result
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class WorkflowResult:
    """Either the booking's new state or the run's single failure."""

    run_id: str
    value: BookingAggregate | None = None
    error: WorkflowError | None = None
    events: tuple[DomainEvent, ...] = field(default_factory=tuple)

    @classmethod
    def success(
        cls, run_id: str, aggregate: BookingAggregate, events: list[DomainEvent],
    ) -> WorkflowResult:
        return cls(run_id=run_id, value=aggregate, events=tuple(events))

    @classmethod
    def failure(
        cls, run_id: str, error: WorkflowError, events: list[DomainEvent] | None = None,
    ) -> WorkflowResult:
        return cls(run_id=run_id, error=error, events=tuple(events or ()))

    @property
    def ok(self) -> bool:
        return self.error is None

    def unwrap(self) -> BookingAggregate:
        """Return the aggregate or raise the ``WorkflowError``."""
        if self.error is not None:
            raise self.error
        if self.value is None:
            raise ValueError(f"Run {self.run_id} succeeded without a booking state")
        return self.value


def cause_chain(exc: BaseException) -> list[BaseException]:
    """*exc* followed by its explicit causes, outermost first."""
    chain: list[BaseException] = []
    current: BaseException | None = exc
    while current is not None and current not in chain:
        chain.append(current)
        current = current.__cause__
    return chain


# Failures that never produce an event.
_SILENT_FAILURES = (ValidationError, InvalidTransition)


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------

class WorkflowOrchestrator:
    """Runs booking commands through a fixed step pipeline.

    Args:
        store: Event store receiving ``WorkflowFailed`` records.
        bus: Publishes ``WorkflowFailed`` once durable.
        steps: Step implementations (or an explicit pipeline, for tests).
        config: Timeout and retry settings.
        clock: Time source for failure-event metadata.
        rng: Random source for backoff jitter.
    """

    def __init__(
        self,
        *,
        store: IEventStore,
        bus: EventBus,
        steps: BookingSteps | list[Step],
        config: WorkflowConfig | None = None,
        clock: IClock | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self._store = store
        self._bus = bus
        self._config = config or WorkflowConfig()
        self._pipeline = steps.pipeline() if isinstance(steps, BookingSteps) else list(steps)
        self._clock = clock or WallClock()
        self._rng = rng or random.Random()
        self._retry = RetryPolicy(
            max_attempts=self._config.retry_max_attempts,
            base_delay=self._config.retry_base_delay,
            max_delay=self._config.retry_max_delay,
            jitter=self._config.retry_jitter,
        )
        self._active: dict[str, WorkflowExecution] = {}

    @property
    def pipeline(self) -> list[Step]:
        return list(self._pipeline)

    def active_runs(self) -> list[str]:
        return list(self._active)

    def cancel(self, run_id: str) -> bool:
        """Request cancellation of a running run.  False if it is not running."""
        ctx = self._active.get(run_id)
        if ctx is None:
            return False
        ctx.cancel_requested = True
        logger.info("workflow_cancel_requested", run_id=run_id, step=ctx.current_step)
        return True

    # -- Run ---------------------------------------------------------------

    async def run(
        self, command: BookingCommand, *, run_id: str | None = None,
    ) -> WorkflowResult:
        ctx = (
            WorkflowExecution(command=command, run_id=run_id)
            if run_id else WorkflowExecution(command=command)
        )
        if ctx.run_id in self._active:
            raise ValidationError(f"Run {ctx.run_id!r} is already active")
        with workflow_log_context(ctx.run_id, ctx.correlation_id):
            return await self._execute(ctx)

    async def _execute(self, ctx: WorkflowExecution) -> WorkflowResult:
        command = ctx.command
        self._active[ctx.run_id] = ctx
        completed: list[Step] = []
        logger.info(
            "workflow_started",
            command=command.name,
            booking_id=command.booking_id,
            run_id=ctx.run_id,
        )
        try:
            for step in self._pipeline:
                if not step.applies(ctx):
                    continue
                ctx.current_step = step.name
                if ctx.cancel_requested:
                    raise WorkflowCancelled(
                        f"Run {ctx.run_id} cancelled before {step.name}"
                    )
                ctx = await self._run_step(step, ctx)
                completed.append(step)
                ctx.completed_steps.append(step.name)
        except BookingError as exc:
            return await self._fail(ctx, completed, exc)
        except Exception:
            # Unexpected errors still unwind side effects before propagating.
            await self._compensate(ctx, completed, failed=None)
            raise
        finally:
            self._active.pop(ctx.run_id, None)

        metrics.record_workflow(command.name, "success")
        logger.info(
            "workflow_succeeded",
            command=command.name,
            booking_id=command.booking_id,
            run_id=ctx.run_id,
            status=ctx.final_state.status.value if ctx.final_state else None,
        )
        return WorkflowResult.success(ctx.run_id, ctx.final_state, ctx.events)

    async def _run_step(self, step: Step, ctx: WorkflowExecution) -> WorkflowExecution:
        started = time.perf_counter()
        attempt = 0
        try:
            while True:
                attempt += 1
                try:
                    return await step.action(ctx)
                except ExternalServiceError as exc:
                    if not (
                        step.retryable
                        and exc.transient
                        and self._retry.should_retry(attempt)
                    ):
                        raise
                    delay = self._retry.delay(attempt, self._rng)
                    logger.warning(
                        "step_retry",
                        step=step.name,
                        run_id=ctx.run_id,
                        attempt=attempt,
                        delay=round(delay, 3),
                        error=str(exc),
                    )
                    await asyncio.sleep(delay)
        finally:
            metrics.record_step_latency(step.name, time.perf_counter() - started)

    # -- Failure path ------------------------------------------------------

    async def _compensate(
        self,
        ctx: WorkflowExecution,
        completed: list[Step],
        failed: Step | None,
    ) -> tuple[list[str], list[tuple[str, BaseException]]]:
        """Undo *completed* in reverse (after *failed*'s own partial undo)."""
        to_undo = list(reversed(completed))
        if failed is not None and failed.compensate_partial:
            to_undo.insert(0, failed)

        compensated: list[str] = []
        failures: list[tuple[str, BaseException]] = []
        for step in to_undo:
            if step.compensate is None:
                continue
            logger.info("compensation_started", step=step.name, run_id=ctx.run_id)
            try:
                await step.compensate(ctx)
            except Exception as exc:
                failures.append((step.name, exc))
                metrics.record_compensation(step.name, ok=False)
                logger.error(
                    "compensation_failed",
                    step=step.name,
                    run_id=ctx.run_id,
                    error=str(exc),
                    error_type=type(exc).__name__,
                )
            else:
                compensated.append(step.name)
                metrics.record_compensation(step.name, ok=True)
        return compensated, failures

    async def _fail(
        self,
        ctx: WorkflowExecution,
        completed: list[Step],
        exc: BookingError,
    ) -> WorkflowResult:
        command = ctx.command
        step_name = ctx.current_step
        failed = None
        if not isinstance(exc, WorkflowCancelled):
            failed = next(
                (s for s in self._pipeline if s.name == step_name and s not in completed),
                None,
            )
        compensated, comp_failures = await self._compensate(ctx, completed, failed)
        error = WorkflowError(
            command.name,
            step_name,
            causes=cause_chain(exc),
            compensation_failures=comp_failures,
        )
        metrics.record_workflow(command.name, "failure")
        logger.warning(
            "workflow_failed",
            command=command.name,
            booking_id=command.booking_id,
            run_id=ctx.run_id,
            step=step_name,
            error=str(exc),
            error_type=type(exc).__name__,
            compensated=compensated,
        )

        if isinstance(exc, _SILENT_FAILURES):
            return WorkflowResult.failure(ctx.run_id, error)

        payload = {
            "command": command.name,
            "booking_id": command.booking_id,
            "step": step_name,
            "causes": error.cause_chain(),
            "completed_steps": list(ctx.completed_steps),
            "compensated": compensated,
            "compensation_failures": [
                {"step": name, "type": type(err).__name__, "message": str(err)}
                for name, err in comp_failures
            ],
        }
        if ctx.restored_payment_id is not None:
            payload["restored_payment_id"] = ctx.restored_payment_id
        event = DomainEvent(
            event_type=EventType.WORKFLOW_FAILED,
            aggregate_id=workflow_aggregate_id(ctx.run_id),
            version=1,
            payload=payload,
            metadata=ctx.metadata(self._clock.now()),
        )
        await self._store.append(event, expected_version=0)
        await self._bus.publish(event)
        return WorkflowResult.failure(ctx.run_id, error, [event])
