"""Custom exception hierarchy for the booking engine."""

from __future__ import annotations

from typing import Any


class BookingError(Exception):
    """Base exception for all booking engine errors."""


# --- Configuration ---
class ConfigError(BookingError):
    """Invalid or missing configuration."""


# --- Input ---
class ValidationError(BookingError):
    """Malformed input.  Never retried, never produces an event."""


class AuthorizationDenied(ValidationError):
    """The permission service refused the action."""

    def __init__(self, actor_id: str, action: str, resource_ref: str):
        self.actor_id = actor_id
        self.action = action
        self.resource_ref = resource_ref
        super().__init__(
            f"Actor {actor_id!r} is not allowed to {action} {resource_ref}"
        )


# --- Event log ---
class ConcurrencyConflict(BookingError):
    """Append attempted with a stale ``expected_version``.

    The caller must reload the aggregate and resubmit.
    """

    def __init__(
        self,
        aggregate_id: str,
        expected_version: int,
        actual_version: int,
    ):
        self.aggregate_id = aggregate_id
        self.expected_version = expected_version
        self.actual_version = actual_version
        super().__init__(
            f"Concurrency conflict on {aggregate_id!r}: "
            f"expected version {expected_version}, head is {actual_version}"
        )


class EventNotPersisted(BookingError):
    """The bus was asked to dispatch an event the store does not hold."""


# --- Aggregate ---
class InvalidTransition(BookingError):
    """Command is illegal for the aggregate's current status."""

    def __init__(self, booking_id: str, status: Any, command: str):
        self.booking_id = booking_id
        self.status = status
        self.command = command
        status_name = getattr(status, "value", status)
        super().__init__(
            f"Cannot {command} booking {booking_id!r} in status {status_name}"
        )


# --- External collaborators ---
class ExternalServiceError(BookingError):
    """A collaborator call failed.

    ``transient`` failures (timeouts, 429, 5xx) may be retried by a
    retryable step.  Everything else is permanent and goes straight to
    compensation.
    """

    def __init__(
        self,
        service: str,
        message: str,
        *,
        transient: bool = False,
        status_code: int | None = None,
    ):
        self.service = service
        self.transient = transient
        self.status_code = status_code
        super().__init__(f"[{service}] {message}")

    @classmethod
    def from_status(
        cls, service: str, status_code: int, message: str = "",
    ) -> ExternalServiceError:
        """Classify an HTTP-style status code."""
        transient = status_code == 429 or 500 <= status_code < 600
        error_cls = TransientServiceError if transient else PermanentServiceError
        return error_cls(
            service,
            message or f"status {status_code}",
            status_code=status_code,
        )


class TransientServiceError(ExternalServiceError):
    def __init__(self, service: str, message: str, *, status_code: int | None = None):
        super().__init__(service, message, transient=True, status_code=status_code)


class PermanentServiceError(ExternalServiceError):
    def __init__(self, service: str, message: str, *, status_code: int | None = None):
        super().__init__(service, message, transient=False, status_code=status_code)


class StepTimeout(TransientServiceError):
    """A collaborator call exceeded its timeout."""

    def __init__(self, service: str, timeout: float):
        self.timeout = timeout
        super().__init__(service, f"timed out after {timeout:.2f}s")


# --- Event bus ---
class HandlerFailure(BookingError):
    """A handler kept failing for one event until its retries ran out."""

    def __init__(self, handler_id: str, event_id: str, attempts: int, error: BaseException):
        self.handler_id = handler_id
        self.event_id = event_id
        self.attempts = attempts
        self.error = error
        super().__init__(
            f"Handler {handler_id!r} failed on event {event_id} "
            f"after {attempts} attempt(s): {error}"
        )


class DeadLetterExhausted(BookingError):
    """Manual reprocessing of a dead letter went past its cap."""


# --- Workflow ---
class WorkflowCancelled(BookingError):
    """Cancellation was observed at a step boundary."""


class WorkflowError(BookingError):
    """Terminal failure of a workflow run, after compensation has finished.

    Attributes:
        command: Name of the command that was being run.
        step: Name of the step that failed.
        causes: The cause chain, outermost first.
        compensation_failures: ``(step_name, error)`` for compensations
            that themselves failed.
    """

    def __init__(
        self,
        command: str,
        step: str,
        causes: list[BaseException],
        compensation_failures: list[tuple[str, BaseException]] | None = None,
    ):
        self.command = command
        self.step = step
        self.causes = causes
        self.compensation_failures = compensation_failures or []
        outer = causes[0] if causes else None
        super().__init__(f"{command} failed at step {step!r}: {outer}")

    @property
    def root_cause(self) -> BaseException | None:
        return self.causes[-1] if self.causes else None

    def cause_chain(self) -> list[dict[str, str]]:
        """JSON-safe rendering of ``causes``."""
        return [
            {"type": type(exc).__name__, "message": str(exc)}
            for exc in self.causes
        ]
