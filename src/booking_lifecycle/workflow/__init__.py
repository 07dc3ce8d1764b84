"""Workflow orchestration: ordered, compensating step pipelines per command."""

from booking_lifecycle.workflow.commands import (
    BookingCommand,
    CancelBooking,
    CompleteBooking,
    ConfirmPayment,
    ConfirmReschedule,
    CreateBooking,
    FailPayment,
    RescheduleBooking,
    RetryPayment,
)
from booking_lifecycle.workflow.orchestrator import WorkflowOrchestrator, WorkflowResult

__all__ = [
    "BookingCommand",
    "CancelBooking",
    "CompleteBooking",
    "ConfirmPayment",
    "ConfirmReschedule",
    "CreateBooking",
    "FailPayment",
    "RescheduleBooking",
    "RetryPayment",
    "WorkflowOrchestrator",
    "WorkflowResult",
]
