"""Enumerations used across the booking engine."""

from enum import Enum


class BookingStatus(str, Enum):
    DRAFT = "Draft"
    PENDING_PAYMENT = "PendingPayment"
    CONFIRMED = "Confirmed"
    PAYMENT_FAILED = "PaymentFailed"
    RESCHEDULED = "Rescheduled"
    CANCELLED = "Cancelled"
    COMPLETED = "Completed"


class EventType(str, Enum):
    """Closed set of event variants.  The bus registry is keyed by these."""

    BOOKING_CREATED = "BookingCreated"
    BOOKING_RESCHEDULED = "BookingRescheduled"
    RESCHEDULE_CONFIRMED = "RescheduleConfirmed"
    BOOKING_CANCELLED = "BookingCancelled"
    PAYMENT_CONFIRMED = "PaymentConfirmed"
    PAYMENT_FAILED = "PaymentFailed"
    PAYMENT_RETRIED = "PaymentRetried"
    BOOKING_COMPLETED = "BookingCompleted"
    WORKFLOW_FAILED = "WorkflowFailed"


class AggregateType(str, Enum):
    BOOKING = "booking"
    WORKFLOW = "workflow"


class ConflictSeverity(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    REFUNDED = "refunded"


class StoreBackend(str, Enum):
    MEMORY = "memory"
    JSONL = "jsonl"
    SQL = "sql"
