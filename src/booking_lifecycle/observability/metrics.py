"""Prometheus metrics endpoint.

Exposes booking engine metrics for monitoring via Grafana.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from prometheus_client import (
    Counter,
    Histogram,
    Info,
    start_http_server,
)

if TYPE_CHECKING:
    from booking_lifecycle.domain.events import DomainEvent

# ---------------------------------------------------------------------------
# System metrics
# ---------------------------------------------------------------------------

SYSTEM_INFO = Info("booking_system", "Booking engine information")

# ---------------------------------------------------------------------------
# Event log metrics
# ---------------------------------------------------------------------------

EVENTS_APPENDED = Counter(
    "booking_events_appended_total",
    "Events durably appended to the store",
    ["aggregate_type", "event_type"],
)

CONCURRENCY_CONFLICTS = Counter(
    "booking_concurrency_conflicts_total",
    "Appends rejected for a stale expected_version",
    ["aggregate_type"],
)

# ---------------------------------------------------------------------------
# Bus metrics
# ---------------------------------------------------------------------------

HANDLER_FAILURES = Counter(
    "booking_handler_failures_total",
    "Handler invocations that raised (before retry)",
    ["handler_id"],
)

DEAD_LETTERS = Counter(
    "booking_dead_letters_total",
    "Handler invocations moved to the dead-letter queue",
    ["handler_id"],
)

# ---------------------------------------------------------------------------
# Workflow metrics
# ---------------------------------------------------------------------------

WORKFLOW_RUNS = Counter(
    "booking_workflow_runs_total",
    "Workflow runs by command and outcome",
    ["command", "outcome"],
)

COMPENSATIONS = Counter(
    "booking_compensations_total",
    "Compensations executed",
    ["step", "outcome"],
)

STEP_LATENCY = Histogram(
    "booking_step_latency_seconds",
    "Duration of a workflow step including retries",
    ["step"],
    buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0],
)

# ---------------------------------------------------------------------------
# Realtime metrics
# ---------------------------------------------------------------------------

REALTIME_PUSHES = Counter(
    "booking_realtime_pushes_total",
    "Realtime pushes to observer connections",
    ["outcome"],
)


def start_metrics_server(port: int = 9090) -> None:
    """Start Prometheus metrics HTTP server in a background thread."""
    from booking_lifecycle import __version__

    SYSTEM_INFO.info({"version": __version__})
    start_http_server(port)


# ---------------------------------------------------------------------------
# Convenience helpers
# ---------------------------------------------------------------------------

def record_append(event: DomainEvent) -> None:
    EVENTS_APPENDED.labels(
        aggregate_type=event.aggregate_type.value,
        event_type=event.event_type.value,
    ).inc()


def record_concurrency_conflict(aggregate_type: str) -> None:
    CONCURRENCY_CONFLICTS.labels(aggregate_type=aggregate_type).inc()


def record_handler_failure(handler_id: str) -> None:
    HANDLER_FAILURES.labels(handler_id=handler_id).inc()


def record_dead_letter(handler_id: str) -> None:
    DEAD_LETTERS.labels(handler_id=handler_id).inc()


def record_workflow(command: str, outcome: str) -> None:
    """Record a workflow terminal outcome ("success" | "failure")."""
    WORKFLOW_RUNS.labels(command=command, outcome=outcome).inc()


def record_compensation(step: str, ok: bool) -> None:
    COMPENSATIONS.labels(step=step, outcome="ok" if ok else "error").inc()


def record_step_latency(step: str, seconds: float) -> None:
    STEP_LATENCY.labels(step=step).observe(seconds)


def record_realtime_push(outcome: str) -> None:
    """Record one push attempt ("delivered" | "timeout" | "error" | "closed")."""
    REALTIME_PUSHES.labels(outcome=outcome).inc()
