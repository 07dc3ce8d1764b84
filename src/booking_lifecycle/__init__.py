"""Event-sourced booking lifecycle engine.

Sub-packages:
    core/             Settings, enums, error hierarchy, ids and clocks.
    domain/           Domain events, the booking aggregate, conflict detection.
    infrastructure/   Event store, event bus and dead-letter queue.
    storage/          SQLAlchemy-backed event store.
    workflow/         Command pipeline with compensation.
    realtime/         Fan-out of state changes to live observers.
    projections/      Read models rebuilt from the event log.
    reconciliation/   Calendar conflict scanning.
    adapters/         Collaborator protocols and in-memory implementations.
"""

__version__ = "0.1.0"
