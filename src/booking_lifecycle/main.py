"""Application bootstrap: wires the store, bus, orchestrator and observers.

``build_engine`` is the single place where collaborators are chosen.  Tests
and local runs pass the in-memory adapters; a deployment passes real ones.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from .adapters.interfaces import (
    AvailabilityService,
    CalendarAdapter,
    NotificationService,
    PaymentService,
    PermissionService,
)
from .core.clock import IClock, WallClock
from .core.config import Settings, load_settings
from .domain.booking import BookingAggregate
from .infrastructure.dead_letter import DeadLetterQueue
from .infrastructure.event_bus import EventBus
from .infrastructure.event_store import IEventStore, create_event_store
from .infrastructure.repository import BookingRepository
from .observability.logger import setup_logging
from .projections.bookings import BookingProjection
from .realtime.connections import ConnectionRegistry
from .realtime.distributor import RealtimeDistributor
from .realtime.resolvers import default_resolvers
from .reconciliation.conflict_scanner import ConflictScanner
from .workflow.commands import BookingCommand
from .workflow.orchestrator import WorkflowOrchestrator, WorkflowResult
from .workflow.steps import BookingSteps

logger = logging.getLogger(__name__)


@dataclass
class BookingEngine:
    """Everything one process needs to accept booking commands."""

    settings: Settings
    clock: IClock
    store: IEventStore
    bus: EventBus
    repository: BookingRepository
    orchestrator: WorkflowOrchestrator
    connections: ConnectionRegistry
    distributor: RealtimeDistributor
    projection: BookingProjection
    scanner: ConflictScanner

    async def start(self) -> None:
        init_schema = getattr(self.store, "init_schema", None)
        if init_schema is not None:
            await init_schema()
        await self.projection.rebuild(self.store)
        await self.bus.start()
        logger.info(
            "Booking engine started (store=%s, bookings=%d)",
            self.settings.event_store.backend.value, len(self.projection),
        )

    async def stop(self) -> None:
        await self.bus.stop()
        dispose = getattr(self.store, "dispose", None)
        if dispose is not None:
            await dispose()
        logger.info("Booking engine stopped")

    async def submit(self, command: BookingCommand, *, run_id: str | None = None) -> WorkflowResult:
        return await self.orchestrator.run(command, run_id=run_id)

    async def load(self, booking_id: str) -> BookingAggregate:
        return await self.repository.load_current_state(booking_id)


def build_engine(
    settings: Settings | None = None,
    *,
    calendar: CalendarAdapter,
    availability: AvailabilityService,
    payments: PaymentService,
    notifications: NotificationService,
    permissions: PermissionService,
    store: IEventStore | None = None,
    clock: IClock | None = None,
    **orchestrator_kwargs: Any,
) -> BookingEngine:
    """Wire an engine from *settings* and the given collaborators."""
    settings = settings or Settings()
    clock = clock or WallClock()
    if store is None:
        store = create_event_store(settings.event_store)

    bus = EventBus(
        event_store=store,
        config=settings.event_bus,
        dead_letters=DeadLetterQueue(
            max_reprocess=settings.event_bus.dead_letter_max_reprocess,
            clock=clock,
        ),
        clock=clock,
    )
    repository = BookingRepository(store)
    steps = BookingSteps(
        repository=repository,
        bus=bus,
        availability=availability,
        calendar=calendar,
        payments=payments,
        notifications=notifications,
        permissions=permissions,
        clock=clock,
        timeout=settings.workflow.step_timeout_seconds,
    )
    orchestrator = WorkflowOrchestrator(
        store=store,
        bus=bus,
        steps=steps,
        config=settings.workflow,
        clock=clock,
        **orchestrator_kwargs,
    )

    projection = BookingProjection()
    projection.attach(bus)

    connections = ConnectionRegistry()
    distributor = RealtimeDistributor(
        connections,
        default_resolvers(store),
        send_timeout=settings.realtime.send_timeout_seconds,
    )
    distributor.attach(bus)

    return BookingEngine(
        settings=settings,
        clock=clock,
        store=store,
        bus=bus,
        repository=repository,
        orchestrator=orchestrator,
        connections=connections,
        distributor=distributor,
        projection=projection,
        scanner=ConflictScanner(projection, calendar, clock),
    )


def configure(config_path: str | None = None, overrides: dict[str, Any] | None = None) -> Settings:
    """Load settings and set up logging from them."""
    settings = load_settings(config_path=config_path, overrides=overrides)
    setup_logging(
        level=settings.observability.log_level,
        format=settings.observability.log_format,
    )
    return settings
