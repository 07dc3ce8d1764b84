"""Affected-user resolution, one resolver per aggregate type."""

from __future__ import annotations

from typing import Protocol

from booking_lifecycle.core.enums import AggregateType
from booking_lifecycle.domain.booking import BookingAggregate
from booking_lifecycle.domain.events import DomainEvent
from booking_lifecycle.infrastructure.event_store import IEventStore


class AffectedUserResolver(Protocol):
    async def resolve(self, event: DomainEvent) -> set[str]: ...


class BookingUserResolver:
    """Organizer, participants and team members of the booking.

    ``BookingCreated`` names them in its payload.  For later events the
    booking is folded from the store (read-only) to find them.
    """

    def __init__(self, store: IEventStore) -> None:
        self._store = store

    async def resolve(self, event: DomainEvent) -> set[str]:
        payload = event.payload
        users = {payload.get("organizer_id", "")}
        users.update(payload.get("participants", ()))
        users.update(payload.get("team_member_ids", ()))
        users.discard("")
        if users:
            return users
        aggregate = await BookingAggregate.load_current_state(
            self._store, event.aggregate_id,
        )
        return set(aggregate.affected_users())


class WorkflowUserResolver:
    """The actor who issued the failed command."""

    async def resolve(self, event: DomainEvent) -> set[str]:
        return {event.metadata.actor_id} if event.metadata.actor_id else set()


def default_resolvers(store: IEventStore) -> dict[AggregateType, AffectedUserResolver]:
    return {
        AggregateType.BOOKING: BookingUserResolver(store),
        AggregateType.WORKFLOW: WorkflowUserResolver(),
    }
