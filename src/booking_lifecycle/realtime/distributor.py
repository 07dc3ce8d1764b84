"""Real-time distributor: fans committed events out to observer connections.

Subscribes to every event type.  For each event it resolves the affected
users through the resolver registered for the event's aggregate type, then
pushes one message to every live connection of those users concurrently.

Delivery is best-effort: a slow or broken connection costs one dropped
push (logged and counted), closed connections are unregistered, and the
handler itself never raises, so the bus never retries it.  Clients
reconcile missed pushes by refetching.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from booking_lifecycle.core.enums import AggregateType
from booking_lifecycle.domain.events import DomainEvent
from booking_lifecycle.infrastructure.event_bus import EventBus
from booking_lifecycle.observability import metrics

from .connections import ConnectionClosed, ConnectionRegistry, ObserverConnection
from .resolvers import AffectedUserResolver

logger = logging.getLogger(__name__)

HANDLER_ID = "realtime_distributor"


def to_message(event: DomainEvent) -> dict[str, Any]:
    """The wire form of a push."""
    data = event.to_dict()
    return {
        "type": data["event_type"],
        "aggregate_type": data["aggregate_type"],
        "aggregate_id": data["aggregate_id"],
        "version": data["version"],
        "payload": data["payload"],
        "correlation_id": event.metadata.correlation_id,
    }


class RealtimeDistributor:
    """Pushes events to the connections of affected users.

    Args:
        registry: Live connections by user.
        resolvers: Affected-user resolver per aggregate type.
        send_timeout: Seconds allowed for one push.
    """

    def __init__(
        self,
        registry: ConnectionRegistry,
        resolvers: dict[AggregateType, AffectedUserResolver],
        *,
        send_timeout: float = 2.0,
    ) -> None:
        self._registry = registry
        self._resolvers = resolvers
        self._send_timeout = send_timeout

    def attach(self, bus: EventBus, priority: int = -10) -> str:
        """Subscribe to every event type on *bus*."""
        return bus.subscribe_all(self.handle, priority=priority, handler_id=HANDLER_ID)

    async def handle(self, event: DomainEvent) -> None:
        try:
            users = await self._resolve(event)
        except Exception:
            logger.exception(
                "Could not resolve users for %s on %s",
                event.event_type.value, event.aggregate_id,
            )
            return
        targets = [
            conn
            for user_id in sorted(users)
            for conn in self._registry.for_user(user_id)
        ]
        if not targets:
            return
        message = to_message(event)
        await asyncio.gather(*(self._push(conn, message) for conn in targets))

    async def _resolve(self, event: DomainEvent) -> set[str]:
        resolver = self._resolvers.get(event.aggregate_type)
        if resolver is None:
            return set()
        return await resolver.resolve(event)

    async def _push(self, conn: ObserverConnection, message: dict[str, Any]) -> None:
        if conn.closed:
            self._registry.unregister(conn)
            metrics.record_realtime_push("closed")
            return
        try:
            await asyncio.wait_for(conn.send(message), self._send_timeout)
        except asyncio.TimeoutError:
            metrics.record_realtime_push("timeout")
            logger.warning(
                "Push to %s (user %s) timed out after %.2fs",
                conn.connection_id, conn.user_id, self._send_timeout,
            )
        except ConnectionClosed:
            self._registry.unregister(conn)
            metrics.record_realtime_push("closed")
        except Exception as exc:
            metrics.record_realtime_push("error")
            logger.warning(
                "Push to %s (user %s) failed: %s",
                conn.connection_id, conn.user_id, exc,
            )
        else:
            metrics.record_realtime_push("delivered")
