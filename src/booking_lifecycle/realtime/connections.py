"""Observer connections and the per-user registry.

A connection is whatever transport a client holds open (websocket, SSE
stream).  The engine only needs ``send`` and ``closed``; ``QueueConnection``
is the in-process variant that a transport endpoint drains.
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from datetime import datetime
from typing import Any, Protocol, runtime_checkable

from booking_lifecycle.core.ids import new_id, utc_now

logger = logging.getLogger(__name__)


class ConnectionClosed(Exception):
    """Send attempted on a connection that is no longer open."""


@runtime_checkable
class ObserverConnection(Protocol):
    @property
    def connection_id(self) -> str: ...

    @property
    def user_id(self) -> str: ...

    @property
    def closed(self) -> bool: ...

    async def send(self, message: dict[str, Any]) -> None: ...


class QueueConnection:
    """Connection backed by a bounded ``asyncio.Queue``.

    ``send`` waits while the queue is full; the distributor's per-send
    timeout turns a stuck client into a dropped push.
    """

    def __init__(
        self,
        user_id: str,
        *,
        maxsize: int = 100,
        connection_id: str | None = None,
    ) -> None:
        self._user_id = user_id
        self._connection_id = connection_id or new_id()
        self._queue: asyncio.Queue[dict[str, Any]] = asyncio.Queue(maxsize=maxsize)
        self._closed = False
        self.created_at: datetime = utc_now()
        self.last_activity: datetime = self.created_at

    @property
    def connection_id(self) -> str:
        return self._connection_id

    @property
    def user_id(self) -> str:
        return self._user_id

    @property
    def closed(self) -> bool:
        return self._closed

    async def send(self, message: dict[str, Any]) -> None:
        if self._closed:
            raise ConnectionClosed(self._connection_id)
        await self._queue.put(message)
        self.last_activity = utc_now()

    async def receive(self) -> dict[str, Any]:
        return await self._queue.get()

    def drain(self) -> list[dict[str, Any]]:
        """Everything queued so far, without waiting."""
        messages: list[dict[str, Any]] = []
        while not self._queue.empty():
            messages.append(self._queue.get_nowait())
        return messages

    def close(self) -> None:
        self._closed = True


class ConnectionRegistry:
    """Live connections grouped by user id."""

    def __init__(self) -> None:
        self._by_user: dict[str, dict[str, ObserverConnection]] = defaultdict(dict)

    def register(self, connection: ObserverConnection) -> None:
        self._by_user[connection.user_id][connection.connection_id] = connection
        logger.debug(
            "Registered connection %s for user %s",
            connection.connection_id, connection.user_id,
        )

    def unregister(self, connection: ObserverConnection) -> None:
        conns = self._by_user.get(connection.user_id)
        if not conns:
            return
        conns.pop(connection.connection_id, None)
        if not conns:
            del self._by_user[connection.user_id]
        logger.debug(
            "Unregistered connection %s for user %s",
            connection.connection_id, connection.user_id,
        )

    def for_user(self, user_id: str) -> list[ObserverConnection]:
        return list(self._by_user.get(user_id, {}).values())

    def users(self) -> list[str]:
        return list(self._by_user)

    def __len__(self) -> int:
        return sum(len(conns) for conns in self._by_user.values())
