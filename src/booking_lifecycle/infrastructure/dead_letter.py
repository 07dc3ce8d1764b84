"""Dead-letter queue for handler invocations that exhausted their retries.

Entries are inert: nothing retries them automatically.  An operator (or a
tool) inspects them by handler id and calls ``reprocess`` to make one more
attempt.  After ``max_reprocess`` failed manual attempts an entry stops
accepting retries (``next_retry_at`` becomes ``None``) but stays in the
queue, queryable, until someone removes it.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from booking_lifecycle.core.clock import IClock, WallClock
from booking_lifecycle.core.errors import DeadLetterExhausted, ValidationError
from booking_lifecycle.core.ids import new_id
from booking_lifecycle.domain.events import DomainEvent
from booking_lifecycle.infrastructure.retry import RetryPolicy
from booking_lifecycle.observability import metrics

logger = logging.getLogger(__name__)

EventHandler = Callable[[DomainEvent], Awaitable[None]]


@dataclass
class DeadLetterEntry:
    """One handler invocation that could not be delivered."""

    event: DomainEvent
    handler_id: str
    error: str
    attempts: int
    next_retry_at: datetime | None
    created_at: datetime
    error_type: str = ""
    reprocess_count: int = 0
    entry_id: str = field(default_factory=new_id)

    @property
    def exhausted(self) -> bool:
        """True once manual reprocessing has hit its cap."""
        return self.next_retry_at is None


class DeadLetterQueue:
    """In-process dead-letter store.

    Parameters
    ----------
    max_reprocess
        Manual reprocess attempts allowed per entry.
    backoff
        Spacing used to suggest ``next_retry_at``.
    clock
        Time source for ``created_at`` / ``next_retry_at``.
    """

    def __init__(
        self,
        *,
        max_reprocess: int = 3,
        backoff: RetryPolicy | None = None,
        clock: IClock | None = None,
    ) -> None:
        self._entries: dict[str, DeadLetterEntry] = {}
        self._max_reprocess = max_reprocess
        self._backoff = backoff or RetryPolicy(base_delay=60.0, max_delay=3600.0)
        self._clock = clock or WallClock()

    def _next_retry(self, retry_number: int) -> datetime:
        return self._clock.now() + timedelta(
            seconds=self._backoff.delay(retry_number)
        )

    # -- Write -------------------------------------------------------------

    def add(
        self,
        event: DomainEvent,
        handler_id: str,
        error: BaseException,
        attempts: int,
    ) -> DeadLetterEntry:
        entry = DeadLetterEntry(
            event=event,
            handler_id=handler_id,
            error=str(error),
            error_type=type(error).__name__,
            attempts=attempts,
            next_retry_at=self._next_retry(1),
            created_at=self._clock.now(),
        )
        self._entries[entry.entry_id] = entry
        metrics.record_dead_letter(handler_id)
        logger.error(
            "Dead-lettered %s v%d for handler %s after %d attempt(s): %s",
            event.event_type.value, event.version, handler_id, attempts, error,
        )
        return entry

    def remove(self, entry_id: str) -> DeadLetterEntry | None:
        return self._entries.pop(entry_id, None)

    async def reprocess(self, entry_id: str, handler: EventHandler) -> bool:
        """Make one manual delivery attempt.

        Returns ``True`` (and drops the entry) on success, ``False`` when the
        handler failed again.

        Raises
        ------
        ValidationError
            Unknown *entry_id*.
        DeadLetterExhausted
            The entry already used up its manual attempts.
        """
        entry = self._entries.get(entry_id)
        if entry is None:
            raise ValidationError(f"No dead letter {entry_id!r}")
        if entry.exhausted or entry.reprocess_count >= self._max_reprocess:
            raise DeadLetterExhausted(
                f"Dead letter {entry_id} for {entry.handler_id} reached "
                f"{self._max_reprocess} reprocess attempt(s)"
            )

        try:
            await handler(entry.event)
        except Exception as exc:
            entry.attempts += 1
            entry.reprocess_count += 1
            entry.error = str(exc)
            entry.error_type = type(exc).__name__
            if entry.reprocess_count >= self._max_reprocess:
                entry.next_retry_at = None
                logger.error(
                    "Dead letter %s for %s stopped retrying after %d reprocess attempt(s)",
                    entry_id, entry.handler_id, entry.reprocess_count,
                )
            else:
                entry.next_retry_at = self._next_retry(entry.reprocess_count + 1)
                logger.warning(
                    "Reprocess of dead letter %s for %s failed: %s",
                    entry_id, entry.handler_id, exc,
                )
            return False

        self._entries.pop(entry_id, None)
        logger.info("Dead letter %s for %s reprocessed", entry_id, entry.handler_id)
        return True

    # -- Read --------------------------------------------------------------

    def get(self, entry_id: str) -> DeadLetterEntry | None:
        return self._entries.get(entry_id)

    def by_handler(self, handler_id: str) -> list[DeadLetterEntry]:
        return [e for e in self._entries.values() if e.handler_id == handler_id]

    def all(self) -> list[DeadLetterEntry]:
        return list(self._entries.values())

    def __len__(self) -> int:
        return len(self._entries)
