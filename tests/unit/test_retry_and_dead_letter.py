"""Tests for RetryPolicy and DeadLetterQueue.

Covers:
- Exponential delay, cap, jitter bounds, attempt budget.
- Dead-letter add / reprocess success removes the entry.
- Reprocess cap: an exhausted entry stays queryable and refuses retries.
"""

from __future__ import annotations

import random
from datetime import timedelta

import pytest

from booking_lifecycle.core.errors import DeadLetterExhausted, ValidationError
from booking_lifecycle.infrastructure.dead_letter import DeadLetterQueue
from booking_lifecycle.infrastructure.retry import RetryPolicy


class TestRetryPolicy:
    def test_exponential(self):
        policy = RetryPolicy(base_delay=1.0, max_delay=100.0)
        assert [policy.delay(n) for n in (1, 2, 3, 4)] == [1.0, 2.0, 4.0, 8.0]

    def test_capped(self):
        policy = RetryPolicy(base_delay=1.0, max_delay=5.0)
        assert policy.delay(10) == 5.0

    def test_jitter_stays_in_band(self):
        policy = RetryPolicy(base_delay=1.0, max_delay=10.0, jitter=0.5)
        rng = random.Random(7)
        for _ in range(50):
            assert 1.0 <= policy.delay(2, rng) <= 3.0

    def test_jitter_deterministic_with_seed(self):
        policy = RetryPolicy(base_delay=1.0, jitter=0.2)
        assert policy.delay(1, random.Random(1)) == policy.delay(1, random.Random(1))

    def test_zero_base_never_jitters(self):
        assert RetryPolicy(base_delay=0.0, jitter=0.5).delay(3) == 0.0

    def test_attempt_budget(self):
        policy = RetryPolicy(max_attempts=3)
        assert policy.should_retry(1)
        assert policy.should_retry(2)
        assert not policy.should_retry(3)


class TestDeadLetterQueue:
    def _queue(self, sim_clock, max_reprocess: int = 2) -> DeadLetterQueue:
        return DeadLetterQueue(
            max_reprocess=max_reprocess,
            backoff=RetryPolicy(base_delay=60.0, max_delay=600.0),
            clock=sim_clock,
        )

    def test_add(self, sim_clock, make_created):
        queue = self._queue(sim_clock)
        event = make_created()
        entry = queue.add(event, "audit", RuntimeError("boom"), attempts=3)
        assert entry.error == "boom"
        assert entry.error_type == "RuntimeError"
        assert entry.created_at == sim_clock.now()
        assert entry.next_retry_at == sim_clock.now() + timedelta(seconds=60)
        assert queue.by_handler("audit") == [entry]
        assert queue.by_handler("other") == []
        assert len(queue) == 1

    @pytest.mark.asyncio
    async def test_reprocess_success_removes(self, sim_clock, make_created):
        queue = self._queue(sim_clock)
        entry = queue.add(make_created(), "audit", RuntimeError("boom"), attempts=3)
        seen = []

        async def handler(event):
            seen.append(event.event_id)

        assert await queue.reprocess(entry.entry_id, handler) is True
        assert seen == [entry.event.event_id]
        assert queue.get(entry.entry_id) is None

    @pytest.mark.asyncio
    async def test_reprocess_cap(self, sim_clock, make_created):
        queue = self._queue(sim_clock, max_reprocess=2)
        entry = queue.add(make_created(), "audit", RuntimeError("boom"), attempts=3)

        async def still_broken(event):
            raise KeyError("missing")

        assert await queue.reprocess(entry.entry_id, still_broken) is False
        assert entry.reprocess_count == 1
        assert entry.attempts == 4
        assert entry.error_type == "KeyError"
        assert entry.next_retry_at == sim_clock.now() + timedelta(seconds=120)

        assert await queue.reprocess(entry.entry_id, still_broken) is False
        assert entry.exhausted

        with pytest.raises(DeadLetterExhausted):
            await queue.reprocess(entry.entry_id, still_broken)
        # Still there for inspection.
        assert queue.by_handler("audit") == [entry]

    @pytest.mark.asyncio
    async def test_unknown_entry(self, sim_clock):
        queue = self._queue(sim_clock)

        async def handler(event):
            pass

        with pytest.raises(ValidationError):
            await queue.reprocess("nope", handler)

    def test_remove(self, sim_clock, make_created):
        queue = self._queue(sim_clock)
        entry = queue.add(make_created(), "audit", RuntimeError("boom"), attempts=1)
        assert queue.remove(entry.entry_id) is entry
        assert queue.remove(entry.entry_id) is None
        assert queue.all() == []
