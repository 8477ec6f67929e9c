"""In-memory job queue, enqueue retries and reconciliation."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from fakes import FlakyQueue, MemoryStore
from plo_workers.models import Event
from plo_workers.queue import Job, MemoryJobQueue, enqueue_with_retry, reconcile_unqueued_events

NOW = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


class TestMemoryJobQueue:
    @pytest.mark.asyncio
    async def test_claim_increments_attempt(self):
        queue = MemoryJobQueue(max_attempts=5)
        assert await queue.enqueue("e1")
        job = await queue.claim(timeout=0.1)
        assert job == Job(event_id="e1", attempt=1, max_attempts=5)

    @pytest.mark.asyncio
    async def test_enqueue_is_idempotent(self):
        queue = MemoryJobQueue()
        assert await queue.enqueue("e1")
        assert not await queue.enqueue("e1")
        assert await queue.depth() == 1

    @pytest.mark.asyncio
    async def test_claim_times_out_empty(self):
        assert await MemoryJobQueue().claim(timeout=0.01) is None

    @pytest.mark.asyncio
    async def test_fifo(self):
        queue = MemoryJobQueue()
        for event_id in ("e1", "e2", "e3"):
            await queue.enqueue(event_id)
        claimed = [(await queue.claim(timeout=0.1)).event_id for _ in range(3)]
        assert claimed == ["e1", "e2", "e3"]

    @pytest.mark.asyncio
    async def test_retry_requeues_after_delay(self):
        queue = MemoryJobQueue()
        await queue.enqueue("e1")
        job = await queue.claim(timeout=0.1)
        await queue.retry(job, "boom", delay=0.01)
        assert await queue.depth() == 1
        again = await queue.claim(timeout=1.0)
        assert again.attempt == 2
        assert again.last_error == "boom"

    @pytest.mark.asyncio
    async def test_dead_jobs_stay_dead(self):
        queue = MemoryJobQueue()
        await queue.enqueue("e1")
        job = await queue.claim(timeout=0.1)
        await queue.dead_letter(job, "gave up")
        assert [j.event_id for j in await queue.dead_letters()] == ["e1"]
        assert not await queue.enqueue("e1")

    @pytest.mark.asyncio
    async def test_close_cancels_pending_retries(self):
        queue = MemoryJobQueue()
        await queue.enqueue("e1")
        await queue.retry(await queue.claim(timeout=0.1), "boom", delay=60)
        await queue.close()
        await asyncio.sleep(0)
        assert await queue.depth() == 0


class TestEnqueueWithRetry:
    @pytest.mark.asyncio
    async def test_recovers_from_transient_failures(self):
        queue = FlakyQueue(failures=2)
        assert await enqueue_with_retry(queue, "e1", attempts=3, base_delay=0)
        assert queue.calls == 3
        assert await queue.depth() == 1

    @pytest.mark.asyncio
    async def test_gives_up_after_all_attempts(self):
        queue = FlakyQueue(failures=5)
        assert not await enqueue_with_retry(queue, "e1", attempts=3, base_delay=0)
        assert queue.calls == 3


class TestReconcile:
    @pytest.fixture
    async def store(self):
        store = MemoryStore()
        for ref, age, processed in (("old", 30, False), ("fresh", 1, False), ("done", 30, True)):
            created = NOW - timedelta(minutes=age)
            await store.insert_event(
                Event(
                    id=ref,
                    project_id="p1",
                    source="erp",
                    source_ref=ref,
                    event_type="note.added",
                    occurred_at=created,
                    created_at=created,
                    processed_at=created if processed else None,
                )
            )
        return store

    @pytest.mark.asyncio
    async def test_requeues_stale_unprocessed_events(self, store):
        queue = MemoryJobQueue()
        assert await reconcile_unqueued_events(store, queue, timedelta(minutes=5), now=NOW) == 1
        assert (await queue.claim(timeout=0.1)).event_id == "old"

    @pytest.mark.asyncio
    async def test_events_with_jobs_are_left_alone(self, store):
        queue = MemoryJobQueue()
        await queue.enqueue("old")
        assert await reconcile_unqueued_events(store, queue, timedelta(minutes=5), now=NOW) == 0

    @pytest.mark.asyncio
    async def test_stale_jobs_are_released_before_requeueing(self, store):
        released = []

        class StaleAwareQueue(MemoryJobQueue):
            async def release_stale(self, older_than):
                released.append(older_than)
                return 1

        queue = StaleAwareQueue()
        await reconcile_unqueued_events(
            store, queue, timedelta(minutes=5), now=NOW, stale_after=timedelta(minutes=15)
        )
        assert released == [timedelta(minutes=15)]
        assert await MemoryJobQueue().release_stale(timedelta(minutes=15)) == 0
