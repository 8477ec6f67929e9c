"""Job queue between ingestion and the worker pool.

Enqueue is idempotent per event id: an event that already has a job (in any
state, dead included) is never queued twice. ``MemoryJobQueue`` is a bounded
in-process channel; ``PgJobQueue`` persists jobs in ``event_jobs`` and claims
them with ``FOR UPDATE SKIP LOCKED`` so several workers can share it.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Any, Protocol

from psycopg.rows import dict_row
from psycopg_pool import AsyncConnectionPool

from .models import utc_now
from .store import Store

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Job:
    event_id: str
    attempt: int = 0
    max_attempts: int = 3
    id: int | None = None
    last_error: str | None = None


class JobQueue(Protocol):
    async def enqueue(self, event_id: str) -> bool: ...
    async def claim(self, timeout: float) -> Job | None: ...
    async def complete(self, job: Job) -> None: ...
    async def retry(self, job: Job, error: str, delay: float) -> None: ...
    async def dead_letter(self, job: Job, error: str) -> None: ...
    async def dead_letters(self, limit: int = 50) -> list[Job]: ...
    async def depth(self) -> int: ...
    async def release_stale(self, older_than: timedelta) -> int: ...


class MemoryJobQueue:
    def __init__(self, maxsize: int = 1000, max_attempts: int = 3) -> None:
        self.max_attempts = max_attempts
        self._queue: asyncio.Queue[Job] = asyncio.Queue(maxsize=maxsize)
        self._known: set[str] = set()
        self._dead: list[Job] = []
        self._delayed: set[asyncio.Task[None]] = set()

    async def enqueue(self, event_id: str) -> bool:
        if event_id in self._known:
            return False
        self._known.add(event_id)
        try:
            await self._queue.put(Job(event_id=event_id, max_attempts=self.max_attempts))
        except BaseException:
            self._known.discard(event_id)
            raise
        return True

    async def claim(self, timeout: float) -> Job | None:
        try:
            job = await asyncio.wait_for(self._queue.get(), timeout=timeout)
        except TimeoutError:
            return None
        self._queue.task_done()
        return replace(job, attempt=job.attempt + 1)

    async def complete(self, job: Job) -> None:
        return None

    async def retry(self, job: Job, error: str, delay: float) -> None:
        task = asyncio.create_task(self._put_later(replace(job, last_error=error), delay))
        self._delayed.add(task)
        task.add_done_callback(self._delayed.discard)

    async def _put_later(self, job: Job, delay: float) -> None:
        await asyncio.sleep(delay)
        await self._queue.put(job)

    async def dead_letter(self, job: Job, error: str) -> None:
        self._dead.append(replace(job, last_error=error))

    async def dead_letters(self, limit: int = 50) -> list[Job]:
        return list(reversed(self._dead))[:limit]

    async def depth(self) -> int:
        return self._queue.qsize() + len(self._delayed)

    async def release_stale(self, older_than: timedelta) -> int:
        # Claimed jobs die with the process that holds them.
        return 0

    async def close(self) -> None:
        for task in list(self._delayed):
            task.cancel()
        await asyncio.gather(*self._delayed, return_exceptions=True)


class PgJobQueue:
    def __init__(self, pool: AsyncConnectionPool, max_attempts: int = 3, poll_interval: float = 5.0) -> None:
        self.pool = pool
        self.max_attempts = max_attempts
        self.poll_interval = poll_interval

    async def enqueue(self, event_id: str) -> bool:
        async with self.pool.connection() as conn:
            cur = await conn.execute(
                """
                INSERT INTO event_jobs (event_id, max_attempts)
                VALUES (%s, %s)
                ON CONFLICT (event_id) DO NOTHING
                """,
                (event_id, self.max_attempts),
            )
            return cur.rowcount == 1

    async def _claim_one(self) -> dict[str, Any] | None:
        async with self.pool.connection() as conn:
            async with conn.cursor(row_factory=dict_row) as cur:
                await cur.execute(
                    """
                    UPDATE event_jobs
                    SET status = 'processing', started_at = NOW(), attempt = attempt + 1
                    WHERE id = (
                        SELECT id FROM event_jobs
                        WHERE status = 'pending' AND scheduled_for <= NOW()
                        ORDER BY scheduled_for, id
                        LIMIT 1
                        FOR UPDATE SKIP LOCKED
                    )
                    RETURNING id, event_id, attempt, max_attempts, error_message
                    """
                )
                return await cur.fetchone()

    async def claim(self, timeout: float) -> Job | None:
        row = await self._claim_one()
        if row is None:
            await asyncio.sleep(min(timeout, self.poll_interval))
            return None
        return Job(
            event_id=row["event_id"],
            attempt=row["attempt"],
            max_attempts=row["max_attempts"],
            id=row["id"],
            last_error=row["error_message"],
        )

    async def complete(self, job: Job) -> None:
        async with self.pool.connection() as conn:
            await conn.execute(
                "UPDATE event_jobs SET status = 'completed', completed_at = NOW() WHERE id = %s",
                (job.id,),
            )

    async def retry(self, job: Job, error: str, delay: float) -> None:
        async with self.pool.connection() as conn:
            await conn.execute(
                """
                UPDATE event_jobs
                SET status = 'pending',
                    error_message = %s,
                    scheduled_for = NOW() + make_interval(secs => %s)
                WHERE id = %s
                """,
                (error, float(delay), job.id),
            )

    async def dead_letter(self, job: Job, error: str) -> None:
        async with self.pool.connection() as conn:
            await conn.execute(
                """
                UPDATE event_jobs
                SET status = 'dead', error_message = %s, completed_at = NOW()
                WHERE id = %s
                """,
                (error, job.id),
            )

    async def dead_letters(self, limit: int = 50) -> list[Job]:
        async with self.pool.connection() as conn:
            async with conn.cursor(row_factory=dict_row) as cur:
                await cur.execute(
                    """
                    SELECT id, event_id, attempt, max_attempts, error_message
                    FROM event_jobs WHERE status = 'dead'
                    ORDER BY completed_at DESC NULLS LAST LIMIT %s
                    """,
                    (limit,),
                )
                rows = await cur.fetchall()
        return [
            Job(
                event_id=row["event_id"],
                attempt=row["attempt"],
                max_attempts=row["max_attempts"],
                id=row["id"],
                last_error=row["error_message"],
            )
            for row in rows
        ]

    async def depth(self) -> int:
        async with self.pool.connection() as conn:
            cur = await conn.execute("SELECT COUNT(*) FROM event_jobs WHERE status = 'pending'")
            row = await cur.fetchone()
        return int(row[0]) if row else 0

    async def release_stale(self, older_than: timedelta) -> int:
        """Recover jobs stuck in ``processing`` after their worker died.

        A job with attempts left goes back to ``pending``; one that used its
        budget is marked ``dead``. Returns how many jobs were touched.
        """
        async with self.pool.connection() as conn:
            cur = await conn.execute(
                """
                UPDATE event_jobs
                SET status = CASE WHEN attempt >= max_attempts THEN 'dead' ELSE 'pending' END,
                    error_message = COALESCE(error_message, 'worker lost while processing'),
                    scheduled_for = NOW(),
                    completed_at = CASE WHEN attempt >= max_attempts THEN NOW() ELSE completed_at END
                WHERE status = 'processing'
                  AND started_at < NOW() - make_interval(secs => %s)
                """,
                (older_than.total_seconds(),),
            )
            released = cur.rowcount
        if released:
            logger.warning("Released %d stale processing jobs", released)
        return released

    async def close(self) -> None:
        return None


async def enqueue_with_retry(
    queue: JobQueue, event_id: str, attempts: int = 3, base_delay: float = 0.1
) -> bool:
    """Enqueue, retrying transient failures with exponential backoff.

    Returns False only when every attempt raised; the reconciliation sweep
    picks such events up later.
    """
    for attempt in range(1, attempts + 1):
        try:
            await queue.enqueue(event_id)
            return True
        except Exception as exc:
            if attempt == attempts:
                logger.error(
                    "Enqueue failed for event %s after %d attempts: %s",
                    event_id,
                    attempts,
                    exc,
                    extra={"plo_event_id": event_id, "plo_error_kind": "transport_failure"},
                )
                return False
            delay = base_delay * 2 ** (attempt - 1)
            logger.warning("Enqueue of %s failed (%s); retrying in %.2fs", event_id, exc, delay)
            await asyncio.sleep(delay)
    return False


async def reconcile_unqueued_events(
    store: Store,
    queue: JobQueue,
    older_than: timedelta,
    now: datetime | None = None,
    stale_after: timedelta | None = None,
) -> int:
    """Re-enqueue unprocessed events older than ``older_than``.

    Events that already own a job are skipped by the idempotent enqueue, so
    dead-lettered events stay dead. With ``stale_after``, jobs claimed longer
    ago than that and never finished are released first.
    """
    if stale_after is not None:
        await queue.release_stale(stale_after)
    cutoff = (now or utc_now()) - older_than
    requeued = 0
    for event_id in await store.list_unprocessed_event_ids(cutoff):
        if await queue.enqueue(event_id):
            requeued += 1
    if requeued:
        logger.warning("Reconciliation re-enqueued %d events", requeued)
    return requeued
