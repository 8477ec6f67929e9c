"""Scheduled triggers: hourly and daily rule sweeps, escalation, reconciliation.

Each trigger loops on its own cadence. A failing run is logged and the loop
carries on with the next slot.
"""

from __future__ import annotations

import asyncio
import logging
import os
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta, timezone
from typing import Any

from .models import utc_now
from .notifications import NotificationService
from .queue import JobQueue, reconcile_unqueued_events
from .rules.engine import RuleEngine
from .store import Store

logger = logging.getLogger(__name__)


def _env_int(name: str, default: int, minimum: int = 1, maximum: int | None = None) -> int:
    raw = os.environ.get(name, str(default))
    try:
        value = max(minimum, int(raw))
    except ValueError:
        return default
    return min(value, maximum) if maximum is not None else value


def hourly_rules_interval_minutes() -> int:
    return _env_int("PLO_HOURLY_RULES_INTERVAL_MINUTES", 60)


def daily_rules_hour() -> int:
    return _env_int("PLO_DAILY_RULES_HOUR", 9, minimum=0, maximum=23)


def escalation_interval_minutes() -> int:
    return _env_int("PLO_ESCALATION_INTERVAL_MINUTES", 30)


def reconcile_interval_minutes() -> int:
    return _env_int("PLO_RECONCILE_INTERVAL_MINUTES", 10)


def reconcile_grace_minutes() -> int:
    return _env_int("PLO_RECONCILE_GRACE_MINUTES", 5)


def stale_job_minutes() -> int:
    return _env_int("PLO_STALE_JOB_MINUTES", 15)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def next_daily_run(now: datetime, hour: int) -> datetime:
    """Next ``hour:00`` UTC strictly after ``now``."""
    if not 0 <= hour <= 23:
        raise ValueError("hour must be within 0..23")
    now_utc = _as_utc(now)
    candidate = now_utc.replace(hour=hour, minute=0, second=0, microsecond=0)
    if candidate <= now_utc:
        candidate += timedelta(days=1)
    return candidate


def every(minutes: int) -> Callable[[datetime], float]:
    if minutes <= 0:
        raise ValueError("minutes must be positive")
    return lambda now: minutes * 60.0


def daily_at(hour: int) -> Callable[[datetime], float]:
    return lambda now: (next_daily_run(now, hour) - _as_utc(now)).total_seconds()


class PeriodicTrigger:
    def __init__(
        self,
        name: str,
        action: Callable[[], Awaitable[Any]],
        next_delay: Callable[[datetime], float],
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.name = name
        self.action = action
        self.next_delay = next_delay
        self.clock = clock
        self.runs = 0
        self.failures = 0

    async def run_once(self) -> Any:
        try:
            result = await self.action()
        except Exception:
            self.failures += 1
            logger.exception("Scheduled trigger %s failed", self.name, extra={"plo_trigger": self.name})
            return None
        self.runs += 1
        return result

    async def run(self, shutdown: asyncio.Event) -> None:
        while not shutdown.is_set():
            delay = self.next_delay(self.clock())
            logger.debug("Trigger %s sleeping %.0fs", self.name, delay)
            try:
                await asyncio.wait_for(shutdown.wait(), timeout=delay)
                break
            except TimeoutError:
                pass
            await self.run_once()
        logger.info("Trigger %s stopped", self.name)


def build_triggers(
    store: Store,
    queue: JobQueue,
    engine: RuleEngine,
    notifications: NotificationService,
    clock: Callable[[], datetime] = utc_now,
) -> list[PeriodicTrigger]:
    grace = timedelta(minutes=reconcile_grace_minutes())
    stale = timedelta(minutes=stale_job_minutes())

    async def reconcile() -> int:
        return await reconcile_unqueued_events(store, queue, grace, now=clock(), stale_after=stale)

    return [
        PeriodicTrigger(
            "hourly_rules",
            lambda: engine.evaluate_scheduled("hourly"),
            every(hourly_rules_interval_minutes()),
            clock,
        ),
        PeriodicTrigger(
            "daily_rules",
            lambda: engine.evaluate_scheduled("daily"),
            daily_at(daily_rules_hour()),
            clock,
        ),
        PeriodicTrigger(
            "escalation",
            lambda: notifications.run_escalation_check(clock()),
            every(escalation_interval_minutes()),
            clock,
        ),
        PeriodicTrigger("reconcile", reconcile, every(reconcile_interval_minutes()), clock),
    ]
