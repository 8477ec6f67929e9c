"""In-memory worker metrics.

Asyncio is single-threaded, so plain dicts are safe without locking.
"""

import time

_start_time = time.monotonic()

_metrics: dict = {
    "events_ingested": 0,
    "events_duplicate": 0,
    "events_dead_lettered": 0,
    "jobs_processed": 0,
    "jobs_failed": 0,
    "jobs_dead": 0,
    "rules_triggered": 0,
    "rule_failures": 0,
    "notifications_sent": 0,
    "notifications_deduplicated": 0,
    "transport_failures": 0,
    "escalations": 0,
    "stages": {},
}


def record_stage(stage: str, duration_ms: float, success: bool) -> None:
    """Record a single pipeline stage invocation with timing."""
    s = _metrics["stages"].setdefault(stage, {
        "invocations": 0,
        "successes": 0,
        "failures": 0,
        "total_duration_ms": 0.0,
    })
    s["invocations"] += 1
    s["total_duration_ms"] += duration_ms
    if success:
        s["successes"] += 1
    else:
        s["failures"] += 1


def incr(name: str, amount: int = 1) -> None:
    _metrics[name] += amount


def record_job_completed() -> None:
    _metrics["jobs_processed"] += 1


def record_job_failed() -> None:
    _metrics["jobs_failed"] += 1


def record_job_dead() -> None:
    _metrics["jobs_dead"] += 1


def get_metrics() -> dict:
    """Return a snapshot of current metrics."""
    snapshot = {
        key: value for key, value in _metrics.items() if key != "stages"
    }
    snapshot["uptime_seconds"] = round(time.monotonic() - _start_time, 1)
    snapshot["stages"] = {
        name: dict(stats)
        for name, stats in _metrics["stages"].items()
    }
    return snapshot
