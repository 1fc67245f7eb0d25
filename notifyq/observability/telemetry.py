"""
In-process telemetry helpers for the notification pipeline.

Nothing is exported to an external metrics backend; counters and latencies
live in memory and every event is written as a structured log line, so tests
can assert instrumentation and operators can grep for it.
"""

from __future__ import annotations

import contextlib
import logging
import time
from collections.abc import Iterator
from threading import Lock
from typing import Any

logger = logging.getLogger("notifyq.telemetry")

_LOCK = Lock()
_COUNTERS: dict[str, int] = {}
_LATENCIES: dict[str, list[float]] = {}

_SEVERITY_LEVELS = {
    "info": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
    "critical": logging.CRITICAL,
}


def log_event(event_name: str, **fields: Any) -> None:
    """
    Structured log event. Caller must keep message text out of fields.

    Side Effects:
        - Writes to logger (info level, or error/critical when severity is set)
    """
    level = _SEVERITY_LEVELS.get(fields.get("severity", "info"), logging.INFO)
    logger.log(level, "event=%s %s", event_name, fields)


def counter(name: str, increment: int = 1) -> int:
    """
    Increment an in-memory counter and emit a debug log.

    Side Effects:
        - Modifies _COUNTERS dict (in-memory state)
        - Writes to logger (debug level)
    """
    with _LOCK:
        value = _COUNTERS.get(name, 0) + increment
        _COUNTERS[name] = value
    logger.debug("counter=%s value=%s", name, value)
    return value


def get_counter(name: str) -> int:
    """Current value of a counter (0 if never incremented)."""
    return _COUNTERS.get(name, 0)


@contextlib.contextmanager
def time_block(metric_name: str) -> Iterator[None]:
    """
    Time a code block and record the latency in seconds under `metric_name`.

    Side Effects:
        - Appends to _LATENCIES dict (in-memory state)
        - Writes to logger (debug level) with timing
    """
    start = time.perf_counter()
    try:
        yield
    finally:
        elapsed = time.perf_counter() - start
        with _LOCK:
            _LATENCIES.setdefault(metric_name, []).append(elapsed)
        logger.debug("timing=%s seconds=%.6f", metric_name, elapsed)


def get_latency_stats(metric_name: str) -> dict[str, float]:
    """Latency summary (count, avg, p50, p95, max) for a metric."""
    samples = sorted(_LATENCIES.get(metric_name, []))
    if not samples:
        return {"count": 0, "avg": 0.0, "p50": 0.0, "p95": 0.0, "max": 0.0}

    count = len(samples)
    return {
        "count": count,
        "avg": sum(samples) / count,
        "p50": samples[int(count * 0.50)],
        "p95": samples[min(int(count * 0.95), count - 1)],
        "max": samples[-1],
    }


def reset_telemetry() -> None:
    """
    Clear all counters and latencies (useful for tests).

    Side Effects:
        - Clears _COUNTERS and _LATENCIES (in-memory state)
    """
    with _LOCK:
        _COUNTERS.clear()
        _LATENCIES.clear()
