"""
Analysis budget - hourly ceiling on model analyses per user.

Independent of the monitor's pause/debounce gating, this is the hard cap on
cost and API load: once a user has used `maxAnalysesPerHour` model calls in
the current clock hour, the engine skips the model and uses the fallback
strategy until the hour rolls over.

Usage is kept in the analysis_usage table, one row per (user, hour bucket).
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from typing import NamedTuple

from notifyq.infrastructure.database import db_transaction, get_db_connection, retry_on_db_lock
from notifyq.observability.logging import get_logger
from notifyq.observability.telemetry import counter

logger = get_logger(__name__)

# Usage rows older than this are dropped by purge_old_usage()
USAGE_RETENTION_HOURS = 48


class BudgetStatus(NamedTuple):
    """Current hourly budget status for a user."""

    calls_this_hour: int
    limit: int
    is_allowed: bool
    reason: str | None


def hour_bucket(now: datetime) -> str:
    """UTC hour bucket, e.g. '2025-01-31T14'."""
    if now.tzinfo is None:
        now = now.replace(tzinfo=UTC)
    return now.astimezone(UTC).strftime("%Y-%m-%dT%H")


class AnalysisBudget:
    @staticmethod
    def check(user_id: str, limit: int, now: datetime | None = None) -> BudgetStatus:
        """
        Check whether the user may run another model analysis this hour.

        Args:
            user_id: User to check
            limit: Max analyses per hour (0 disables the model path entirely)

        Returns:
            BudgetStatus with current usage and whether a call is allowed
        """
        bucket = hour_bucket(now or datetime.now(UTC))

        with get_db_connection() as conn:
            row = conn.execute(
                "SELECT call_count FROM analysis_usage WHERE user_id = ? AND hour_bucket = ?",
                (user_id, bucket),
            ).fetchone()
        calls = row["call_count"] if row else 0

        if calls >= limit:
            counter("notifications.budget.exceeded")
            return BudgetStatus(
                calls_this_hour=calls,
                limit=limit,
                is_allowed=False,
                reason=f"Hourly analysis limit reached ({calls}/{limit})",
            )

        return BudgetStatus(calls_this_hour=calls, limit=limit, is_allowed=True, reason=None)

    @staticmethod
    @retry_on_db_lock()
    def record(user_id: str, now: datetime | None = None) -> None:
        """Record one model analysis attempt for the current hour."""
        bucket = hour_bucket(now or datetime.now(UTC))

        with db_transaction() as conn:
            conn.execute(
                """
                INSERT INTO analysis_usage (user_id, hour_bucket, call_count)
                VALUES (?, ?, 1)
                ON CONFLICT(user_id, hour_bucket)
                DO UPDATE SET call_count = call_count + 1
                """,
                (user_id, bucket),
            )

        counter("notifications.budget.recorded")
        logger.debug("Recorded analysis: user=%s, bucket=%s", user_id, bucket)

    @staticmethod
    @retry_on_db_lock()
    def purge_old_usage(now: datetime | None = None) -> int:
        cutoff = hour_bucket((now or datetime.now(UTC)) - timedelta(hours=USAGE_RETENTION_HOURS))
        with db_transaction() as conn:
            cursor = conn.execute("DELETE FROM analysis_usage WHERE hour_bucket < ?", (cutoff,))
            return cursor.rowcount
