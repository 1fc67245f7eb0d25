"""Unit tests for the hourly analysis budget"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

from notifyq.infrastructure.analysis_budget import AnalysisBudget, hour_bucket
from notifyq.observability.telemetry import get_counter


def test_hour_bucket_is_utc():
    assert hour_bucket(datetime(2025, 1, 31, 14, 59, tzinfo=UTC)) == "2025-01-31T14"
    assert hour_bucket(datetime(2025, 1, 31, 14, 59)) == "2025-01-31T14"


def test_fresh_user_is_allowed(db, now):
    status = AnalysisBudget.check("u1", limit=3, now=now)

    assert status.is_allowed
    assert status.calls_this_hour == 0
    assert status.reason is None


def test_limit_reached(db, now):
    for _ in range(3):
        AnalysisBudget.record("u1", now=now)

    status = AnalysisBudget.check("u1", limit=3, now=now)

    assert not status.is_allowed
    assert status.calls_this_hour == 3
    assert status.reason == "Hourly analysis limit reached (3/3)"
    assert get_counter("notifications.budget.exceeded") == 1


def test_zero_limit_never_allows(db, now):
    assert not AnalysisBudget.check("u1", limit=0, now=now).is_allowed


def test_usage_resets_next_hour(db, now):
    AnalysisBudget.record("u1", now=now)

    assert not AnalysisBudget.check("u1", limit=1, now=now + timedelta(minutes=30)).is_allowed
    assert AnalysisBudget.check("u1", limit=1, now=now + timedelta(hours=1)).is_allowed


def test_users_are_independent(db, now):
    AnalysisBudget.record("u1", now=now)

    assert AnalysisBudget.check("u2", limit=1, now=now).is_allowed


def test_purge_old_usage(db, now):
    AnalysisBudget.record("u1", now=now - timedelta(hours=72))
    AnalysisBudget.record("u1", now=now)

    assert AnalysisBudget.purge_old_usage(now) == 1
    assert AnalysisBudget.check("u1", limit=5, now=now).calls_this_hour == 1
