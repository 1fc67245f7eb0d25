"""Unit tests for feedback storage and analytics"""

from __future__ import annotations

from datetime import timedelta

import pytest

from notifyq.infrastructure.database import get_db_connection
from notifyq.notifications.decision_log import DecisionLogRepository
from notifyq.notifications.errors import (
    AuthorizationError,
    ConversationNotFoundError,
    FeedbackValidationError,
)
from notifyq.notifications.feedback import FeedbackStore, feedback_id
from notifyq.notifications.models import DecisionSource, FeedbackValue, NotificationDecision, Priority
from notifyq.observability.telemetry import get_counter

NOTIFIED = {
    "shouldNotify": True,
    "reason": "Looks urgent",
    "notificationText": "Alice: lunch?",
    "priority": "high",
}


def log_decision(now, message_ids=("m1",), should_notify=True, reason="Direct question"):
    decision = NotificationDecision(
        conversation_id="c1",
        message_ids=list(message_ids),
        should_notify=should_notify,
        reason=reason,
        notification_text="Alice: are you around?",
        priority=Priority.MEDIUM,
        source=DecisionSource.MODEL,
        timestamp=now,
    )
    return DecisionLogRepository.record("u_bob", decision)


def test_submit_and_get(chat, now):
    record = FeedbackStore.submit("u_bob", "c1", "m1", "helpful", decision=NOTIFIED, now=now)

    assert record.id == "u_bob_c1_m1" == feedback_id("u_bob", "c1", "m1")
    assert record.feedback is FeedbackValue.HELPFUL
    assert FeedbackStore.get(record.id) == record
    assert get_counter("notifications.feedback.recorded") == 1


def test_resubmission_overwrites(chat, now):
    FeedbackStore.submit("u_bob", "c1", "m1", "helpful", decision=NOTIFIED, now=now)
    FeedbackStore.submit("u_bob", "c1", "m1", "not_helpful", decision=NOTIFIED, now=now)

    with get_db_connection() as conn:
        rows = conn.execute("SELECT feedback FROM notification_feedback").fetchall()
    assert [r["feedback"] for r in rows] == ["not_helpful"]


def test_snapshot_defaults_to_logged_decision(chat, now):
    row_id = log_decision(now, message_ids=("m0", "m1"))

    record = FeedbackStore.submit("u_bob", "c1", "m1", FeedbackValue.NOT_HELPFUL, now=now)

    assert record.decision["reason"] == "Direct question"
    assert record.decision["shouldNotify"] is True
    entry = DecisionLogRepository.latest_for_message("u_bob", "c1", "m1")
    assert entry["id"] == row_id
    assert entry["userFeedback"] == "not_helpful"


def test_without_logged_decision_snapshot_is_empty(chat, now):
    assert FeedbackStore.submit("u_bob", "c1", "m9", "helpful", now=now).decision is None


@pytest.mark.parametrize(
    ("args", "kwargs"),
    [
        (("u_bob", "c1", "m1", "meh"), {}),
        (("u_bob", "", "m1", "helpful"), {}),
        (("u_bob", "c1", "  ", "helpful"), {}),
        (("u_bob", "c1", "m1", "helpful"), {"decision": "not an object"}),
    ],
)
def test_validation_errors(chat, args, kwargs):
    with pytest.raises(FeedbackValidationError):
        FeedbackStore.submit(*args, **kwargs)


def test_unknown_conversation(chat):
    with pytest.raises(ConversationNotFoundError):
        FeedbackStore.submit("u_bob", "nope", "m1", "helpful")


def test_non_participant(chat):
    with pytest.raises(AuthorizationError):
        FeedbackStore.submit("u_carol", "c1", "m1", "helpful")


def test_analytics(chat, now):
    FeedbackStore.submit("u_bob", "c1", "m1", "helpful", decision=NOTIFIED, now=now)
    FeedbackStore.submit("u_bob", "c1", "m2", "not_helpful", decision=NOTIFIED, now=now)
    FeedbackStore.submit("u_bob", "c1", "m3", "not_helpful", decision=NOTIFIED, now=now)
    FeedbackStore.submit(
        "u_bob", "c1", "m4", "not_helpful", decision={**NOTIFIED, "shouldNotify": False}, now=now
    )
    # Outside the window
    FeedbackStore.submit("u_bob", "c1", "m5", "helpful", decision=NOTIFIED, now=now - timedelta(days=40))

    report = FeedbackStore.analytics("u_bob", days=30, now=now)

    assert report["totalNotifications"] == 4
    assert report["helpfulCount"] == 1
    assert report["notHelpfulCount"] == 3
    assert report["accuracy"] == 25.0
    assert report["commonFalsePositives"] == [{"reason": "Looks urgent", "count": 2}]


def test_analytics_without_feedback(chat, now):
    report = FeedbackStore.analytics("u_bob", now=now)

    assert report["totalNotifications"] == 0
    assert report["accuracy"] == 0.0
    assert report["commonFalsePositives"] == []
