"""Unit tests for the rule-based fallback decision"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from notifyq.notifications.fallback import fallback_decision, is_direct_question, strategy_decision
from notifyq.notifications.models import ChatMessage, DecisionSource, FallbackStrategy, Priority

T0 = datetime(2025, 3, 4, 18, 0, tzinfo=UTC)


def msg(text: str, *, message_id: str = "m1", sender: str = "Alice", at: datetime = T0) -> ChatMessage:
    return ChatMessage(
        id=message_id,
        conversation_id="c1",
        sender_id=f"u_{sender.lower()}",
        sender_name=sender,
        text=text,
        timestamp=at,
    )


def decide(messages, keywords=(), user_name="bob"):
    return fallback_decision(
        messages,
        conversation_id="c1",
        user_id="u_bob",
        user_name=user_name,
        priority_keywords=keywords,
        now=T0,
    )


def test_mention_wins_over_question():
    decision = decide([msg("@bob can you look at this?")])

    assert decision.should_notify is True
    assert decision.priority is Priority.HIGH
    assert decision.reason == "User directly mentioned (fallback heuristic)"
    assert decision.notification_text == "Alice: @bob can you look at this?"
    assert decision.source is DecisionSource.FALLBACK


def test_mention_by_user_id():
    decision = decide([msg("ping @u_bob")], user_name=None)
    assert decision.priority is Priority.HIGH


def test_priority_keyword_is_medium():
    decision = decide([msg("production is down, need urgent help")], keywords=["urgent"])

    assert decision.should_notify is True
    assert decision.priority is Priority.MEDIUM
    assert '"urgent"' in decision.reason


def test_keyword_match_is_case_insensitive_substring():
    decision = decide([msg("this is a BLOCKER for the release")], keywords=["blocker"])
    assert decision.should_notify is True
    assert decision.priority is Priority.MEDIUM


def test_casual_message_does_not_notify():
    decision = decide([msg("lol nice")])

    assert decision.should_notify is False
    assert decision.priority is Priority.LOW
    assert decision.notification_text == "Alice: lol nice"


@pytest.mark.parametrize(
    "text",
    ["Could you send the doc", "will you be there", "lunch tomorrow?", "Would you mind"],
)
def test_direct_question_patterns(text):
    assert is_direct_question(text)
    assert decide([msg(text)]).priority is Priority.MEDIUM


def test_only_newest_message_is_evaluated():
    older = msg("@bob please review", message_id="m1", at=T0 - timedelta(minutes=5))
    newest = msg("ok thanks", message_id="m2", at=T0)

    decision = decide([older, newest])

    assert decision.should_notify is False
    assert decision.notification_text == "Alice: ok thanks"
    assert decision.message_ids == ["m1", "m2"]


def test_notification_text_truncated_with_ellipsis():
    decision = decide([msg("x" * 300)])

    assert len(decision.notification_text) == 100
    assert decision.notification_text.endswith("...")


def test_empty_batch():
    decision = decide([])

    assert decision.should_notify is False
    assert decision.priority is Priority.LOW
    assert decision.reason == "No unread messages (fallback heuristic)"


def test_notify_all_strategy_forces_notification():
    decision = strategy_decision(
        FallbackStrategy.NOTIFY_ALL, [msg("lol nice")], conversation_id="c1", user_id="u_bob", now=T0
    )

    assert decision.should_notify is True
    assert decision.priority is Priority.MEDIUM
    assert decision.notification_text == "Alice: lol nice"


def test_notify_all_keeps_high_priority():
    decision = strategy_decision(
        FallbackStrategy.NOTIFY_ALL, [msg("@bob hi")], conversation_id="c1", user_id="u_bob", user_name="bob", now=T0
    )
    assert decision.priority is Priority.HIGH


def test_suppress_all_strategy_never_notifies():
    decision = strategy_decision(
        FallbackStrategy.SUPPRESS_ALL, [msg("@bob urgent!")], conversation_id="c1", user_id="u_bob", now=T0
    )

    assert decision.should_notify is False
    assert decision.priority is Priority.LOW
    assert decision.notification_text == "Alice: @bob urgent!"
