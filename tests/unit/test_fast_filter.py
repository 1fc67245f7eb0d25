"""Unit tests for the fast heuristic pre-filter"""

from __future__ import annotations

from datetime import UTC, datetime

import pytest

from notifyq.notifications.fast_filter import HeuristicVerdict, apply_fast_heuristics
from notifyq.notifications.models import ChatMessage, Priority


def msg(text: str, sender: str = "Alice") -> ChatMessage:
    return ChatMessage(
        id="m1",
        conversation_id="c1",
        sender_id="u_x",
        sender_name=sender,
        text=text,
        timestamp=datetime(2025, 3, 4, 18, 0, tzinfo=UTC),
    )


def classify(text: str, sender: str = "Alice", keywords=()):
    return apply_fast_heuristics(msg(text, sender), user_name="Bob", priority_keywords=keywords)


@pytest.mark.parametrize(
    ("text", "priority"),
    [
        ("@bob see above", Priority.HIGH),
        ("Thanks Bob, that works", Priority.HIGH),
        ("production is down", Priority.HIGH),
        ("can you send the slides?", Priority.MEDIUM),
    ],
)
def test_definitely_notify(text, priority):
    result = classify(text)

    assert result.verdict is HeuristicVerdict.DEFINITELY_NOTIFY
    assert result.priority is priority
    assert result.is_decisive


def test_modal_without_question_mark_needs_model():
    assert classify("can you imagine that game last night").verdict is HeuristicVerdict.NEED_LLM


def test_priority_keyword_is_word_bounded():
    assert classify("the launchpad moved", keywords=["launch"]).verdict is HeuristicVerdict.NEED_LLM

    result = classify("the launch moved to friday", keywords=["launch"])
    assert result.verdict is HeuristicVerdict.DEFINITELY_NOTIFY
    assert result.priority is Priority.MEDIUM


@pytest.mark.parametrize(
    ("text", "sender"),
    [
        ("ok", "Alice"),
        ("sounds good", "Alice"),
        ("🎉🎉🎉🎉🎉", "Alice"),
        ("Build #42 finished successfully", "CI Bot"),
    ],
)
def test_definitely_skip(text, sender):
    result = classify(text, sender)

    assert result.verdict is HeuristicVerdict.DEFINITELY_SKIP
    assert result.priority is Priority.LOW


def test_ordinary_message_needs_model():
    result = classify("I pushed the new onboarding flow to staging")

    assert result.verdict is HeuristicVerdict.NEED_LLM
    assert not result.is_decisive
