"""Unit tests for the decision engine pipeline (model stubbed, sqlite in tmp_path)"""

from __future__ import annotations

import sqlite3
from datetime import timedelta

import pytest
from google.api_core.exceptions import DeadlineExceeded, PermissionDenied

from notifyq.infrastructure.analysis_budget import AnalysisBudget
from notifyq.infrastructure.database import get_db_connection
from notifyq.notifications.analyzer import NotificationAnalyzer
from notifyq.notifications.context import ContextAssembler
from notifyq.notifications.engine import DecisionEngine
from notifyq.notifications.errors import AuthorizationError, ConversationNotFoundError
from notifyq.notifications.models import DecisionSource, FallbackStrategy, Priority, QuietHours, UserPreferences
from notifyq.notifications.preferences import NotificationPreferencesRepository
from notifyq.notifications.stores import ActivityStore, ConversationStore, MessageStore
from notifyq.observability.telemetry import get_counter

NEUTRAL_TEXT = "I pushed the new onboarding flow to staging"


def make_engine(model, **kwargs) -> DecisionEngine:
    kwargs.setdefault("use_llm", True)
    kwargs.setdefault("use_fast_filter", False)
    return DecisionEngine(
        analyzer=NotificationAnalyzer(model=model, timeout_seconds=2),
        context_assembler=ContextAssembler(),
        **kwargs,
    )


def logged_decisions() -> list:
    with get_db_connection() as conn:
        return conn.execute("SELECT * FROM notification_decisions ORDER BY id").fetchall()


def assert_structurally_valid(decision):
    payload = decision.to_response()
    assert set(payload) >= {"shouldNotify", "reason", "notificationText", "priority"}
    assert isinstance(payload["shouldNotify"], bool)
    assert payload["reason"]
    assert len(payload["notificationText"]) <= 100
    assert payload["priority"] in {"high", "medium", "low"}


# ============================================================================
# Model path and cache
# ============================================================================


def test_model_decision(make_message, stub_model, now):
    make_message("m1", NEUTRAL_TEXT, at=now - timedelta(minutes=2))

    decision = make_engine(stub_model).decide("u_bob", "c1", now=now)

    assert decision.source is DecisionSource.MODEL
    assert decision.should_notify is True
    assert decision.message_ids == ["m1"]
    assert len(stub_model.calls) == 1
    assert get_counter("notifications.decision.model") == 1

    rows = logged_decisions()
    assert len(rows) == 1
    assert rows[0]["source"] == "model"
    assert rows[0]["message_count"] == 1
    assert rows[0]["user_feedback"] is None


def test_same_unread_set_hits_cache_without_model_call(make_message, stub_model, now):
    make_message("m1", NEUTRAL_TEXT, at=now - timedelta(minutes=2))
    engine = make_engine(stub_model)

    first = engine.decide("u_bob", "c1", now=now)
    second = engine.decide("u_bob", "c1", now=now + timedelta(minutes=1))

    assert len(stub_model.calls) == 1
    assert second.source is DecisionSource.CACHED
    assert second.to_response() | {"source": "model"} == first.to_response()
    assert get_counter("notifications.cache.hit") == 1


def test_new_message_changes_cache_key(make_message, stub_model, now):
    make_message("m1", NEUTRAL_TEXT, at=now - timedelta(minutes=2))
    engine = make_engine(stub_model)
    engine.decide("u_bob", "c1", now=now)

    make_message("m2", "and the release notes are drafted", at=now - timedelta(minutes=1))
    decision = engine.decide("u_bob", "c1", now=now)

    assert decision.source is DecisionSource.MODEL
    assert len(stub_model.calls) == 2


def test_group_recipients_do_not_share_cached_decisions(make_message, make_model, now):
    ConversationStore.create("g1", ["u_alice", "u_bob", "u_carol"], created_at=now - timedelta(days=1))
    make_message(
        "g1m1",
        "@Alice can you look at this?",
        conversation_id="g1",
        sender_id="u_carol",
        sender_name="Carol",
        at=now - timedelta(minutes=1),
    )
    engine = make_engine(make_model(error=DeadlineExceeded("deadline exceeded")))

    for_alice = engine.decide("u_alice", "g1", now=now)
    for_bob = engine.decide("u_bob", "g1", now=now)

    assert for_alice.priority is Priority.HIGH
    assert for_alice.reason.startswith("User directly mentioned")
    assert for_bob.source is DecisionSource.FALLBACK
    assert for_bob.priority is Priority.MEDIUM
    assert "mentioned" not in for_bob.reason

    assert engine.decide("u_bob", "g1", now=now).source is DecisionSource.CACHED


# ============================================================================
# Failures always degrade to fallback
# ============================================================================


def test_timeout_falls_back(make_message, make_model, now):
    make_message("m1", "@bob " + NEUTRAL_TEXT, at=now - timedelta(minutes=2))
    model = make_model(error=DeadlineExceeded("deadline exceeded"))

    decision = make_engine(model).decide("u_bob", "c1", now=now)

    assert decision.source is DecisionSource.FALLBACK
    assert decision.should_notify is True
    assert decision.priority is Priority.HIGH
    assert_structurally_valid(decision)
    assert get_counter("notifications.decision.fallback") == 1


def test_slow_model_falls_back(make_message, make_model, now):
    make_message("m1", NEUTRAL_TEXT, at=now - timedelta(minutes=2))
    engine = DecisionEngine(
        analyzer=NotificationAnalyzer(model=make_model({"shouldNotify": True}, delay=0.5), timeout_seconds=0.05),
        context_assembler=ContextAssembler(),
        use_llm=True,
        use_fast_filter=False,
    )

    decision = engine.decide("u_bob", "c1", now=now)

    assert decision.source is DecisionSource.FALLBACK
    assert_structurally_valid(decision)


@pytest.mark.parametrize("raw", ["{not json", '{"shouldNotify": true}', ""])
def test_invalid_model_output_falls_back(make_message, make_model, now, raw):
    make_message("m1", NEUTRAL_TEXT, at=now - timedelta(minutes=2))

    decision = make_engine(make_model(raw)).decide("u_bob", "c1", now=now)

    assert decision.source is DecisionSource.FALLBACK
    assert decision.should_notify is False
    assert decision.notification_text == f"Alice: {NEUTRAL_TEXT}"
    assert_structurally_valid(decision)


def test_configuration_error_falls_back_loudly(make_message, make_model, now, caplog):
    make_message("m1", NEUTRAL_TEXT, at=now - timedelta(minutes=2))

    decision = make_engine(make_model(error=PermissionDenied("bad credentials"))).decide("u_bob", "c1", now=now)

    assert decision.source is DecisionSource.FALLBACK
    assert get_counter("notifications.llm.config_error") == 1
    assert any(r.levelname == "CRITICAL" for r in caplog.records)


def test_unexpected_error_falls_back(make_message, make_model, now):
    make_message("m1", NEUTRAL_TEXT, at=now - timedelta(minutes=2))

    decision = make_engine(make_model(error=RuntimeError("boom"))).decide("u_bob", "c1", now=now)

    assert decision.source is DecisionSource.FALLBACK


def test_fallback_strategy_applies_on_failure(make_message, make_model, now):
    make_message("m1", NEUTRAL_TEXT, at=now - timedelta(minutes=2))
    NotificationPreferencesRepository.save("u_bob", UserPreferences(fallback_strategy=FallbackStrategy.NOTIFY_ALL))

    decision = make_engine(make_model("garbage")).decide("u_bob", "c1", now=now)

    assert decision.should_notify is True
    assert decision.priority is Priority.MEDIUM


# ============================================================================
# Gating before the model
# ============================================================================


def test_unknown_conversation(chat, stub_model, now):
    with pytest.raises(ConversationNotFoundError):
        make_engine(stub_model).decide("u_bob", "nope", now=now)


def test_non_participant_is_rejected(make_message, stub_model, now):
    make_message("m1", NEUTRAL_TEXT, at=now - timedelta(minutes=2))

    with pytest.raises(AuthorizationError):
        make_engine(stub_model).decide("u_carol", "c1", now=now)
    assert stub_model.calls == []


def test_actively_viewing_never_notifies_and_is_not_cached(make_message, stub_model, now):
    make_message("m1", "@bob production is down!", at=now - timedelta(minutes=2))
    engine = make_engine(stub_model, use_fast_filter=True)

    ActivityStore.set_active_conversation("u_bob", "c1", now=now - timedelta(seconds=30))
    viewing = engine.decide("u_bob", "c1", now=now)

    assert viewing.should_notify is False
    assert viewing.reason == "User is actively viewing the conversation"
    assert viewing.source is DecisionSource.RULE

    ActivityStore.set_active_conversation("u_bob", None, now=now)
    assert engine.decide("u_bob", "c1", now=now).should_notify is True


def test_stale_heartbeat_is_not_active(make_message, stub_model, now):
    make_message("m1", NEUTRAL_TEXT, at=now - timedelta(minutes=2))
    ActivityStore.set_active_conversation("u_bob", "c1", now=now - timedelta(minutes=5))

    assert make_engine(stub_model).decide("u_bob", "c1", now=now).source is DecisionSource.MODEL


def test_unread_selection(make_message, stub_model, now):
    make_message("m_old", "from an hour ago", at=now - timedelta(hours=1))
    make_message("m_own", "my own message", sender_id="u_bob", sender_name="bob", at=now - timedelta(minutes=3))
    make_message("m_read", "already seen", at=now - timedelta(minutes=2))
    make_message("m_new", NEUTRAL_TEXT, at=now - timedelta(minutes=1))
    MessageStore.mark_read(["m_read"], "u_bob")

    decision = make_engine(stub_model).decide("u_bob", "c1", now=now)

    assert decision.message_ids == ["m_new"]


def test_no_unread_messages(chat, stub_model, now):
    decision = make_engine(stub_model).decide("u_bob", "c1", now=now)

    assert decision.should_notify is False
    assert decision.reason == "No unread messages"
    assert decision.priority is Priority.LOW
    assert stub_model.calls == []


def test_disabled_preferences(make_message, stub_model, now):
    make_message("m1", "@bob urgent!", at=now - timedelta(minutes=2))
    NotificationPreferencesRepository.save("u_bob", UserPreferences(enabled=False))

    decision = make_engine(stub_model).decide("u_bob", "c1", now=now)

    assert decision.should_notify is False
    assert decision.reason == "Notifications disabled"


def test_fast_path_skips_model(make_message, stub_model, now):
    make_message("m1", "@bob can you check the build?", at=now - timedelta(minutes=2))

    decision = make_engine(stub_model, use_fast_filter=True).decide("u_bob", "c1", now=now)

    assert decision.source is DecisionSource.FAST_PATH
    assert decision.should_notify is True
    assert decision.priority is Priority.HIGH
    assert decision.notification_text == "Alice: @bob can you check the build?"
    assert stub_model.calls == []


def test_fast_path_skip(make_message, stub_model, now):
    make_message("m1", "lol", at=now - timedelta(minutes=2))

    decision = make_engine(stub_model, use_fast_filter=True).decide("u_bob", "c1", now=now)

    assert decision.source is DecisionSource.FAST_PATH
    assert decision.should_notify is False


def test_hourly_budget_exhausted_uses_fallback(make_message, stub_model, now):
    NotificationPreferencesRepository.save("u_bob", UserPreferences(max_analyses_per_hour=1))
    engine = make_engine(stub_model)

    make_message("m1", NEUTRAL_TEXT, at=now - timedelta(minutes=3))
    assert engine.decide("u_bob", "c1", now=now).source is DecisionSource.MODEL

    make_message("m2", "second update on staging", at=now - timedelta(minutes=2))
    decision = engine.decide("u_bob", "c1", now=now)

    assert decision.source is DecisionSource.FALLBACK
    assert len(stub_model.calls) == 1


def test_budget_storage_error_falls_back(make_message, stub_model, now, monkeypatch):
    make_message("m1", NEUTRAL_TEXT, at=now - timedelta(minutes=2))

    def broken_check(*args, **kwargs):
        raise sqlite3.OperationalError("disk I/O error")

    monkeypatch.setattr(AnalysisBudget, "check", staticmethod(broken_check))

    decision = make_engine(stub_model).decide("u_bob", "c1", now=now)

    assert decision.source is DecisionSource.FALLBACK
    assert stub_model.calls == []
    assert get_counter("notifications.llm.unexpected_error") == 1


def test_llm_disabled_uses_fallback(make_message, stub_model, now):
    make_message("m1", NEUTRAL_TEXT, at=now - timedelta(minutes=2))

    decision = make_engine(stub_model, use_llm=False).decide("u_bob", "c1", now=now)

    assert decision.source is DecisionSource.FALLBACK
    assert stub_model.calls == []


# ============================================================================
# Quiet hours
# ============================================================================

ALL_DAY = QuietHours(start="00:00", end="23:59", timezone="UTC")


def test_quiet_hours_downgrade_medium(make_message, stub_model, now):
    make_message("m1", NEUTRAL_TEXT, at=now - timedelta(minutes=2))
    NotificationPreferencesRepository.save("u_bob", UserPreferences(quiet_hours=ALL_DAY))

    decision = make_engine(stub_model).decide("u_bob", "c1", now=now)

    assert decision.should_notify is False
    assert decision.priority is Priority.MEDIUM
    assert decision.reason.endswith(" (quiet hours)")


def test_quiet_hours_let_high_priority_through(make_message, make_model, now):
    make_message("m1", NEUTRAL_TEXT, at=now - timedelta(minutes=2))
    NotificationPreferencesRepository.save("u_bob", UserPreferences(quiet_hours=ALL_DAY))
    model = make_model({"shouldNotify": True, "reason": "Outage", "notificationText": "Alice: down", "priority": "high"})

    decision = make_engine(model).decide("u_bob", "c1", now=now)

    assert decision.should_notify is True
    assert not decision.reason.endswith("(quiet hours)")
