"""
Integration tests for the notification API.

Real routing, validation, sqlite storage and decision pipeline; only the
Google token check and the Vertex model are replaced.
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest
from fastapi.testclient import TestClient

from notifyq.api.app import app
from notifyq.api.middleware.user_auth import AuthenticatedUser, get_current_user
from notifyq.api.routes.notifications import get_decision_engine
from notifyq.notifications.analyzer import NotificationAnalyzer
from notifyq.notifications.context import ContextAssembler
from notifyq.notifications.engine import DecisionEngine
from notifyq.notifications.stores import MessageStore

AUTH = {"Authorization": "Bearer test-token"}


@pytest.fixture
def engine(stub_model):
    return DecisionEngine(
        analyzer=NotificationAnalyzer(model=stub_model),
        context_assembler=ContextAssembler(),
        use_llm=True,
        use_fast_filter=False,
    )


@pytest.fixture
def client(chat, engine):
    """Client authenticated as Bob."""
    app.dependency_overrides[get_current_user] = lambda: AuthenticatedUser(id="u_bob", email="bob@example.com")
    app.dependency_overrides[get_decision_engine] = lambda: engine
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def as_user(user_id: str) -> None:
    app.dependency_overrides[get_current_user] = lambda: AuthenticatedUser(id=user_id)


def post_message(message_id: str, text: str) -> None:
    # The API decides against the wall clock
    at = datetime.now(UTC) - timedelta(minutes=1)
    MessageStore.add_message(message_id, "c1", "u_alice", "Alice", text, created_at=at)


def disable_quiet_hours(client: TestClient) -> None:
    response = client.put("/api/notifications/preferences", json={"quietHours": None}, headers=AUTH)
    assert response.status_code == 200


# ============================================================================
# Health
# ============================================================================


def test_health(client):
    body = client.get("/health").json()

    assert body["status"] == "healthy"
    assert set(body["llm"]) == {"enabled", "ready", "google_cloud_project"}
    assert body["latency_seconds"]["decision"]["count"] == 0


def test_database_health(client):
    body = client.get("/health/db").json()

    assert body["status"] in {"healthy", "degraded"}
    assert "usage_percent" in body["pool"]


# ============================================================================
# Analyze
# ============================================================================


def test_analyze_returns_decision_contract(client, stub_model):
    disable_quiet_hours(client)
    post_message("m1", "I pushed the new onboarding flow to staging")

    response = client.post("/api/notifications/analyze", json={"conversationId": "c1"}, headers=AUTH)

    assert response.status_code == 200
    body = response.json()
    assert body["shouldNotify"] is True
    assert body["priority"] == "medium"
    assert body["notificationText"] == "Alice: can you review the deploy plan?"
    assert body["source"] == "model"
    assert len(stub_model.calls) == 1


def test_analyze_twice_uses_cache(client, stub_model):
    disable_quiet_hours(client)
    post_message("m1", "I pushed the new onboarding flow to staging")

    client.post("/api/notifications/analyze", json={"conversationId": "c1"}, headers=AUTH)
    second = client.post("/api/notifications/analyze", json={"conversationId": "c1"}, headers=AUTH).json()

    assert second["source"] == "cached"
    assert len(stub_model.calls) == 1


def test_analyze_model_failure_still_returns_decision(client, make_model):
    app.dependency_overrides[get_decision_engine] = lambda: DecisionEngine(
        analyzer=NotificationAnalyzer(model=make_model("not json")),
        context_assembler=ContextAssembler(),
        use_llm=True,
        use_fast_filter=False,
    )
    post_message("m1", "I pushed the new onboarding flow to staging")

    response = client.post("/api/notifications/analyze", json={"conversationId": "c1"}, headers=AUTH)

    assert response.status_code == 200
    assert response.json()["source"] == "fallback"


def test_analyze_unknown_conversation(client):
    response = client.post("/api/notifications/analyze", json={"conversationId": "nope"}, headers=AUTH)

    assert response.status_code == 404


def test_analyze_non_participant(client):
    as_user("u_carol")

    response = client.post("/api/notifications/analyze", json={"conversationId": "c1"}, headers=AUTH)

    assert response.status_code == 403


def test_analyze_validation_error_is_sanitized(client):
    response = client.post("/api/notifications/analyze", json={}, headers=AUTH)

    assert response.status_code == 422
    body = response.json()
    assert body["invalid_fields"] == ["conversationId"]
    assert "Field required" not in str(body)


# ============================================================================
# Feedback, profile, analytics and history
# ============================================================================


def test_feedback_flow(client):
    disable_quiet_hours(client)
    post_message("m1", "I pushed the new onboarding flow to staging")
    client.post("/api/notifications/analyze", json={"conversationId": "c1"}, headers=AUTH)

    response = client.post(
        "/api/notifications/feedback",
        json={"conversationId": "c1", "messageId": "m1", "feedback": "helpful"},
        headers=AUTH,
    )

    assert response.status_code == 200
    assert response.json() == {"success": True, "feedbackId": "u_bob_c1_m1"}

    history = client.get("/api/notifications/history", headers=AUTH).json()["decisions"]
    assert history[0]["userFeedback"] == "helpful"
    assert history[0]["messageIds"] == ["m1"]

    analytics = client.get("/api/notifications/analytics", params={"days": 7}, headers=AUTH).json()
    assert analytics["totalNotifications"] == 1
    assert analytics["accuracy"] == 100.0

    refreshed = client.post("/api/notifications/profile/refresh", headers=AUTH).json()
    assert refreshed["updated"] is True
    assert refreshed["profile"]["preferredNotificationRate"] == "high"

    profile = client.get("/api/notifications/profile", headers=AUTH).json()["profile"]
    assert profile["accuracy"] == 1.0


def test_feedback_invalid_value(client):
    response = client.post(
        "/api/notifications/feedback",
        json={"conversationId": "c1", "messageId": "m1", "feedback": "meh"},
        headers=AUTH,
    )

    assert response.status_code == 400


def test_feedback_forbidden_for_non_participant(client):
    as_user("u_carol")

    response = client.post(
        "/api/notifications/feedback",
        json={"conversationId": "c1", "messageId": "m1", "feedback": "helpful"},
        headers=AUTH,
    )

    assert response.status_code == 403


def test_profile_absent_and_refresh_without_feedback(client):
    assert client.get("/api/notifications/profile", headers=AUTH).json() == {"profile": None}
    assert client.post("/api/notifications/profile/refresh", headers=AUTH).json() == {
        "updated": False,
        "profile": None,
    }


@pytest.mark.parametrize("days", [0, 366])
def test_analytics_days_bounds(client, days):
    response = client.get("/api/notifications/analytics", params={"days": days}, headers=AUTH)

    assert response.status_code == 422


# ============================================================================
# Preferences and activity
# ============================================================================


def test_preferences_roundtrip(client):
    defaults = client.get("/api/notifications/preferences", headers=AUTH).json()
    assert defaults["fallbackStrategy"] == "simple_rules"

    updated = client.put(
        "/api/notifications/preferences",
        json={"enabled": False, "priorityKeywords": ["deploy"], "maxAnalysesPerHour": 3},
        headers=AUTH,
    ).json()
    assert updated["enabled"] is False
    assert client.get("/api/notifications/preferences", headers=AUTH).json() == updated

    reset = client.delete("/api/notifications/preferences", headers=AUTH).json()
    assert reset == defaults


def test_preferences_rejects_invalid_strategy(client):
    response = client.put(
        "/api/notifications/preferences", json={"fallbackStrategy": "page_everyone"}, headers=AUTH
    )

    assert response.status_code == 422


def test_active_view_suppresses_notification(client, stub_model):
    post_message("m1", "@bob production is down!")

    response = client.post("/api/notifications/activity", json={"conversationId": "c1"}, headers=AUTH)
    assert response.json() == {"activeConversationId": "c1"}

    decision = client.post("/api/notifications/analyze", json={"conversationId": "c1"}, headers=AUTH).json()
    assert decision["shouldNotify"] is False
    assert stub_model.calls == []

    left = client.post("/api/notifications/activity", json={"conversationId": None}, headers=AUTH)
    assert left.json() == {"activeConversationId": None}


def test_activity_unknown_conversation(client):
    response = client.post("/api/notifications/activity", json={"conversationId": "nope"}, headers=AUTH)

    assert response.status_code == 404
