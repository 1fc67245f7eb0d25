"""
Shared pytest fixtures.

Every test that touches storage gets its own sqlite file under tmp_path; the
pool singleton is reset around it so no state leaks between tests.
"""

from __future__ import annotations

import json
from datetime import UTC, datetime, timedelta

import pytest

from notifyq.infrastructure.database import init_database, reset_pool
from notifyq.notifications.stores import ConversationStore, MessageStore, UserStore
from notifyq.observability.telemetry import reset_telemetry

# Tuesday 10:00 in America/Los_Angeles: outside the default quiet hours
NOW = datetime(2025, 3, 4, 18, 0, tzinfo=UTC)


@pytest.fixture(autouse=True)
def _fresh_telemetry():
    reset_telemetry()
    yield
    reset_telemetry()


@pytest.fixture
def db(tmp_path, monkeypatch):
    """Initialized empty database; yields its path."""
    path = tmp_path / "notifyq.db"
    monkeypatch.setenv("NOTIFYQ_DB_PATH", str(path))
    reset_pool()
    init_database()
    yield path
    reset_pool()


@pytest.fixture
def now() -> datetime:
    return NOW


@pytest.fixture
def chat(db):
    """Alice and Bob in direct conversation c1; Carol is not a participant."""
    UserStore.upsert("u_alice", "Alice")
    UserStore.upsert("u_bob", "bob")
    UserStore.upsert("u_carol", "Carol")
    ConversationStore.create("c1", ["u_alice", "u_bob"], title="Alice & Bob", created_at=NOW - timedelta(days=1))
    return "c1"


def add_message(
    message_id: str,
    text: str,
    *,
    conversation_id: str = "c1",
    sender_id: str = "u_alice",
    sender_name: str = "Alice",
    at: datetime | None = None,
):
    return MessageStore.add_message(message_id, conversation_id, sender_id, sender_name, text, created_at=at or NOW)


class StubResponse:
    def __init__(self, text: str):
        self.text = text


class StubModel:
    """Stands in for a Vertex GenerativeModel; records every call."""

    def __init__(self, response: str | dict | None = None, error: BaseException | None = None, delay: float = 0.0):
        if isinstance(response, dict):
            response = json.dumps(response)
        self.response = response
        self.error = error
        self.delay = delay
        self.calls: list[tuple[str, dict]] = []

    def generate_content(self, prompt, generation_config=None):
        import time

        self.calls.append((prompt, generation_config or {}))
        if self.delay:
            time.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return StubResponse(self.response or "")


VALID_DECISION = {
    "shouldNotify": True,
    "reason": "Bob is asked to review the deploy plan",
    "notificationText": "Alice: can you review the deploy plan?",
    "priority": "medium",
}


@pytest.fixture
def stub_model():
    return StubModel(VALID_DECISION)


@pytest.fixture
def make_message(chat):
    """add_message bound to the seeded chat."""
    return add_message


@pytest.fixture
def make_model():
    return StubModel
