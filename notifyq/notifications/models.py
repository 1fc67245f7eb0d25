"""
Domain models for smart notifications.

Pydantic models serialize with camelCase aliases (the wire format the mobile
client already speaks) while Python code uses snake_case attributes.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from notifyq.config import NOTIFICATION_TEXT_MAX_CHARS

_HHMM = re.compile(r"^([01]\d|2[0-3]):[0-5]\d$")

DEFAULT_PRIORITY_KEYWORDS = ["urgent", "ASAP", "production down", "blocker", "emergency"]


class Priority(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class DecisionSource(str, Enum):
    """Where a decision came from."""

    MODEL = "model"
    FALLBACK = "fallback"
    FAST_PATH = "fast_path"  # Fast heuristic pre-filter, model skipped
    RULE = "rule"  # No unread messages, disabled, actively viewing
    CACHED = "cached"


class FeedbackValue(str, Enum):
    HELPFUL = "helpful"
    NOT_HELPFUL = "not_helpful"


class FallbackStrategy(str, Enum):
    SIMPLE_RULES = "simple_rules"
    NOTIFY_ALL = "notify_all"
    SUPPRESS_ALL = "suppress_all"


class NotificationRate(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


def utc_now() -> datetime:
    return datetime.now(UTC)


def to_db_time(value: datetime) -> str:
    """Serialize a datetime for storage (naive values are assumed UTC)."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).isoformat(timespec="microseconds")


def from_db_time(value: str) -> datetime:
    parsed = datetime.fromisoformat(value)
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)


def truncate_notification_text(text: str, limit: int = NOTIFICATION_TEXT_MAX_CHARS) -> str:
    """Clamp notification text to `limit` chars, marking truncation with an ellipsis."""
    if len(text) <= limit:
        return text
    return text[: limit - 3] + "..."


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ChatMessage(_CamelModel):
    """A message as seen by the notification core."""

    id: str
    conversation_id: str
    sender_id: str
    sender_name: str
    text: str
    timestamp: datetime


class ConversationSummary(_CamelModel):
    id: str
    title: str | None = None
    is_group: bool = False
    unread_count: int = 0
    last_activity: datetime | None = None


class QuietHours(_CamelModel):
    """Daily window during which only high-priority notifications are delivered."""

    enabled: bool = True
    start: str = "22:00"
    end: str = "08:00"
    timezone: str = "America/Los_Angeles"

    @field_validator("start", "end")
    @classmethod
    def validate_hhmm(cls, v: str) -> str:
        if not _HHMM.match(v):
            raise ValueError("quiet hours must be HH:MM (24h)")
        return v

    @field_validator("timezone")
    @classmethod
    def validate_timezone(cls, v: str) -> str:
        try:
            ZoneInfo(v)
        except (ZoneInfoNotFoundError, ValueError) as e:
            raise ValueError(f"unknown timezone: {v}") from e
        return v


class UserPreferences(_CamelModel):
    """Per-user notification settings (defaults apply until the user saves their own)."""

    enabled: bool = True
    pause_threshold_seconds: int = Field(default=120, ge=10, le=3600)
    active_conversation_threshold: int = Field(default=20, ge=1, le=1000)
    quiet_hours: QuietHours | None = Field(default_factory=QuietHours)
    priority_keywords: list[str] = Field(default_factory=lambda: list(DEFAULT_PRIORITY_KEYWORDS))
    max_analyses_per_hour: int = Field(default=10, ge=0, le=1000)
    fallback_strategy: FallbackStrategy = FallbackStrategy.SIMPLE_RULES

    @field_validator("priority_keywords")
    @classmethod
    def dedupe_keywords(cls, v: list[str]) -> list[str]:
        # Ordered, case-insensitive set; the user's casing of the first occurrence wins
        seen: set[str] = set()
        keywords = []
        for keyword in v:
            keyword = keyword.strip()
            if keyword and keyword.lower() not in seen:
                seen.add(keyword.lower())
                keywords.append(keyword)
        return keywords


class LearnedProfile(_CamelModel):
    """Feedback-derived personalization consumed by the prompt builder."""

    user_id: str
    preferred_notification_rate: NotificationRate
    learned_keywords: list[str] = Field(default_factory=list)
    suppressed_topics: list[str] = Field(default_factory=list)
    accuracy: float = Field(ge=0.0, le=1.0)
    total_feedback: int = 0
    helpful_count: int = 0
    not_helpful_count: int = 0
    last_updated: datetime


class SemanticMatch(_CamelModel):
    message: ChatMessage
    similarity: float


class UserContext(_CamelModel):
    """Everything the model sees about the user besides the unread batch."""

    user_id: str
    user_name: str
    recent_messages: list[ChatMessage] = Field(default_factory=list)
    conversations: list[ConversationSummary] = Field(default_factory=list)
    preferences: UserPreferences = Field(default_factory=UserPreferences)
    semantic_context: list[SemanticMatch] = Field(default_factory=list)
    assembled_at: datetime = Field(default_factory=utc_now)

    @property
    def total_unread(self) -> int:
        return sum(c.unread_count for c in self.conversations)


class NotificationDecision(_CamelModel):
    """One notify/don't-notify decision for an unread batch."""

    should_notify: bool
    reason: str
    notification_text: str
    priority: Priority
    conversation_id: str
    message_ids: list[str] = Field(default_factory=list)
    timestamp: datetime = Field(default_factory=utc_now)
    source: DecisionSource = DecisionSource.MODEL

    @field_validator("notification_text")
    @classmethod
    def clamp_text(cls, v: str) -> str:
        return truncate_notification_text(v)

    def to_response(self) -> dict[str, Any]:
        """The four-field decision contract plus its source."""
        return self.model_dump(
            mode="json",
            by_alias=True,
            include={"should_notify", "reason", "notification_text", "priority", "source"},
        )


@dataclass
class CacheEntry:
    """Stored decision for one exact unread-message set."""

    key: str
    decision: NotificationDecision
    created_at: datetime
    expires_at: datetime
    source: DecisionSource

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at


class FeedbackRecord(_CamelModel):
    id: str
    user_id: str
    conversation_id: str
    message_id: str
    feedback: FeedbackValue
    decision: dict[str, Any] | None = None
    timestamp: datetime = Field(default_factory=utc_now)
