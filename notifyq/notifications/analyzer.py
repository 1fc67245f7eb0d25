"""
Notification Analyzer - Gemini-based notify/don't-notify decision.

The model sees the user's context, preferences, learned profile and the
unread batch, and must answer with a four-field JSON decision. This module
only ever raises the pipeline's error taxonomy; choosing a fallback is the
engine's job.

Cost: one Gemini Flash call per cache miss (~1-2k prompt tokens)
"""

from __future__ import annotations

import json
import re
from collections.abc import Sequence
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, StrictBool, StrictStr, ValidationError

from notifyq.config import LLM_TIMEOUT_SECONDS, NOTIFICATION_TEXT_MAX_CHARS
from notifyq.infrastructure.settings import GEMINI_MAX_TOKENS, GEMINI_MODEL, GEMINI_TEMPERATURE
from notifyq.llm.prompts import PromptLoader, get_prompt_loader
from notifyq.notifications.context import describe_quiet_hours, format_context_for_prompt
from notifyq.notifications.errors import (
    ConfigurationError,
    DecisionValidationError,
    TransientProviderError,
)
from notifyq.notifications.models import (
    ChatMessage,
    DecisionSource,
    LearnedProfile,
    NotificationDecision,
    NotificationRate,
    Priority,
    UserContext,
    utc_now,
)
from notifyq.observability.logging import get_logger
from notifyq.observability.telemetry import counter, log_event, time_block

logger = get_logger(__name__)

RATE_INSTRUCTIONS = {
    NotificationRate.HIGH: "User appreciates frequent notifications. Be more liberal in notification decisions.",
    NotificationRate.MEDIUM: "User prefers moderate notification frequency. Balance importance vs frequency.",
    NotificationRate.LOW: "User dislikes frequent notifications. Only notify for critical messages.",
}

# Calls that outlive the timeout keep running here; the caller has moved on
_MODEL_EXECUTOR = ThreadPoolExecutor(max_workers=4, thread_name_prefix="notifyq-llm")


class DecisionSchema(BaseModel):
    """Schema for LLM response validation (wire names, strict types)."""

    model_config = ConfigDict(extra="ignore")

    shouldNotify: StrictBool  # noqa: N815 - wire format
    reason: StrictStr
    notificationText: StrictStr  # noqa: N815 - wire format
    priority: Literal["high", "medium", "low"]


def sanitize(text: str, max_length: int = 500) -> str:
    """Neutralize prompt-injection phrasing in user-authored text."""
    if not text:
        return ""
    text = re.sub(r"(?i)(ignore|disregard).*(instruction|prompt)", "[REDACTED]", text)
    text = re.sub(r"(?i)system\s*:", "", text)
    text = re.sub(r"(?i)assistant\s*:", "", text)
    return text[:max_length]


def format_messages_for_prompt(messages: Sequence[ChatMessage]) -> str:
    """`[iso-time] Sender: text`, oldest first."""
    ordered = sorted(messages, key=lambda m: m.timestamp)
    return "\n".join(
        f"[{m.timestamp.isoformat()}] {sanitize(m.sender_name, 100)}: {sanitize(m.text)}" for m in ordered
    )


def format_learned_profile(profile: LearnedProfile | None) -> str:
    if profile is None:
        return ""

    accuracy = f"{profile.accuracy * 100:.0f}%" if profile.total_feedback else "N/A"
    return (
        "\nLearned User Preferences (from feedback history):\n"
        f"- Notification frequency preference: {profile.preferred_notification_rate.value}\n"
        f"- {RATE_INSTRUCTIONS[profile.preferred_notification_rate]}\n"
        f"- User finds these topics important: {', '.join(profile.learned_keywords) or 'None learned yet'}\n"
        f"- User doesn't want notifications about: {', '.join(profile.suppressed_topics) or 'None'}\n"
        f"- Historical accuracy: {accuracy}\n"
    )


class NotificationAnalyzer:
    """
    LLM-backed notification decision.

    Args:
        model: Object exposing generate_content(prompt, generation_config=...);
            defaults to the shared Gemini model, created lazily
        timeout_seconds: Hard per-call deadline
    """

    def __init__(
        self,
        model=None,
        prompt_loader: PromptLoader | None = None,
        timeout_seconds: float = LLM_TIMEOUT_SECONDS,
    ):
        self._model = model
        self.prompts = prompt_loader or get_prompt_loader()
        self.timeout_seconds = timeout_seconds

    def _get_model(self):
        """Lazy-load Gemini model (raises GeminiInitializationError, a ConfigurationError)."""
        if self._model is None:
            from notifyq.llm.gemini import get_gemini_model

            self._model = get_gemini_model(system_instruction=self.prompts.get_system_prompt())
        return self._model

    def build_prompt(
        self,
        context: UserContext,
        unread: Sequence[ChatMessage],
        profile: LearnedProfile | None,
        now: datetime,
    ) -> str:
        prefs = context.preferences
        return self.prompts.get_user_prompt(
            user_context=format_context_for_prompt(context),
            enabled=prefs.enabled,
            quiet_hours=describe_quiet_hours(prefs.quiet_hours),
            priority_keywords=", ".join(prefs.priority_keywords) or "none",
            max_analyses_per_hour=prefs.max_analyses_per_hour,
            learned_preferences=format_learned_profile(profile),
            current_time=now.isoformat(),
            conversation_messages=format_messages_for_prompt(unread),
        )

    def analyze(
        self,
        *,
        context: UserContext,
        unread: Sequence[ChatMessage],
        conversation_id: str,
        profile: LearnedProfile | None = None,
        now: datetime | None = None,
    ) -> NotificationDecision:
        """
        Ask the model for a decision on the unread batch.

        Returns:
            NotificationDecision with source=model

        Raises:
            TransientProviderError: timeout, rate limit, provider unavailable
            DecisionValidationError: response is not a valid decision
            ConfigurationError: model cannot be initialized / credentials rejected

        Side Effects:
            - Calls Gemini API
            - Increments telemetry counters, logs decision events
        """
        now = now or utc_now()
        prompt = self.build_prompt(context, unread, profile, now)

        with time_block("notifications.llm.latency"):
            raw = self._call_model(prompt)

        decision = self._parse_response(
            raw,
            conversation_id=conversation_id,
            message_ids=[m.id for m in unread],
            now=now,
        )

        counter("notifications.llm.success")
        log_event(
            "notifications.llm.decision",
            should_notify=decision.should_notify,
            priority=decision.priority.value,
            message_count=len(unread),
            model=GEMINI_MODEL,
        )
        return decision

    def _call_model(self, prompt: str) -> str:
        """Call Gemini with a hard deadline, translating provider errors."""
        from google.api_core.exceptions import (
            DeadlineExceeded,
            InternalServerError,
            PermissionDenied,
            ResourceExhausted,
            ServiceUnavailable,
            TooManyRequests,
            Unauthenticated,
        )

        model = self._get_model()
        generation_config = {
            "temperature": GEMINI_TEMPERATURE,
            "max_output_tokens": GEMINI_MAX_TOKENS,
            "response_mime_type": "application/json",
        }

        future = _MODEL_EXECUTOR.submit(model.generate_content, prompt, generation_config=generation_config)
        try:
            response = future.result(timeout=self.timeout_seconds)
        except (FutureTimeoutError, DeadlineExceeded, TimeoutError) as e:
            future.cancel()
            counter("notifications.llm.timeout")
            logger.warning("LLM call timed out after %ss", self.timeout_seconds)
            raise TransientProviderError(f"LLM call timed out: {e}", kind="timeout") from e
        except (ResourceExhausted, TooManyRequests) as e:
            counter("notifications.llm.rate_limited")
            logger.warning("LLM rate limited (429): %s", e)
            raise TransientProviderError(f"LLM rate limited: {e}", kind="rate_limit") from e
        except (ServiceUnavailable, InternalServerError) as e:
            counter("notifications.llm.unavailable")
            logger.warning("LLM service unavailable: %s", e)
            raise TransientProviderError(f"LLM unavailable: {e}", kind="unavailable") from e
        except (Unauthenticated, PermissionDenied) as e:
            counter("notifications.llm.auth_error")
            raise ConfigurationError(f"LLM credentials rejected: {e}") from e

        try:
            return response.text
        except (AttributeError, ValueError) as e:
            # Blocked/empty candidates raise on .text
            raise DecisionValidationError(f"LLM returned no text: {e}") from e

    def _parse_response(
        self,
        response_text: str,
        *,
        conversation_id: str,
        message_ids: list[str],
        now: datetime,
    ) -> NotificationDecision:
        """Parse and validate the model's JSON into a NotificationDecision."""
        json_text = (response_text or "").strip()
        if json_text.startswith("```"):
            json_text = re.sub(r"^```(?:json)?\n?", "", json_text)
            json_text = re.sub(r"\n?```$", "", json_text)

        try:
            data = json.loads(json_text)
            validated = DecisionSchema.model_validate(data)
        except (json.JSONDecodeError, ValidationError) as e:
            counter("notifications.llm.invalid_response")
            logger.warning("Invalid LLM decision response: %s | raw=%r", e, response_text[:500])
            raise DecisionValidationError(f"Invalid decision response: {e}", raw_response=response_text) from e

        if len(validated.notificationText) > NOTIFICATION_TEXT_MAX_CHARS:
            logger.warning("Notification text exceeds %d characters, truncating", NOTIFICATION_TEXT_MAX_CHARS)

        return NotificationDecision(
            should_notify=validated.shouldNotify,
            reason=validated.reason,
            notification_text=validated.notificationText,
            priority=Priority(validated.priority),
            conversation_id=conversation_id,
            message_ids=message_ids,
            timestamp=now,
            source=DecisionSource.MODEL,
        )
