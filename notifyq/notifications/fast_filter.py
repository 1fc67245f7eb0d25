"""
Fast heuristic pre-filter - settle obvious cases before paying for the model.

Runs on the newest unread message only. Returns one of:
    DEFINITELY_NOTIFY  mention, name, urgent vocabulary, direct question, task, user keyword
    DEFINITELY_SKIP    very short, acknowledgment, emoji-only, bot sender, auto-reply
    NEED_LLM           everything else

Stricter than the fallback heuristics: a question needs both a modal opener
and a "?" to count, and keywords are matched on word boundaries.
"""

from __future__ import annotations

import re
from collections.abc import Sequence
from dataclasses import dataclass
from enum import Enum

from notifyq.notifications.models import ChatMessage, Priority

URGENT_PATTERN = re.compile(
    r"\b(urgent|asap|emergency|critical|blocker|production|p0|priority\s*0)\b", re.IGNORECASE
)
DIRECT_QUESTION_PATTERN = re.compile(r"\b(can you|could you|would you|will you|please)\b", re.IGNORECASE)
TASK_PATTERN = re.compile(
    r"\b(assigned to|your task|you should|you need to|action item for you)\b", re.IGNORECASE
)
ACKNOWLEDGMENT_PATTERN = re.compile(
    r"^(ok|okay|k|kk|thanks|thank you|ty|thx|lol|haha|ha|nice|cool|sure|yep|yup|nope"
    r"|got it|sounds good|np|no problem|👍|😄|😊|🙏|❤️)[.!]*$",
    re.IGNORECASE,
)
AUTO_REPLY_PATTERN = re.compile(
    r"\b(out of office|away from|on vacation|afk|brb|be right back)\b", re.IGNORECASE
)
BOT_SENDER_MARKERS = ("bot", "notification")
MIN_MEANINGFUL_LENGTH = 5


class HeuristicVerdict(str, Enum):
    DEFINITELY_NOTIFY = "DEFINITELY_NOTIFY"
    DEFINITELY_SKIP = "DEFINITELY_SKIP"
    NEED_LLM = "NEED_LLM"


@dataclass(frozen=True)
class FastDecision:
    verdict: HeuristicVerdict
    reason: str
    priority: Priority | None = None

    @property
    def is_decisive(self) -> bool:
        return self.verdict is not HeuristicVerdict.NEED_LLM

    @classmethod
    def notify(cls, reason: str, priority: Priority) -> FastDecision:
        return cls(HeuristicVerdict.DEFINITELY_NOTIFY, reason, priority)

    @classmethod
    def skip(cls, reason: str) -> FastDecision:
        return cls(HeuristicVerdict.DEFINITELY_SKIP, reason, Priority.LOW)


def _is_symbol_only(text: str) -> bool:
    # Emoji, punctuation and whitespace only
    return not any(ch.isalnum() for ch in text)


def apply_fast_heuristics(
    message: ChatMessage,
    *,
    user_name: str | None,
    priority_keywords: Sequence[str] = (),
) -> FastDecision:
    """Classify one message as notify / skip / needs-model."""
    text = message.text.strip()
    lowered = text.lower()

    if user_name:
        if f"@{user_name.lower()}" in lowered:
            return FastDecision.notify("Direct @mention", Priority.HIGH)
        if re.search(rf"\b{re.escape(user_name)}\b", text, re.IGNORECASE):
            return FastDecision.notify("User mentioned by name", Priority.HIGH)

    if URGENT_PATTERN.search(text):
        return FastDecision.notify("Urgent keyword detected", Priority.HIGH)

    if DIRECT_QUESTION_PATTERN.search(text) and "?" in text:
        return FastDecision.notify("Direct question detected", Priority.MEDIUM)

    if TASK_PATTERN.search(text):
        return FastDecision.notify("Task assignment detected", Priority.HIGH)

    keywords = [re.escape(k) for k in priority_keywords if k.strip()]
    if keywords and re.search(rf"\b({'|'.join(keywords)})\b", text, re.IGNORECASE):
        return FastDecision.notify("User's priority keyword found", Priority.MEDIUM)

    if len(text) < MIN_MEANINGFUL_LENGTH:
        return FastDecision.skip("Message too short")

    if ACKNOWLEDGMENT_PATTERN.match(text):
        return FastDecision.skip("Common acknowledgment/reaction")

    if _is_symbol_only(text):
        return FastDecision.skip("Emoji-only message")

    sender = message.sender_name.lower()
    if any(marker in sender for marker in BOT_SENDER_MARKERS):
        return FastDecision.skip("Automated message")

    if AUTO_REPLY_PATTERN.search(text):
        return FastDecision.skip("Auto-reply message")

    return FastDecision(HeuristicVerdict.NEED_LLM, "Message requires contextual analysis")
