"""
Fallback heuristics - deterministic notification decision without the model.

Used whenever the model path fails (timeout, rate limit, bad JSON, missing
credentials) or is skipped (hourly ceiling, LLM disabled). Only the newest
unread message is evaluated: older messages in the batch were already
eligible for an earlier decision, and re-evaluating them would resurface
stale content.

Rules, first match wins:
    1. @mention of the user id or display name      -> notify, high
    2. user's priority keyword (case-insensitive)    -> notify, medium
    3. direct question (modal opener or trailing ?)  -> notify, medium
    4. anything else                                 -> don't notify, low
"""

from __future__ import annotations

import re
from collections.abc import Sequence
from datetime import datetime

from notifyq.notifications.models import (
    ChatMessage,
    DecisionSource,
    FallbackStrategy,
    NotificationDecision,
    Priority,
    utc_now,
)

QUESTION_PATTERNS = (
    re.compile(r"\bcan you\b", re.IGNORECASE),
    re.compile(r"\bcould you\b", re.IGNORECASE),
    re.compile(r"\bwould you\b", re.IGNORECASE),
    re.compile(r"\bwill you\b", re.IGNORECASE),
)

_PRIORITY_RANK = {Priority.LOW: 0, Priority.MEDIUM: 1, Priority.HIGH: 2}


def format_notification_text(message: ChatMessage) -> str:
    """`Sender: text`; NotificationDecision clamps it to 100 chars."""
    return f"{message.sender_name}: {message.text}"


def is_mentioned(text: str, user_id: str, user_name: str | None) -> bool:
    lowered = text.lower()
    handles = {user_id.lower()}
    if user_name:
        handles.add(user_name.lower())
    return any(f"@{handle}" in lowered for handle in handles if handle)


def find_priority_keyword(text: str, keywords: Sequence[str]) -> str | None:
    lowered = text.lower()
    for keyword in keywords:
        if keyword and keyword.lower() in lowered:
            return keyword
    return None


def is_direct_question(text: str) -> bool:
    if text.rstrip().endswith("?"):
        return True
    return any(pattern.search(text) for pattern in QUESTION_PATTERNS)


def fallback_decision(
    messages: Sequence[ChatMessage],
    *,
    conversation_id: str,
    user_id: str,
    user_name: str | None = None,
    priority_keywords: Sequence[str] = (),
    now: datetime | None = None,
) -> NotificationDecision:
    """
    Rule-based decision over the newest message of `messages`.

    Args:
        messages: Unread batch (any order); only the newest is evaluated
        conversation_id: Conversation the batch belongs to
        user_id: Recipient id (for @id mentions)
        user_name: Recipient display name (for @name mentions)
        priority_keywords: User's configured priority keywords

    Returns:
        NotificationDecision with source=fallback
    """
    timestamp = now or utc_now()
    message_ids = [m.id for m in messages]

    if not messages:
        return NotificationDecision(
            should_notify=False,
            reason="No unread messages (fallback heuristic)",
            notification_text="",
            priority=Priority.LOW,
            conversation_id=conversation_id,
            message_ids=message_ids,
            timestamp=timestamp,
            source=DecisionSource.FALLBACK,
        )

    newest = max(messages, key=lambda m: m.timestamp)
    text = newest.text

    if is_mentioned(text, user_id, user_name):
        should_notify, priority = True, Priority.HIGH
        reason = "User directly mentioned (fallback heuristic)"
    elif keyword := find_priority_keyword(text, priority_keywords):
        should_notify, priority = True, Priority.MEDIUM
        reason = f'Priority keyword detected: "{keyword}" (fallback heuristic)'
    elif is_direct_question(text):
        should_notify, priority = True, Priority.MEDIUM
        reason = "Direct question detected (fallback heuristic)"
    else:
        should_notify, priority = False, Priority.LOW
        reason = "No notification triggers found (fallback heuristic)"

    return NotificationDecision(
        should_notify=should_notify,
        reason=reason,
        notification_text=format_notification_text(newest),
        priority=priority,
        conversation_id=conversation_id,
        message_ids=message_ids,
        timestamp=timestamp,
        source=DecisionSource.FALLBACK,
    )


def strategy_decision(
    strategy: FallbackStrategy,
    messages: Sequence[ChatMessage],
    *,
    conversation_id: str,
    user_id: str,
    user_name: str | None = None,
    priority_keywords: Sequence[str] = (),
    now: datetime | None = None,
) -> NotificationDecision:
    """Apply the user's configured fallback strategy (simple_rules, notify_all, suppress_all)."""
    decision = fallback_decision(
        messages,
        conversation_id=conversation_id,
        user_id=user_id,
        user_name=user_name,
        priority_keywords=priority_keywords,
        now=now,
    )

    if strategy is FallbackStrategy.NOTIFY_ALL and messages:
        return decision.model_copy(
            update={
                "should_notify": True,
                "priority": max(decision.priority, Priority.MEDIUM, key=_PRIORITY_RANK.__getitem__),
                "reason": "Fallback strategy notify_all",
            }
        )
    if strategy is FallbackStrategy.SUPPRESS_ALL:
        return decision.model_copy(
            update={
                "should_notify": False,
                "priority": Priority.LOW,
                "reason": "Fallback strategy suppress_all",
            }
        )
    return decision
