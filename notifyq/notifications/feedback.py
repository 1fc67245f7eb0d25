"""
Feedback store - helpful / not-helpful signal on delivered decisions.

One record per (user, conversation, message): resubmitting overwrites the
previous feedback. The decision snapshot is stored with the record so the
profile learner can mine it later even after the decision log is pruned.
"""

from __future__ import annotations

import json
from collections import Counter
from collections.abc import Mapping
from datetime import datetime, timedelta
from typing import Any

from notifyq.config import API_ANALYTICS_DAYS_DEFAULT
from notifyq.infrastructure.database import db_transaction, get_db_connection, retry_on_db_lock
from notifyq.notifications.decision_log import DecisionLogRepository, snapshot_from_log
from notifyq.notifications.errors import (
    AuthorizationError,
    ConversationNotFoundError,
    FeedbackValidationError,
)
from notifyq.notifications.models import FeedbackRecord, FeedbackValue, from_db_time, to_db_time, utc_now
from notifyq.notifications.stores import ConversationStore
from notifyq.observability.logging import get_logger
from notifyq.observability.telemetry import counter, log_event

logger = get_logger(__name__)

MAX_FALSE_POSITIVE_REASONS = 5


def _require_id(name: str, value: Any) -> str:
    if not isinstance(value, str) or not value.strip():
        raise FeedbackValidationError(f"{name} must be a non-empty string")
    return value


def feedback_id(user_id: str, conversation_id: str, message_id: str) -> str:
    return f"{user_id}_{conversation_id}_{message_id}"


class FeedbackStore:
    @staticmethod
    @retry_on_db_lock()
    def submit(
        user_id: str,
        conversation_id: str,
        message_id: str,
        feedback: str | FeedbackValue,
        decision: Mapping[str, Any] | None = None,
        now: datetime | None = None,
    ) -> FeedbackRecord:
        """
        Record feedback for a decision.

        Args:
            decision: Decision snapshot as shown to the user; when omitted the
                latest logged decision covering `message_id` is used

        Raises:
            FeedbackValidationError: Empty ids, unknown feedback value, bad snapshot
            ConversationNotFoundError: Unknown conversation
            AuthorizationError: User is not a participant

        Side Effects:
            - Upserts notification_feedback
            - Sets user_feedback on the matching notification_decisions row
        """
        user_id = _require_id("userId", user_id)
        conversation_id = _require_id("conversationId", conversation_id)
        message_id = _require_id("messageId", message_id)

        try:
            value = FeedbackValue(feedback)
        except ValueError as e:
            raise FeedbackValidationError('feedback must be "helpful" or "not_helpful"') from e

        if decision is not None and not isinstance(decision, Mapping):
            raise FeedbackValidationError("decision must be an object")

        if not ConversationStore.exists(conversation_id):
            raise ConversationNotFoundError(f"Conversation not found: {conversation_id}")
        if not ConversationStore.is_participant(conversation_id, user_id):
            raise AuthorizationError("User not a participant in conversation")

        logged = DecisionLogRepository.latest_for_message(user_id, conversation_id, message_id)
        snapshot = dict(decision) if decision is not None else (snapshot_from_log(logged) if logged else None)

        record = FeedbackRecord(
            id=feedback_id(user_id, conversation_id, message_id),
            user_id=user_id,
            conversation_id=conversation_id,
            message_id=message_id,
            feedback=value,
            decision=snapshot,
            timestamp=now or utc_now(),
        )

        with db_transaction() as conn:
            conn.execute(
                """
                INSERT INTO notification_feedback
                    (id, user_id, conversation_id, message_id, feedback, decision, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    feedback = excluded.feedback,
                    decision = excluded.decision,
                    created_at = excluded.created_at
                """,
                (
                    record.id,
                    user_id,
                    conversation_id,
                    message_id,
                    value.value,
                    json.dumps(snapshot) if snapshot is not None else None,
                    to_db_time(record.timestamp),
                ),
            )

        if logged:
            DecisionLogRepository.set_feedback(logged["id"], value)

        counter("notifications.feedback.recorded")
        log_event("notifications.feedback.recorded", user_id=user_id, feedback=value.value)
        logger.info("Feedback stored: %s (%s)", record.id, value.value)
        return record

    @staticmethod
    def get(record_id: str) -> FeedbackRecord | None:
        with get_db_connection() as conn:
            row = conn.execute("SELECT * FROM notification_feedback WHERE id = ?", (record_id,)).fetchone()
        if row is None:
            return None
        return FeedbackRecord(
            id=row["id"],
            user_id=row["user_id"],
            conversation_id=row["conversation_id"],
            message_id=row["message_id"],
            feedback=FeedbackValue(row["feedback"]),
            decision=json.loads(row["decision"]) if row["decision"] else None,
            timestamp=from_db_time(row["created_at"]),
        )

    @staticmethod
    def analytics(user_id: str, days: int = API_ANALYTICS_DAYS_DEFAULT, now: datetime | None = None) -> dict[str, Any]:
        """
        Feedback accuracy report for the last `days` days.

        Returns:
            Dict with totalNotifications, helpfulCount, notHelpfulCount,
            accuracy (percent, 2 decimals) and commonFalsePositives
            (top reasons of notified-but-not-helpful decisions)
        """
        since = (now or utc_now()) - timedelta(days=days)
        with get_db_connection() as conn:
            rows = conn.execute(
                """
                SELECT feedback, decision FROM notification_feedback
                WHERE user_id = ? AND created_at > ?
                ORDER BY created_at DESC
                """,
                (user_id, to_db_time(since)),
            ).fetchall()

        helpful = not_helpful = 0
        false_positives: Counter[str] = Counter()
        for row in rows:
            if row["feedback"] == FeedbackValue.HELPFUL.value:
                helpful += 1
                continue
            not_helpful += 1
            decision = json.loads(row["decision"]) if row["decision"] else {}
            if decision.get("shouldNotify"):
                false_positives[decision.get("reason") or "Unknown"] += 1

        total = len(rows)
        accuracy = helpful / total * 100 if total else 0.0
        return {
            "totalNotifications": total,
            "helpfulCount": helpful,
            "notHelpfulCount": not_helpful,
            "accuracy": round(accuracy, 2),
            "commonFalsePositives": [
                {"reason": reason, "count": count}
                for reason, count in false_positives.most_common(MAX_FALSE_POSITIVE_REASONS)
            ],
        }
