"""
Decision log - append-only history of computed notification decisions.

Each computed decision (model, fallback or fast path) becomes one row in
notification_decisions. Feedback later annotates the row so history views
can show what the user thought of it. Cache hits and rule decisions for
empty batches / active views are not logged (nothing was computed).
"""

from __future__ import annotations

import json
from typing import Any

from notifyq.infrastructure.database import db_transaction, get_db_connection, retry_on_db_lock
from notifyq.notifications.models import (
    DecisionSource,
    FeedbackValue,
    NotificationDecision,
    Priority,
    from_db_time,
    to_db_time,
)
from notifyq.observability.logging import get_logger

logger = get_logger(__name__)


def _row_to_dict(row) -> dict[str, Any]:
    return {
        "id": row["id"],
        "userId": row["user_id"],
        "conversationId": row["conversation_id"],
        "messageIds": json.loads(row["message_ids"]),
        "messageCount": row["message_count"],
        "shouldNotify": bool(row["should_notify"]),
        "priority": row["priority"],
        "reason": row["reason"],
        "notificationText": row["notification_text"],
        "source": row["source"],
        "wasDelivered": bool(row["was_delivered"]),
        "userFeedback": row["user_feedback"],
        "timestamp": from_db_time(row["created_at"]).isoformat(),
    }


class DecisionLogRepository:
    @staticmethod
    @retry_on_db_lock()
    def record(user_id: str, decision: NotificationDecision, delivered: bool | None = None) -> int:
        """
        Append a decision to the log.

        Args:
            delivered: Whether a push was sent; defaults to decision.should_notify

        Returns:
            Row id of the new log entry
        """
        was_delivered = decision.should_notify if delivered is None else delivered
        with db_transaction() as conn:
            cursor = conn.execute(
                """
                INSERT INTO notification_decisions (
                    user_id, conversation_id, message_ids, message_count,
                    should_notify, priority, reason, notification_text, source,
                    was_delivered, user_feedback, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, NULL, ?)
                """,
                (
                    user_id,
                    decision.conversation_id,
                    json.dumps(decision.message_ids),
                    len(decision.message_ids),
                    int(decision.should_notify),
                    decision.priority.value,
                    decision.reason,
                    decision.notification_text,
                    decision.source.value,
                    int(was_delivered),
                    to_db_time(decision.timestamp),
                ),
            )
            return cursor.lastrowid

    @staticmethod
    def latest_for_message(user_id: str, conversation_id: str, message_id: str) -> dict[str, Any] | None:
        """Most recent logged decision whose message set includes `message_id`."""
        with get_db_connection() as conn:
            row = conn.execute(
                """
                SELECT d.* FROM notification_decisions d
                WHERE d.user_id = ? AND d.conversation_id = ?
                  AND EXISTS (SELECT 1 FROM json_each(d.message_ids) WHERE json_each.value = ?)
                ORDER BY d.created_at DESC, d.id DESC
                LIMIT 1
                """,
                (user_id, conversation_id, message_id),
            ).fetchone()
        return _row_to_dict(row) if row else None

    @staticmethod
    @retry_on_db_lock()
    def set_feedback(decision_id: int, feedback: FeedbackValue) -> bool:
        with db_transaction() as conn:
            cursor = conn.execute(
                "UPDATE notification_decisions SET user_feedback = ? WHERE id = ?",
                (feedback.value, decision_id),
            )
            return cursor.rowcount > 0

    @staticmethod
    def recent_for_user(user_id: str, limit: int = 50) -> list[dict[str, Any]]:
        """Newest-first decision history (for audit/history display)."""
        with get_db_connection() as conn:
            rows = conn.execute(
                """
                SELECT * FROM notification_decisions WHERE user_id = ?
                ORDER BY created_at DESC, id DESC LIMIT ?
                """,
                (user_id, limit),
            ).fetchall()
        return [_row_to_dict(row) for row in rows]


def snapshot_from_log(entry: dict[str, Any]) -> dict[str, Any]:
    """The four-field decision snapshot stored alongside feedback."""
    return {
        "shouldNotify": entry["shouldNotify"],
        "reason": entry["reason"],
        "notificationText": entry["notificationText"],
        "priority": Priority(entry["priority"]).value,
        "source": DecisionSource(entry["source"]).value,
    }
