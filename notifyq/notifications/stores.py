"""
Chat collaborator repositories - messages, conversations, users, activity.

The notification core only reads chat data; the write helpers here exist so
the API (and tests) can seed a local database. All methods use the pooled
connection helpers from notifyq.infrastructure.database.
"""

from __future__ import annotations

from datetime import datetime, timedelta

from notifyq.config import ACTIVE_VIEW_WINDOW_SECONDS
from notifyq.infrastructure.database import db_transaction, get_db_connection, retry_on_db_lock
from notifyq.notifications.models import (
    ChatMessage,
    ConversationSummary,
    from_db_time,
    to_db_time,
    utc_now,
)
from notifyq.observability.logging import get_logger

logger = get_logger(__name__)


def _row_to_message(row) -> ChatMessage:
    return ChatMessage(
        id=row["id"],
        conversation_id=row["conversation_id"],
        sender_id=row["sender_id"],
        sender_name=row["sender_name"],
        text=row["text"],
        timestamp=from_db_time(row["created_at"]),
    )


class UserStore:
    """Display names, used for @name mention detection."""

    @staticmethod
    @retry_on_db_lock()
    def upsert(user_id: str, display_name: str) -> None:
        with db_transaction() as conn:
            conn.execute(
                """
                INSERT INTO users (id, display_name, created_at) VALUES (?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET display_name = excluded.display_name
                """,
                (user_id, display_name, to_db_time(utc_now())),
            )

    @staticmethod
    def display_name(user_id: str) -> str | None:
        with get_db_connection() as conn:
            row = conn.execute("SELECT display_name FROM users WHERE id = ?", (user_id,)).fetchone()
        return row["display_name"] if row else None


class ConversationStore:
    @staticmethod
    @retry_on_db_lock()
    def create(
        conversation_id: str,
        participant_ids: list[str],
        title: str | None = None,
        is_group: bool | None = None,
        created_at: datetime | None = None,
    ) -> None:
        """
        Create a conversation with its participants (idempotent on id).

        Side Effects:
            - Inserts into conversations and conversation_participants
        """
        if is_group is None:
            is_group = len(participant_ids) > 2

        with db_transaction() as conn:
            conn.execute(
                """
                INSERT OR IGNORE INTO conversations (id, title, is_group, created_at)
                VALUES (?, ?, ?, ?)
                """,
                (conversation_id, title, int(is_group), to_db_time(created_at or utc_now())),
            )
            conn.executemany(
                "INSERT OR IGNORE INTO conversation_participants (conversation_id, user_id) VALUES (?, ?)",
                [(conversation_id, uid) for uid in participant_ids],
            )

    @staticmethod
    def exists(conversation_id: str) -> bool:
        with get_db_connection() as conn:
            row = conn.execute("SELECT 1 FROM conversations WHERE id = ?", (conversation_id,)).fetchone()
        return row is not None

    @staticmethod
    def get(conversation_id: str) -> ConversationSummary | None:
        """Conversation metadata (unread_count is left at 0; see unread_count)."""
        with get_db_connection() as conn:
            row = conn.execute(
                "SELECT id, title, is_group, last_message_at FROM conversations WHERE id = ?",
                (conversation_id,),
            ).fetchone()
        if row is None:
            return None
        return ConversationSummary(
            id=row["id"],
            title=row["title"],
            is_group=bool(row["is_group"]),
            last_activity=from_db_time(row["last_message_at"]) if row["last_message_at"] else None,
        )

    @staticmethod
    def unread_count(conversation_id: str, user_id: str) -> int:
        with get_db_connection() as conn:
            row = conn.execute(
                """
                SELECT COUNT(*) AS n FROM messages m
                WHERE m.conversation_id = :conversation_id
                  AND m.sender_id != :user_id
                  AND NOT EXISTS (
                      SELECT 1 FROM message_reads r
                      WHERE r.message_id = m.id AND r.user_id = :user_id
                  )
                """,
                {"conversation_id": conversation_id, "user_id": user_id},
            ).fetchone()
        return row["n"]

    @staticmethod
    def participants(conversation_id: str) -> list[str]:
        with get_db_connection() as conn:
            rows = conn.execute(
                "SELECT user_id FROM conversation_participants WHERE conversation_id = ? ORDER BY user_id",
                (conversation_id,),
            ).fetchall()
        return [row["user_id"] for row in rows]

    @staticmethod
    def is_participant(conversation_id: str, user_id: str) -> bool:
        with get_db_connection() as conn:
            row = conn.execute(
                "SELECT 1 FROM conversation_participants WHERE conversation_id = ? AND user_id = ?",
                (conversation_id, user_id),
            ).fetchone()
        return row is not None

    @staticmethod
    def list_for_user(user_id: str, since: datetime) -> list[ConversationSummary]:
        """
        Conversations the user takes part in with activity since `since`.

        Conversations without any message yet are included (new chats are
        context too). Unread counts exclude the user's own messages.
        """
        with get_db_connection() as conn:
            rows = conn.execute(
                """
                SELECT c.id, c.title, c.is_group, c.last_message_at,
                    (SELECT COUNT(*) FROM messages m
                     WHERE m.conversation_id = c.id
                       AND m.sender_id != :user_id
                       AND NOT EXISTS (
                           SELECT 1 FROM message_reads r
                           WHERE r.message_id = m.id AND r.user_id = :user_id
                       )) AS unread_count
                FROM conversations c
                JOIN conversation_participants p ON p.conversation_id = c.id
                WHERE p.user_id = :user_id
                  AND (c.last_message_at IS NULL OR c.last_message_at >= :since)
                ORDER BY c.last_message_at DESC
                """,
                {"user_id": user_id, "since": to_db_time(since)},
            ).fetchall()

        return [
            ConversationSummary(
                id=row["id"],
                title=row["title"],
                is_group=bool(row["is_group"]),
                unread_count=row["unread_count"],
                last_activity=from_db_time(row["last_message_at"]) if row["last_message_at"] else None,
            )
            for row in rows
        ]


class MessageStore:
    @staticmethod
    @retry_on_db_lock()
    def add_message(
        message_id: str,
        conversation_id: str,
        sender_id: str,
        sender_name: str,
        text: str,
        created_at: datetime | None = None,
    ) -> ChatMessage:
        """
        Store a message and bump the conversation's last activity.

        The sender has implicitly read their own message.

        Side Effects:
            - Inserts into messages and message_reads
            - Updates conversations.last_message_at
        """
        created_at = created_at or utc_now()
        stamp = to_db_time(created_at)

        with db_transaction() as conn:
            conn.execute(
                """
                INSERT INTO messages (id, conversation_id, sender_id, sender_name, text, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (message_id, conversation_id, sender_id, sender_name, text, stamp),
            )
            conn.execute(
                "INSERT OR IGNORE INTO message_reads (message_id, user_id, read_at) VALUES (?, ?, ?)",
                (message_id, sender_id, stamp),
            )
            conn.execute(
                """
                UPDATE conversations SET last_message_at = ?
                WHERE id = ? AND (last_message_at IS NULL OR last_message_at < ?)
                """,
                (stamp, conversation_id, stamp),
            )

        return ChatMessage(
            id=message_id,
            conversation_id=conversation_id,
            sender_id=sender_id,
            sender_name=sender_name,
            text=text,
            timestamp=created_at,
        )

    @staticmethod
    @retry_on_db_lock()
    def mark_read(message_ids: list[str], user_id: str) -> int:
        with db_transaction() as conn:
            cursor = conn.executemany(
                "INSERT OR IGNORE INTO message_reads (message_id, user_id, read_at) VALUES (?, ?, ?)",
                [(mid, user_id, to_db_time(utc_now())) for mid in message_ids],
            )
            return cursor.rowcount

    @staticmethod
    def get(message_id: str) -> ChatMessage | None:
        with get_db_connection() as conn:
            row = conn.execute("SELECT * FROM messages WHERE id = ?", (message_id,)).fetchone()
        return _row_to_message(row) if row else None

    @staticmethod
    def get_many(message_ids: list[str]) -> dict[str, ChatMessage]:
        if not message_ids:
            return {}
        placeholders = ",".join("?" * len(message_ids))
        with get_db_connection() as conn:
            rows = conn.execute(
                f"SELECT * FROM messages WHERE id IN ({placeholders})",  # noqa: S608 - placeholders only
                message_ids,
            ).fetchall()
        return {row["id"]: _row_to_message(row) for row in rows}

    @staticmethod
    def recent_for_conversations(
        conversation_ids: list[str],
        since: datetime,
        limit: int,
        batch_size: int = 200,
    ) -> list[ChatMessage]:
        """
        Newest-first messages across conversations since `since`, at most `limit`.

        Conversation ids are queried in batches to stay under SQLite's
        bound-parameter limit.
        """
        messages: list[ChatMessage] = []
        with get_db_connection() as conn:
            for start in range(0, len(conversation_ids), batch_size):
                batch = conversation_ids[start : start + batch_size]
                placeholders = ",".join("?" * len(batch))
                rows = conn.execute(
                    f"""
                    SELECT * FROM messages
                    WHERE conversation_id IN ({placeholders}) AND created_at >= ?
                    ORDER BY created_at DESC
                    LIMIT ?
                    """,  # noqa: S608 - placeholders only
                    [*batch, to_db_time(since), limit],
                ).fetchall()
                messages.extend(_row_to_message(row) for row in rows)

        messages.sort(key=lambda m: m.timestamp, reverse=True)
        return messages[:limit]

    @staticmethod
    def for_conversation(conversation_id: str, limit: int) -> list[ChatMessage]:
        """Newest-first messages of one conversation."""
        with get_db_connection() as conn:
            rows = conn.execute(
                """
                SELECT * FROM messages WHERE conversation_id = ?
                ORDER BY created_at DESC LIMIT ?
                """,
                (conversation_id, limit),
            ).fetchall()
        return [_row_to_message(row) for row in rows]

    @staticmethod
    def unread_for_user(
        conversation_id: str,
        user_id: str,
        since: datetime,
        limit: int,
    ) -> list[ChatMessage]:
        """
        Newest-first messages in the conversation since `since` that the user
        hasn't read and didn't send.
        """
        with get_db_connection() as conn:
            rows = conn.execute(
                """
                SELECT m.* FROM messages m
                WHERE m.conversation_id = :conversation_id
                  AND m.created_at >= :since
                  AND m.sender_id != :user_id
                  AND NOT EXISTS (
                      SELECT 1 FROM message_reads r
                      WHERE r.message_id = m.id AND r.user_id = :user_id
                  )
                ORDER BY m.created_at DESC
                LIMIT :limit
                """,
                {
                    "conversation_id": conversation_id,
                    "user_id": user_id,
                    "since": to_db_time(since),
                    "limit": limit,
                },
            ).fetchall()
        return [_row_to_message(row) for row in rows]


class ActivityStore:
    """Server-side record of which conversation a user is currently viewing."""

    @staticmethod
    @retry_on_db_lock()
    def set_active_conversation(
        user_id: str,
        conversation_id: str | None,
        now: datetime | None = None,
    ) -> None:
        with db_transaction() as conn:
            conn.execute(
                """
                INSERT INTO user_activity (user_id, active_conversation_id, updated_at)
                VALUES (?, ?, ?)
                ON CONFLICT(user_id) DO UPDATE SET
                    active_conversation_id = excluded.active_conversation_id,
                    updated_at = excluded.updated_at
                """,
                (user_id, conversation_id, to_db_time(now or utc_now())),
            )

    @staticmethod
    def is_actively_viewing(
        user_id: str,
        conversation_id: str,
        now: datetime | None = None,
        window_seconds: int = ACTIVE_VIEW_WINDOW_SECONDS,
    ) -> bool:
        """True if the user's last heartbeat names this conversation and is recent."""
        with get_db_connection() as conn:
            row = conn.execute(
                "SELECT active_conversation_id, updated_at FROM user_activity WHERE user_id = ?",
                (user_id,),
            ).fetchone()

        if not row or row["active_conversation_id"] != conversation_id:
            return False

        now = now or utc_now()
        return from_db_time(row["updated_at"]) > now - timedelta(seconds=window_seconds)
