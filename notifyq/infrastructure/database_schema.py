"""
Database schema initialization for NotifyQ.

Timestamps are stored as UTC ISO-8601 strings with microseconds so that
lexical comparison in SQL matches chronological order.
"""

from __future__ import annotations

import sqlite3
from pathlib import Path

from notifyq.observability.logging import get_logger

logger = get_logger(__name__)


def init_database(db_path: Path) -> None:
    """
    Initialize database with schema (idempotent)

    Safe to run multiple times - uses CREATE TABLE IF NOT EXISTS.

    Side Effects:
    - Creates the data directory and database file if needed
    - Creates tables and indexes that don't exist yet
    """
    db_path.parent.mkdir(parents=True, exist_ok=True)

    conn = sqlite3.connect(db_path)
    try:
        conn.executescript("""
            -- Chat collaborators (read by the notification core)
            CREATE TABLE IF NOT EXISTS users (
                id TEXT PRIMARY KEY,
                display_name TEXT NOT NULL,
                created_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS conversations (
                id TEXT PRIMARY KEY,
                title TEXT,
                is_group INTEGER NOT NULL DEFAULT 0,
                created_at TEXT NOT NULL,
                last_message_at TEXT
            );

            CREATE TABLE IF NOT EXISTS conversation_participants (
                conversation_id TEXT NOT NULL REFERENCES conversations(id) ON DELETE CASCADE,
                user_id TEXT NOT NULL,
                PRIMARY KEY (conversation_id, user_id)
            );

            CREATE INDEX IF NOT EXISTS idx_participants_user
            ON conversation_participants(user_id);

            CREATE TABLE IF NOT EXISTS messages (
                id TEXT PRIMARY KEY,
                conversation_id TEXT NOT NULL REFERENCES conversations(id) ON DELETE CASCADE,
                sender_id TEXT NOT NULL,
                sender_name TEXT NOT NULL,
                text TEXT NOT NULL,
                created_at TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_messages_conversation_created
            ON messages(conversation_id, created_at);

            CREATE TABLE IF NOT EXISTS message_reads (
                message_id TEXT NOT NULL REFERENCES messages(id) ON DELETE CASCADE,
                user_id TEXT NOT NULL,
                read_at TEXT NOT NULL,
                PRIMARY KEY (message_id, user_id)
            );

            CREATE TABLE IF NOT EXISTS message_embeddings (
                message_id TEXT PRIMARY KEY REFERENCES messages(id) ON DELETE CASCADE,
                conversation_id TEXT NOT NULL,
                embedding TEXT NOT NULL,
                model TEXT NOT NULL,
                created_at TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_embeddings_conversation
            ON message_embeddings(conversation_id);

            CREATE TABLE IF NOT EXISTS user_activity (
                user_id TEXT PRIMARY KEY,
                active_conversation_id TEXT,
                updated_at TEXT NOT NULL
            );

            -- Notification core
            CREATE TABLE IF NOT EXISTS notification_preferences (
                user_id TEXT PRIMARY KEY,
                preferences TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS notification_profiles (
                user_id TEXT PRIMARY KEY,
                preferred_notification_rate TEXT NOT NULL,
                learned_keywords TEXT NOT NULL DEFAULT '[]',
                suppressed_topics TEXT NOT NULL DEFAULT '[]',
                accuracy REAL NOT NULL,
                total_feedback INTEGER NOT NULL,
                helpful_count INTEGER NOT NULL,
                not_helpful_count INTEGER NOT NULL,
                last_updated TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS notification_cache (
                cache_key TEXT PRIMARY KEY,
                conversation_id TEXT NOT NULL,
                message_ids TEXT NOT NULL,
                decision TEXT NOT NULL,
                source TEXT NOT NULL,
                created_at TEXT NOT NULL,
                expires_at TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_notification_cache_expires
            ON notification_cache(expires_at);

            CREATE TABLE IF NOT EXISTS notification_decisions (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id TEXT NOT NULL,
                conversation_id TEXT NOT NULL,
                message_ids TEXT NOT NULL,
                message_count INTEGER NOT NULL,
                should_notify INTEGER NOT NULL,
                priority TEXT NOT NULL,
                reason TEXT NOT NULL,
                notification_text TEXT NOT NULL,
                source TEXT NOT NULL,
                was_delivered INTEGER NOT NULL DEFAULT 0,
                user_feedback TEXT,
                created_at TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_decisions_user_created
            ON notification_decisions(user_id, created_at);

            CREATE INDEX IF NOT EXISTS idx_decisions_conversation
            ON notification_decisions(conversation_id, created_at);

            CREATE TABLE IF NOT EXISTS notification_feedback (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                conversation_id TEXT NOT NULL,
                message_id TEXT NOT NULL,
                feedback TEXT NOT NULL,
                decision TEXT,
                created_at TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_feedback_user_created
            ON notification_feedback(user_id, created_at);

            -- Hourly analysis ceiling (per user)
            CREATE TABLE IF NOT EXISTS analysis_usage (
                user_id TEXT NOT NULL,
                hour_bucket TEXT NOT NULL,
                call_count INTEGER NOT NULL DEFAULT 0,
                PRIMARY KEY (user_id, hour_bucket)
            );
        """)
        conn.commit()
    finally:
        conn.close()

    logger.info("Database initialized: %s", db_path)


def validate_schema(conn: sqlite3.Connection) -> bool:
    """
    Validate database has expected schema

    Raises:
        ValueError: If tables or columns are missing
    """
    required_tables = {
        "users": ["id", "display_name"],
        "conversations": ["id", "is_group", "last_message_at"],
        "conversation_participants": ["conversation_id", "user_id"],
        "messages": ["id", "conversation_id", "sender_id", "sender_name", "text", "created_at"],
        "message_reads": ["message_id", "user_id"],
        "message_embeddings": ["message_id", "embedding", "created_at"],
        "notification_preferences": ["user_id", "preferences"],
        "notification_profiles": ["user_id", "preferred_notification_rate", "accuracy"],
        "notification_cache": ["cache_key", "decision", "expires_at"],
        "notification_decisions": ["id", "user_id", "should_notify", "user_feedback"],
        "notification_feedback": ["id", "user_id", "feedback", "decision"],
        "analysis_usage": ["user_id", "hour_bucket", "call_count"],
    }

    cursor = conn.cursor()
    cursor.execute("SELECT name FROM sqlite_master WHERE type='table'")
    existing_tables = {row[0] for row in cursor.fetchall()}

    missing_tables = set(required_tables) - existing_tables
    if missing_tables:
        raise ValueError(f"Database missing tables: {sorted(missing_tables)}")

    for table, required_cols in required_tables.items():
        # Identifiers can't be parameterized; names come from the dict above
        cursor.execute(f"PRAGMA table_info({table})")
        existing_cols = {row[1] for row in cursor.fetchall()}

        missing_cols = set(required_cols) - existing_cols
        if missing_cols:
            raise ValueError(f"Table '{table}' missing columns: {sorted(missing_cols)}")

    return True
