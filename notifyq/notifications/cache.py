"""
Decision cache - memoize decisions per exact unread-message set.

The key hashes the recipient and the sorted unread message ids. Recipients
of the same group message get separate entries, and any new (or newly read)
message produces a new key so the old entry simply ages out. Entries live
in the shared SQLite database so every API worker sees them.

A cache failure is never fatal: read errors are a miss and write errors are
logged and dropped.
"""

from __future__ import annotations

import hashlib
import json
import sqlite3
from collections.abc import Iterable
from datetime import datetime, timedelta

from pydantic import ValidationError

from notifyq.config import DECISION_CACHE_TTL_SECONDS
from notifyq.infrastructure.database import db_transaction, get_db_connection
from notifyq.notifications.models import (
    CacheEntry,
    DecisionSource,
    NotificationDecision,
    from_db_time,
    to_db_time,
    utc_now,
)
from notifyq.observability.logging import get_logger
from notifyq.observability.telemetry import counter

logger = get_logger(__name__)


def derive_cache_key(user_id: str, conversation_id: str, message_ids: Iterable[str]) -> str:
    """`notification_{conversationId}_{sha256(userId + sorted ids)[:16]}`; order-insensitive."""
    joined = user_id + ":" + ",".join(sorted(message_ids))
    digest = hashlib.sha256(joined.encode("utf-8")).hexdigest()[:16]
    return f"notification_{conversation_id}_{digest}"


class DecisionCache:
    def __init__(self, ttl_seconds: int = DECISION_CACHE_TTL_SECONDS):
        self.ttl_seconds = ttl_seconds

    def get(self, key: str, now: datetime | None = None) -> CacheEntry | None:
        """
        Return the live entry for `key`, or None on miss.

        Side Effects:
            - Deletes the row if it has expired
            - Increments notifications.cache.hit / .miss / .error counters
        """
        now = now or utc_now()
        try:
            with get_db_connection() as conn:
                row = conn.execute(
                    "SELECT * FROM notification_cache WHERE cache_key = ?",
                    (key,),
                ).fetchone()

            if row is None:
                counter("notifications.cache.miss")
                return None

            entry = CacheEntry(
                key=key,
                decision=NotificationDecision.model_validate_json(row["decision"]),
                created_at=from_db_time(row["created_at"]),
                expires_at=from_db_time(row["expires_at"]),
                source=DecisionSource(row["source"]),
            )

            if entry.is_expired(now):
                logger.debug("Decision cache expired: %s", key)
                self.delete(key)
                counter("notifications.cache.miss")
                return None

        except (sqlite3.Error, OSError, ValidationError, ValueError) as e:
            counter("notifications.cache.error")
            logger.warning("Decision cache lookup failed for %s, treating as miss: %s", key, e)
            return None

        counter("notifications.cache.hit")
        return entry

    def put(
        self,
        key: str,
        decision: NotificationDecision,
        ttl_seconds: int | None = None,
        now: datetime | None = None,
    ) -> CacheEntry | None:
        """
        Store a decision (last writer wins for the same key).

        Returns the entry, or None if the write failed.
        """
        now = now or utc_now()
        ttl = self.ttl_seconds if ttl_seconds is None else ttl_seconds
        entry = CacheEntry(
            key=key,
            decision=decision,
            created_at=now,
            expires_at=now + timedelta(seconds=ttl),
            source=decision.source,
        )

        try:
            with db_transaction() as conn:
                conn.execute(
                    """
                    INSERT INTO notification_cache
                        (cache_key, conversation_id, message_ids, decision, source, created_at, expires_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(cache_key) DO UPDATE SET
                        decision = excluded.decision,
                        source = excluded.source,
                        created_at = excluded.created_at,
                        expires_at = excluded.expires_at
                    """,
                    (
                        key,
                        decision.conversation_id,
                        json.dumps(decision.message_ids),
                        decision.model_dump_json(),
                        entry.source.value,
                        to_db_time(entry.created_at),
                        to_db_time(entry.expires_at),
                    ),
                )
        except (sqlite3.Error, OSError) as e:
            counter("notifications.cache.write_error")
            logger.warning("Decision cache write failed for %s: %s", key, e)
            return None

        logger.debug("Decision cached: %s (expires %s)", key, entry.expires_at.isoformat())
        return entry

    def delete(self, key: str) -> None:
        with db_transaction() as conn:
            conn.execute("DELETE FROM notification_cache WHERE cache_key = ?", (key,))

    def purge_expired(self, now: datetime | None = None) -> int:
        """Delete every expired entry. Returns the number removed."""
        with db_transaction() as conn:
            cursor = conn.execute(
                "DELETE FROM notification_cache WHERE expires_at <= ?",
                (to_db_time(now or utc_now()),),
            )
            removed = cursor.rowcount

        if removed:
            logger.info("Purged %d expired cached decisions", removed)
        return removed
