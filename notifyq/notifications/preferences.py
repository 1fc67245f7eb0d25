"""
Notification preferences - per-user settings with safe defaults.

A user who never saved preferences gets UserPreferences() defaults; reads
never fail because a row is missing.

Usage:
    from notifyq.notifications.preferences import NotificationPreferencesRepository

    prefs = NotificationPreferencesRepository.get("alice")
    prefs.priority_keywords.append("launch")
    NotificationPreferencesRepository.save("alice", prefs)
"""

from __future__ import annotations

from datetime import datetime, time
from zoneinfo import ZoneInfo

from pydantic import ValidationError

from notifyq.infrastructure.database import db_transaction, get_db_connection, retry_on_db_lock
from notifyq.notifications.models import QuietHours, UserPreferences, to_db_time, utc_now
from notifyq.observability.logging import get_logger
from notifyq.observability.telemetry import counter

logger = get_logger(__name__)


class NotificationPreferencesRepository:
    @staticmethod
    def get(user_id: str) -> UserPreferences:
        """
        Load a user's preferences, falling back to defaults.

        A stored document that no longer validates (e.g. written by an older
        client) is logged and replaced by defaults rather than breaking the
        decision path.
        """
        with get_db_connection() as conn:
            row = conn.execute(
                "SELECT preferences FROM notification_preferences WHERE user_id = ?",
                (user_id,),
            ).fetchone()

        if not row:
            return UserPreferences()

        try:
            return UserPreferences.model_validate_json(row["preferences"])
        except ValidationError as e:
            counter("notifications.preferences.invalid_stored")
            logger.warning("Stored preferences for %s are invalid, using defaults: %s", user_id, e)
            return UserPreferences()

    @staticmethod
    @retry_on_db_lock()
    def save(user_id: str, preferences: UserPreferences) -> UserPreferences:
        """
        Upsert a user's preferences.

        Side Effects:
            - Inserts or replaces the notification_preferences row
        """
        with db_transaction() as conn:
            conn.execute(
                """
                INSERT INTO notification_preferences (user_id, preferences, updated_at)
                VALUES (?, ?, ?)
                ON CONFLICT(user_id) DO UPDATE SET
                    preferences = excluded.preferences,
                    updated_at = excluded.updated_at
                """,
                (user_id, preferences.model_dump_json(by_alias=True), to_db_time(utc_now())),
            )

        logger.info(
            "Saved notification preferences for %s (enabled=%s, keywords=%d)",
            user_id,
            preferences.enabled,
            len(preferences.priority_keywords),
        )
        return preferences

    @staticmethod
    @retry_on_db_lock()
    def delete(user_id: str) -> bool:
        """Reset a user to defaults. Returns True if a stored row existed."""
        with db_transaction() as conn:
            cursor = conn.execute(
                "DELETE FROM notification_preferences WHERE user_id = ?",
                (user_id,),
            )
            return cursor.rowcount > 0


def _parse_hhmm(value: str) -> time:
    hours, minutes = value.split(":")
    return time(int(hours), int(minutes))


def is_quiet_time(quiet_hours: QuietHours | None, now: datetime) -> bool:
    """
    True if `now` falls inside the quiet window, in the window's own timezone.

    Windows that cross midnight (start > end, e.g. 22:00-08:00) match
    `now >= start or now < end`. An empty window (start == end) never matches.
    """
    if quiet_hours is None or not quiet_hours.enabled:
        return False

    local = now.astimezone(ZoneInfo(quiet_hours.timezone)).time().replace(second=0, microsecond=0)
    start = _parse_hhmm(quiet_hours.start)
    end = _parse_hhmm(quiet_hours.end)

    if start == end:
        return False
    if start < end:
        return start <= local < end
    return local >= start or local < end
