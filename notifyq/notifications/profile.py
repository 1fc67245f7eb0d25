"""
Profile learner - fold feedback history into a per-user LearnedProfile.

Batch job (weekly in production, or on demand via the API). For each user
it reads the last PROFILE_LOOKBACK_DAYS of feedback, computes the helpful
ratio, buckets it into a preferred notification rate and extracts frequent
terms from the decisions behind helpful / not-helpful feedback.

Re-running is safe: only the notification_profiles row is overwritten.

Usage:
    notifyq-learn-profiles             # every user with recent feedback
    notifyq-learn-profiles --user u1   # one user
"""

from __future__ import annotations

import argparse
import json
import re
import sys
from collections import Counter
from collections.abc import Iterable
from datetime import datetime, timedelta
from typing import Any

from notifyq.config import (
    PROFILE_HIGH_RATE,
    PROFILE_LOOKBACK_DAYS,
    PROFILE_MAX_KEYWORDS,
    PROFILE_MEDIUM_RATE,
)
from notifyq.infrastructure.database import (
    db_transaction,
    get_db_connection,
    init_database,
    retry_on_db_lock,
)
from notifyq.notifications.models import (
    FeedbackValue,
    LearnedProfile,
    NotificationRate,
    from_db_time,
    to_db_time,
    utc_now,
)
from notifyq.observability.logging import get_logger
from notifyq.observability.telemetry import counter, log_event

logger = get_logger(__name__)

STOP_WORDS = frozenset(
    {
        "the", "a", "an", "and", "or", "but", "is", "are", "was", "were",
        "to", "from", "in", "on", "at", "for", "with", "of", "by", "this",
        "that", "it", "you", "your", "has", "have", "had", "be", "been",
        "message", "messages", "notification", "notified", "notify",
    }
)  # fmt: skip

_NON_WORD = re.compile(r"[^a-z0-9\s]")


def rate_for_accuracy(accuracy: float) -> NotificationRate:
    if accuracy >= PROFILE_HIGH_RATE:
        return NotificationRate.HIGH
    if accuracy >= PROFILE_MEDIUM_RATE:
        return NotificationRate.MEDIUM
    return NotificationRate.LOW


def extract_keywords(texts: Iterable[str], max_keywords: int = PROFILE_MAX_KEYWORDS) -> list[str]:
    """
    Most frequent distinguishing terms, highest count first.

    Ties keep first-appearance order (Counter preserves insertion order and
    most_common is stable).
    """
    counts: Counter[str] = Counter()
    for text in texts:
        words = _NON_WORD.sub(" ", text.lower()).split()
        counts.update(w for w in words if len(w) > 3 and w not in STOP_WORDS)
    return [word for word, _ in counts.most_common(max_keywords)]


class ProfileRepository:
    """notification_profiles persistence."""

    @staticmethod
    def get(user_id: str) -> LearnedProfile | None:
        """The user's learned profile, or None if none has been learned yet."""
        with get_db_connection() as conn:
            row = conn.execute("SELECT * FROM notification_profiles WHERE user_id = ?", (user_id,)).fetchone()

        if row is None:
            return None

        return LearnedProfile(
            user_id=row["user_id"],
            preferred_notification_rate=NotificationRate(row["preferred_notification_rate"]),
            learned_keywords=json.loads(row["learned_keywords"]),
            suppressed_topics=json.loads(row["suppressed_topics"]),
            accuracy=row["accuracy"],
            total_feedback=row["total_feedback"],
            helpful_count=row["helpful_count"],
            not_helpful_count=row["not_helpful_count"],
            last_updated=from_db_time(row["last_updated"]),
        )

    @staticmethod
    @retry_on_db_lock()
    def save(profile: LearnedProfile) -> None:
        with db_transaction() as conn:
            conn.execute(
                """
                INSERT INTO notification_profiles (
                    user_id, preferred_notification_rate, learned_keywords, suppressed_topics,
                    accuracy, total_feedback, helpful_count, not_helpful_count, last_updated
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(user_id) DO UPDATE SET
                    preferred_notification_rate = excluded.preferred_notification_rate,
                    learned_keywords = excluded.learned_keywords,
                    suppressed_topics = excluded.suppressed_topics,
                    accuracy = excluded.accuracy,
                    total_feedback = excluded.total_feedback,
                    helpful_count = excluded.helpful_count,
                    not_helpful_count = excluded.not_helpful_count,
                    last_updated = excluded.last_updated
                """,
                (
                    profile.user_id,
                    profile.preferred_notification_rate.value,
                    json.dumps(profile.learned_keywords),
                    json.dumps(profile.suppressed_topics),
                    profile.accuracy,
                    profile.total_feedback,
                    profile.helpful_count,
                    profile.not_helpful_count,
                    to_db_time(profile.last_updated),
                ),
            )


def _feedback_since(user_id: str, since: datetime) -> list[dict[str, Any]]:
    with get_db_connection() as conn:
        rows = conn.execute(
            """
            SELECT feedback, decision FROM notification_feedback
            WHERE user_id = ? AND created_at > ?
            ORDER BY created_at DESC
            """,
            (user_id, to_db_time(since)),
        ).fetchall()
    return [
        {"feedback": row["feedback"], "decision": json.loads(row["decision"]) if row["decision"] else {}}
        for row in rows
    ]


def _users_with_feedback_since(since: datetime) -> list[str]:
    with get_db_connection() as conn:
        rows = conn.execute(
            "SELECT DISTINCT user_id FROM notification_feedback WHERE created_at > ? ORDER BY user_id",
            (to_db_time(since),),
        ).fetchall()
    return [row["user_id"] for row in rows]


def _decision_texts(decision: dict[str, Any]) -> list[str]:
    return [
        value
        for value in (decision.get("notificationText"), decision.get("reason"))
        if isinstance(value, str) and value
    ]


class ProfileLearner:
    def __init__(self, lookback_days: int = PROFILE_LOOKBACK_DAYS):
        self.lookback_days = lookback_days

    def update_user(self, user_id: str, now: datetime | None = None) -> LearnedProfile | None:
        """
        Recompute one user's profile from recent feedback.

        Returns:
            The saved LearnedProfile, or None if the user has no feedback in
            the lookback window (no profile is written)

        Side Effects:
            - Overwrites the user's notification_profiles row
        """
        now = now or utc_now()
        records = _feedback_since(user_id, now - timedelta(days=self.lookback_days))
        if not records:
            logger.info("No feedback found for user %s, profile unchanged", user_id)
            return None

        helpful_texts: list[str] = []
        not_helpful_texts: list[str] = []
        helpful = not_helpful = 0
        for record in records:
            if record["feedback"] == FeedbackValue.HELPFUL.value:
                helpful += 1
                helpful_texts.extend(_decision_texts(record["decision"]))
            elif record["feedback"] == FeedbackValue.NOT_HELPFUL.value:
                not_helpful += 1
                not_helpful_texts.extend(_decision_texts(record["decision"]))

        total = helpful + not_helpful
        accuracy = helpful / total if total else 0.0

        profile = LearnedProfile(
            user_id=user_id,
            preferred_notification_rate=rate_for_accuracy(accuracy),
            learned_keywords=extract_keywords(helpful_texts),
            suppressed_topics=extract_keywords(not_helpful_texts),
            accuracy=round(accuracy, 2),
            total_feedback=total,
            helpful_count=helpful,
            not_helpful_count=not_helpful,
            last_updated=now,
        )
        ProfileRepository.save(profile)

        counter("notifications.profile.updated")
        log_event(
            "notifications.profile.updated",
            user_id=user_id,
            rate=profile.preferred_notification_rate.value,
            accuracy=profile.accuracy,
            total_feedback=total,
        )
        logger.info(
            "Updated profile for %s: rate=%s accuracy=%.2f keywords=%s suppressed=%s",
            user_id,
            profile.preferred_notification_rate.value,
            profile.accuracy,
            ", ".join(profile.learned_keywords),
            ", ".join(profile.suppressed_topics),
        )
        return profile

    def update_all(self, now: datetime | None = None) -> dict[str, int]:
        """
        Recompute profiles for every user with feedback in the lookback window.

        A failure for one user is logged and counted; the batch continues.
        """
        now = now or utc_now()
        user_ids = _users_with_feedback_since(now - timedelta(days=self.lookback_days))
        updated = failed = 0

        for user_id in user_ids:
            try:
                if self.update_user(user_id, now=now) is not None:
                    updated += 1
            except Exception as e:
                failed += 1
                counter("notifications.profile.error")
                logger.error("Profile update failed for user %s: %s", user_id, e)

        logger.info("Profile batch complete: %d updated, %d failed, %d users", updated, failed, len(user_ids))
        return {"users_updated": updated, "users_failed": failed, "total_users": len(user_ids)}


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Learn notification profiles from user feedback")
    parser.add_argument("--user", help="Update a single user instead of everyone with recent feedback")
    parser.add_argument("--lookback-days", type=int, default=PROFILE_LOOKBACK_DAYS)
    args = parser.parse_args(argv)

    init_database()
    learner = ProfileLearner(lookback_days=args.lookback_days)
    if args.user:
        profile = learner.update_user(args.user)
        print(profile.model_dump_json(by_alias=True, indent=2) if profile else f"No feedback for {args.user}")
        return 0

    summary = learner.update_all()
    print(json.dumps(summary, indent=2))
    return 1 if summary["users_failed"] else 0


if __name__ == "__main__":
    sys.exit(main())
