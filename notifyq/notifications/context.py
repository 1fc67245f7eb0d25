"""
Context assembly - what the model knows about the user besides the unread batch.

The base bundle (recent conversations, recent messages, preferences) is a
pure function of (user_id, time window) and is cached per user for a short
TTL so a burst of triggers doesn't rebuild it. Semantic matches depend on the
triggering text, so they are computed per call and never cached.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from threading import Lock

from cachetools import TTLCache

from notifyq.config import (
    CONTEXT_CACHE_MAX_USERS,
    CONTEXT_CACHE_TTL_SECONDS,
    CONTEXT_MAX_MESSAGES,
    CONTEXT_MESSAGE_BATCH,
    CONTEXT_WINDOW_DAYS,
    SEMANTIC_TOP_K,
    USE_SEMANTIC_SEARCH,
)
from notifyq.notifications.embeddings import SemanticSearch
from notifyq.notifications.models import QuietHours, UserContext, utc_now
from notifyq.notifications.preferences import NotificationPreferencesRepository
from notifyq.notifications.stores import ConversationStore, MessageStore, UserStore
from notifyq.observability.logging import get_logger
from notifyq.observability.telemetry import counter, time_block

logger = get_logger(__name__)

MAX_PROMPT_CONVERSATIONS = 5
MAX_PROMPT_MESSAGES = 10
MAX_PROMPT_SIMILAR = 5
PROMPT_SNIPPET_CHARS = 100


class ContextAssembler:
    """
    Build UserContext bundles for the decision engine.

    Args:
        semantic_search: Similarity search backend (None disables semantic context)
        cache_ttl_seconds: Lifetime of the cached base bundle per user
    """

    def __init__(
        self,
        semantic_search: SemanticSearch | None = None,
        cache_ttl_seconds: int = CONTEXT_CACHE_TTL_SECONDS,
        max_cached_users: int = CONTEXT_CACHE_MAX_USERS,
    ):
        self.semantic_search = semantic_search
        self._cache: TTLCache[str, UserContext] = TTLCache(maxsize=max_cached_users, ttl=cache_ttl_seconds)
        # TTLCache is not thread-safe; assemble runs on the API threadpool and in monitor threads
        self._cache_lock = Lock()

    @classmethod
    def default(cls) -> ContextAssembler:
        return cls(semantic_search=SemanticSearch() if USE_SEMANTIC_SEARCH else None)

    def assemble(
        self,
        user_id: str,
        *,
        now: datetime | None = None,
        query_text: str | None = None,
        query_message_id: str | None = None,
        conversation_id: str | None = None,
        exclude_message_ids: set[str] | None = None,
        top_k: int = SEMANTIC_TOP_K,
    ) -> UserContext:
        """
        Context for one decision.

        Args:
            user_id: Recipient
            query_text: Triggering message text; enables semantic matches
            query_message_id: Triggering message id (its stored vector is reused)
            conversation_id: Triggering conversation (lazily indexed for search)
            exclude_message_ids: Messages never returned as semantic matches
                (the unread batch itself)

        Side Effects:
            - Reads messages/conversations/preferences (on base-cache miss)
            - May call the embedding model (semantic matches)
        """
        now = now or utc_now()
        with self._cache_lock:
            base = self._cache.get(user_id)
        if base is None:
            counter("notifications.context.cache_miss")
            base = self._build_base(user_id, now)
            with self._cache_lock:
                self._cache[user_id] = base
        else:
            counter("notifications.context.cache_hit")

        if not query_text or self.semantic_search is None:
            return base

        matches = []
        try:
            matches = self.semantic_search.search(
                query_text,
                conversation_ids=[c.id for c in base.conversations],
                top_k=top_k,
                exclude_ids=exclude_message_ids,
                index_conversation_ids=[conversation_id] if conversation_id else [],
                query_message_id=query_message_id,
                now=now,
            )
        except Exception as e:
            # Semantic context is an enrichment; the decision proceeds without it
            counter("notifications.context.semantic_error")
            logger.warning("Semantic search failed for user %s: %s", user_id, e)

        return base.model_copy(update={"semantic_context": matches})

    def invalidate(self, user_id: str) -> None:
        """Drop the cached bundle (e.g. after preferences change)."""
        with self._cache_lock:
            self._cache.pop(user_id, None)

    def _build_base(self, user_id: str, now: datetime) -> UserContext:
        since = now - timedelta(days=CONTEXT_WINDOW_DAYS)
        with time_block("notifications.context.assemble"):
            conversations = ConversationStore.list_for_user(user_id, since)
            recent = MessageStore.recent_for_conversations(
                [c.id for c in conversations],
                since=since,
                limit=CONTEXT_MAX_MESSAGES,
                batch_size=CONTEXT_MESSAGE_BATCH,
            )
            preferences = NotificationPreferencesRepository.get(user_id)

        logger.debug(
            "Assembled context for %s: %d conversations, %d messages",
            user_id,
            len(conversations),
            len(recent),
        )
        return UserContext(
            user_id=user_id,
            user_name=UserStore.display_name(user_id) or user_id,
            recent_messages=recent,
            conversations=conversations,
            preferences=preferences,
            assembled_at=now,
        )


def describe_quiet_hours(quiet_hours: QuietHours | None) -> str:
    if quiet_hours is None or not quiet_hours.enabled:
        return "disabled"
    return f"{quiet_hours.start} - {quiet_hours.end} ({quiet_hours.timezone})"


def format_context_for_prompt(context: UserContext) -> str:
    """Compact text rendering of a UserContext for the model prompt."""
    lines = [
        f"User ID: {context.user_id} (name: {context.user_name})",
        f"Recent Activity: {len(context.recent_messages)} messages across "
        f"{len(context.conversations)} conversations in the last {CONTEXT_WINDOW_DAYS} days",
        f"Total unread messages: {context.total_unread}",
    ]

    if context.conversations:
        lines += ["", "Active Conversations:"]
        for conv in context.conversations[:MAX_PROMPT_CONVERSATIONS]:
            kind = "group" if conv.is_group else "direct"
            last = conv.last_activity.isoformat() if conv.last_activity else "no messages yet"
            lines.append(f"- {conv.title or conv.id} ({kind}): {conv.unread_count} unread, last activity {last}")

    if context.recent_messages:
        lines += ["", "Recent Messages:"]
        for msg in context.recent_messages[:MAX_PROMPT_MESSAGES]:
            lines.append(f"- [{msg.timestamp.isoformat()}] {msg.sender_name}: {msg.text[:PROMPT_SNIPPET_CHARS]}")

    prefs = context.preferences
    lines += [
        "",
        "User Preferences:",
        f"- Priority keywords: {', '.join(prefs.priority_keywords) or 'none'}",
        f"- Quiet hours: {describe_quiet_hours(prefs.quiet_hours)}",
    ]

    if context.semantic_context:
        lines += ["", "Relevant Past Messages:"]
        for match in context.semantic_context[:MAX_PROMPT_SIMILAR]:
            msg = match.message
            lines.append(
                f"- [Similarity: {match.similarity:.2f}] {msg.sender_name}: {msg.text[:PROMPT_SNIPPET_CHARS]}"
            )

    return "\n".join(lines)
