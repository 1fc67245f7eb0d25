"""
Decision engine - should this user be notified about this conversation now?

Pipeline for decide(user_id, conversation_id):

    1. Conversation must exist and the user must be a participant
       (AuthorizationError is a security boundary and is never masked)
    2. Actively viewing the conversation -> don't notify (never cached)
    3. Unread batch: last 15 min, max 30, excluding own/read messages
    4. Preferences: disabled -> don't notify
    5. Decision cache keyed by recipient and the exact unread-id set
    6. Fast heuristic pre-filter on the newest unread message
    7. Model path: hourly budget -> context -> learned profile -> Gemini
    8. Any model-path failure -> user's fallback strategy
    9. Quiet hours downgrade (applied on the way out, cached or not)

Computed decisions are cached and appended to the decision log.
"""

from __future__ import annotations

import sqlite3
from datetime import datetime, timedelta

from notifyq.config import UNREAD_MAX_MESSAGES, UNREAD_WINDOW_MINUTES, USE_FAST_FILTER, USE_LLM
from notifyq.infrastructure.analysis_budget import AnalysisBudget
from notifyq.notifications.analyzer import NotificationAnalyzer
from notifyq.notifications.cache import DecisionCache, derive_cache_key
from notifyq.notifications.context import ContextAssembler
from notifyq.notifications.decision_log import DecisionLogRepository
from notifyq.notifications.errors import (
    AuthorizationError,
    ConfigurationError,
    ConversationNotFoundError,
    DecisionValidationError,
    TransientProviderError,
)
from notifyq.notifications.fallback import format_notification_text, strategy_decision
from notifyq.notifications.fast_filter import HeuristicVerdict, apply_fast_heuristics
from notifyq.notifications.models import (
    ChatMessage,
    DecisionSource,
    NotificationDecision,
    Priority,
    UserPreferences,
    utc_now,
)
from notifyq.notifications.preferences import NotificationPreferencesRepository, is_quiet_time
from notifyq.notifications.profile import ProfileRepository
from notifyq.notifications.stores import ActivityStore, ConversationStore, MessageStore, UserStore
from notifyq.observability.logging import get_logger
from notifyq.observability.telemetry import counter, log_event, time_block

logger = get_logger(__name__)

QUIET_HOURS_SUFFIX = " (quiet hours)"


def _rule_decision(conversation_id: str, reason: str, message_ids: list[str], now: datetime) -> NotificationDecision:
    return NotificationDecision(
        should_notify=False,
        reason=reason,
        notification_text="",
        priority=Priority.LOW,
        conversation_id=conversation_id,
        message_ids=message_ids,
        timestamp=now,
        source=DecisionSource.RULE,
    )


def apply_quiet_hours(decision: NotificationDecision, preferences: UserPreferences, now: datetime) -> NotificationDecision:
    """During quiet hours only high-priority notifications go through."""
    if not decision.should_notify or decision.priority is Priority.HIGH:
        return decision
    if not is_quiet_time(preferences.quiet_hours, now):
        return decision

    counter("notifications.decision.quiet_hours")
    return decision.model_copy(update={"should_notify": False, "reason": decision.reason + QUIET_HOURS_SUFFIX})


class DecisionEngine:
    """
    Orchestrates cache, fast filter, model and fallback.

    Every collaborator is injectable; defaults are the production ones.
    """

    def __init__(
        self,
        analyzer: NotificationAnalyzer | None = None,
        cache: DecisionCache | None = None,
        context_assembler: ContextAssembler | None = None,
        use_llm: bool = USE_LLM,
        use_fast_filter: bool = USE_FAST_FILTER,
    ):
        self._analyzer = analyzer
        self.cache = cache or DecisionCache()
        self.context_assembler = context_assembler or ContextAssembler.default()
        self.use_llm = use_llm
        self.use_fast_filter = use_fast_filter

    @property
    def analyzer(self) -> NotificationAnalyzer:
        if self._analyzer is None:
            self._analyzer = NotificationAnalyzer()
        return self._analyzer

    def decide(self, user_id: str, conversation_id: str, now: datetime | None = None) -> NotificationDecision:
        """
        Decide whether to notify `user_id` about unread messages in `conversation_id`.

        Returns:
            NotificationDecision (four decision fields always present)

        Raises:
            ConversationNotFoundError: Unknown conversation
            AuthorizationError: User is not a participant

        Side Effects:
            - Reads/writes notification_cache
            - May call Gemini (and the embedding model)
            - Appends to notification_decisions and analysis_usage
        """
        now = now or utc_now()

        if not ConversationStore.exists(conversation_id):
            raise ConversationNotFoundError(f"Conversation not found: {conversation_id}")
        if not ConversationStore.is_participant(conversation_id, user_id):
            counter("notifications.auth.denied")
            logger.warning("User %s is not a participant of %s", user_id, conversation_id)
            raise AuthorizationError("User is not a participant in this conversation")

        if ActivityStore.is_actively_viewing(user_id, conversation_id, now=now):
            counter("notifications.decision.active_view")
            return _rule_decision(conversation_id, "User is actively viewing the conversation", [], now)

        unread = MessageStore.unread_for_user(
            conversation_id,
            user_id,
            since=now - timedelta(minutes=UNREAD_WINDOW_MINUTES),
            limit=UNREAD_MAX_MESSAGES,
        )
        message_ids = [m.id for m in unread]
        if not unread:
            return _rule_decision(conversation_id, "No unread messages", message_ids, now)

        preferences = NotificationPreferencesRepository.get(user_id)
        if not preferences.enabled:
            return _rule_decision(conversation_id, "Notifications disabled", message_ids, now)

        cache_key = derive_cache_key(user_id, conversation_id, message_ids)
        entry = self.cache.get(cache_key, now=now)
        if entry is not None:
            logger.debug("Decision cache hit for %s/%s", user_id, conversation_id)
            cached = entry.decision.model_copy(update={"source": DecisionSource.CACHED})
            return apply_quiet_hours(cached, preferences, now)

        with time_block("notifications.decision.latency"):
            decision = self._compute(user_id, conversation_id, unread, preferences, now)

        self.cache.put(cache_key, decision, now=now)
        final = apply_quiet_hours(decision, preferences, now)

        try:
            DecisionLogRepository.record(user_id, final)
        except sqlite3.Error as e:
            counter("notifications.decision_log.error")
            logger.error("Failed to log decision for %s/%s: %s", user_id, conversation_id, e)

        counter(f"notifications.decision.{decision.source.value}")
        log_event(
            "notifications.decision",
            user_id=user_id,
            conversation_id=conversation_id,
            source=final.source.value,
            should_notify=final.should_notify,
            priority=final.priority.value,
            message_count=len(unread),
        )
        return final

    def _compute(
        self,
        user_id: str,
        conversation_id: str,
        unread: list[ChatMessage],
        preferences: UserPreferences,
        now: datetime,
    ) -> NotificationDecision:
        newest = unread[0]
        user_name = UserStore.display_name(user_id)

        if self.use_fast_filter:
            fast = apply_fast_heuristics(newest, user_name=user_name, priority_keywords=preferences.priority_keywords)
            if fast.is_decisive:
                logger.debug("Fast path for %s/%s: %s", user_id, conversation_id, fast.reason)
                return NotificationDecision(
                    should_notify=fast.verdict is HeuristicVerdict.DEFINITELY_NOTIFY,
                    reason=fast.reason,
                    notification_text=format_notification_text(newest),
                    priority=fast.priority or Priority.LOW,
                    conversation_id=conversation_id,
                    message_ids=[m.id for m in unread],
                    timestamp=now,
                    source=DecisionSource.FAST_PATH,
                )

        if not self.use_llm:
            return self._fallback(user_id, user_name, conversation_id, unread, preferences, now)

        try:
            budget = AnalysisBudget.check(user_id, preferences.max_analyses_per_hour, now=now)
            if not budget.is_allowed:
                logger.info("Skipping model for %s: %s", user_id, budget.reason)
                return self._fallback(user_id, user_name, conversation_id, unread, preferences, now)

            AnalysisBudget.record(user_id, now=now)
            context = self.context_assembler.assemble(
                user_id,
                now=now,
                query_text=newest.text,
                query_message_id=newest.id,
                conversation_id=conversation_id,
                exclude_message_ids=set(m.id for m in unread),
            )
            return self.analyzer.analyze(
                context=context,
                unread=unread,
                conversation_id=conversation_id,
                profile=ProfileRepository.get(user_id),
                now=now,
            )
        except AuthorizationError:
            raise
        except ConfigurationError as e:
            counter("notifications.llm.config_error")
            logger.critical("Notification model misconfigured, using fallback: %s", e)
            log_event("notifications.llm.config_error", severity="critical", user_id=user_id, error=str(e))
        except TransientProviderError as e:
            logger.warning("Transient provider error (%s) for %s, using fallback: %s", e.kind, user_id, e)
            log_event("notifications.llm.transient_error", kind=e.kind, user_id=user_id)
        except DecisionValidationError as e:
            logger.warning("Invalid model decision for %s, using fallback. raw=%r", user_id, e.raw_response[:500])
            log_event("notifications.llm.validation_error", user_id=user_id, error=str(e))
        except Exception as e:
            counter("notifications.llm.unexpected_error")
            logger.error("Model path failed for %s/%s: %s", user_id, conversation_id, e, exc_info=True)
            log_event("notifications.llm.error", user_id=user_id, error=str(e))

        return self._fallback(user_id, user_name, conversation_id, unread, preferences, now)

    @staticmethod
    def _fallback(
        user_id: str,
        user_name: str | None,
        conversation_id: str,
        unread: list[ChatMessage],
        preferences: UserPreferences,
        now: datetime,
    ) -> NotificationDecision:
        return strategy_decision(
            preferences.fallback_strategy,
            unread,
            conversation_id=conversation_id,
            user_id=user_id,
            user_name=user_name,
            priority_keywords=preferences.priority_keywords,
            now=now,
        )
