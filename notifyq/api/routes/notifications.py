"""
Smart notification API endpoints.

Decision requests, feedback, preferences, active-view heartbeats, learned
profile and feedback analytics. The caller is always the authenticated user;
user ids are never taken from request bodies.
"""

from __future__ import annotations

from functools import lru_cache
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from notifyq.api.middleware.user_auth import AuthenticatedUser, get_current_user
from notifyq.config import API_ANALYTICS_DAYS_DEFAULT, API_ANALYTICS_DAYS_MAX
from notifyq.notifications.decision_log import DecisionLogRepository
from notifyq.notifications.engine import DecisionEngine
from notifyq.notifications.errors import (
    AuthorizationError,
    ConversationNotFoundError,
    FeedbackValidationError,
)
from notifyq.notifications.feedback import FeedbackStore
from notifyq.notifications.models import UserPreferences
from notifyq.notifications.preferences import NotificationPreferencesRepository
from notifyq.notifications.profile import ProfileLearner, ProfileRepository
from notifyq.notifications.stores import ActivityStore, ConversationStore
from notifyq.observability.logging import get_logger

router = APIRouter(prefix="/api/notifications", tags=["notifications"])
logger = get_logger(__name__)


# ============================================================================
# Request Models
# ============================================================================


class _Request(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class AnalyzeRequest(_Request):
    conversation_id: str


class FeedbackRequest(_Request):
    conversation_id: str
    message_id: str
    feedback: str
    decision: dict[str, Any] | None = None


class ActivityRequest(_Request):
    conversation_id: str | None = None


# ============================================================================
# Dependencies
# ============================================================================


@lru_cache(maxsize=1)
def get_decision_engine() -> DecisionEngine:
    return DecisionEngine()


def get_profile_learner() -> ProfileLearner:
    return ProfileLearner()


# ============================================================================
# Endpoints
# ============================================================================


@router.post("/analyze")
def analyze_conversation(
    request: AnalyzeRequest,
    user: AuthenticatedUser = Depends(get_current_user),
    engine: DecisionEngine = Depends(get_decision_engine),
) -> dict[str, Any]:
    """
    Decide whether the caller should be notified about a conversation.

    Model failures never surface here; they degrade to the fallback decision.
    """
    try:
        decision = engine.decide(user.id, request.conversation_id)
    except ConversationNotFoundError:
        raise HTTPException(status_code=404, detail="Conversation not found") from None
    except AuthorizationError:
        raise HTTPException(status_code=403, detail="Not a participant in this conversation") from None
    except Exception as e:
        logger.error("Failed to analyze conversation %s: %s", request.conversation_id, e)
        raise HTTPException(status_code=500, detail="Failed to analyze conversation") from None

    return decision.to_response()


@router.post("/feedback")
def submit_feedback(
    request: FeedbackRequest,
    user: AuthenticatedUser = Depends(get_current_user),
) -> dict[str, Any]:
    try:
        record = FeedbackStore.submit(
            user.id,
            request.conversation_id,
            request.message_id,
            request.feedback,
            decision=request.decision,
        )
    except FeedbackValidationError as e:
        raise HTTPException(status_code=400, detail=str(e)) from None
    except ConversationNotFoundError:
        raise HTTPException(status_code=404, detail="Conversation not found") from None
    except AuthorizationError:
        raise HTTPException(status_code=403, detail="Not a participant in this conversation") from None
    except Exception as e:
        logger.error("Failed to store feedback: %s", e)
        raise HTTPException(status_code=500, detail="Failed to store feedback") from None

    return {"success": True, "feedbackId": record.id}


@router.get("/preferences")
def get_preferences(user: AuthenticatedUser = Depends(get_current_user)) -> dict[str, Any]:
    return NotificationPreferencesRepository.get(user.id).model_dump(mode="json", by_alias=True)


@router.put("/preferences")
def update_preferences(
    preferences: UserPreferences,
    user: AuthenticatedUser = Depends(get_current_user),
    engine: DecisionEngine = Depends(get_decision_engine),
) -> dict[str, Any]:
    try:
        saved = NotificationPreferencesRepository.save(user.id, preferences)
    except Exception as e:
        logger.error("Failed to save preferences: %s", e)
        raise HTTPException(status_code=500, detail="Failed to save preferences") from None

    engine.context_assembler.invalidate(user.id)
    return saved.model_dump(mode="json", by_alias=True)


@router.delete("/preferences")
def reset_preferences(
    user: AuthenticatedUser = Depends(get_current_user),
    engine: DecisionEngine = Depends(get_decision_engine),
) -> dict[str, Any]:
    """Drop stored preferences; the defaults apply again."""
    NotificationPreferencesRepository.delete(user.id)
    engine.context_assembler.invalidate(user.id)
    return UserPreferences().model_dump(mode="json", by_alias=True)


@router.post("/activity")
def set_active_conversation(
    request: ActivityRequest,
    user: AuthenticatedUser = Depends(get_current_user),
) -> dict[str, Any]:
    """Heartbeat for the conversation the user is viewing (null when leaving)."""
    conversation_id = request.conversation_id
    if conversation_id is not None:
        if not ConversationStore.exists(conversation_id):
            raise HTTPException(status_code=404, detail="Conversation not found")
        if not ConversationStore.is_participant(conversation_id, user.id):
            raise HTTPException(status_code=403, detail="Not a participant in this conversation")

    ActivityStore.set_active_conversation(user.id, conversation_id)
    return {"activeConversationId": conversation_id}


@router.get("/profile")
def get_profile(user: AuthenticatedUser = Depends(get_current_user)) -> dict[str, Any]:
    profile = ProfileRepository.get(user.id)
    return {"profile": profile.model_dump(mode="json", by_alias=True) if profile else None}


@router.post("/profile/refresh")
def refresh_profile(
    user: AuthenticatedUser = Depends(get_current_user),
    learner: ProfileLearner = Depends(get_profile_learner),
) -> dict[str, Any]:
    try:
        profile = learner.update_user(user.id)
    except Exception as e:
        logger.error("Failed to refresh profile: %s", e)
        raise HTTPException(status_code=500, detail="Failed to refresh profile") from None

    return {
        "updated": profile is not None,
        "profile": profile.model_dump(mode="json", by_alias=True) if profile else None,
    }


@router.get("/history")
def get_history(
    limit: int = Query(50, ge=1, le=200),
    user: AuthenticatedUser = Depends(get_current_user),
) -> dict[str, Any]:
    """Newest-first decisions computed for the caller, with any feedback given."""
    return {"decisions": DecisionLogRepository.recent_for_user(user.id, limit=limit)}


@router.get("/analytics")
def get_analytics(
    days: int = Query(API_ANALYTICS_DAYS_DEFAULT, ge=1, le=API_ANALYTICS_DAYS_MAX),
    user: AuthenticatedUser = Depends(get_current_user),
) -> dict[str, Any]:
    try:
        return FeedbackStore.analytics(user.id, days=days)
    except Exception as e:
        logger.error("Failed to build analytics: %s", e)
        raise HTTPException(status_code=500, detail="Failed to build analytics") from None
