"""
Error taxonomy for the notification pipeline.

Only AuthorizationError, ConversationNotFoundError and FeedbackValidationError
ever reach a caller of the decision/feedback operations. Provider, validation
and configuration failures are absorbed by the engine and turned into a
fallback decision.
"""

from __future__ import annotations


class NotificationError(Exception):
    """Base class for notification pipeline errors."""


class TransientProviderError(NotificationError):
    """Model provider timed out, rate limited us, or was temporarily unavailable."""

    def __init__(self, message: str, kind: str = "unavailable"):
        super().__init__(message)
        self.kind = kind  # "timeout" | "rate_limit" | "unavailable"


class DecisionValidationError(NotificationError):
    """Model returned malformed or incomplete decision JSON."""

    def __init__(self, message: str, raw_response: str = ""):
        super().__init__(message)
        self.raw_response = raw_response


class ConfigurationError(NotificationError):
    """Provider credentials/project/SDK missing; the model path cannot work until fixed."""


class AuthorizationError(NotificationError):
    """Caller is not a participant of the conversation."""


class ConversationNotFoundError(NotificationError, LookupError):
    """Conversation id does not exist."""


class FeedbackValidationError(NotificationError, ValueError):
    """Feedback payload is missing ids or has an unknown feedback value."""
