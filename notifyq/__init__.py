"""NotifyQ - decide when a chat message deserves an interruptive notification"""

from __future__ import annotations

__version__ = "0.1.0"


# Lazy imports keep `import notifyq` cheap (no Vertex AI / FastAPI import cost)
def __getattr__(name: str):
    if name == "DecisionEngine":
        from notifyq.notifications.engine import DecisionEngine

        return DecisionEngine

    if name == "ActivityMonitor":
        from notifyq.notifications.monitor import ActivityMonitor

        return ActivityMonitor

    if name in ("NotificationDecision", "UserPreferences", "LearnedProfile"):
        from notifyq.notifications import models

        return getattr(models, name)

    msg = f"module {__name__!r} has no attribute {name!r}"
    raise AttributeError(msg)


__all__ = [
    "ActivityMonitor",
    "DecisionEngine",
    "LearnedProfile",
    "NotificationDecision",
    "UserPreferences",
]
