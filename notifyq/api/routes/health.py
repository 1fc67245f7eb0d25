"""Health check endpoints.

- /health - Service health including LLM credential presence
- /health/db - Database connection pool health
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from fastapi import APIRouter

from notifyq.config import APP_VERSION, GOOGLE_CLOUD_PROJECT, USE_LLM
from notifyq.observability.telemetry import get_latency_stats

router = APIRouter(tags=["health"])


@router.get("/health")
async def health_check() -> dict[str, Any]:
    """Service status, version and Vertex AI readiness (no API call is made)."""
    return {
        "status": "healthy",
        "service": "NotifyQ API",
        "version": APP_VERSION,
        "timestamp": datetime.now(UTC).isoformat(),
        "llm": {
            "enabled": USE_LLM,
            "ready": USE_LLM and bool(GOOGLE_CLOUD_PROJECT),
            "google_cloud_project": bool(GOOGLE_CLOUD_PROJECT),
        },
        "latency_seconds": {
            "decision": get_latency_stats("notifications.decision.latency"),
            "llm": get_latency_stats("notifications.llm.latency"),
        },
    }


@router.get("/health/db")
async def database_health() -> dict[str, Any]:
    """Connection pool metrics; degraded above 80% usage."""
    from notifyq.infrastructure.database import get_pool_stats

    stats = get_pool_stats()
    usage_percent = stats["usage_percent"]

    return {
        "status": "degraded" if usage_percent > 80 else "healthy",
        "pool": stats,
        "warning": "Pool usage high" if usage_percent > 80 else None,
    }
