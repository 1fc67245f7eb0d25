"""
Gemini Model Manager - shared Vertex AI model instances.

One GenerativeModel per distinct system instruction (the notification
analyzer uses exactly one) and one TextEmbeddingModel for semantic context.
Both are created lazily on first use so that importing the package, running
tests and serving fallback-only traffic never requires credentials.
"""

from __future__ import annotations

import os
from functools import lru_cache

from notifyq.infrastructure.settings import (
    EMBEDDING_MODEL,
    GEMINI_LOCATION,
    GEMINI_MODEL,
    GOOGLE_CLOUD_PROJECT,
)
from notifyq.notifications.errors import ConfigurationError
from notifyq.observability.logging import get_logger

logger = get_logger(__name__)


class GeminiInitializationError(ConfigurationError):
    """Raised when a Vertex AI model cannot be initialized."""


@lru_cache(maxsize=1)
def _init_vertexai() -> str:
    """
    Initialize the Vertex AI SDK once per process.

    Returns:
        The project id in use

    Raises:
        GeminiInitializationError: If the project is not configured or init fails
    """
    import vertexai

    project = GOOGLE_CLOUD_PROJECT or os.getenv("GOOGLE_CLOUD_PROJECT")
    if not project:
        raise GeminiInitializationError("GOOGLE_CLOUD_PROJECT not set")

    try:
        vertexai.init(project=project, location=GEMINI_LOCATION)
    except Exception as e:
        logger.error("Failed to initialize Vertex AI: %s", e)
        raise GeminiInitializationError(f"Failed to initialize Vertex AI: {e}") from e

    return project


@lru_cache(maxsize=4)
def get_gemini_model(system_instruction: str | None = None):
    """
    Get or create a shared Gemini model.

    System instructions are per-model-instance in the Gemini API, so each
    distinct instruction gets (and keeps) its own instance.

    Raises:
        GeminiInitializationError: If the model cannot be initialized
    """
    from vertexai.generative_models import GenerativeModel

    project = _init_vertexai()
    try:
        model = GenerativeModel(GEMINI_MODEL, system_instruction=system_instruction)
    except Exception as e:
        logger.error("Failed to create Gemini model %s: %s", GEMINI_MODEL, e)
        raise GeminiInitializationError(f"Failed to initialize Gemini: {e}") from e

    logger.info(
        "Initialized Gemini model (Vertex AI): project=%s, location=%s, model=%s",
        project,
        GEMINI_LOCATION,
        GEMINI_MODEL,
    )
    return model


@lru_cache(maxsize=1)
def get_embedding_model():
    """
    Get or create the shared text embedding model.

    Raises:
        GeminiInitializationError: If the model cannot be initialized
    """
    from vertexai.language_models import TextEmbeddingModel

    _init_vertexai()
    try:
        model = TextEmbeddingModel.from_pretrained(EMBEDDING_MODEL)
    except Exception as e:
        logger.error("Failed to load embedding model %s: %s", EMBEDDING_MODEL, e)
        raise GeminiInitializationError(f"Failed to load embedding model: {e}") from e

    logger.info("Initialized embedding model (Vertex AI): model=%s", EMBEDDING_MODEL)
    return model


def clear_model_cache() -> None:
    """
    Clear cached model instances.

    Useful for testing or when reconfiguration is needed.
    """
    get_gemini_model.cache_clear()
    get_embedding_model.cache_clear()
    _init_vertexai.cache_clear()
    logger.info("Cleared Gemini model cache")
