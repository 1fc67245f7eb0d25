"""Centralized configuration for the NotifyQ backend.

Re-exports everything from notifyq.infrastructure.settings so callers have a
single import point, then adds typed constants for database, LLM, caching,
context retrieval, activity monitoring and profile learning.  Environment
variable overrides use safe defaults so the app starts without extra env
configuration.
"""

from __future__ import annotations

import os

from notifyq.infrastructure.settings import *  # noqa: F401, F403

# --- App ---
APP_VERSION: str = "0.1.0"

# --- Database ---
DB_POOL_SIZE: int = int(os.getenv("NOTIFYQ_DB_POOL_SIZE", "5"))
DB_POOL_TIMEOUT: float = float(os.getenv("NOTIFYQ_DB_POOL_TIMEOUT", "5.0"))
DB_CONNECT_TIMEOUT: float = float(os.getenv("NOTIFYQ_DB_CONNECT_TIMEOUT", "30.0"))
DB_TEMP_CONN_MAX: int = int(os.getenv("NOTIFYQ_DB_TEMP_CONN_MAX", "10"))
DB_RETRY_MAX: int = int(os.getenv("NOTIFYQ_DB_RETRY_MAX", "5"))
DB_RETRY_BASE_DELAY: float = float(os.getenv("NOTIFYQ_DB_RETRY_BASE_DELAY", "0.1"))
DB_RETRY_MAX_DELAY: float = float(os.getenv("NOTIFYQ_DB_RETRY_MAX_DELAY", "2.0"))
DB_RETRY_JITTER: float = float(os.getenv("NOTIFYQ_DB_RETRY_JITTER", "0.1"))

# --- LLM ---
USE_LLM: bool = os.getenv("NOTIFYQ_USE_LLM", "true").lower() == "true"
LLM_TIMEOUT_SECONDS: int = int(os.getenv("NOTIFYQ_LLM_TIMEOUT", "10"))
USE_FAST_FILTER: bool = os.getenv("NOTIFYQ_FAST_FILTER", "true").lower() == "true"

# --- Decision cache ---
DECISION_CACHE_TTL_SECONDS: int = int(os.getenv("NOTIFYQ_DECISION_CACHE_TTL", "3600"))

# --- Context assembly ---
CONTEXT_CACHE_TTL_SECONDS: int = int(os.getenv("NOTIFYQ_CONTEXT_CACHE_TTL", "600"))
CONTEXT_CACHE_MAX_USERS: int = 1000
CONTEXT_WINDOW_DAYS: int = 7
CONTEXT_MAX_MESSAGES: int = 100
CONTEXT_MESSAGE_BATCH: int = 200

# --- Unread selection ---
UNREAD_WINDOW_MINUTES: int = 15
UNREAD_MAX_MESSAGES: int = 30

# --- Semantic search ---
USE_SEMANTIC_SEARCH: bool = os.getenv("NOTIFYQ_SEMANTIC_SEARCH", "true").lower() == "true"
SEMANTIC_TOP_K: int = 5
EMBEDDING_MAX_AGE_DAYS: int = 7
EMBEDDING_INDEX_LIMIT: int = 30

# --- Activity ---
ACTIVE_VIEW_WINDOW_SECONDS: int = 120

# --- Activity monitor defaults (client-side timing) ---
MONITOR_PAUSE_THRESHOLD_SECONDS: float = 120.0
MONITOR_MESSAGE_THRESHOLD_COUNT: int = 20
MONITOR_THRESHOLD_WINDOW_SECONDS: float = 600.0
MONITOR_DEBOUNCE_WINDOW_SECONDS: float = 300.0

# --- Profile learning ---
PROFILE_LOOKBACK_DAYS: int = 30
PROFILE_HIGH_RATE: float = 0.8
PROFILE_MEDIUM_RATE: float = 0.5
PROFILE_MAX_KEYWORDS: int = 10

# --- Notification text ---
NOTIFICATION_TEXT_MAX_CHARS: int = 100

# --- API ---
API_ANALYTICS_DAYS_DEFAULT: int = 30
API_ANALYTICS_DAYS_MAX: int = 365
