"""
Semantic context - embeddings and cosine-similarity search over past messages.

Embeddings are produced lazily: nothing is embedded when a message arrives.
When the engine asks for semantic context, the user's recent conversations
are indexed (newest messages without a fresh vector only), then the query
is ranked against every stored vector. The triggering message's own vector
is reused as the query when it is fresh; only otherwise is the text embedded.

Vectors are stored as JSON arrays in message_embeddings and are considered
stale after EMBEDDING_MAX_AGE_DAYS.
"""

from __future__ import annotations

import json
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from datetime import datetime, timedelta

import numpy as np

from notifyq.config import EMBEDDING_INDEX_LIMIT, EMBEDDING_MAX_AGE_DAYS, SEMANTIC_TOP_K
from notifyq.infrastructure.database import db_transaction, get_db_connection, retry_on_db_lock
from notifyq.infrastructure.settings import EMBEDDING_MODEL
from notifyq.notifications.models import ChatMessage, SemanticMatch, from_db_time, to_db_time, utc_now
from notifyq.notifications.stores import MessageStore
from notifyq.observability.logging import get_logger
from notifyq.observability.telemetry import counter, time_block

logger = get_logger(__name__)

Embedder = Callable[[Sequence[str]], list[list[float]]]

# Vertex AI accepts a limited number of texts per embedding request
_EMBED_BATCH_SIZE = 25


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine similarity in [-1, 1]; 0.0 for empty, mismatched or zero vectors."""
    if len(a) == 0 or len(a) != len(b):
        return 0.0

    va = np.asarray(a, dtype=np.float64)
    vb = np.asarray(b, dtype=np.float64)
    norm = np.linalg.norm(va) * np.linalg.norm(vb)
    if norm == 0:
        return 0.0
    return float(np.dot(va, vb) / norm)


def vertex_embedder(texts: Sequence[str]) -> list[list[float]]:
    """
    Embed texts with the shared Vertex AI TextEmbeddingModel.

    Raises:
        GeminiInitializationError: If the embedding model is unavailable
    """
    from notifyq.llm.gemini import get_embedding_model

    model = get_embedding_model()
    vectors: list[list[float]] = []
    for start in range(0, len(texts), _EMBED_BATCH_SIZE):
        batch = list(texts[start : start + _EMBED_BATCH_SIZE])
        vectors.extend(list(e.values) for e in model.get_embeddings(batch))
    return vectors


@dataclass
class StoredEmbedding:
    message_id: str
    conversation_id: str
    vector: list[float]
    created_at: datetime


class EmbeddingStore:
    """Cached message vectors keyed by message id, with an age check."""

    @staticmethod
    @retry_on_db_lock()
    def save_many(
        items: list[tuple[ChatMessage, list[float]]],
        model: str = EMBEDDING_MODEL,
        now: datetime | None = None,
    ) -> None:
        if not items:
            return
        stamp = to_db_time(now or utc_now())
        with db_transaction() as conn:
            conn.executemany(
                """
                INSERT INTO message_embeddings (message_id, conversation_id, embedding, model, created_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(message_id) DO UPDATE SET
                    embedding = excluded.embedding,
                    model = excluded.model,
                    created_at = excluded.created_at
                """,
                [(m.id, m.conversation_id, json.dumps(vector), model, stamp) for m, vector in items],
            )

    @staticmethod
    def fresh_ids(message_ids: list[str], now: datetime, max_age_days: int = EMBEDDING_MAX_AGE_DAYS) -> set[str]:
        """Ids among `message_ids` that already have a non-stale vector."""
        if not message_ids:
            return set()
        placeholders = ",".join("?" * len(message_ids))
        cutoff = to_db_time(now - timedelta(days=max_age_days))
        with get_db_connection() as conn:
            rows = conn.execute(
                f"""
                SELECT message_id FROM message_embeddings
                WHERE message_id IN ({placeholders}) AND created_at >= ?
                """,  # noqa: S608 - placeholders only
                [*message_ids, cutoff],
            ).fetchall()
        return {row["message_id"] for row in rows}

    @staticmethod
    def fresh_vector(message_id: str, now: datetime, max_age_days: int = EMBEDDING_MAX_AGE_DAYS) -> list[float] | None:
        """The stored vector for `message_id` if it is not stale, else None."""
        cutoff = to_db_time(now - timedelta(days=max_age_days))
        with get_db_connection() as conn:
            row = conn.execute(
                "SELECT embedding FROM message_embeddings WHERE message_id = ? AND created_at >= ?",
                (message_id, cutoff),
            ).fetchone()
        return json.loads(row["embedding"]) if row else None

    @staticmethod
    def for_conversations(
        conversation_ids: list[str],
        now: datetime,
        max_age_days: int = EMBEDDING_MAX_AGE_DAYS,
    ) -> list[StoredEmbedding]:
        if not conversation_ids:
            return []
        placeholders = ",".join("?" * len(conversation_ids))
        cutoff = to_db_time(now - timedelta(days=max_age_days))
        with get_db_connection() as conn:
            rows = conn.execute(
                f"""
                SELECT message_id, conversation_id, embedding, created_at FROM message_embeddings
                WHERE conversation_id IN ({placeholders}) AND created_at >= ?
                """,  # noqa: S608 - placeholders only
                [*conversation_ids, cutoff],
            ).fetchall()
        return [
            StoredEmbedding(
                message_id=row["message_id"],
                conversation_id=row["conversation_id"],
                vector=json.loads(row["embedding"]),
                created_at=from_db_time(row["created_at"]),
            )
            for row in rows
        ]


class SemanticSearch:
    """
    Rank a user's past messages by similarity to a query text.

    Args:
        embedder: Callable turning texts into vectors (defaults to Vertex AI)
        index_limit: Newest messages per conversation considered for indexing
    """

    def __init__(self, embedder: Embedder | None = None, index_limit: int = EMBEDDING_INDEX_LIMIT):
        self.embedder = embedder or vertex_embedder
        self.index_limit = index_limit

    def index_conversation(self, conversation_id: str, now: datetime | None = None) -> int:
        """
        Embed the newest messages of a conversation that lack a fresh vector.

        Returns:
            Number of messages embedded

        Side Effects:
            - Calls the embedding model (one request per batch)
            - Writes message_embeddings rows
        """
        now = now or utc_now()
        recent = [m for m in MessageStore.for_conversation(conversation_id, self.index_limit) if m.text.strip()]
        fresh = EmbeddingStore.fresh_ids([m.id for m in recent], now)
        pending = [m for m in recent if m.id not in fresh]
        if not pending:
            return 0

        vectors = self.embedder([m.text for m in pending])
        if len(vectors) != len(pending):
            raise ValueError(f"Embedder returned {len(vectors)} vectors for {len(pending)} texts")

        EmbeddingStore.save_many(list(zip(pending, vectors, strict=True)), now=now)
        counter("notifications.embeddings.indexed", len(pending))
        logger.debug("Indexed %d messages of conversation %s", len(pending), conversation_id)
        return len(pending)

    def search(
        self,
        query_text: str,
        conversation_ids: list[str],
        top_k: int = SEMANTIC_TOP_K,
        exclude_ids: set[str] | None = None,
        index_conversation_ids: list[str] | None = None,
        query_message_id: str | None = None,
        now: datetime | None = None,
    ) -> list[SemanticMatch]:
        """
        Top-k most similar stored messages across `conversation_ids`, highest first.

        Args:
            index_conversation_ids: Conversations to lazily index before ranking
                (defaults to all of `conversation_ids`)
            query_message_id: Message the query text came from; its stored
                vector is reused when fresh

        Side Effects:
            - Lazily indexes conversations (see index_conversation)
            - Calls the embedding model for the query unless a fresh vector exists
        """
        now = now or utc_now()
        exclude_ids = exclude_ids or set()
        if not query_text.strip() or not conversation_ids or top_k <= 0:
            return []

        to_index = conversation_ids if index_conversation_ids is None else index_conversation_ids
        with time_block("notifications.semantic_search"):
            for conversation_id in to_index:
                self.index_conversation(conversation_id, now=now)

            query_vector: list[float] | None = None
            if query_message_id is not None:
                query_vector = EmbeddingStore.fresh_vector(query_message_id, now)
            if query_vector is None:
                query_vector = self.embedder([query_text])[0]
            else:
                counter("notifications.embeddings.query_reused")
            candidates = [
                e for e in EmbeddingStore.for_conversations(conversation_ids, now) if e.message_id not in exclude_ids
            ]
            scored = sorted(
                ((cosine_similarity(query_vector, e.vector), e.message_id) for e in candidates),
                key=lambda pair: pair[0],
                reverse=True,
            )[:top_k]

            messages = MessageStore.get_many([message_id for _, message_id in scored])

        return [
            SemanticMatch(message=messages[message_id], similarity=round(score, 4))
            for score, message_id in scored
            if message_id in messages
        ]
