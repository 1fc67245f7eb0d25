"""Unit tests for cosine similarity and lazy semantic search"""

from __future__ import annotations

from datetime import timedelta

import pytest

from notifyq.infrastructure.database import db_transaction
from notifyq.notifications.embeddings import EmbeddingStore, SemanticSearch, cosine_similarity
from notifyq.notifications.models import to_db_time
from notifyq.observability.telemetry import get_counter

VOCAB = ("deploy", "lunch", "invoice")


def bag_of_words(texts):
    """Deterministic embedder: one dimension per vocabulary word."""
    return [[float(word in text.lower()) for word in VOCAB] + [0.1] for text in texts]


class CountingEmbedder:
    def __init__(self):
        self.batches = []

    def __call__(self, texts):
        self.batches.append(list(texts))
        return bag_of_words(texts)


def test_cosine_similarity_basics():
    assert cosine_similarity([1, 0], [1, 0]) == pytest.approx(1.0)
    assert cosine_similarity([1, 0], [0, 1]) == pytest.approx(0.0)
    assert cosine_similarity([1, 0], [-1, 0]) == pytest.approx(-1.0)


@pytest.mark.parametrize(("a", "b"), [([], []), ([1, 2], [1, 2, 3]), ([0, 0], [1, 1])])
def test_cosine_similarity_degenerate_inputs(a, b):
    assert cosine_similarity(a, b) == 0.0


def test_search_ranks_by_similarity(make_message, now):
    make_message("m1", "deploy went fine", at=now - timedelta(hours=3))
    make_message("m2", "lunch at noon?", at=now - timedelta(hours=2))
    make_message("m3", "the invoice is attached", at=now - timedelta(hours=1))

    search = SemanticSearch(embedder=bag_of_words)
    matches = search.search("when is the next deploy", ["c1"], top_k=2, now=now)

    assert [m.message.id for m in matches][0] == "m1"
    assert len(matches) == 2
    assert matches[0].similarity >= matches[1].similarity


def test_search_excludes_ids(make_message, now):
    make_message("m1", "deploy went fine", at=now - timedelta(hours=1))
    make_message("m2", "deploy again", at=now)

    matches = SemanticSearch(embedder=bag_of_words).search("deploy", ["c1"], exclude_ids={"m2"}, now=now)

    assert [m.message.id for m in matches] == ["m1"]


def test_indexing_is_lazy_and_reuses_fresh_vectors(make_message, now):
    make_message("m1", "deploy went fine", at=now - timedelta(hours=1))
    embedder = CountingEmbedder()
    search = SemanticSearch(embedder=embedder)

    assert search.index_conversation("c1", now=now) == 1
    assert search.index_conversation("c1", now=now) == 0
    assert embedder.batches == [["deploy went fine"]]


def test_search_reuses_triggering_message_vector(make_message, now):
    make_message("m1", "deploy plan for friday", at=now - timedelta(hours=1))
    make_message("m2", "is the deploy plan ready", at=now)
    embedder = CountingEmbedder()

    matches = SemanticSearch(embedder=embedder).search(
        "is the deploy plan ready", ["c1"], exclude_ids={"m2"}, query_message_id="m2", now=now
    )

    assert [m.message.id for m in matches] == ["m1"]
    assert embedder.batches == [["is the deploy plan ready", "deploy plan for friday"]]
    assert get_counter("notifications.embeddings.query_reused") == 1


def test_search_embeds_query_without_stored_vector(make_message, now):
    make_message("m1", "deploy plan for friday", at=now - timedelta(hours=1))
    embedder = CountingEmbedder()

    SemanticSearch(embedder=embedder).search("deploy?", ["c1"], query_message_id="not_indexed", now=now)

    assert embedder.batches == [["deploy plan for friday"], ["deploy?"]]


def test_stale_vectors_are_recomputed(make_message, now):
    make_message("m1", "deploy went fine", at=now - timedelta(days=10))
    search = SemanticSearch(embedder=bag_of_words)
    search.index_conversation("c1", now=now)

    with db_transaction() as conn:
        conn.execute(
            "UPDATE message_embeddings SET created_at = ?", (to_db_time(now - timedelta(days=8)),)
        )

    assert EmbeddingStore.fresh_ids(["m1"], now) == set()
    assert search.index_conversation("c1", now=now) == 1


def test_empty_query_returns_nothing(make_message, now):
    make_message("m1", "deploy went fine")
    embedder = CountingEmbedder()

    assert SemanticSearch(embedder=embedder).search("   ", ["c1"], now=now) == []
    assert embedder.batches == []
