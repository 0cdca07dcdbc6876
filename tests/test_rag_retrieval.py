"""Retrieval engine: decoding stored chunks, ranking and grounding a query."""

import json
import logging
import unittest

import pytest

import db
import rag
from engines.caching import EmbeddingCache
from errors import EmbeddingServiceError


def _chunk(chunk_id, source_id, vector, content="text"):
    return rag.EmbeddingChunk(id=chunk_id, source_id=source_id, content=content, embedding=list(vector))


class DecodeEmbeddingTests(unittest.TestCase):
    def test_accepts_all_stored_encodings(self):
        expected = [0.5, 1.0, -2.0]
        self.assertEqual(rag.decode_embedding([0.5, 1, -2.0]), expected)
        self.assertEqual(rag.decode_embedding("[0.5, 1, -2.0]"), expected)
        self.assertEqual(rag.decode_embedding(b"[0.5, 1, -2.0]"), expected)
        self.assertEqual(rag.decode_embedding({"embedding": [0.5, 1, -2.0]}), expected)
        self.assertEqual(rag.decode_embedding({"values": (0.5, 1, -2.0)}), expected)

    def test_rejects_unusable_payloads(self):
        for bad in (None, 42, "not json", b"\xff\xfe", [], ["a", "b"], [True, 1.0], {"vector": [1.0]}):
            with self.subTest(bad=bad):
                with self.assertRaises(rag.EmbeddingDecodeError):
                    rag.decode_embedding(bad)


def test_decode_source_chunks_skips_bad_chunks(caplog):
    payload = json.dumps(
        [
            {"id": "good", "content": "Safety stock", "embedding": [1.0, 0.0], "metadata": {"page": 3, "chunkIndex": 0}},
            {"id": "no-vector", "content": "Lost", "embedding": []},
            {"id": "bad-vector", "content": "Lost", "embedding": "oops"},
            {"id": "no-content", "embedding": [1.0, 0.0]},
            "not an object",
        ]
    )
    source = {"id": 9, "title": "Inventory", "authors": "A. Author", "content_embeddings": payload}

    with caplog.at_level(logging.WARNING, logger="rag"):
        chunks = rag.decode_source_chunks(source)

    assert [chunk.id for chunk in chunks] == ["good"]
    assert chunks[0].source_id == 9
    assert chunks[0].metadata["page"] == 3
    assert chunks[0].metadata["title"] == "Inventory"
    assert chunks[0].metadata["author"] == "A. Author"
    assert len([rec for rec in caplog.records if "Skipping chunk" in rec.getMessage()]) == 4


def test_decode_source_chunks_accepts_parsed_and_bytes_payloads():
    chunks = [{"content": "x", "embedding": [0.1, 0.2]}]
    from_list = rag.decode_source_chunks({"id": 1, "content_embeddings": chunks})
    from_bytes = rag.decode_source_chunks({"id": 1, "content_embeddings": json.dumps(chunks).encode("utf-8")})
    assert from_list == from_bytes
    assert from_list[0].id == "1-0"


def test_decode_source_chunks_rejects_non_list_payload():
    with pytest.raises(rag.EmbeddingDecodeError):
        rag.decode_source_chunks({"id": 1, "content_embeddings": "{\"content\": \"x\"}"})


def test_rank_chunks_returns_highest_similarities_descending():
    query = [1.0, 0.0]
    chunks = [
        _chunk("a1", 1, [1.0, 0.0]),
        _chunk("a2", 1, [0.9, 0.1]),
        _chunk("a3", 1, [0.5, 0.5]),
        _chunk("a4", 1, [0.0, 1.0]),
        _chunk("b1", 2, [0.95, 0.05]),
        _chunk("b2", 2, [0.1, 0.9]),
    ]
    ranked = rag.rank_chunks(query, chunks, per_source_k=3, top_k=4)

    assert [item.id for item in ranked] == ["a1", "b1", "a2", "a3"]
    scores = [item.score for item in ranked]
    assert scores == sorted(scores, reverse=True)
    assert scores[0] == pytest.approx(1.0)


def test_rank_chunks_limits_each_source():
    query = [1.0, 0.0]
    chunks = [_chunk(f"a{i}", 1, [1.0, 0.01 * i]) for i in range(5)] + [_chunk("b0", 2, [0.0, 1.0])]
    ranked = rag.rank_chunks(query, chunks, per_source_k=2, top_k=10)
    assert [item.id for item in ranked] == ["a0", "a1", "b0"]


def test_rank_chunks_keeps_input_order_on_ties():
    query = [1.0, 0.0]
    chunks = [_chunk("first", 1, [2.0, 0.0]), _chunk("second", 1, [1.0, 0.0]), _chunk("third", 2, [3.0, 0.0])]
    ranked = rag.rank_chunks(query, chunks, per_source_k=3, top_k=3)
    assert [item.id for item in ranked] == ["first", "second", "third"]


def test_rank_chunks_skips_dimension_mismatch_and_scores_zero_norm(caplog):
    query = [1.0, 0.0]
    chunks = [_chunk("short", 1, [1.0]), _chunk("zero", 1, [0.0, 0.0]), _chunk("ok", 1, [0.0, 1.0])]
    with caplog.at_level(logging.WARNING, logger="rag"):
        ranked = rag.rank_chunks(query, chunks)
    assert [item.id for item in ranked] == ["zero", "ok"]
    assert all(item.score == 0.0 for item in ranked)
    assert any("dimension" in rec.getMessage() for rec in caplog.records)


def test_format_context_mentions_title_author_and_page():
    ranked = [
        rag.RetrievedChunk(id="c", source_id=4, content="Buffers absorb variability.",
                           metadata={"title": "Inventory", "author": "A. Author", "page": 7}, score=0.8)
    ]
    text = rag.format_context(ranked)
    assert text.startswith('Source 1: "Inventory" by A. Author (Page 7)')
    assert "Buffers absorb variability." in text
    assert rag.format_context([]) == rag.NO_RELEVANT_CONTENT


class _CountingBackend:
    model = "counting"

    def __init__(self):
        self.calls = 0

    def embed(self, text):
        self.calls += 1
        return [1.0, 0.0]


def test_retrieve_without_sources_does_not_embed(temp_db):
    assessment_id = db.create_assessment("Empty", "case", 1)
    backend = _CountingBackend()

    result = rag.retrieve("my answer", assessment_id, backend=backend)

    assert result.empty
    assert result.formatted_context == rag.NO_RELEVANT_CONTENT
    assert backend.calls == 0


def test_retrieve_uses_only_completed_sources(temp_db):
    rag._QUERY_CACHE.clear()
    assessment_id = db.create_assessment("Sources", "case", 1)
    skill_id = db.create_skill("Analysis")
    db.link_skill(assessment_id, skill_id)
    done = db.create_source("Done", [{"id": "d", "content": "ready", "embedding": [1.0, 0.0]}])
    pending = db.create_source(
        "Pending", [{"id": "p", "content": "not yet", "embedding": [1.0, 0.0]}], processing_status="processing"
    )
    broken = db.create_source("Broken", "this is not json")
    for source_id in (done, pending, broken):
        db.link_source(skill_id, source_id)

    result = rag.retrieve("query", assessment_id, backend=_CountingBackend())

    assert [chunk.id for chunk in result.chunks] == ["d"]
    assert '"Done"' in result.formatted_context


def test_retrieve_caches_query_embeddings(temp_db):
    rag._QUERY_CACHE.clear()
    assessment_id = db.create_assessment("Cache", "case", 1)
    skill_id = db.create_skill("Analysis")
    db.link_skill(assessment_id, skill_id)
    db.link_source(skill_id, db.create_source("S", [{"content": "x", "embedding": [1.0, 0.0]}]))
    backend = _CountingBackend()

    rag.retrieve("same question", assessment_id, backend=backend)
    rag.retrieve("same question", assessment_id, backend=backend)

    assert backend.calls == 1


def test_embedding_failures_are_transient(temp_db):
    rag._QUERY_CACHE.clear()
    assessment_id = db.create_assessment("Failing", "case", 1)
    skill_id = db.create_skill("Analysis")
    db.link_skill(assessment_id, skill_id)
    db.link_source(skill_id, db.create_source("S", [{"content": "x", "embedding": [1.0, 0.0]}]))

    class _Down:
        model = "down"

        def embed(self, text):
            raise EmbeddingServiceError("service down")

    with pytest.raises(EmbeddingServiceError):
        rag.retrieve("question", assessment_id, backend=_Down())


def test_embedding_cache_evicts_least_recently_used():
    cache = EmbeddingCache(max_size=2)
    cache.add("a", [1.0])
    cache.add("b", [2.0])
    assert cache.get("a") == [1.0]
    cache.add("c", [3.0])
    assert cache.get("b") is None
    assert cache.get("a") == [1.0]
    assert cache.get("c") == [3.0]
    assert cache.get("a", namespace="other-model") is None


def test_hash_backend_is_deterministic_and_normalised():
    backend = rag.HashEmbeddingBackend(dimensions=32)
    first = backend.embed("safety stock buffers demand")
    assert first == backend.embed("safety stock buffers demand")
    assert sum(value * value for value in first) == pytest.approx(1.0)


def test_default_backend_follows_environment(monkeypatch):
    monkeypatch.setenv("EMBEDDING_BACKEND", "hash")
    assert isinstance(rag.default_embedding_backend(), rag.HashEmbeddingBackend)
    monkeypatch.setenv("EMBEDDING_BACKEND", "openai")
    backend = rag.default_embedding_backend()
    assert isinstance(backend, rag.OpenAIEmbeddingBackend)
