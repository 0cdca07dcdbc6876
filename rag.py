"""Retrieval engine grounding evaluator requests in assessment sources.

Source chunks are produced by the ingestion pipeline and stored, together
with their embedding vectors, in ``sources.content_embeddings``. For every
turn the student's message is embedded, each completed source contributes
its best matching chunks and the overall top chunks are formatted into a
context block for the evaluator prompt.
"""

from __future__ import annotations

import hashlib
import json
import logging
import math
import os
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Protocol, Sequence

import requests

import db
from engines.caching import EmbeddingCache
from env_validation import get_env_int, get_env_float
from errors import EmbeddingServiceError

logger = logging.getLogger(__name__)

DEFAULT_EMBED_MODEL = os.getenv("EMBEDDING_MODEL", "text-embedding-3-small")
DEFAULT_ST_MODEL = "all-MiniLM-L6-v2"

NO_RELEVANT_CONTENT = "No relevant source content was found for this response."


class EmbeddingDecodeError(ValueError):
    """Raised when a stored embedding cannot be interpreted as a numeric vector."""


class EmbeddingBackend(Protocol):
    """Simple protocol implemented by embedding backends."""

    def embed(self, text: str) -> List[float]:
        raise NotImplementedError("EmbeddingBackend implementations must define embed().")


class OpenAIEmbeddingBackend:
    """Embeddings from an OpenAI-compatible ``/v1/embeddings`` endpoint."""

    def __init__(
        self,
        url: Optional[str] = None,
        model: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> None:
        self.url = url or os.getenv("EMBEDDING_URL", "https://api.openai.com/v1/embeddings")
        self.model = model or os.getenv("EMBEDDING_MODEL", DEFAULT_EMBED_MODEL)
        self.api_key = api_key or os.getenv("EMBEDDING_API_KEY") or os.getenv("EVALUATOR_API_KEY")
        self.timeout = timeout if timeout is not None else get_env_float("EMBEDDING_TIMEOUT", 30.0)

    def embed(self, text: str) -> List[float]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        try:
            response = requests.post(
                self.url,
                json={"model": self.model, "input": text},
                headers=headers,
                timeout=self.timeout,
            )
            response.raise_for_status()
            data = response.json()
        except requests.HTTPError as exc:
            status = exc.response.status_code if exc.response is not None else "?"
            raise EmbeddingServiceError(f"Embedding HTTP {status}") from exc
        except (requests.RequestException, ValueError) as exc:
            raise EmbeddingServiceError(f"Embedding request failed: {exc}") from exc

        try:
            return decode_embedding(data["data"][0]["embedding"])
        except (KeyError, IndexError, TypeError, EmbeddingDecodeError) as exc:
            raise EmbeddingServiceError("Unexpected embedding response shape") from exc


class SentenceTransformerBackend:
    """Wrapper around `sentence-transformers` with lazy initialisation."""

    def __init__(self, model_name: str = DEFAULT_ST_MODEL):
        from sentence_transformers import SentenceTransformer

        self.model = model_name
        self._model = SentenceTransformer(model_name)

    def embed(self, text: str) -> List[float]:  # pragma: no cover - heavy dependency
        vector = self._model.encode([text], convert_to_numpy=True)[0]
        return vector.astype(float).tolist()


class HashEmbeddingBackend:
    """Deterministic offline embedding using hashed token frequencies."""

    def __init__(self, dimensions: int = 256) -> None:
        self.dimensions = max(8, dimensions)
        self.model = f"hash-{self.dimensions}"

    def _tokenize(self, text: str) -> List[str]:
        return [token for token in text.lower().split() if token]

    def embed(self, text: str) -> List[float]:
        vector = [0.0] * self.dimensions
        for token in self._tokenize(text):
            bucket = int(hashlib.sha256(token.encode("utf-8")).hexdigest(), 16) % self.dimensions
            vector[bucket] += 1.0
        norm = math.sqrt(sum(value * value for value in vector))
        if norm:
            vector = [value / norm for value in vector]
        return vector


def default_embedding_backend() -> EmbeddingBackend:
    """Resolve the embedding backend named by ``EMBEDDING_BACKEND``."""

    name = os.getenv("EMBEDDING_BACKEND", "openai").strip().lower()
    if name == "hash":
        return HashEmbeddingBackend()
    if name == "sentence-transformers":
        return SentenceTransformerBackend(os.getenv("EMBEDDING_MODEL") or DEFAULT_ST_MODEL)
    return OpenAIEmbeddingBackend()


@dataclass(frozen=True)
class EmbeddingChunk:
    id: str
    source_id: int
    content: str
    embedding: List[float]
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class RetrievedChunk:
    id: str
    source_id: int
    content: str
    metadata: Dict[str, Any]
    score: float


@dataclass
class RetrievalResult:
    chunks: List[RetrievedChunk]
    formatted_context: str

    @property
    def empty(self) -> bool:
        return not self.chunks


# ---------- decoding ----------
def decode_embedding(raw: Any) -> List[float]:
    """Interpret a stored embedding as a list of floats.

    Accepts a sequence of numbers, JSON text, UTF-8 encoded JSON bytes or a
    mapping carrying the vector under ``embedding``/``values``.
    """

    value = raw
    if isinstance(value, (bytes, bytearray, memoryview)):
        try:
            value = bytes(value).decode("utf-8")
        except UnicodeDecodeError as exc:
            raise EmbeddingDecodeError("Embedding bytes are not UTF-8 JSON") from exc
    if isinstance(value, str):
        try:
            value = json.loads(value)
        except json.JSONDecodeError as exc:
            raise EmbeddingDecodeError("Embedding text is not valid JSON") from exc
    if isinstance(value, Mapping):
        for key in ("embedding", "values"):
            if key in value:
                value = value[key]
                break
        else:
            raise EmbeddingDecodeError("Embedding mapping has no 'embedding' or 'values' key")
    if not isinstance(value, (list, tuple)):
        raise EmbeddingDecodeError(f"Unsupported embedding type: {type(raw).__name__}")
    if not value:
        raise EmbeddingDecodeError("Embedding vector is empty")
    vector: List[float] = []
    for item in value:
        if isinstance(item, bool) or not isinstance(item, (int, float)):
            raise EmbeddingDecodeError("Embedding vector contains non-numeric values")
        number = float(item)
        if math.isnan(number) or math.isinf(number):
            raise EmbeddingDecodeError("Embedding vector contains non-finite values")
        vector.append(number)
    return vector


def _normalize_metadata(raw: Any, source: Mapping[str, Any], index: int) -> Dict[str, Any]:
    meta = dict(raw) if isinstance(raw, Mapping) else {}
    return {
        "page": meta.get("page"),
        "section": meta.get("sectionType") or meta.get("section"),
        "chunk_index": meta.get("chunkIndex", meta.get("chunk_index", index)),
        "title": meta.get("title") or source.get("title"),
        "author": meta.get("author") or source.get("authors"),
    }


def decode_source_chunks(source: Mapping[str, Any]) -> List[EmbeddingChunk]:
    """Decode the chunk payload of one source row.

    Individual chunks that cannot be decoded are skipped with a warning; a
    payload that is not a list of chunks raises ``EmbeddingDecodeError``.
    """

    source_id = int(source["id"])
    payload = source.get("content_embeddings")
    if payload is None:
        return []
    if isinstance(payload, (bytes, bytearray, memoryview)):
        try:
            payload = bytes(payload).decode("utf-8")
        except UnicodeDecodeError as exc:
            raise EmbeddingDecodeError(f"Source {source_id} payload is not UTF-8") from exc
    if isinstance(payload, str):
        try:
            payload = json.loads(payload)
        except json.JSONDecodeError as exc:
            raise EmbeddingDecodeError(f"Source {source_id} payload is not valid JSON") from exc
    if not isinstance(payload, list):
        raise EmbeddingDecodeError(f"Source {source_id} payload is not a list of chunks")

    chunks: List[EmbeddingChunk] = []
    for index, entry in enumerate(payload):
        if not isinstance(entry, Mapping):
            logger.warning("Skipping chunk %d of source %s: not an object", index, source_id)
            continue
        content = entry.get("content")
        if not isinstance(content, str) or not content.strip():
            logger.warning("Skipping chunk %d of source %s: no content", index, source_id)
            continue
        try:
            vector = decode_embedding(entry.get("embedding"))
        except EmbeddingDecodeError as exc:
            logger.warning("Skipping chunk %d of source %s: %s", index, source_id, exc)
            continue
        chunk_id = str(entry.get("id") or f"{source_id}-{index}")
        chunks.append(
            EmbeddingChunk(
                id=chunk_id,
                source_id=source_id,
                content=content,
                embedding=vector,
                metadata=_normalize_metadata(entry.get("metadata"), source, index),
            )
        )
    return chunks


def load_candidate_chunks(assessment_id: int) -> List[EmbeddingChunk]:
    """Chunks of every completed source linked to the assessment's skills."""

    chunks: List[EmbeddingChunk] = []
    for source in db.list_completed_sources(assessment_id):
        try:
            chunks.extend(decode_source_chunks(source))
        except EmbeddingDecodeError as exc:
            logger.warning("Skipping source %s: %s", source.get("id"), exc)
    return chunks


# ---------- ranking ----------
def _cosine_similarity(vec_a: Sequence[float], vec_b: Sequence[float]) -> float:
    if not vec_a or not vec_b:
        return 0.0
    if len(vec_a) != len(vec_b):
        raise ValueError(f"Dimension mismatch: {len(vec_a)} != {len(vec_b)}")
    dot = sum(x * y for x, y in zip(vec_a, vec_b))
    norm_a = math.sqrt(sum(x * x for x in vec_a))
    norm_b = math.sqrt(sum(y * y for y in vec_b))
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return dot / (norm_a * norm_b)


def rank_chunks(
    query_vector: Sequence[float],
    chunks: Iterable[EmbeddingChunk],
    *,
    per_source_k: int = 3,
    top_k: int = 8,
) -> List[RetrievedChunk]:
    """Top ``per_source_k`` chunks per source, merged and cut to ``top_k``.

    Sorting is stable, so equal scores keep their input order.
    """

    by_source: Dict[int, List[RetrievedChunk]] = {}
    for chunk in chunks:
        if len(chunk.embedding) != len(query_vector):
            logger.warning(
                "Skipping chunk %s of source %s: dimension %d does not match query dimension %d",
                chunk.id,
                chunk.source_id,
                len(chunk.embedding),
                len(query_vector),
            )
            continue
        score = _cosine_similarity(query_vector, chunk.embedding)
        by_source.setdefault(chunk.source_id, []).append(
            RetrievedChunk(
                id=chunk.id,
                source_id=chunk.source_id,
                content=chunk.content,
                metadata=dict(chunk.metadata),
                score=score,
            )
        )

    merged: List[RetrievedChunk] = []
    for scored in by_source.values():
        scored.sort(key=lambda item: item.score, reverse=True)
        merged.extend(scored[: max(0, per_source_k)])
    merged.sort(key=lambda item: item.score, reverse=True)
    return merged[: max(0, top_k)]


def format_context(chunks: Sequence[RetrievedChunk]) -> str:
    if not chunks:
        return NO_RELEVANT_CONTENT
    blocks = []
    for position, chunk in enumerate(chunks, start=1):
        meta = chunk.metadata
        title = meta.get("title") or f"Source {chunk.source_id}"
        author = meta.get("author") or "Unknown Author"
        page = meta.get("page")
        location = f" (Page {page})" if page is not None else ""
        blocks.append(f'Source {position}: "{title}" by {author}{location}\nContent: {chunk.content}')
    return "\n\n".join(blocks)


# ---------- retrieval ----------
_QUERY_CACHE = EmbeddingCache(max_size=get_env_int("EMBEDDING_CACHE_SIZE", 1024))
_BACKEND: Optional[EmbeddingBackend] = None


def get_backend() -> EmbeddingBackend:
    global _BACKEND
    if _BACKEND is None:
        _BACKEND = default_embedding_backend()
        logger.info("Embedding backend: %s", type(_BACKEND).__name__)
    return _BACKEND


def embed_query(text: str, backend: Optional[EmbeddingBackend] = None) -> List[float]:
    active = backend or get_backend()
    namespace = str(getattr(active, "model", type(active).__name__))
    cached = _QUERY_CACHE.get(text, namespace=namespace)
    if cached is not None:
        return cached
    try:
        vector = active.embed(text)
    except EmbeddingServiceError:
        raise
    except (requests.RequestException, OSError) as exc:
        raise EmbeddingServiceError(f"Embedding backend failed: {exc}") from exc
    _QUERY_CACHE.add(text, vector, namespace=namespace)
    return vector


def retrieve(
    query: str,
    assessment_id: int,
    *,
    backend: Optional[EmbeddingBackend] = None,
    per_source_k: Optional[int] = None,
    top_k: Optional[int] = None,
) -> RetrievalResult:
    """Ground ``query`` in the assessment's sources.

    Without candidate chunks the embedding service is not called and the
    result carries :data:`NO_RELEVANT_CONTENT`.
    """

    candidates = load_candidate_chunks(assessment_id)
    if not candidates:
        logger.info("No candidate chunks for assessment %s", assessment_id)
        return RetrievalResult(chunks=[], formatted_context=NO_RELEVANT_CONTENT)

    query_vector = embed_query(query, backend)
    ranked = rank_chunks(
        query_vector,
        candidates,
        per_source_k=per_source_k if per_source_k is not None else get_env_int("RAG_PER_SOURCE_K", 3),
        top_k=top_k if top_k is not None else get_env_int("RAG_TOP_K", 8),
    )
    return RetrievalResult(chunks=ranked, formatted_context=format_context(ranked))
