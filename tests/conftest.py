import json
import sys
from pathlib import Path
from types import SimpleNamespace

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


@pytest.fixture(autouse=True)
def _fast_retries(monkeypatch):
    monkeypatch.setenv("EVALUATOR_RETRY_DELAY", "0")
    monkeypatch.delenv("FINISH_EARLY_TOKEN", raising=False)


@pytest.fixture
def temp_db(monkeypatch, tmp_path):
    import db

    db_path = tmp_path / "test.db"
    monkeypatch.setattr(db, "DB_PATH", str(db_path))

    # Reset the connection pool for each test
    pool = db.SQLiteConnectionPool(str(db_path), max_connections=10)
    monkeypatch.setattr(db, "_pool", pool)
    db.init()
    yield str(db_path)
    pool.close_all()


@pytest.fixture
def hash_embeddings(monkeypatch):
    import rag

    backend = rag.HashEmbeddingBackend(dimensions=64)
    monkeypatch.setattr(rag, "_BACKEND", backend)
    rag._QUERY_CACHE.clear()
    yield backend
    rag._QUERY_CACHE.clear()


def seed_assessment(
    *,
    skill_count=2,
    questions_per_skill=2,
    output_language="en",
    weights=None,
    with_settings=True,
    with_sources=True,
    backend=None,
):
    """Institution, assessment, skills with three levels each and optional sources."""

    import db
    import rag

    institution_id = db.upsert_institution("Test University", 10)
    if with_settings:
        for order, label, lower, upper in (
            (1, "Beginner", 0.0, 4.0),
            (2, "Proficient", 6.0, 8.0),
            (3, "Advanced", 8.0, 10.0),
        ):
            db.upsert_skill_level_setting(institution_id, order, label, lower, upper)

    assessment_id = db.create_assessment(
        "Supply chain case",
        "A retailer keeps running out of stock during promotions. Diagnose the causes.",
        questions_per_skill,
        institution_id=institution_id,
        case_solution="Forecasting ignores promotion uplift; safety stock is too low.",
        output_language=output_language,
    )

    embedder = backend or rag.HashEmbeddingBackend(dimensions=64)
    skills = []
    for index in range(skill_count):
        skill_id = db.create_skill(f"Skill {index + 1}", f"Description of skill {index + 1}")
        levels = {
            "Beginner": db.add_skill_level(skill_id, 1, "Beginner", "Restates the case"),
            "Proficient": db.add_skill_level(skill_id, 2, "Proficient", "Explains causes", standard=True),
            "Advanced": db.add_skill_level(skill_id, 3, "Advanced", "Proposes grounded fixes"),
        }
        weight = weights[index] if weights else 100
        db.link_skill(assessment_id, skill_id, weight)
        if with_sources:
            contents = [
                "Promotion uplift must be included in the demand forecast.",
                "Safety stock protects against demand variability and lead time.",
            ]
            chunks = [
                {
                    "id": f"s{index}-c{pos}",
                    "content": text,
                    "embedding": embedder.embed(text),
                    "metadata": {"page": pos + 1, "sectionType": "body", "chunkIndex": pos},
                }
                for pos, text in enumerate(contents)
            ]
            source_id = db.create_source(f"Inventory basics {index + 1}", chunks, authors="A. Author")
            db.link_source(skill_id, source_id)
        skills.append(SimpleNamespace(id=skill_id, levels=levels))

    return SimpleNamespace(
        institution_id=institution_id,
        assessment_id=assessment_id,
        skills=skills,
    )


@pytest.fixture
def seeded(temp_db, hash_embeddings):
    return seed_assessment(backend=hash_embeddings)


class FakeEvaluator:
    """Queue of canned evaluator replies installed in place of the HTTP call."""

    def __init__(self):
        self.replies = []
        self.calls = []

    def queue(self, *replies):
        for reply in replies:
            self.replies.append(reply)
        return self

    def __call__(self, payload, *, url, headers, timeout):
        self.calls.append(payload)
        if not self.replies:
            raise AssertionError("evaluator called more often than expected")
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        if isinstance(reply, dict):
            reply = json.dumps(reply)
        return {"choices": [{"message": {"content": reply}}], "usage": {"prompt_tokens": 10, "completion_tokens": 5}}


@pytest.fixture
def fake_evaluator(monkeypatch):
    import evaluator

    fake = FakeEvaluator()
    monkeypatch.setattr(evaluator, "_post_chat_completion", fake)
    return fake


def reply(tier, message="Please tell me more about the causes.", skill_results=None):
    payload = {
        "evaluationType": tier,
        "message": message,
        "canDetermineLevel": tier == "final",
    }
    if skill_results is not None:
        payload["skillResults"] = skill_results
    return payload
