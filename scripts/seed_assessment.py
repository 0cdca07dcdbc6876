"""Load an assessment description (institution, skills, levels, sources) into the store."""
from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

import db
import rag
from db_pool import SQLiteConnectionPool
from errors import ConfigurationError

logger = logging.getLogger("ace.seed")


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("description", type=str, help="Path to the assessment JSON description")
    parser.add_argument(
        "--db",
        type=str,
        default=None,
        help="SQLite database path (default: DB_PATH environment variable or data.db)",
    )
    parser.add_argument(
        "--embed-missing",
        action="store_true",
        help="Embed source chunks that have no vector using the configured EMBEDDING_BACKEND",
    )
    return parser


def _check_skills(skills: Sequence[Mapping[str, Any]]) -> None:
    if not skills:
        raise ConfigurationError("Description contains no skills")
    for skill in skills:
        levels = skill.get("levels") or []
        if not levels:
            raise ConfigurationError(f"Skill {skill.get('name')!r} has no levels")
        standard = [level for level in levels if level.get("standard")]
        if len(standard) != 1:
            raise ConfigurationError(
                f"Skill {skill.get('name')!r} must have exactly one standard level, found {len(standard)}"
            )


def _prepare_chunks(
    chunks: Sequence[Mapping[str, Any]],
    backend: Optional[rag.EmbeddingBackend],
) -> List[Dict[str, Any]]:
    prepared = []
    for index, chunk in enumerate(chunks):
        entry = dict(chunk)
        entry.setdefault("id", f"chunk-{index}")
        if entry.get("embedding") is None:
            if backend is None:
                raise ConfigurationError(
                    f"Chunk {entry['id']} has no embedding; rerun with --embed-missing"
                )
            entry["embedding"] = backend.embed(entry["content"])
        prepared.append(entry)
    return prepared


def seed(description: Mapping[str, Any], *, embed_missing: bool = False) -> int:
    """Write ``description`` to the store and return the new assessment id."""

    skills = description.get("skills") or []
    _check_skills(skills)
    backend = rag.default_embedding_backend() if embed_missing else None

    institution_id: Optional[int] = None
    institution = description.get("institution")
    if institution:
        institution_id = db.upsert_institution(
            institution["name"],
            institution.get("scoring_scale", 10),
            institution.get("id"),
        )
        for setting in institution.get("level_settings") or []:
            db.upsert_skill_level_setting(
                institution_id,
                setting["order"],
                setting["label"],
                setting.get("lower_limit"),
                setting.get("upper_limit"),
                setting.get("description"),
            )

    assessment = description["assessment"]
    assessment_id = db.create_assessment(
        assessment["name"],
        assessment["case_text"],
        assessment.get("questions_per_skill", 1),
        institution_id=institution_id,
        case_solution=assessment.get("case_solution"),
        output_language=assessment.get("output_language", "en"),
    )

    for skill in skills:
        skill_id = db.create_skill(skill["name"], skill.get("description"))
        for level in skill["levels"]:
            db.add_skill_level(
                skill_id,
                level["order"],
                level["label"],
                level.get("description"),
                standard=bool(level.get("standard")),
            )
        db.link_skill(assessment_id, skill_id, skill.get("weight", 100))
        for source in skill.get("sources") or []:
            chunks = _prepare_chunks(source.get("chunks") or [], backend)
            source_id = db.create_source(
                source["title"],
                chunks,
                authors=source.get("authors"),
                processing_status=source.get("processing_status", "completed"),
            )
            db.link_source(skill_id, source_id)

    logger.info("Seeded assessment %s with %d skills", assessment_id, len(skills))
    return assessment_id


def main(argv: Sequence[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(level=logging.INFO)

    if args.db:
        db.DB_PATH = args.db
        db._pool = SQLiteConnectionPool(args.db, max_connections=4)
    db.init()

    description = json.loads(Path(args.description).read_text(encoding="utf-8"))
    try:
        assessment_id = seed(description, embed_missing=args.embed_missing)
    except ConfigurationError as exc:
        print(f"Invalid description: {exc}", file=sys.stderr)
        return 1
    print(json.dumps({"assessment_id": assessment_id}))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
