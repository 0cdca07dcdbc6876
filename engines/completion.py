"""Atomic completion of an attempt: result rows plus the status change."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Sequence

import db
from engines.grading import GradeEntry, final_grade
from errors import AttemptNotFoundError
from schemas import SkillResult

logger = logging.getLogger(__name__)


@dataclass
class CompletionOutcome:
    attempt_id: int
    results: List[SkillResult]
    final_grade: float
    already_finalized: bool = False


def result_from_row(row: Mapping[str, Any]) -> SkillResult:
    return SkillResult(
        skill_id=row["skill_id"],
        skill_name=row["skill_name"],
        skill_level_id=row["skill_level_id"],
        skill_level_label=row["skill_level_label"],
        skill_level_order=row["skill_level_order"],
        feedback=row["feedback"],
        grade=row["grade"],
        weight=float(row["weight"]) if row["weight"] is not None else 100.0,
    )


def _grade_of(results: Sequence[SkillResult]) -> float:
    return final_grade(GradeEntry(r.skill_id, r.grade, r.weight) for r in results)


@dataclass
class ClosingMessage:
    text: str
    evaluation_tier: Optional[str] = None


def finalize(
    attempt_id: int,
    results: Sequence[SkillResult],
    *,
    closing_message: Optional[ClosingMessage] = None,
) -> CompletionOutcome:
    """Persist ``results`` and mark the attempt completed, exactly once.

    If results already exist for the attempt the stored rows win and the
    returned payload is rebuilt from them. ``closing_message`` is the ai
    message that ends the conversation; it is written in the same
    transaction and only when this call performs the completion.
    """

    with db.transaction() as con:
        attempt = db.get_attempt_in(con, attempt_id)
        if attempt is None:
            raise AttemptNotFoundError(f"Attempt {attempt_id} not found")

        existing = db.fetch_results(con, attempt_id)
        if existing:
            stored = [result_from_row(row) for row in existing]
            grade = _grade_of(stored)
            if attempt["status"] != db.STATUS_COMPLETED:
                db.mark_attempt_completed(con, attempt_id, grade)
                logger.warning("Attempt %s had results but was not completed; completing now", attempt_id)
            logger.info("Attempt %s already finalized; returning stored results", attempt_id)
            return CompletionOutcome(attempt_id, stored, grade, already_finalized=True)

        rows: List[Dict[str, Any]] = [
            {
                "skill_id": r.skill_id,
                "skill_level_id": r.skill_level_id,
                "feedback": r.feedback,
                "grade": r.grade,
            }
            for r in results
        ]
        if closing_message is not None:
            db.insert_message(
                con,
                attempt_id,
                "ai",
                closing_message.text,
                evaluation_tier=closing_message.evaluation_tier,
            )
        inserted = db.insert_results(con, attempt_id, rows)
        grade = _grade_of(results)
        db.mark_attempt_completed(con, attempt_id, grade)
        stored = [result_from_row(row) for row in db.fetch_results(con, attempt_id)]

    logger.info(
        "Attempt %s completed with %d result rows, final grade %.2f", attempt_id, inserted, grade
    )
    return CompletionOutcome(attempt_id, stored, grade, already_finalized=False)
