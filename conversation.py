"""Turn orchestration for attempt conversations.

One student message flows through: store (append) -> turn policy ->
retrieval -> evaluator -> [final or forced] grading -> completion.
Every failure before the completion step leaves the attempt untouched
apart from the stored student message, which can be re-evaluated through
:func:`retry_evaluation`.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Mapping, Optional, Sequence

import db
import evaluator
import rag
from engines import language, turn_policy
from engines.completion import ClosingMessage, CompletionOutcome, finalize, result_from_row
from engines.grading import HeuristicPerformanceScorer, PerformanceScorer, skill_grade
from engines.validation import ResolvedSkillResult, validate_assessment_config
from errors import (
    AssessmentMismatchError,
    AssessmentNotFoundError,
    AttemptCompletedError,
    AttemptNotFoundError,
    InvalidMessageError,
    NothingToRetryError,
)
from schemas import (
    AssessmentContext,
    AttemptOut,
    ConversationResponse,
    LevelSetting,
    MessageOut,
    ResultsResponse,
    Skill,
    SkillLevel,
    SkillResult,
)

logger = logging.getLogger(__name__)

_DEFAULT_SCORER: PerformanceScorer = HeuristicPerformanceScorer()


# ---------- loading ----------
def load_context(assessment_id: int) -> AssessmentContext:
    """Assessment, skills with levels and institution settings in one object."""

    assessment = db.get_assessment(assessment_id)
    if assessment is None:
        raise AssessmentNotFoundError(f"Assessment {assessment_id} not found")

    skills = [Skill(**row) for row in db.list_assessment_skills(assessment_id)]
    validate_assessment_config(skills, int(assessment["questions_per_skill"]))

    institution_id = assessment.get("institution_id")
    scoring_scale = 10.0
    if institution_id is not None:
        institution = db.get_institution(institution_id)
        if institution is not None and institution.get("scoring_scale") is not None:
            scoring_scale = float(institution["scoring_scale"])
    settings = [
        LevelSetting(
            order=row["level_order"],
            label=row["label"],
            lower_limit=row["lower_limit"],
            upper_limit=row["upper_limit"],
        )
        for row in db.list_skill_level_settings(institution_id)
    ]

    return AssessmentContext(
        assessment_id=assessment["id"],
        institution_id=institution_id,
        name=assessment["name"],
        case_text=assessment["case_text"],
        case_solution=assessment.get("case_solution"),
        questions_per_skill=int(assessment["questions_per_skill"]),
        output_language=language.normalize_language(assessment.get("output_language")),
        scoring_scale=scoring_scale,
        skills=skills,
        level_settings=settings,
    )


def _require_attempt(attempt_id: int, assessment_id: Optional[int] = None) -> Dict[str, Any]:
    attempt = db.get_attempt(attempt_id)
    if attempt is None:
        raise AttemptNotFoundError(f"Attempt {attempt_id} not found")
    if assessment_id is not None and int(attempt["assessment_id"]) != int(assessment_id):
        raise AssessmentMismatchError(
            f"Attempt {attempt_id} belongs to assessment {attempt['assessment_id']}, not {assessment_id}"
        )
    return attempt


def _require_open_attempt(attempt_id: int, assessment_id: int) -> Dict[str, Any]:
    attempt = _require_attempt(attempt_id, assessment_id)
    if attempt["status"] == db.STATUS_COMPLETED:
        raise AttemptCompletedError(f"Attempt {attempt_id} is already completed")
    return attempt


# ---------- grading helpers ----------
def _student_texts(messages: Sequence[Mapping[str, Any]]) -> List[str]:
    return [m["message_text"] for m in messages if m.get("message_type") == "student"]


def _grade(
    context: AssessmentContext,
    resolved: Sequence[ResolvedSkillResult],
    score: float,
) -> List[SkillResult]:
    results = []
    for item in resolved:
        results.append(
            SkillResult(
                skill_id=item.skill.id,
                skill_name=item.skill.name,
                skill_level_id=item.level.id,
                skill_level_label=item.level.label,
                skill_level_order=item.level.order,
                feedback=item.feedback,
                grade=skill_grade(item.level.label, context.level_settings, score),
                weight=item.skill.weight,
            )
        )
    return results


def default_results(context: AssessmentContext) -> List[ResolvedSkillResult]:
    """Lowest level for every skill with the insufficient-development feedback."""

    feedback = language.text("insufficient_feedback", context.output_language)
    resolved = []
    for skill in context.skills:
        level: SkillLevel = skill.lowest_level
        resolved.append(ResolvedSkillResult(skill=skill, level=level, feedback=feedback))
    return resolved


def _completion_response(
    outcome: CompletionOutcome,
    *,
    message: str,
    forced: bool,
    turn: int,
    max_turns: int,
) -> ConversationResponse:
    return ConversationResponse(
        message=message,
        evaluation_type="final",
        message_subtype="regular",
        attempt_completed=True,
        forced_final=forced,
        turn=turn,
        max_turns=max_turns,
        results=outcome.results,
        final_grade=outcome.final_grade,
    )


# ---------- operations ----------
def start_attempt(assessment_id: int, user_id: str) -> AttemptOut:
    if db.get_assessment(assessment_id) is None:
        raise AssessmentNotFoundError(f"Assessment {assessment_id} not found")
    return AttemptOut(**db.get_or_create_attempt(assessment_id, user_id))


def get_conversation(attempt_id: int) -> List[MessageOut]:
    _require_attempt(attempt_id)
    return [MessageOut(**message) for message in db.list_messages(attempt_id)]


def finish_early(
    attempt_id: int,
    assessment_id: int,
    *,
    scorer: Optional[PerformanceScorer] = None,
) -> ConversationResponse:
    """Complete the attempt at once with the default lowest levels.

    Neither retrieval nor the evaluator is called and nothing is stored as
    a student turn.
    """

    _require_open_attempt(attempt_id, assessment_id)
    context = load_context(assessment_id)
    messages = db.list_messages(attempt_id)
    turn = turn_policy.count_turns(messages)
    max_turns = turn_policy.max_turns_for(len(context.skills), context.questions_per_skill)
    score = (scorer or _DEFAULT_SCORER).score(_student_texts(messages))
    closing = language.text("finish_early_closing", context.output_language)

    outcome = finalize(
        attempt_id,
        _grade(context, default_results(context), score),
        closing_message=ClosingMessage(text=closing),
    )
    decision = turn_policy.TurnDecision(
        decision=turn_policy.Decision.FINISH_EARLY,
        turn=turn,
        max_turns=max_turns,
        fifty_plus_one=turn_policy.fifty_plus_one(max_turns),
    )
    turn_policy.log_decision(attempt_id, decision, None)
    return _completion_response(outcome, message=closing, forced=True, turn=turn, max_turns=max_turns)


def submit_message(
    attempt_id: int,
    assessment_id: int,
    message: str,
    *,
    finish_early_flag: bool = False,
    scorer: Optional[PerformanceScorer] = None,
    backend: Optional[rag.EmbeddingBackend] = None,
) -> ConversationResponse:
    """Store a student message and evaluate it."""

    if turn_policy.is_finish_early(message, finish_early_flag):
        return finish_early(attempt_id, assessment_id, scorer=scorer)

    text = (message or "").strip()
    if not text:
        raise InvalidMessageError("Message must not be empty")

    _require_open_attempt(attempt_id, assessment_id)
    context = load_context(assessment_id)

    history = db.list_messages(attempt_id)
    subtype = "regular"
    if history and history[-1]["message_type"] == "ai" and history[-1]["message_subtype"] == "clarification_question":
        subtype = "clarification_response"
    db.append_message(attempt_id, "student", text, message_subtype=subtype)

    return _evaluate_pending(attempt_id, context, scorer=scorer, backend=backend)


def retry_evaluation(
    attempt_id: int,
    assessment_id: int,
    *,
    scorer: Optional[PerformanceScorer] = None,
    backend: Optional[rag.EmbeddingBackend] = None,
) -> ConversationResponse:
    """Re-run evaluation for the latest student message if it has no answer yet."""

    _require_open_attempt(attempt_id, assessment_id)
    messages = db.list_messages(attempt_id)
    if not messages or messages[-1]["message_type"] != "student":
        raise NothingToRetryError(f"Attempt {attempt_id} has no unanswered student message")
    context = load_context(assessment_id)
    return _evaluate_pending(attempt_id, context, scorer=scorer, backend=backend)


def _evaluate_pending(
    attempt_id: int,
    context: AssessmentContext,
    *,
    scorer: Optional[PerformanceScorer],
    backend: Optional[rag.EmbeddingBackend],
) -> ConversationResponse:
    messages = db.list_messages(attempt_id)
    current = messages[-1]
    regular_turn = current["message_subtype"] == "regular"
    turn = turn_policy.count_turns(messages)
    max_turns = turn_policy.max_turns_for(len(context.skills), context.questions_per_skill)
    threshold = turn_policy.fifty_plus_one(max_turns)

    retrieval = rag.retrieve(current["message_text"], context.assessment_id, backend=backend)
    evaluation = evaluator.evaluate_turn(
        context,
        messages,
        current["message_text"],
        turn=turn,
        max_turns=max_turns,
        fifty_plus_one=threshold,
        retrieval=retrieval,
        attempt_id=attempt_id,
    )

    decision = turn_policy.decide(
        turn,
        max_turns,
        evaluation.tier,
        turn_policy.previous_regular_tier(messages),
        regular_turn=regular_turn,
    )
    turn_policy.log_decision(attempt_id, decision, evaluation.tier)

    if decision.completes:
        score = (scorer or _DEFAULT_SCORER).score(_student_texts(messages))
        if decision.decision is turn_policy.Decision.NATURAL_FINAL:
            resolved = evaluation.skill_results
            closing = evaluation.reply.message
        else:
            resolved = default_results(context)
            closing = language.text("forced_closing", context.output_language)
        outcome = finalize(
            attempt_id,
            _grade(context, resolved, score),
            closing_message=ClosingMessage(text=closing, evaluation_tier=evaluation.tier),
        )
        return _completion_response(
            outcome,
            message=closing,
            forced=decision.forced,
            turn=turn,
            max_turns=max_turns,
        )

    # At most one free clarification exchange per counted turn.
    ai_subtype = "regular"
    if (
        regular_turn
        and evaluation.tier == "incomplete"
        and not evaluation.used_fallback
        and language.is_clarification_question(evaluation.reply.message)
    ):
        ai_subtype = "clarification_question"
    db.append_message(
        attempt_id,
        "ai",
        evaluation.reply.message,
        message_subtype=ai_subtype,
        evaluation_tier=evaluation.tier,
    )
    return ConversationResponse(
        message=evaluation.reply.message,
        evaluation_type=evaluation.tier,
        message_subtype=ai_subtype,
        attempt_completed=False,
        forced_final=False,
        turn=turn,
        max_turns=max_turns,
    )


def get_results(attempt_id: int) -> ResultsResponse:
    attempt = _require_attempt(attempt_id)
    results = [result_from_row(row) for row in db.list_results(attempt_id)]
    max_score = 10.0
    assessment = db.get_assessment(attempt["assessment_id"])
    if assessment is not None and assessment.get("institution_id") is not None:
        institution = db.get_institution(assessment["institution_id"])
        if institution is not None:
            max_score = float(institution["scoring_scale"])
    return ResultsResponse(
        results=results,
        final_grade=float(attempt["final_grade"]),
        status=attempt["status"],
        max_score=max_score,
    )
