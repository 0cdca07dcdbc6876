"""Pydantic schemas for validated evaluator output, assessment configuration and the HTTP surface."""

from __future__ import annotations

import re
from typing import Annotated, Any, List, Literal, Optional, Type, TypeVar, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, field_validator

__all__ = [
    "EvaluationTier",
    "SkillResultPayload",
    "IncompleteEvaluation",
    "ImprovableEvaluation",
    "FinalEvaluation",
    "EvaluatorReply",
    "SkillLevel",
    "Skill",
    "LevelSetting",
    "AssessmentContext",
    "SkillResult",
    "StartAttemptRequest",
    "ConversationRequest",
    "RetryRequest",
    "AttemptOut",
    "MessageOut",
    "ConversationResponse",
    "ResultsResponse",
    "strip_code_fences",
    "parse_json_safe",
    "parse_evaluator_reply",
]

EvaluationTier = Literal["incomplete", "improvable", "final"]
OutputLanguage = Literal["en", "es"]


# ---------- evaluator reply ----------
class SkillResultPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    skill_id: int = Field(alias="skillId")
    skill_level_id: int = Field(alias="skillLevelId")
    feedback: str

    @field_validator("feedback")
    @classmethod
    def _feedback_not_blank(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("feedback must not be empty")
        return value.strip()


class _EvaluationBase(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    message: str

    @field_validator("message")
    @classmethod
    def _message_not_blank(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("message must not be empty")
        return value.strip()


class IncompleteEvaluation(_EvaluationBase):
    """Answer lacks required elements; the conversation continues."""

    evaluation_type: Literal["incomplete"] = Field(alias="evaluationType")
    can_determine_level: bool = Field(default=False, alias="canDetermineLevel")


class ImprovableEvaluation(_EvaluationBase):
    evaluation_type: Literal["improvable"] = Field(alias="evaluationType")
    can_determine_level: bool = Field(default=False, alias="canDetermineLevel")


class FinalEvaluation(_EvaluationBase):
    """Evaluator is ready to assign levels; carries one result per skill."""

    evaluation_type: Literal["final"] = Field(alias="evaluationType")
    can_determine_level: Literal[True] = Field(alias="canDetermineLevel")
    skill_results: List[SkillResultPayload] = Field(alias="skillResults", min_length=1)


EvaluatorReply = Annotated[
    Union[IncompleteEvaluation, ImprovableEvaluation, FinalEvaluation],
    Field(discriminator="evaluation_type"),
]

_REPLY_ADAPTER: TypeAdapter = TypeAdapter(EvaluatorReply)


# ---------- assessment configuration ----------
class SkillLevel(BaseModel):
    id: int
    order: int
    label: str
    description: str = ""
    standard: bool = False


class Skill(BaseModel):
    id: int
    name: str
    description: str = ""
    weight: float = 100.0
    levels: List[SkillLevel] = Field(default_factory=list)

    @property
    def lowest_level(self) -> SkillLevel:
        return min(self.levels, key=lambda level: (level.order, level.id))

    @property
    def standard_level(self) -> Optional[SkillLevel]:
        for level in self.levels:
            if level.standard:
                return level
        return None


class LevelSetting(BaseModel):
    order: int
    label: str
    lower_limit: Optional[float] = None
    upper_limit: Optional[float] = None


class AssessmentContext(BaseModel):
    """Everything the engine needs to evaluate one turn of an assessment."""

    assessment_id: int
    institution_id: Optional[int] = None
    name: str = ""
    case_text: str
    case_solution: Optional[str] = None
    questions_per_skill: int = Field(ge=1)
    output_language: OutputLanguage = "en"
    scoring_scale: float = 10.0
    skills: List[Skill]
    level_settings: List[LevelSetting] = Field(default_factory=list)


class SkillResult(BaseModel):
    skill_id: int
    skill_name: str
    skill_level_id: int
    skill_level_label: str
    skill_level_order: int
    feedback: str
    grade: Optional[float] = None
    weight: float = 100.0


# ---------- HTTP bodies ----------
class StartAttemptRequest(BaseModel):
    user_id: str = Field(min_length=1)


class ConversationRequest(BaseModel):
    message: str = ""
    assessment_id: int
    finish_early: bool = False


class RetryRequest(BaseModel):
    assessment_id: int


class AttemptOut(BaseModel):
    id: int
    assessment_id: int
    user_id: str
    status: str
    final_grade: float
    created_at: str
    completed_at: Optional[str] = None


class MessageOut(BaseModel):
    id: int
    message_type: Literal["student", "ai"]
    message_subtype: str
    message_text: str
    created_at: str


class ConversationResponse(BaseModel):
    message: str
    evaluation_type: EvaluationTier
    message_subtype: str = "regular"
    attempt_completed: bool = False
    forced_final: bool = False
    turn: int
    max_turns: int
    results: Optional[List[SkillResult]] = None
    final_grade: Optional[float] = None


class ResultsResponse(BaseModel):
    results: List[SkillResult]
    final_grade: float
    status: str
    max_score: float = 10.0


# ---------- parsing helpers ----------
_T = TypeVar("_T", bound=BaseModel)

_FENCE_RE = re.compile(r"^\s*```[a-zA-Z0-9_-]*\s*\n?(.*?)\n?\s*```\s*$", re.DOTALL)


def strip_code_fences(text: str) -> str:
    """Remove a surrounding markdown code fence (```json ... ```) if present."""

    if not text:
        return ""
    match = _FENCE_RE.match(text)
    if match:
        return match.group(1).strip()
    return text.strip()


def _find_first_json_object(text: str) -> tuple[str, int, int]:
    start = text.find("{")
    if start == -1:
        raise ValueError("No JSON object found in text")
    depth = 0
    in_string = False
    escape = False
    for idx in range(start, len(text)):
        ch = text[idx]
        if in_string:
            if escape:
                escape = False
            elif ch == "\\":
                escape = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                return text[start : idx + 1], start, idx + 1
    raise ValueError("Unterminated JSON object in text")


def parse_json_safe(text: str, model: Union[Type[_T], TypeAdapter]) -> Any:
    """Parse ``text`` into ``model`` with a fallback JSON extraction pass.

    ``model`` is either a pydantic model class or a ``TypeAdapter`` (used for
    discriminated unions).
    """

    validate = model.validate_json if isinstance(model, TypeAdapter) else model.model_validate_json
    cleaned = strip_code_fences(text)

    first_error: Exception | None = None
    try:
        return validate(cleaned)
    except (ValidationError, ValueError, TypeError) as exc:
        first_error = exc

    try:
        snippet, _, end = _find_first_json_object(cleaned)
    except ValueError:
        if first_error:
            raise first_error
        raise

    trailing = cleaned[end:]
    if trailing.strip():
        if isinstance(first_error, ValidationError):
            raise first_error
        raise ValueError("Trailing content detected after JSON object")

    try:
        return validate(snippet)
    except (ValidationError, ValueError):
        if first_error:
            raise first_error
        raise


def parse_evaluator_reply(text: str) -> Union[IncompleteEvaluation, ImprovableEvaluation, FinalEvaluation]:
    """Parse raw evaluator output into one of the three evaluation variants.

    Raises ``ValidationError``/``ValueError`` when the reply violates the contract.
    """

    return parse_json_safe(text, _REPLY_ADAPTER)
