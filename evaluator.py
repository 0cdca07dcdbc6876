"""Evaluation orchestrator: prompt assembly, the evaluator call and reply validation."""

from __future__ import annotations

import json
import logging
import os
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence, Union
from uuid import uuid4

import requests
from pydantic import ValidationError

from engines import language
from engines.retry import RetryExhaustedError, call_with_retry
from engines.validation import ResolvedSkillResult, validate_skill_results
from env_validation import get_env_bool, get_env_float, get_env_int
from errors import EvaluatorReplyError, EvaluatorUnavailableError
from prompts.masterprompts import MasterPrompt, get_prompt
from rag import RetrievalResult
from schemas import (
    AssessmentContext,
    FinalEvaluation,
    ImprovableEvaluation,
    IncompleteEvaluation,
    Skill,
    parse_evaluator_reply,
)

logger = logging.getLogger(__name__)

_LLM_LOGGER = logging.getLogger("ace.llm")
if not _LLM_LOGGER.handlers:
    _handler = logging.StreamHandler()
    _handler.setFormatter(logging.Formatter("%(message)s"))
    _LLM_LOGGER.addHandler(_handler)
_LLM_LOGGER.setLevel(logging.INFO)
_LLM_LOGGER.propagate = False

Evaluation = Union[IncompleteEvaluation, ImprovableEvaluation, FinalEvaluation]


@dataclass
class EvaluationOutcome:
    reply: Evaluation
    prompt_version: str
    raw_text: str = ""
    used_fallback: bool = False
    skill_results: List[ResolvedSkillResult] = field(default_factory=list)

    @property
    def tier(self) -> str:
        return self.reply.evaluation_type


# ---------- prompt assembly ----------
def format_skills(skills: Sequence[Skill], output_language: str = "en") -> str:
    marker = "[ESTÁNDAR]" if language.normalize_language(output_language) == "es" else "[STANDARD]"
    blocks = []
    for skill in skills:
        level_lines = []
        for level in sorted(skill.levels, key=lambda lvl: (lvl.order, lvl.id)):
            flag = f" {marker}" if level.standard else ""
            level_lines.append(
                f"- Level ID {level.id} (order {level.order}, {level.label}){flag}: {level.description}"
            )
        blocks.append(
            f"Skill ID {skill.id}: {skill.name}\n"
            f"Description: {skill.description}\n"
            f"Levels:\n" + "\n".join(level_lines)
        )
    return "\n\n".join(blocks)


def format_transcript(messages: Sequence[Mapping[str, Any]]) -> str:
    lines = []
    for message in messages:
        speaker = "Student" if message.get("message_type") == "student" else "AI"
        lines.append(f"{speaker}: {message.get('message_text', '')}")
    return "\n".join(lines) if lines else "(none)"


def build_messages(
    context: AssessmentContext,
    transcript: Sequence[Mapping[str, Any]],
    student_message: str,
    *,
    turn: int,
    max_turns: int,
    fifty_plus_one: int,
    retrieval: RetrievalResult,
    prompt: Optional[MasterPrompt] = None,
) -> List[Dict[str, str]]:
    """Chat messages for one evaluation request.

    ``transcript`` is the full prior conversation, including the current
    student message as its last entry.
    """

    active = prompt or get_prompt(context.output_language)
    solution_block = ""
    if context.case_solution:
        solution_block = f"- Reference solution: {context.case_solution}\n"
    system = active.render(
        case_text=context.case_text,
        case_solution_block=solution_block,
        turn=turn,
        max_turns=max_turns,
        fifty_plus_one=fifty_plus_one,
        skills_text=format_skills(context.skills, context.output_language),
        sources_text=retrieval.formatted_context,
        transcript=format_transcript(transcript),
    )
    return [
        {"role": "system", "content": system},
        {"role": "user", "content": student_message},
    ]


# ---------- transport ----------
def _post_chat_completion(payload: Dict[str, Any], *, url: str, headers: Dict[str, str], timeout: float) -> Dict[str, Any]:
    response = requests.post(url, json=payload, headers=headers, timeout=timeout)
    response.raise_for_status()
    return response.json()


def _extract_content(data: Any) -> Optional[str]:
    try:
        content = data["choices"][0]["message"]["content"]
    except (KeyError, IndexError, TypeError):
        try:
            content = data["choices"][0]["text"]
        except (KeyError, IndexError, TypeError):
            return None
    if not isinstance(content, str) or not content.strip():
        return None
    return content


def call_evaluator(
    messages: List[Dict[str, str]],
    *,
    attempt_id: Optional[int] = None,
    prompt_version: str = "default",
) -> str:
    """Send one chat completion request and return the reply text.

    Connection errors and timeouts are retried with exponential backoff;
    every failure that survives the retries raises EvaluatorUnavailableError.
    """

    model = os.getenv("EVALUATOR_MODEL", "gpt-4o")
    url = os.getenv("EVALUATOR_URL", "https://api.openai.com/v1/chat/completions")
    payload: Dict[str, Any] = {
        "model": model,
        "messages": messages,
        "temperature": get_env_float("EVALUATOR_TEMPERATURE", 0.3),
        "max_tokens": get_env_int("EVALUATOR_MAX_TOKENS", 4000),
    }
    if get_env_bool("EVALUATOR_JSON_MODE", True):
        payload["response_format"] = {"type": "json_object"}
    headers = {"Content-Type": "application/json"}
    api_key = os.getenv("EVALUATOR_API_KEY")
    if api_key:
        headers["Authorization"] = f"Bearer {api_key}"

    request_id = str(uuid4())
    start = time.perf_counter()
    outcome = "ok"
    tokens_in: Optional[int] = None
    tokens_out: Optional[int] = None
    try:
        try:
            data = call_with_retry(
                _post_chat_completion,
                payload,
                url=url,
                headers=headers,
                timeout=get_env_float("EVALUATOR_TIMEOUT", 60.0),
                max_retries=get_env_int("EVALUATOR_RETRIES", 2),
                initial_delay=get_env_float("EVALUATOR_RETRY_DELAY", 1.0),
                exceptions=(requests.ConnectionError, requests.Timeout),
            )
        except RetryExhaustedError as exc:
            outcome = "unavailable"
            raise EvaluatorUnavailableError("Evaluator unreachable after retries") from exc
        except requests.HTTPError as exc:
            outcome = "http_error"
            status = exc.response.status_code if exc.response is not None else "?"
            raise EvaluatorUnavailableError(f"Evaluator HTTP {status}") from exc
        except (requests.RequestException, ValueError) as exc:
            outcome = "error"
            raise EvaluatorUnavailableError(f"Evaluator error: {exc}") from exc

        usage = data.get("usage") if isinstance(data, dict) else None
        if isinstance(usage, dict):
            tokens_in = usage.get("prompt_tokens")
            tokens_out = usage.get("completion_tokens")

        content = _extract_content(data)
        if content is None:
            outcome = "empty"
            raise EvaluatorUnavailableError("Evaluator returned no content")
        return content
    finally:
        log_record = {
            "event": "evaluator_call",
            "request_id": request_id,
            "attempt_id": attempt_id,
            "prompt_version": prompt_version,
            "model": model,
            "latency_ms": int((time.perf_counter() - start) * 1000),
            "tokens_in": tokens_in,
            "tokens_out": tokens_out,
            "outcome": outcome,
        }
        _LLM_LOGGER.info(json.dumps(log_record, ensure_ascii=False))


# ---------- reply handling ----------
def fallback_reply(output_language: str) -> IncompleteEvaluation:
    return IncompleteEvaluation(
        evaluation_type="incomplete",
        message=language.text("fallback", output_language),
        can_determine_level=False,
    )


def parse_reply(raw_text: str) -> Evaluation:
    """Parse the evaluator text, raising EvaluatorReplyError on contract violations."""
    try:
        return parse_evaluator_reply(raw_text)
    except (ValidationError, ValueError) as exc:
        raise EvaluatorReplyError(str(exc)) from exc


def evaluate_turn(
    context: AssessmentContext,
    transcript: Sequence[Mapping[str, Any]],
    student_message: str,
    *,
    turn: int,
    max_turns: int,
    fifty_plus_one: int,
    retrieval: RetrievalResult,
    attempt_id: Optional[int] = None,
) -> EvaluationOutcome:
    """Run one evaluation and validate the reply.

    A malformed reply becomes the localized incomplete fallback. A final
    reply whose skill/level pairs do not match the assessment raises
    SkillLevelIntegrityError.
    """

    prompt = get_prompt(context.output_language)
    messages = build_messages(
        context,
        transcript,
        student_message,
        turn=turn,
        max_turns=max_turns,
        fifty_plus_one=fifty_plus_one,
        retrieval=retrieval,
        prompt=prompt,
    )
    raw_text = call_evaluator(messages, attempt_id=attempt_id, prompt_version=prompt.prompt_version)

    try:
        reply = parse_reply(raw_text)
    except EvaluatorReplyError as exc:
        logger.warning("Malformed evaluator reply for attempt %s: %s", attempt_id, exc)
        return EvaluationOutcome(
            reply=fallback_reply(context.output_language),
            prompt_version=prompt.prompt_version,
            raw_text=raw_text,
            used_fallback=True,
        )

    outcome = EvaluationOutcome(reply=reply, prompt_version=prompt.prompt_version, raw_text=raw_text)
    if isinstance(reply, FinalEvaluation):
        outcome.skill_results = validate_skill_results(reply, context.skills)
    language.check_language(reply.message, context.output_language, attempt_id=attempt_id)
    return outcome
