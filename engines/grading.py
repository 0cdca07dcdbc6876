"""Numeric grading of an attempt from per-skill levels.

Each skill's level label maps to an institution range ``[lower, upper]``;
the position inside the range comes from a performance score in ``[0, 0.9]``
derived from the student's cumulative text. The final grade is the
weight-normalised mean of the skill grades.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Iterable, List, Optional, Protocol, Sequence, Tuple

from schemas import LevelSetting

logger = logging.getLogger(__name__)

NEUTRAL_LEVEL_RANGE: Tuple[float, float] = (5.0, 5.0)
MAX_PERFORMANCE_SCORE = 0.9


class PerformanceScorer(Protocol):
    def score(self, texts: Sequence[str]) -> float:
        ...


_CAUSAL_MARKERS = (
    "because", "therefore", "thus", "hence", "since", "as a result", "consequently",
    "due to", "so that", "which means", "this implies", "in order to",
    "porque", "por lo tanto", "por eso", "debido a", "ya que", "puesto que",
    "en consecuencia", "así que", "lo que significa", "dado que",
)
_EXAMPLE_MARKERS = (
    "for example", "for instance", "such as", "e.g.", "in the case of", "like when",
    "por ejemplo", "como por ejemplo", "tal como", "en el caso de", "un ejemplo",
)
_THEORY_MARKERS = (
    "theory", "model", "framework", "according to", "concept", "principle", "author",
    "research", "study", "literature",
    "teoría", "modelo", "marco", "según", "concepto", "principio", "autor",
    "investigación", "estudio", "literatura",
)

_SENTENCE_SPLIT = re.compile(r"[.!?]+")
_WORD_RE = re.compile(r"\w+", re.UNICODE)


def _count_markers(text: str, markers: Iterable[str]) -> int:
    lowered = text.lower()
    total = 0
    for marker in markers:
        pattern = r"(?<!\w)" + re.escape(marker) + r"(?!\w)"
        total += len(re.findall(pattern, lowered))
    return total


def _saturate(value: float, ceiling: float) -> float:
    if ceiling <= 0:
        return 0.0
    return min(1.0, max(0.0, value / ceiling))


class HeuristicPerformanceScorer:
    """Weighted text-quality heuristic over the student's whole answer."""

    weights = {
        "length": 0.30,
        "complexity": 0.15,
        "causal": 0.20,
        "examples": 0.10,
        "theory": 0.15,
    }

    def score(self, texts: Sequence[str]) -> float:
        combined = " ".join(t for t in texts if t).strip()
        if not combined:
            return 0.0
        words = _WORD_RE.findall(combined)
        sentences = [s for s in _SENTENCE_SPLIT.split(combined) if s.strip()]
        words_per_sentence = len(words) / max(1, len(sentences))

        components = {
            "length": _saturate(len(words), 300),
            "complexity": _saturate(words_per_sentence, 20),
            "causal": _saturate(_count_markers(combined, _CAUSAL_MARKERS), 5),
            "examples": _saturate(_count_markers(combined, _EXAMPLE_MARKERS), 2),
            "theory": _saturate(_count_markers(combined, _THEORY_MARKERS), 3),
        }
        total = sum(self.weights[name] * value for name, value in components.items())
        return round(min(MAX_PERFORMANCE_SCORE, max(0.0, total)), 4)


def level_range(label: str, settings: Sequence[LevelSetting]) -> Optional[Tuple[float, float]]:
    wanted = (label or "").strip().lower()
    for setting in settings:
        if setting.label.strip().lower() != wanted:
            continue
        if setting.lower_limit is None or setting.upper_limit is None:
            return None
        return float(setting.lower_limit), float(setting.upper_limit)
    return None


def skill_grade(label: str, settings: Sequence[LevelSetting], score: float) -> float:
    """Interpolate a grade inside the level's range, clamped to that range."""

    bounds = level_range(label, settings)
    if bounds is None:
        logger.info("No level setting for %r; using neutral range %s", label, NEUTRAL_LEVEL_RANGE)
        bounds = NEUTRAL_LEVEL_RANGE
    lower, upper = bounds
    position = min(1.0, max(0.0, float(score)))
    grade = round(lower + (upper - lower) * position, 2)
    return min(upper, max(lower, grade))


@dataclass(frozen=True)
class GradeEntry:
    skill_id: int
    grade: Optional[float]
    weight: float = 100.0


def final_grade(entries: Iterable[GradeEntry]) -> float:
    """Weighted mean over resolved skills, weight = skill weight / 100."""

    resolved: List[GradeEntry] = [entry for entry in entries if entry.grade is not None]
    if not resolved:
        return 0.0
    denominator = sum(max(0.0, entry.weight) / 100.0 for entry in resolved)
    if denominator <= 0:
        logger.info("Skill weights sum to zero; using equal weighting over %d skills", len(resolved))
        return round(sum(entry.grade for entry in resolved) / len(resolved), 2)
    numerator = sum(entry.grade * max(0.0, entry.weight) / 100.0 for entry in resolved)
    return round(numerator / denominator, 2)
