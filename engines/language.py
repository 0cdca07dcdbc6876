"""Output language handling: localized texts and a small language detector."""

from __future__ import annotations

import logging
import re
from typing import Dict, Optional, Protocol

logger = logging.getLogger(__name__)

SUPPORTED_LANGUAGES = ("en", "es")

_TEXTS: Dict[str, Dict[str, str]] = {
    "en": {
        "fallback": "Sorry, there was an error processing your response. Please try again.",
        "insufficient_feedback": (
            "Insufficient development: the conversation ended before enough evidence "
            "was provided to assess this skill."
        ),
        "forced_closing": (
            "We have reached the end of this assessment. Thank you for your answers; "
            "your results are now available."
        ),
        "finish_early_closing": "You have finished the assessment early. Your results are now available.",
    },
    "es": {
        "fallback": "Lo siento, hubo un error al procesar tu respuesta. Por favor, intenta de nuevo.",
        "insufficient_feedback": (
            "Desarrollo insuficiente: la conversación terminó antes de aportar evidencia "
            "suficiente para evaluar esta habilidad."
        ),
        "forced_closing": (
            "Hemos llegado al final de esta evaluación. Gracias por tus respuestas; "
            "tus resultados ya están disponibles."
        ),
        "finish_early_closing": "Has terminado la evaluación antes de tiempo. Tus resultados ya están disponibles.",
    },
}

CLARIFICATION_INDICATORS = (
    "¿Podrías aclarar",
    "Could you clarify",
    "¿Podrías explicar",
    "Could you explain",
    "¿Qué quieres decir",
    "What do you mean",
    "¿Puedes ser más específico",
    "Can you be more specific",
    "¿Te refieres a",
    "Do you mean",
    "¿Cómo se relaciona",
    "How does this relate",
)


def normalize_language(value: Optional[str]) -> str:
    key = (value or "").strip().lower()[:2]
    return key if key in SUPPORTED_LANGUAGES else "en"


def text(key: str, language: Optional[str]) -> str:
    return _TEXTS[normalize_language(language)][key]


def is_clarification_question(message: str) -> bool:
    lowered = (message or "").lower()
    return any(indicator.lower() in lowered for indicator in CLARIFICATION_INDICATORS)


class LanguageDetector(Protocol):
    def detect(self, text: str) -> Optional[str]:
        ...


class WordListLanguageDetector:
    """Guess en/es from frequent function words; ``None`` when undecided."""

    _WORDS = {
        "en": {"the", "and", "is", "are", "you", "your", "of", "to", "what", "this", "that", "with", "how"},
        "es": {"el", "la", "los", "las", "y", "es", "son", "tu", "de", "que", "qué", "por", "para", "con", "cómo"},
    }
    _TOKEN_RE = re.compile(r"[a-záéíóúñü]+", re.IGNORECASE)

    def __init__(self, min_hits: int = 3) -> None:
        self.min_hits = min_hits

    def detect(self, text: str) -> Optional[str]:
        tokens = [token.lower() for token in self._TOKEN_RE.findall(text or "")]
        scores = {lang: sum(1 for token in tokens if token in words) for lang, words in self._WORDS.items()}
        best = max(scores, key=scores.get)
        other = min(scores, key=scores.get)
        if scores[best] < self.min_hits or scores[best] == scores[other]:
            return None
        return best


_DETECTOR: LanguageDetector = WordListLanguageDetector()


def set_detector(detector: LanguageDetector) -> None:
    global _DETECTOR
    _DETECTOR = detector


def check_language(message: str, expected: Optional[str], *, attempt_id: Optional[int] = None) -> bool:
    """Log when ``message`` looks like a different language than ``expected``.

    Returns True when the message matches or the language is undecided.
    """

    detected = _DETECTOR.detect(message)
    language = normalize_language(expected)
    if detected is None or detected == language:
        return True
    logger.warning(
        "Evaluator message language mismatch for attempt %s: expected %s, detected %s",
        attempt_id,
        language,
        detected,
    )
    return False
