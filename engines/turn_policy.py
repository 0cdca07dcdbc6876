"""Turn accounting and completion rules for an attempt conversation."""

from __future__ import annotations

import json
import logging
import math
import os
from dataclasses import dataclass
from enum import Enum
from typing import Any, Iterable, Mapping, Optional

logger = logging.getLogger(__name__)

_TURN_LOGGER = logging.getLogger("ace.turns")

DEFAULT_FINISH_EARLY_TOKEN = "__FINISH_EARLY__"

_TIER_RANK = {"incomplete": 0, "improvable": 1, "final": 2}


class Decision(str, Enum):
    CONTINUE = "continue"
    NATURAL_FINAL = "natural_final"
    FORCED_BY_LIMIT = "forced_by_limit"
    FORCED_BY_STAGNATION = "forced_by_stagnation"
    FINISH_EARLY = "finish_early"


@dataclass(frozen=True)
class TurnDecision:
    decision: Decision
    turn: int
    max_turns: int
    fifty_plus_one: int

    @property
    def completes(self) -> bool:
        return self.decision is not Decision.CONTINUE

    @property
    def forced(self) -> bool:
        return self.decision in (Decision.FORCED_BY_LIMIT, Decision.FORCED_BY_STAGNATION, Decision.FINISH_EARLY)


def max_turns_for(skill_count: int, questions_per_skill: int) -> int:
    return max(0, int(skill_count)) * max(0, int(questions_per_skill))


def fifty_plus_one(max_turns: int) -> int:
    return math.ceil(max_turns * 0.5) + 1


def count_turns(messages: Iterable[Mapping[str, Any]]) -> int:
    """Number of regular student messages; clarification exchanges are free."""

    return sum(
        1
        for message in messages
        if message.get("message_type") == "student"
        and (message.get("message_subtype") or "regular") == "regular"
    )


def previous_regular_tier(messages: Iterable[Mapping[str, Any]]) -> Optional[str]:
    """Tier of the last ai reply that answered a regular student turn.

    ``messages`` is the ordered log; the current, unanswered student message
    has no reply yet and is naturally ignored.
    """

    last_tier: Optional[str] = None
    answering_regular = False
    for message in messages:
        if message.get("message_type") == "student":
            answering_regular = (message.get("message_subtype") or "regular") == "regular"
        elif message.get("message_type") == "ai" and answering_regular:
            tier = message.get("evaluation_tier")
            if tier:
                last_tier = tier
    return last_tier


def is_stagnating(tier: str, previous_tier: Optional[str]) -> bool:
    if previous_tier is None:
        return False
    return _TIER_RANK.get(tier, 0) <= _TIER_RANK.get(previous_tier, 0)


def decide(
    turn: int,
    max_turns: int,
    tier: str,
    previous_tier: Optional[str] = None,
    *,
    regular_turn: bool = True,
) -> TurnDecision:
    """Classify the outcome of one evaluated turn.

    ``regular_turn`` is False for clarification responses, which can never
    trigger the limit or stagnation rules.
    """

    threshold = fifty_plus_one(max_turns)
    if tier == "final":
        decision = Decision.NATURAL_FINAL
    elif regular_turn and turn >= max_turns:
        decision = Decision.FORCED_BY_LIMIT
    elif regular_turn and turn >= threshold and is_stagnating(tier, previous_tier):
        decision = Decision.FORCED_BY_STAGNATION
    else:
        decision = Decision.CONTINUE
    return TurnDecision(decision=decision, turn=turn, max_turns=max_turns, fifty_plus_one=threshold)


def finish_early_token() -> str:
    return os.getenv("FINISH_EARLY_TOKEN") or DEFAULT_FINISH_EARLY_TOKEN


def is_finish_early(message: Optional[str], flag: bool = False) -> bool:
    if flag:
        return True
    return (message or "").strip() == finish_early_token()


def log_decision(attempt_id: int, decision: TurnDecision, tier: Optional[str]) -> None:
    record = {
        "event": "turn_decision",
        "attempt_id": attempt_id,
        "turn": decision.turn,
        "max_turns": decision.max_turns,
        "fifty_plus_one": decision.fifty_plus_one,
        "tier": tier,
        "decision": decision.decision.value,
    }
    _TURN_LOGGER.info(json.dumps(record, ensure_ascii=False))
