import json
import logging

import pytest

from engines import turn_policy
from engines.turn_policy import Decision


def _student(text="answer", subtype="regular"):
    return {"message_type": "student", "message_subtype": subtype, "message_text": text}


def _ai(tier, subtype="regular"):
    return {"message_type": "ai", "message_subtype": subtype, "message_text": "reply", "evaluation_tier": tier}


def test_max_turns_and_threshold():
    assert turn_policy.max_turns_for(2, 2) == 4
    assert turn_policy.max_turns_for(3, 1) == 3
    assert turn_policy.fifty_plus_one(4) == 3
    assert turn_policy.fifty_plus_one(5) == 4
    assert turn_policy.fifty_plus_one(1) == 2


def test_count_turns_ignores_clarifications_and_ai_messages():
    messages = [
        _student(),
        _ai("incomplete", "clarification_question"),
        _student(subtype="clarification_response"),
        _ai("improvable"),
        _student(),
    ]
    assert turn_policy.count_turns(messages) == 2


def test_previous_regular_tier_skips_clarification_replies():
    messages = [
        _student(),
        _ai("improvable"),
        _student(),
        _ai("incomplete", "clarification_question"),
        _student(subtype="clarification_response"),
        _ai("incomplete"),
        _student(),
    ]
    # the last ai reply answered a clarification response, not a regular turn
    assert turn_policy.previous_regular_tier(messages) == "incomplete"
    assert turn_policy.previous_regular_tier(messages[:2]) == "improvable"
    assert turn_policy.previous_regular_tier([_student()]) is None


@pytest.mark.parametrize(
    "turn,max_turns,tier,previous,expected",
    [
        (1, 4, "final", None, Decision.NATURAL_FINAL),
        (4, 4, "final", "incomplete", Decision.NATURAL_FINAL),
        (4, 4, "improvable", "incomplete", Decision.FORCED_BY_LIMIT),
        (5, 4, "incomplete", None, Decision.FORCED_BY_LIMIT),
        (3, 4, "incomplete", "incomplete", Decision.FORCED_BY_STAGNATION),
        (3, 4, "improvable", "improvable", Decision.FORCED_BY_STAGNATION),
        (3, 4, "incomplete", "improvable", Decision.FORCED_BY_STAGNATION),
        (3, 4, "improvable", "incomplete", Decision.CONTINUE),
        (2, 4, "incomplete", "incomplete", Decision.CONTINUE),
        (1, 4, "incomplete", None, Decision.CONTINUE),
    ],
)
def test_decide(turn, max_turns, tier, previous, expected):
    decision = turn_policy.decide(turn, max_turns, tier, previous)
    assert decision.decision is expected
    assert decision.turn == turn
    assert decision.max_turns == max_turns


def test_clarification_response_never_forces_completion():
    decision = turn_policy.decide(4, 4, "incomplete", "incomplete", regular_turn=False)
    assert decision.decision is Decision.CONTINUE
    assert not decision.completes

    natural = turn_policy.decide(4, 4, "final", None, regular_turn=False)
    assert natural.decision is Decision.NATURAL_FINAL


def test_forced_flags():
    limit = turn_policy.decide(4, 4, "incomplete", None)
    assert limit.completes and limit.forced
    natural = turn_policy.decide(2, 4, "final", None)
    assert natural.completes and not natural.forced


def test_finish_early_token_is_configurable(monkeypatch):
    assert turn_policy.is_finish_early("__FINISH_EARLY__")
    assert turn_policy.is_finish_early("  __FINISH_EARLY__ \n")
    assert turn_policy.is_finish_early("anything", flag=True)
    assert not turn_policy.is_finish_early("I am finished early with my analysis")

    monkeypatch.setenv("FINISH_EARLY_TOKEN", "/done")
    assert turn_policy.is_finish_early("/done")
    assert not turn_policy.is_finish_early("__FINISH_EARLY__")


def test_log_decision_emits_json(caplog):
    decision = turn_policy.decide(3, 4, "incomplete", "incomplete")
    with caplog.at_level(logging.INFO, logger="ace.turns"):
        turn_policy.log_decision(7, decision, "incomplete")

    records = [json.loads(rec.getMessage()) for rec in caplog.records if rec.name == "ace.turns"]
    assert records == [
        {
            "event": "turn_decision",
            "attempt_id": 7,
            "turn": 3,
            "max_turns": 4,
            "fifty_plus_one": 3,
            "tier": "incomplete",
            "decision": "forced_by_stagnation",
        }
    ]
