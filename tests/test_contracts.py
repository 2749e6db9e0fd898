from __future__ import annotations

import allure
import pytest

from laneloop.orchestrator.contracts import (
    OracleOutputError,
    decision_to_dict,
    extract_json_object,
    parse_decision,
    parse_review_verdict,
    parse_tier,
)
from laneloop.orchestrator.models import ReviewVerdict, Tier, ToolInvocation

pytestmark = [
    allure.epic("Execution Loop"),
    allure.feature("Oracle Contracts"),
]


def test_extract_json_object_from_fenced_and_embedded_text() -> None:
    fenced = 'Here you go:\n```json\n{"tier": "deep"}\n```'
    embedded = 'Sure. {"verdict": "continue"} Thanks.'

    assert extract_json_object(fenced) == {"tier": "deep"}
    assert extract_json_object(embedded) == {"verdict": "continue"}
    assert extract_json_object("   ") is None
    assert extract_json_object("[1, 2]") is None


def test_parse_decision_accepts_metadata_and_arguments() -> None:
    decision = parse_decision(
        {
            "reasoning": "look it up",
            "tools": [
                {"name": "web_search", "metadata": {"query": "paris weather"}},
                {"name": " send_telegram ", "arguments": {"message": "hi"}},
                {"name": ""},
                "junk",
            ],
            "verification": {"goals_met": False, "analysis": "not yet"},
        },
    )

    assert decision.tools == [
        ToolInvocation(name="web_search", arguments={"query": "paris weather"}),
        ToolInvocation(name="send_telegram", arguments={"message": "hi"}),
    ]
    assert decision.verification.goals_met is False
    assert decision.verification.reasoning == "not yet"
    assert decision.reasoning == "look it up"


def test_parse_decision_from_text_defaults_missing_parts() -> None:
    decision = parse_decision('```json\n{"verification": {"goals_met": true}}\n```')

    assert decision.tools == []
    assert decision.verification.goals_met is True
    assert decision.reasoning is None


@pytest.mark.parametrize(
    ("raw", "message"),
    [
        ("no json here", "does not contain a JSON object"),
        ({"tools": "web_search"}, "tools must be an array"),
        ({"tools": [{"name": "x", "metadata": [1]}]}, "must be an object"),
        ({"verification": "yes"}, "verification must be an object"),
        ({"verification": {"goals_met": "true"}}, "goals_met must be a boolean"),
    ],
)
def test_parse_decision_rejects_malformed_output(raw: object, message: str) -> None:
    with pytest.raises(OracleOutputError, match=message):
        parse_decision(raw)  # type: ignore[arg-type]


def test_decision_to_dict_round_trips_through_parse() -> None:
    decision = parse_decision(
        {
            "tools": [{"name": "web_search", "metadata": {"q": "x"}}],
            "verification": {"goals_met": False, "analysis": "pending"},
        },
    )

    assert parse_decision(decision_to_dict(decision)) == decision


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ('{"verdict": "continue"}', ReviewVerdict.CONTINUE),
        ('{"decision": "Terminate"}', ReviewVerdict.TERMINATE),
        ("continue, there is progress", ReviewVerdict.CONTINUE),
        ("  TERMINATE", ReviewVerdict.TERMINATE),
    ],
)
def test_parse_review_verdict(raw: str, expected: ReviewVerdict) -> None:
    assert parse_review_verdict(raw) == expected


def test_parse_review_verdict_rejects_unknown_words() -> None:
    with pytest.raises(OracleOutputError):
        parse_review_verdict("maybe")


def test_parse_tier() -> None:
    assert parse_tier('{"tier": "DEEP"}') == Tier.DEEP
    assert parse_tier(" trivial\n") == Tier.TRIVIAL
    with pytest.raises(OracleOutputError):
        parse_tier("epic")
