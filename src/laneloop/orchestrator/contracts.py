"""JSON contracts exchanged with the decision oracle."""

from __future__ import annotations

import json
import re
from typing import Any

from laneloop.orchestrator.models import (
    Decision,
    ReviewVerdict,
    Tier,
    ToolInvocation,
    VerificationVerdict,
)

_FENCED_JSON = re.compile(r"```(?:json)?\s*(\{.*?\})\s*```", re.DOTALL | re.IGNORECASE)

DECISION_SCHEMA_EXAMPLE = """\
{
  "reasoning": "<short private reasoning>",
  "tools": [
    {"name": "<tool name>", "metadata": {"<argument>": "<value>"}}
  ],
  "verification": {"goals_met": false, "analysis": "<why the goal is or is not met>"}
}"""


class OracleOutputError(ValueError):
    """Oracle output could not be read as a decision."""


def extract_json_object(text: str) -> dict[str, Any] | None:
    """Recover one JSON object from raw, fenced or embedded oracle text."""

    stripped = text.strip()
    if not stripped:
        return None

    direct = _try_load_dict(stripped)
    if direct is not None:
        return direct

    fenced = _FENCED_JSON.search(stripped)
    if fenced is not None:
        payload = _try_load_dict(fenced.group(1))
        if payload is not None:
            return payload

    start = stripped.find("{")
    end = stripped.rfind("}")
    if start == -1 or end == -1 or end <= start:
        return None
    return _try_load_dict(stripped[start : end + 1])


def parse_decision(raw: str | dict[str, Any]) -> Decision:
    """Validate oracle output into a `Decision`.

    Tool arguments may come as `metadata` or `arguments`. Entries without a
    usable name are dropped rather than failing the whole step.
    """

    payload = extract_json_object(raw) if isinstance(raw, str) else raw
    if payload is None:
        raise OracleOutputError("Oracle output does not contain a JSON object.")

    raw_tools = payload.get("tools", [])
    if raw_tools is None:
        raw_tools = []
    if not isinstance(raw_tools, list):
        raise OracleOutputError("decision.tools must be an array")

    tools: list[ToolInvocation] = []
    for item in raw_tools:
        if not isinstance(item, dict):
            continue
        name = item.get("name")
        if not isinstance(name, str) or not name.strip():
            continue
        arguments = item.get("metadata", item.get("arguments", {}))
        if arguments is None:
            arguments = {}
        if not isinstance(arguments, dict):
            raise OracleOutputError(f"Arguments of tool {name!r} must be an object")
        tools.append(ToolInvocation(name=name.strip(), arguments=dict(arguments)))

    raw_verification = payload.get("verification", {})
    if raw_verification is None:
        raw_verification = {}
    if not isinstance(raw_verification, dict):
        raise OracleOutputError("decision.verification must be an object")
    goals_met = raw_verification.get("goals_met", False)
    if not isinstance(goals_met, bool):
        raise OracleOutputError("verification.goals_met must be a boolean")
    analysis = raw_verification.get("analysis", raw_verification.get("reasoning", ""))

    reasoning = payload.get("reasoning")
    return Decision(
        tools=tools,
        verification=VerificationVerdict(
            goals_met=goals_met,
            reasoning=str(analysis or ""),
        ),
        reasoning=str(reasoning) if reasoning else None,
    )


def decision_to_dict(decision: Decision) -> dict[str, Any]:
    return {
        "reasoning": decision.reasoning,
        "tools": [{"name": tool.name, "metadata": tool.arguments} for tool in decision.tools],
        "verification": {
            "goals_met": decision.verification.goals_met,
            "analysis": decision.verification.reasoning,
        },
    }


def parse_review_verdict(raw: str) -> ReviewVerdict:
    """Read `continue`/`terminate` from a JSON `{"verdict": ...}` or bare word."""

    payload = extract_json_object(raw)
    candidate = raw
    if payload is not None:
        candidate = str(payload.get("verdict", payload.get("decision", "")))
    normalized = candidate.strip().lower()
    if normalized.startswith(ReviewVerdict.CONTINUE.value):
        return ReviewVerdict.CONTINUE
    if normalized.startswith(ReviewVerdict.TERMINATE.value):
        return ReviewVerdict.TERMINATE
    raise OracleOutputError(f"Unrecognized review verdict: {candidate[:80]!r}")


def parse_tier(raw: str) -> Tier:
    """Read a complexity tier from a JSON `{"tier": ...}` or bare word."""

    payload = extract_json_object(raw)
    candidate = str(payload.get("tier", "")) if payload is not None else raw
    try:
        return Tier(candidate.strip().lower())
    except ValueError as error:
        raise OracleOutputError(f"Unrecognized tier: {candidate[:80]!r}") from error


def _try_load_dict(raw: str) -> dict[str, Any] | None:
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        return None
    if not isinstance(parsed, dict):
        return None
    return parsed
