from __future__ import annotations

import allure
import pytest

from laneloop.orchestrator.contracts import OracleOutputError
from laneloop.orchestrator.failure_classifier import (
    DEFAULT_RATE_LIMIT_COOLDOWN_SECONDS,
    ORACLE_FAILURE_CLASSIFIER_VERSION,
    OracleErrorKind,
    classify_oracle_error,
    normalize_tool_result,
)
from laneloop.orchestrator.models import ToolError, ToolSuccess

pytestmark = [
    allure.epic("Execution Loop"),
    allure.feature("Failure Classification"),
]


def test_classifier_version_is_stable() -> None:
    assert ORACLE_FAILURE_CLASSIFIER_VERSION == 1


@pytest.mark.parametrize(
    ("error", "kind", "retryable"),
    [
        (TimeoutError("slow"), OracleErrorKind.TIMEOUT, True),
        (ConnectionError("reset"), OracleErrorKind.NETWORK, True),
        (OracleOutputError("not json"), OracleErrorKind.INVALID_RESPONSE, False),
        (RuntimeError("HTTP 429 Too Many Requests"), OracleErrorKind.RATE_LIMIT, True),
        (RuntimeError("request timed out after 30s"), OracleErrorKind.TIMEOUT, True),
        (
            RuntimeError("prompt exceeds the maximum context length"),
            OracleErrorKind.CONTEXT_OVERFLOW,
            True,
        ),
        (RuntimeError("ECONNREFUSED 127.0.0.1:8080"), OracleErrorKind.NETWORK, True),
        ("Malformed completion payload", OracleErrorKind.INVALID_RESPONSE, False),
        (RuntimeError("something odd"), OracleErrorKind.UNKNOWN, False),
    ],
)
def test_classify_oracle_error(error: BaseException | str, kind: OracleErrorKind, retryable: bool) -> None:
    classified = classify_oracle_error(error)

    assert classified.kind == kind
    assert classified.retryable is retryable


def test_rate_limit_wins_over_timeout_and_reads_cooldown() -> None:
    classified = classify_oracle_error("Rate limit hit (timeout pending), retry after 2 minutes")

    assert classified.kind == OracleErrorKind.RATE_LIMIT
    assert classified.matched_pattern == "rate limit"
    assert classified.cooldown_seconds == 120


def test_rate_limit_without_hint_uses_default_cooldown() -> None:
    classified = classify_oracle_error("quota exceeded")

    assert classified.cooldown_seconds == DEFAULT_RATE_LIMIT_COOLDOWN_SECONDS
    details = classified.to_event_details()
    assert details["kind"] == "rate_limit"
    assert details["classifier_version"] == ORACLE_FAILURE_CLASSIFIER_VERSION


def test_context_pattern_without_overflow_indicator_is_not_overflow() -> None:
    assert classify_oracle_error("context window report").kind == OracleErrorKind.UNKNOWN


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ({"success": False, "error": "denied"}, ToolError(message="denied")),
        ({"success": False}, ToolError(message="tool reported failure")),
        ({"error": "not found"}, ToolError(message="not found")),
        ("Error: file missing", ToolError(message="Error: file missing")),
        ("  failed to connect ", ToolError(message="failed to connect")),
        ("Weather: 21C", ToolSuccess(value="Weather: 21C")),
        ({"success": True, "items": 2}, ToolSuccess(value={"success": True, "items": 2})),
        ({"error": None, "items": 1}, ToolSuccess(value={"error": None, "items": 1})),
        (None, ToolSuccess(value=None)),
    ],
)
def test_normalize_tool_result(raw: object, expected: ToolSuccess | ToolError) -> None:
    assert normalize_tool_result(raw) == expected


def test_normalize_tool_result_passes_typed_results_through() -> None:
    error = ToolError(message="x")

    assert normalize_tool_result(error) is error
