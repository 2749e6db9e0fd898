"""Deterministic classification of oracle errors and tool results."""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum

from laneloop.orchestrator.contracts import OracleOutputError
from laneloop.orchestrator.models import ToolError, ToolResult, ToolSuccess

ORACLE_FAILURE_CLASSIFIER_VERSION = 1
DEFAULT_RATE_LIMIT_COOLDOWN_SECONDS = 60.0

_RATE_LIMIT_PATTERNS: tuple[str, ...] = (
    "rate limit",
    "quota exceeded",
    "too many requests",
    "429",
    "throttle",
    "requests per",
)
_TIMEOUT_PATTERNS: tuple[str, ...] = (
    "timeout",
    "timed out",
    "deadline exceeded",
    "econnaborted",
    "etimedout",
)
_CONTEXT_OVERFLOW_PATTERNS: tuple[str, ...] = (
    "context length",
    "token limit",
    "maximum context",
    "too many tokens",
    "context window",
)
_CONTEXT_OVERFLOW_INDICATORS: tuple[str, ...] = ("exceed", "limit", "maximum", "too many")
_NETWORK_PATTERNS: tuple[str, ...] = (
    "econnrefused",
    "enotfound",
    "network",
    "connection refused",
    "connection reset",
    "host not found",
    "econnreset",
    "temporarily unavailable",
)
_INVALID_RESPONSE_PATTERNS: tuple[str, ...] = (
    "invalid json",
    "parse error",
    "unexpected token",
    "malformed",
    "syntax error",
    "does not contain a json object",
)
_TOOL_ERROR_PREFIXES: tuple[str, ...] = (
    "error:",
    "error -",
    "failed:",
    "failed to ",
    "exception:",
    "traceback (most recent call last)",
)
_RETRY_AFTER = re.compile(r"retry after (\d+) (second|minute)", re.IGNORECASE)


class OracleErrorKind(str, Enum):
    """Oracle call failure kinds driving the call-level retry decision."""

    RATE_LIMIT = "rate_limit"
    TIMEOUT = "timeout"
    CONTEXT_OVERFLOW = "context_overflow"
    NETWORK = "network"
    INVALID_RESPONSE = "invalid_response"
    UNKNOWN = "unknown"


_RETRYABLE_KINDS = frozenset(
    {
        OracleErrorKind.RATE_LIMIT,
        OracleErrorKind.TIMEOUT,
        OracleErrorKind.CONTEXT_OVERFLOW,
        OracleErrorKind.NETWORK,
    },
)


@dataclass(slots=True)
class OracleFailureClassification:
    """Normalized oracle failure classification result."""

    kind: OracleErrorKind
    retryable: bool
    message: str
    matched_pattern: str | None = None
    cooldown_seconds: float | None = None

    def to_event_details(self) -> dict[str, object]:
        """Serialize classifier diagnostics for action events."""

        return {
            "classifier_version": ORACLE_FAILURE_CLASSIFIER_VERSION,
            "kind": self.kind.value,
            "retryable": self.retryable,
            "matched_pattern": self.matched_pattern,
            "cooldown_seconds": self.cooldown_seconds,
        }


def classify_oracle_error(error: BaseException | str) -> OracleFailureClassification:
    """Classify an oracle call failure; rate limits are checked before overflow."""

    message = str(error)
    if isinstance(error, TimeoutError):
        return _classified(OracleErrorKind.TIMEOUT, message, pattern=None)
    if isinstance(error, ConnectionError):
        return _classified(OracleErrorKind.NETWORK, message, pattern=None)
    if isinstance(error, OracleOutputError):
        return _classified(OracleErrorKind.INVALID_RESPONSE, message, pattern=None)

    haystack = message.lower()

    pattern = _first_match(haystack, _RATE_LIMIT_PATTERNS)
    if pattern is not None:
        return _classified(
            OracleErrorKind.RATE_LIMIT,
            message,
            pattern=pattern,
            cooldown_seconds=_extract_cooldown(haystack),
        )

    pattern = _first_match(haystack, _TIMEOUT_PATTERNS)
    if pattern is not None:
        return _classified(OracleErrorKind.TIMEOUT, message, pattern=pattern)

    pattern = _first_match(haystack, _CONTEXT_OVERFLOW_PATTERNS)
    if pattern is not None and _first_match(haystack, _CONTEXT_OVERFLOW_INDICATORS):
        return _classified(OracleErrorKind.CONTEXT_OVERFLOW, message, pattern=pattern)

    pattern = _first_match(haystack, _NETWORK_PATTERNS)
    if pattern is not None:
        return _classified(OracleErrorKind.NETWORK, message, pattern=pattern)

    pattern = _first_match(haystack, _INVALID_RESPONSE_PATTERNS)
    if pattern is not None:
        return _classified(OracleErrorKind.INVALID_RESPONSE, message, pattern=pattern)

    return _classified(OracleErrorKind.UNKNOWN, message, pattern=None)


def normalize_tool_result(raw: object) -> ToolResult:
    """Turn a raw executor return value into `ToolSuccess` / `ToolError`.

    A structured `success`/`error` field wins; plain strings are failures only
    when they start with a conventional error prefix.
    """

    if isinstance(raw, ToolSuccess | ToolError):
        return raw
    if isinstance(raw, dict) and ("success" in raw or "error" in raw):
        success = raw.get("success")
        error = raw.get("error")
        if success is False:
            return ToolError(message=str(error or "tool reported failure"))
        if success is None and error:
            return ToolError(message=str(error))
        return ToolSuccess(value=raw)
    if isinstance(raw, str):
        lowered = raw.lstrip().lower()
        if any(lowered.startswith(prefix) for prefix in _TOOL_ERROR_PREFIXES):
            return ToolError(message=raw.strip())
    return ToolSuccess(value=raw)


def _classified(
    kind: OracleErrorKind,
    message: str,
    *,
    pattern: str | None,
    cooldown_seconds: float | None = None,
) -> OracleFailureClassification:
    return OracleFailureClassification(
        kind=kind,
        retryable=kind in _RETRYABLE_KINDS,
        message=message,
        matched_pattern=pattern,
        cooldown_seconds=cooldown_seconds,
    )


def _extract_cooldown(haystack: str) -> float:
    match = _RETRY_AFTER.search(haystack)
    if match is None:
        return DEFAULT_RATE_LIMIT_COOLDOWN_SECONDS
    amount = float(match.group(1))
    if match.group(2).lower() == "minute":
        return amount * 60
    return amount


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None
