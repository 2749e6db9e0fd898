"""Redaction of tool arguments, results and errors before they reach the trace store.

Trace rows outlive the step that produced them (`inspect`, `retain_trace`), so
anything that looks like a credential or a personal address is masked first.
"""

from __future__ import annotations

import re
from collections.abc import Callable
from typing import NamedTuple

_MAX_PREVIEW_CHARS = 2_000


class _Rule(NamedTuple):
    name: str
    pattern: re.Pattern[str]
    replacement: str | Callable[[re.Match[str]], str]


def _mask_query_value(match: re.Match[str]) -> str:
    return f"{match.group(1)}=[redacted]"


_RULES: tuple[_Rule, ...] = (
    _Rule(
        "channel_secret",
        re.compile(
            r"(?i)\b(?:laneloop|telegram|slack|discord|whatsapp|openai|anthropic)[a-z0-9_]*?"
            r"_?(?:api_)?(?:key|token|secret)\b\s*[:=]\s*['\"]?[^'\"\s]+['\"]?",
        ),
        "[redacted-secret]",
    ),
    _Rule(
        "bearer",
        re.compile(r"(?i)\b(bearer)\s+[a-z0-9._\-]{8,}\b"),
        r"\1 [redacted-token]",
    ),
    _Rule(
        "telegram_bot_token",
        re.compile(r"\b\d{6,12}:[A-Za-z0-9_-]{30,}\b"),
        "[redacted-bot-token]",
    ),
    _Rule(
        "prefixed_token",
        re.compile(r"(?i)\b(?:sk|xox[abpr]|ghp)-[a-z0-9\-]{8,}\b"),
        "[redacted-token]",
    ),
    _Rule(
        "query_credential",
        re.compile(r"(?i)([?&](?:token|key|signature|auth))=[^&\s\"'<>]+"),
        _mask_query_value,
    ),
    _Rule(
        "email",
        re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b"),
        "[redacted-email]",
    ),
)


def redact(text: str) -> str:
    for rule in _RULES:
        text = rule.pattern.sub(rule.replacement, text)
    return text


def sanitize_preview(text: str, *, max_chars: int = _MAX_PREVIEW_CHARS) -> str:
    """Strip, redact, then clamp to `max_chars`."""

    compact = text.strip()
    if not compact:
        return ""
    return redact(compact)[:max_chars]
