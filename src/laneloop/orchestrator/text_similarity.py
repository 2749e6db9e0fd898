"""Message normalization and token-overlap similarity for duplicate-send checks."""

from __future__ import annotations

import hashlib
import json
import re

_WORD = re.compile(r"[a-z0-9']+")
_ENUMERATED_LINE = re.compile(r"^\s*(?:\d+[.)]|[-*•])\s+")
_MIN_FINGERPRINT_CHARS = 20
_ACK_MAX_CHARS = 160

STOP_WORDS = frozenset(
    {
        "a", "about", "above", "after", "again", "all", "also", "am", "an", "and", "any",
        "are", "as", "at", "be", "been", "before", "being", "but", "by", "can", "could",
        "did", "do", "does", "doing", "done", "for", "from", "had", "has", "have", "having",
        "he", "her", "here", "hers", "him", "his", "how", "i", "i'm", "i'll", "i've", "if",
        "in", "into", "is", "it", "it's", "its", "just", "let", "me", "more", "my", "now",
        "of", "on", "once", "only", "or", "our", "out", "over", "she", "so", "some", "still",
        "than", "that", "the", "their", "them", "then", "there", "these", "they", "this",
        "those", "to", "too", "up", "very", "was", "we", "were", "what", "when", "where",
        "which", "while", "who", "will", "with", "would", "you", "your", "yours",
    },
)

ACKNOWLEDGEMENT_PHRASES: tuple[str, ...] = (
    "got it",
    "on it",
    "working on it",
    "checking",
    "looking into",
    "one moment",
    "hang tight",
    "be right back",
    "still working",
    "sorry",
    "apologies",
    "not ignoring",
    "will get back",
    "let me check",
    "give me a",
    "done",
    "okay",
    "sure",
)

_ACKNOWLEDGEMENT = re.compile(
    r"\b(?:" + "|".join(re.escape(phrase) for phrase in ACKNOWLEDGEMENT_PHRASES) + r")\b",
)


def normalize_message(text: str) -> str:
    """Lowercase and collapse whitespace; the form used for exact-match checks."""

    return " ".join(text.strip().lower().split())


def content_tokens(text: str) -> frozenset[str]:
    """Stop-word-free content tokens of a message."""

    return frozenset(
        token
        for token in _WORD.findall(text.lower())
        if len(token) > 2 and token not in STOP_WORDS
    )


def token_overlap(a: str, b: str) -> float:
    """Share of overlapping content tokens relative to the larger token set."""

    if normalize_message(a) == normalize_message(b):
        return 1.0
    tokens_a = content_tokens(a)
    tokens_b = content_tokens(b)
    if not tokens_a or not tokens_b:
        return 0.0
    return len(tokens_a & tokens_b) / max(len(tokens_a), len(tokens_b))


def is_substantive(text: str, *, min_chars: int) -> bool:
    """Multi-line, enumerated or long messages carry real content."""

    stripped = text.strip()
    if len(stripped) >= min_chars:
        return True
    lines = [line for line in stripped.splitlines() if line.strip()]
    if len(lines) >= 2:  # noqa: PLR2004
        return True
    return any(_ENUMERATED_LINE.match(line) for line in lines)


def is_acknowledgement(text: str) -> bool:
    """Short reassurance/status text with no delivered content."""

    normalized = normalize_message(text)
    if not normalized or len(normalized) > _ACK_MAX_CHARS:
        return False
    return _ACKNOWLEDGEMENT.search(normalized) is not None


def is_near_duplicate(
    candidate: str,
    previous: list[str],
    *,
    threshold: float,
    substantive_min_chars: int,
    lookback: int,
) -> bool:
    """Whether `candidate` is too similar to one of the last `lookback` messages.

    A substantive candidate is never a duplicate of a non-substantive message:
    a full answer after "working on it" must go through.
    """

    if len(normalize_message(candidate)) < _MIN_FINGERPRINT_CHARS:
        return False
    candidate_substantive = is_substantive(candidate, min_chars=substantive_min_chars)
    for earlier in previous[-lookback:]:
        if candidate_substantive and not is_substantive(earlier, min_chars=substantive_min_chars):
            continue
        if token_overlap(candidate, earlier) >= threshold:
            return True
    return False


def fingerprint(value: object) -> str:
    """Stable short hash of a JSON-serializable value."""

    raw = json.dumps(value, ensure_ascii=False, sort_keys=True, default=str)
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()[:16]
