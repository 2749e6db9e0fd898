"""Workflow signal notes injected into oracle context after slow or failing tools."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

_MAX_NOTE_CHARS = 480
_MAX_ERROR_CHARS = 220


class SignalLevel(str, Enum):
    INFO = "info"
    WARN = "warn"
    ERROR = "error"


@dataclass(slots=True)
class WorkflowSignal:
    """One tool execution worth telling the oracle about."""

    step: int
    tool: str
    level: SignalLevel
    duration_ms: int | None = None
    error: str | None = None
    consecutive_failures: int = 0
    queued_tools_skipped: int = 0


def should_inject(signal: WorkflowSignal, *, slow_tool_ms: int) -> bool:
    if signal.level != SignalLevel.INFO:
        return True
    return (signal.duration_ms or 0) >= slow_tool_ms


def build_signal_note(signal: WorkflowSignal, *, slow_tool_ms: int) -> str:
    """Render the note; clamped so a noisy error cannot flood the context."""

    details: list[str] = []
    if signal.duration_ms is not None:
        details.append(f"duration={signal.duration_ms}ms")
    if signal.consecutive_failures > 0:
        details.append(f"consecutive_failures={signal.consecutive_failures}")
    if signal.queued_tools_skipped > 0:
        details.append(f"queued_tools_skipped={signal.queued_tools_skipped}")

    hints: list[str] = []
    if signal.level == SignalLevel.ERROR:
        hints.append("Do not repeat the exact same failing call without changing inputs or strategy.")
        hints.append("State what failed and choose a fallback path.")
    elif signal.consecutive_failures >= 2:  # noqa: PLR2004
        hints.append("Failure pattern detected. Switch tools or adjust parameters before retrying.")
    if (signal.duration_ms or 0) >= slow_tool_ms:
        hints.append(
            "This step was slow. Send a brief progress update if the user has not been "
            "updated recently.",
        )
    if signal.queued_tools_skipped > 0:
        hints.append("A batch was paused after failure. Re-plan from the latest error first.")

    detail_part = f" Details: {' | '.join(details)}." if details else ""
    error = _summarize_error(signal.error)
    error_part = f" Error: {error}." if error else ""
    hint_part = f" Guidance: {' '.join(hints)}" if hints else ""
    note = (
        f"[SYSTEM: WORKFLOW_SIGNAL level={signal.level.value.upper()} tool={signal.tool} "
        f"step={signal.step}.{detail_part}{error_part}{hint_part}]"
    )
    if len(note) > _MAX_NOTE_CHARS:
        return note[: _MAX_NOTE_CHARS - 3] + "..."
    return note


def _summarize_error(error: str | None) -> str:
    if not error:
        return ""
    compact = " ".join(error.split())
    if len(compact) > _MAX_ERROR_CHARS:
        return compact[: _MAX_ERROR_CHARS - 3] + "..."
    return compact
