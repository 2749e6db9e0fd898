"""Per-action guard-rails against loops, spam and redundant side effects.

`GuardState` lives for one execution of one action and is discarded when the
loop returns. `GuardrailEngine` is stateless apart from its thresholds, so one
engine serves both lanes.

Per step the loop calls, in order:

1. `begin_step` with the de-duplicated proposal: exact/pattern loop detection.
2. `filter_calls`: pre-execution filter (blocked tools and signatures, repeated
   queries, frequency ceilings, message budget and cooldown, duplicate sends,
   side-effect dedup).
3. `record_result` after each executed call: counters, failure blocking and
   delivery bookkeeping.
"""

from __future__ import annotations

from collections import Counter, deque
from dataclasses import dataclass, field
from typing import Any

from laneloop.config import GuardrailSettings
from laneloop.orchestrator.models import (
    DeliverySummary,
    ToolError,
    ToolInvocation,
    ToolResult,
)
from laneloop.orchestrator.text_similarity import (
    fingerprint,
    is_near_duplicate,
    is_substantive,
    normalize_message,
)

EXACT_LOOP = "exact_loop_detected"
PATTERN_LOOP = "pattern_loop_detected"

_MESSAGE_KEYS: tuple[str, ...] = ("message", "text", "content", "body")
_TARGET_KEYS: tuple[str, ...] = (
    "chat_id",
    "chatId",
    "jid",
    "channel_id",
    "channelId",
    "to",
    "recipient",
    "path",
    "id",
)
_LOOP_KEY_ARGUMENTS: dict[str, tuple[str, ...]] = {
    "web_search": ("query", "q"),
    "browser_navigate": ("url",),
}
_PATTERN_GROUP = 2


@dataclass(slots=True)
class GuardState:
    """Ephemeral counters and sets for one action execution."""

    max_messages: int
    call_counts: Counter[str] = field(default_factory=Counter)
    consecutive_failures: Counter[str] = field(default_factory=Counter)
    blocked_signatures: set[str] = field(default_factory=set)
    blocked_tools: set[str] = field(default_factory=set)
    messages_sent: int = 0
    sent_messages: list[str] = field(default_factory=list)
    sent_fingerprints: set[str] = field(default_factory=set)
    substantive_deliveries: int = 0
    successful_side_effects: set[str] = field(default_factory=set)
    last_step_signature: str | None = None
    step_repeat_count: int = 0
    recent_calls: deque[tuple[str, str]] = field(default_factory=lambda: deque(maxlen=6))
    last_send_step: int | None = None
    deep_tool_since_last_send: bool = False
    loop_key_counts: Counter[str] = field(default_factory=Counter)

    @property
    def any_delivery_succeeded(self) -> bool:
        return self.messages_sent > 0

    def delivery_summary(self) -> DeliverySummary:
        return DeliverySummary(
            messages_sent=self.messages_sent,
            any_delivery_succeeded=self.any_delivery_succeeded,
            substantive_deliveries_sent=self.substantive_deliveries,
        )


@dataclass(slots=True)
class LoopCheck:
    """Outcome of loop detection for one step."""

    aborted: bool
    reason: str | None = None
    detail: str = ""


@dataclass(slots=True)
class SuppressedCall:
    call: ToolInvocation
    code: str


@dataclass(slots=True)
class FilterResult:
    """Pre-execution filter outcome for one step."""

    allowed: list[ToolInvocation] = field(default_factory=list)
    suppressed: list[SuppressedCall] = field(default_factory=list)
    notes: list[str] = field(default_factory=list)
    ceiling_hits: list[str] = field(default_factory=list)
    message_budget_hit: bool = False

    def all_sends_suppressed(self, send_tools: frozenset[str]) -> bool:
        """True when calls were proposed, none survived, and every one was a send."""

        if self.allowed or not self.suppressed:
            return False
        return all(item.call.name in send_tools for item in self.suppressed)


class GuardrailEngine:
    """Stateless rule set applied to a caller-owned `GuardState`."""

    def __init__(self, settings: GuardrailSettings | None = None) -> None:
        self.settings = settings or GuardrailSettings()
        self.send_tools = frozenset(self.settings.send_tools)
        self.side_effect_tools = frozenset(self.settings.side_effect_tools) | self.send_tools
        self.research_tools = frozenset(self.settings.research_tools)
        self.trivial_tools = frozenset(self.settings.trivial_tools)

    def new_state(self, *, max_messages: int) -> GuardState:
        return GuardState(
            max_messages=max_messages,
            recent_calls=deque(maxlen=self.settings.pattern_window),
        )

    def is_send(self, name: str) -> bool:
        return name in self.send_tools

    def is_deep(self, name: str) -> bool:
        """Deep tools are everything outside the trivial/bookkeeping denylist."""

        return name not in self.trivial_tools

    def is_research(self, name: str) -> bool:
        return name in self.research_tools

    def ceiling_for(self, name: str) -> int:
        if self.is_research(name):
            return self.settings.research_tool_ceiling
        return self.settings.default_tool_ceiling

    def signature(self, call: ToolInvocation) -> str:
        return f"{call.name}:{fingerprint(call.arguments)}"

    def step_signature(self, calls: list[ToolInvocation]) -> str:
        return "|".join(self.signature(call) for call in calls)

    def dedupe_step(self, calls: list[ToolInvocation]) -> tuple[list[ToolInvocation], int]:
        """Drop exact repeats inside one step; returns kept calls and dropped count."""

        seen: set[str] = set()
        kept: list[ToolInvocation] = []
        for call in calls:
            signature = self.signature(call)
            if signature in seen:
                continue
            seen.add(signature)
            kept.append(call)
        return kept, len(calls) - len(kept)

    def begin_step(self, state: GuardState, calls: list[ToolInvocation]) -> LoopCheck:
        """Run exact-loop and pattern-loop detection on a step's proposal."""

        if not calls:
            return LoopCheck(aborted=False)

        step_signature = self.step_signature(calls)
        if step_signature == state.last_step_signature:
            state.step_repeat_count += 1
        else:
            state.last_step_signature = step_signature
            state.step_repeat_count = 1
        if state.step_repeat_count >= self.settings.exact_loop_limit:
            names = ", ".join(call.name for call in calls)
            return LoopCheck(
                aborted=True,
                reason=EXACT_LOOP,
                detail=(
                    f"Identical tool call(s) [{names}] proposed "
                    f"{state.step_repeat_count} steps in a row."
                ),
            )

        for call in calls:
            state.recent_calls.append((call.name, self.signature(call)))
        if self._pattern_repeats(state):
            names = " -> ".join(name for name, _ in list(state.recent_calls)[:_PATTERN_GROUP])
            return LoopCheck(
                aborted=True,
                reason=PATTERN_LOOP,
                detail=(
                    f"Tool pattern [{names}] repeated {self.settings.pattern_repeats} times "
                    "with identical arguments."
                ),
            )
        return LoopCheck(aborted=False)

    def filter_calls(  # noqa: C901, PLR0912
        self,
        state: GuardState,
        calls: list[ToolInvocation],
        *,
        step: int,
    ) -> FilterResult:
        """Split a step's calls into allowed and suppressed, with corrective notes."""

        result = FilterResult()
        planned_sends = 0
        planned_deep = False
        planned_signatures: set[str] = set()
        planned_texts: set[str] = set()

        for call in calls:
            name = call.name
            signature = self.signature(call)

            if signature in planned_signatures:
                self._suppress(result, call, "in_step_duplicate", None)
                continue

            if name in state.blocked_tools:
                self._suppress(
                    result,
                    call,
                    "tool_blocked",
                    f"Skipped {name}: the tool is blocked for this task after repeated "
                    "failures. Use a different tool or report what failed.",
                )
                continue

            if signature in state.blocked_signatures:
                self._suppress(
                    result,
                    call,
                    "signature_blocked",
                    f"Skipped {name}: this exact call already failed. Change the arguments "
                    "or choose another approach.",
                )
                continue

            loop_key = self._loop_key(call)
            if (
                loop_key is not None
                and state.loop_key_counts[loop_key] >= self.settings.max_tool_loops - 1
            ):
                self._suppress(
                    result,
                    call,
                    "repeated_query",
                    f"Skipped {name}: the same query/URL was already used "
                    f"{state.loop_key_counts[loop_key]} time(s). Use the results you have.",
                )
                continue

            if state.call_counts[name] >= self.ceiling_for(name):
                if name not in result.ceiling_hits:
                    result.ceiling_hits.append(name)
                self._suppress(result, call, "frequency_ceiling", None)
                continue

            if self.is_send(name):
                code, note = self._check_send(
                    state,
                    call,
                    step=step,
                    planned_sends=planned_sends,
                    planned_deep=planned_deep,
                    planned_texts=planned_texts,
                )
                if code is not None:
                    if code == "message_budget":
                        result.message_budget_hit = True
                    self._suppress(result, call, code, note)
                    continue
                planned_sends += 1
                planned_texts.add(normalize_message(message_text(call)))

            if name in self.side_effect_tools:
                key = self.side_effect_key(call)
                if key in state.successful_side_effects:
                    self._suppress(
                        result,
                        call,
                        "side_effect_repeat",
                        f"Skipped {name}: this exact delivery already succeeded. Do not resend "
                        "completed work; continue with the next part of the task or finish.",
                    )
                    continue

            planned_signatures.add(signature)
            if self.is_deep(name):
                planned_deep = True
            result.allowed.append(call)

        return result

    def record_result(
        self,
        state: GuardState,
        call: ToolInvocation,
        result: ToolResult,
        *,
        step: int,
    ) -> list[str]:
        """Update counters after one executed call; returns corrective notes."""

        name = call.name
        notes: list[str] = []
        state.call_counts[name] += 1
        loop_key = self._loop_key(call)
        if loop_key is not None:
            state.loop_key_counts[loop_key] += 1

        if isinstance(result, ToolError):
            state.consecutive_failures[name] += 1
            state.blocked_signatures.add(self.signature(call))
            if (
                state.consecutive_failures[name] >= self.settings.consecutive_failure_limit
                and name not in state.blocked_tools
            ):
                state.blocked_tools.add(name)
                notes.append(self._blocked_tool_note(name, state))
            return notes

        state.consecutive_failures[name] = 0
        if self.is_send(name):
            text = message_text(call)
            state.messages_sent += 1
            state.sent_messages.append(text)
            state.sent_fingerprints.add(normalize_message(text))
            if is_substantive(text, min_chars=self.settings.substantive_min_chars):
                state.substantive_deliveries += 1
            state.last_send_step = step
            state.deep_tool_since_last_send = False
        elif self.is_deep(name):
            state.deep_tool_since_last_send = True

        if name in self.side_effect_tools:
            state.successful_side_effects.add(self.side_effect_key(call))
        return notes

    def soft_reset(self, state: GuardState, name: str) -> None:
        """Halve a tool's call counter after the review gate allowed more calls."""

        state.call_counts[name] = state.call_counts[name] // 2

    def side_effect_key(self, call: ToolInvocation) -> str:
        payload = {
            key: value
            for key, value in call.arguments.items()
            if key not in _TARGET_KEYS
        }
        return f"{call.name}|{message_target(call)}|{fingerprint(payload)}"

    def _check_send(  # noqa: PLR0911
        self,
        state: GuardState,
        call: ToolInvocation,
        *,
        step: int,
        planned_sends: int,
        planned_deep: bool,
        planned_texts: set[str],
    ) -> tuple[str | None, str | None]:
        text = message_text(call)
        normalized = normalize_message(text)
        if normalized and (normalized in state.sent_fingerprints or normalized in planned_texts):
            return (
                "duplicate_send",
                "Suppressed send: this exact message was already sent in this task.",
            )

        if state.messages_sent + planned_sends >= state.max_messages:
            return (
                "message_budget",
                f"Suppressed send: message cap {state.max_messages} reached for this task.",
            )

        if state.messages_sent == 0 and planned_sends == 0:
            return None, None

        fresh_work = state.deep_tool_since_last_send or planned_deep
        steps_since_send = step - state.last_send_step if state.last_send_step is not None else 0
        if (
            state.messages_sent > 0
            and not fresh_work
            and steps_since_send < self.settings.status_update_interval_steps
        ):
            return (
                "send_cooldown",
                "Suppressed send: no new work has run since the last message. Run a tool "
                "that moves the task forward before messaging again.",
            )

        if is_near_duplicate(
            text,
            state.sent_messages,
            threshold=self.settings.similarity_threshold,
            substantive_min_chars=self.settings.substantive_min_chars,
            lookback=self.settings.similarity_lookback,
        ):
            return (
                "near_duplicate_send",
                "Suppressed send: semantically similar to a message already sent.",
            )
        return None, None

    def _pattern_repeats(self, state: GuardState) -> bool:
        window = list(state.recent_calls)
        needed = _PATTERN_GROUP * self.settings.pattern_repeats
        if len(window) < needed:
            return False
        window = window[-needed:]
        groups = [
            window[index : index + _PATTERN_GROUP]
            for index in range(0, needed, _PATTERN_GROUP)
        ]
        first_names = [name for name, _ in groups[0]]
        first_signatures = [signature for _, signature in groups[0]]
        for group in groups[1:]:
            if [name for name, _ in group] != first_names:
                return False
            if [signature for _, signature in group] != first_signatures:
                return False
        return True

    def _loop_key(self, call: ToolInvocation) -> str | None:
        keys = _LOOP_KEY_ARGUMENTS.get(call.name)
        if keys is None:
            return None
        for key in keys:
            value = call.arguments.get(key)
            if value:
                return f"{call.name}:{normalize_message(str(value))}"
        return None

    def _blocked_tool_note(self, name: str, state: GuardState) -> str:
        alternatives = sorted(
            tool
            for tool in (self.research_tools | {"request_supporting_data"})
            if tool != name and tool not in state.blocked_tools
        )[:4]
        hint = f" Alternatives: {', '.join(alternatives)}." if alternatives else ""
        return (
            f"Tool {name} failed {state.consecutive_failures[name]} times in a row and is "
            f"blocked for the rest of this task.{hint} If nothing else can help, tell the "
            "user what failed."
        )

    @staticmethod
    def _suppress(
        result: FilterResult,
        call: ToolInvocation,
        code: str,
        note: str | None,
    ) -> None:
        result.suppressed.append(SuppressedCall(call=call, code=code))
        if note is not None:
            result.notes.append(note)


def message_text(call: ToolInvocation) -> str:
    """User-visible text of a send call."""

    for key in _MESSAGE_KEYS:
        value = call.arguments.get(key)
        if value:
            return str(value).strip()
    return ""


def message_target(call: ToolInvocation) -> str:
    for key in _TARGET_KEYS:
        value: Any = call.arguments.get(key)
        if value:
            return str(value)
    return ""
