"""Domain models for the action queue and execution loop."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class ActionStatus(str, Enum):
    """Durable action lifecycle states."""

    PENDING = "pending"
    IN_PROGRESS = "in-progress"
    COMPLETED = "completed"
    FAILED = "failed"
    WAITING = "waiting"


class Lane(str, Enum):
    """Independent concurrency tracks."""

    USER = "user"
    AUTONOMY = "autonomy"


class FailureClass(str, Enum):
    """Normalized failure classes used by retry policy."""

    ORACLE_UNAVAILABLE = "oracle_unavailable"
    INVALID_ORACLE_OUTPUT = "invalid_oracle_output"
    GUARDRAIL_ABORT = "guardrail_abort"
    STEP_BUDGET_EXHAUSTED = "step_budget_exhausted"
    COMPLETION_AUDIT = "completion_audit"
    CANCELED = "canceled"
    WATCHDOG_TIMEOUT = "watchdog_timeout"
    STALE_ORPHAN = "stale_orphan"
    INTERNAL_ERROR = "internal_error"


RETRYABLE_FAILURE_CLASSES = frozenset(
    {
        FailureClass.ORACLE_UNAVAILABLE,
        FailureClass.WATCHDOG_TIMEOUT,
        FailureClass.STALE_ORPHAN,
    },
)

ALLOWED_TRANSITIONS: dict[ActionStatus, frozenset[ActionStatus]] = {
    ActionStatus.PENDING: frozenset({ActionStatus.IN_PROGRESS, ActionStatus.FAILED}),
    ActionStatus.IN_PROGRESS: frozenset(
        {ActionStatus.COMPLETED, ActionStatus.FAILED, ActionStatus.WAITING},
    ),
    ActionStatus.WAITING: frozenset({ActionStatus.PENDING, ActionStatus.FAILED}),
    ActionStatus.FAILED: frozenset({ActionStatus.PENDING}),
    ActionStatus.COMPLETED: frozenset(),
}


def is_transition_allowed(current: ActionStatus, target: ActionStatus) -> bool:
    return target in ALLOWED_TRANSITIONS[current]


@dataclass(slots=True)
class RetryState:
    """Backoff bookkeeping, present once a failure scheduled a retry."""

    attempts: int
    max_attempts: int
    next_retry_at: datetime | None


@dataclass(slots=True)
class ActionCreate:
    """Input payload for pushing an action."""

    description: str
    lane: Lane = Lane.USER
    priority: int = 10
    payload: dict[str, Any] = field(default_factory=dict)
    action_id: str | None = None
    max_attempts: int = 3


@dataclass(slots=True)
class ActionView:
    """Readable action view for dispatcher, loop and CLI."""

    action_id: str
    description: str
    priority: int
    lane: Lane
    status: ActionStatus
    payload: dict[str, Any]
    created_at: datetime
    updated_at: datetime
    started_at: datetime | None = None
    heartbeat_at: datetime | None = None
    finished_at: datetime | None = None
    worker_id: str | None = None
    failure_reason: str | None = None
    failure_class: FailureClass | None = None
    error_summary: str | None = None
    retry: RetryState | None = None
    max_attempts: int = 3
    cancel_requested: bool = False
    fallback_notified_at: datetime | None = None

    @property
    def source(self) -> str | None:
        value = self.payload.get("source")
        return str(value) if value else None

    @property
    def source_id(self) -> str | None:
        value = self.payload.get("source_id")
        return str(value) if value else None

    @property
    def is_recovery(self) -> bool:
        return bool(self.payload.get("is_recovery"))


@dataclass(slots=True)
class ActionEventView:
    """Action event entry for audit trail."""

    event_id: int
    action_id: str
    event_type: str
    status_from: ActionStatus | None
    status_to: ActionStatus | None
    created_at: datetime
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class ActionDetails:
    """Action with its event stream."""

    action: ActionView
    events: list[ActionEventView]


@dataclass(slots=True)
class ToolInvocation:
    """One tool call proposed by the oracle for a step."""

    name: str
    arguments: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class VerificationVerdict:
    """Oracle's claim about whether the action's goals are met."""

    goals_met: bool
    reasoning: str = ""


@dataclass(slots=True)
class Decision:
    """Structured oracle output for one step."""

    tools: list[ToolInvocation]
    verification: VerificationVerdict
    reasoning: str | None = None


@dataclass(slots=True)
class ToolSuccess:
    value: Any = None


@dataclass(slots=True)
class ToolError:
    message: str


ToolResult = ToolSuccess | ToolError


class TraceKind(str, Enum):
    TOOL = "tool"
    NOTE = "note"
    ORACLE = "oracle"


@dataclass(slots=True)
class TraceEntryWrite:
    """One observation appended to an action's trace."""

    kind: TraceKind
    step: int
    tool: str | None = None
    signature: str | None = None
    arguments: dict[str, Any] | None = None
    success: bool | None = None
    error: str | None = None
    duration_ms: int | None = None
    content: str | None = None


@dataclass(slots=True)
class TraceEntryView:
    """Stored trace observation."""

    entry_id: int
    action_id: str
    kind: TraceKind
    step: int
    tool: str | None
    signature: str | None
    arguments: dict[str, Any]
    success: bool | None
    error: str | None
    duration_ms: int | None
    content: str | None
    created_at: datetime


@dataclass(slots=True)
class StepContext:
    """Accumulated context handed to the oracle on every step."""

    step: int
    max_steps: int
    messages_sent: int
    max_messages: int
    notes: list[str] = field(default_factory=list)
    observations: list[str] = field(default_factory=list)


@dataclass(slots=True)
class DeliverySummary:
    """What the user has received so far from one action."""

    messages_sent: int
    any_delivery_succeeded: bool
    substantive_deliveries_sent: int


@dataclass(slots=True)
class ScheduleView:
    """Stored heartbeat schedule."""

    schedule_id: str
    name: str
    description: str
    interval_seconds: int
    priority: int
    enabled: bool
    next_fire_at: datetime
    last_fired_at: datetime | None
    last_action_id: str | None
    created_at: datetime
    updated_at: datetime


class Tier(str, Enum):
    """Task complexity tier selecting step and message budgets."""

    TRIVIAL = "trivial"
    STANDARD = "standard"
    DEEP = "deep"


class ReviewReason(str, Enum):
    """Forced-termination decision points arbitrated by the review gate."""

    MESSAGE_BUDGET = "message_budget"
    FREQUENCY_CEILING = "frequency_ceiling"
    STEP_EXHAUSTION = "step_exhaustion"


class ReviewVerdict(str, Enum):
    CONTINUE = "continue"
    TERMINATE = "terminate"


@dataclass(slots=True)
class ReviewRequest:
    """Input of one review gate query."""

    reason: ReviewReason
    action: ActionView
    recent_trace: list[str]
    delivery: DeliverySummary
    tool: str | None = None


@dataclass(slots=True)
class ReviewDecision:
    """Review gate outcome with where it came from."""

    verdict: ReviewVerdict
    source: str
    detail: str = ""

    @property
    def should_continue(self) -> bool:
        return self.verdict == ReviewVerdict.CONTINUE
