"""Runtime configuration for the action orchestrator."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

DEFAULT_SEND_TOOLS: tuple[str, ...] = (
    "send_telegram",
    "send_whatsapp",
    "send_discord",
    "send_slack",
    "send_gateway_chat",
    "send_email",
)
DEFAULT_SIDE_EFFECT_TOOLS: tuple[str, ...] = (*DEFAULT_SEND_TOOLS, "send_file", "send_image")
DEFAULT_RESEARCH_TOOLS: tuple[str, ...] = (
    "web_search",
    "http_fetch",
    "browser_navigate",
    "browser_extract_content",
    "browser_examine_page",
    "browser_screenshot",
)
DEFAULT_TRIVIAL_TOOLS: tuple[str, ...] = (
    *DEFAULT_SEND_TOOLS,
    "request_supporting_data",
    "update_journal",
    "update_user_profile",
    "write_note",
    "noop",
)
DEFAULT_USER_FACING_SOURCES: tuple[str, ...] = (
    "telegram",
    "whatsapp",
    "discord",
    "slack",
    "gateway",
    "email",
)
DEFAULT_DEEP_KEYWORDS: tuple[str, ...] = (
    "research",
    "investigate",
    "analyze",
    "analyse",
    "compare",
    "report",
    "summarize",
    "summarise",
    "build",
    "plan",
)


@dataclass(slots=True)
class StoreSettings:
    """SQLite action store settings."""

    busy_timeout_ms: int = 5_000
    event_list_limit: int = 50


@dataclass(slots=True)
class LaneSettings:
    """Lane dispatcher settings."""

    poll_interval_seconds: float = 1.0
    allow_parallel_autonomy: bool = False
    worker_prefix: str = "laneloop"


@dataclass(slots=True)
class TierBudget:
    """Step and message ceilings for one complexity tier."""

    max_steps: int
    max_messages: int


@dataclass(slots=True)
class LoopSettings:
    """Execution loop budgets and oracle call policy."""

    trivial: TierBudget = field(default_factory=lambda: TierBudget(max_steps=2, max_messages=1))
    standard: TierBudget = field(default_factory=lambda: TierBudget(max_steps=10, max_messages=3))
    deep: TierBudget = field(default_factory=lambda: TierBudget(max_steps=25, max_messages=6))
    bonus_steps: int = 2
    invalid_output_retries: int = 3
    oracle_attempts: int = 3
    oracle_base_delay_seconds: float = 1.0
    oracle_max_delay_seconds: float = 30.0
    slow_tool_seconds: float = 12.0
    trivial_max_chars: int = 60
    deep_min_chars: int = 400
    deep_keywords: tuple[str, ...] = DEFAULT_DEEP_KEYWORDS
    clarification_tools: tuple[str, ...] = ("request_supporting_data",)
    recent_trace_entries: int = 12
    retain_trace: bool = False


@dataclass(slots=True)
class GuardrailSettings:
    """Per-action guard-rail thresholds."""

    exact_loop_limit: int = 3
    pattern_window: int = 6
    pattern_repeats: int = 3
    default_tool_ceiling: int = 10
    research_tool_ceiling: int = 25
    consecutive_failure_limit: int = 3
    similarity_threshold: float = 0.7
    similarity_lookback: int = 5
    substantive_min_chars: int = 280
    status_update_interval_steps: int = 4
    max_tool_loops: int = 3
    send_tools: tuple[str, ...] = DEFAULT_SEND_TOOLS
    side_effect_tools: tuple[str, ...] = DEFAULT_SIDE_EFFECT_TOOLS
    research_tools: tuple[str, ...] = DEFAULT_RESEARCH_TOOLS
    trivial_tools: tuple[str, ...] = DEFAULT_TRIVIAL_TOOLS


@dataclass(slots=True)
class RecoverySettings:
    """Watchdog, stale-sweep and instance lock settings."""

    max_run_seconds: int = 600
    stale_after_seconds: int = 1_800
    waiting_timeout_seconds: int = 3_600
    sweep_interval_seconds: float = 15.0
    lock_path: Path | None = None
    recovery_dedup_window_seconds: int = 900


@dataclass(slots=True)
class RetrySettings:
    """Action-level retry policy."""

    max_attempts: int = 3
    base_delay_seconds: int = 30
    max_delay_seconds: int = 900


@dataclass(slots=True)
class ProducerSettings:
    """Producer API settings."""

    dedup_window_seconds: int = 60
    dedup_similarity: float = 0.9
    default_priority: int = 10
    user_facing_sources: tuple[str, ...] = DEFAULT_USER_FACING_SOURCES


@dataclass(slots=True)
class SchedulerSettings:
    """Heartbeat scheduler settings."""

    tick_interval_seconds: float = 30.0
    max_backoff_multiplier: int = 4
    default_priority: int = 5


@dataclass(slots=True)
class OracleSettings:
    """Command oracle and outbox executor settings."""

    command_template: str = ""
    timeout_seconds: int = 120
    scripted_path: Path | None = None
    outbox_path: Path = Path(".laneloop_outbox.jsonl")


@dataclass(slots=True)
class Settings:
    """Application settings grouped by orchestration concern."""

    db_path: Path = Path(".laneloop.db")
    store: StoreSettings = field(default_factory=StoreSettings)
    lanes: LaneSettings = field(default_factory=LaneSettings)
    loop: LoopSettings = field(default_factory=LoopSettings)
    guardrails: GuardrailSettings = field(default_factory=GuardrailSettings)
    recovery: RecoverySettings = field(default_factory=RecoverySettings)
    retry: RetrySettings = field(default_factory=RetrySettings)
    producer: ProducerSettings = field(default_factory=ProducerSettings)
    scheduler: SchedulerSettings = field(default_factory=SchedulerSettings)
    oracle: OracleSettings = field(default_factory=OracleSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local use."""

        resolved_db_path = db_path or Path(os.getenv("LANELOOP_DB_PATH", ".laneloop.db"))
        lock_raw = os.getenv("LANELOOP_LOCK_PATH", "").strip()
        scripted_raw = os.getenv("LANELOOP_ORACLE_SCRIPT", "").strip()
        return cls(
            db_path=resolved_db_path,
            store=StoreSettings(
                busy_timeout_ms=int(os.getenv("LANELOOP_SQLITE_BUSY_TIMEOUT_MS", "5000")),
                event_list_limit=int(os.getenv("LANELOOP_EVENT_LIST_LIMIT", "50")),
            ),
            lanes=LaneSettings(
                poll_interval_seconds=float(os.getenv("LANELOOP_POLL_INTERVAL_SECONDS", "1.0")),
                allow_parallel_autonomy=_env_bool(
                    "LANELOOP_ALLOW_PARALLEL_AUTONOMY",
                    default=False,
                ),
                worker_prefix=os.getenv("LANELOOP_WORKER_PREFIX", "laneloop"),
            ),
            loop=LoopSettings(
                trivial=TierBudget(
                    max_steps=int(os.getenv("LANELOOP_TRIVIAL_MAX_STEPS", "2")),
                    max_messages=int(os.getenv("LANELOOP_TRIVIAL_MAX_MESSAGES", "1")),
                ),
                standard=TierBudget(
                    max_steps=int(os.getenv("LANELOOP_STANDARD_MAX_STEPS", "10")),
                    max_messages=int(os.getenv("LANELOOP_STANDARD_MAX_MESSAGES", "3")),
                ),
                deep=TierBudget(
                    max_steps=int(os.getenv("LANELOOP_DEEP_MAX_STEPS", "25")),
                    max_messages=int(os.getenv("LANELOOP_DEEP_MAX_MESSAGES", "6")),
                ),
                bonus_steps=int(os.getenv("LANELOOP_BONUS_STEPS", "2")),
                invalid_output_retries=int(os.getenv("LANELOOP_INVALID_OUTPUT_RETRIES", "3")),
                oracle_attempts=int(os.getenv("LANELOOP_ORACLE_ATTEMPTS", "3")),
                oracle_base_delay_seconds=float(
                    os.getenv("LANELOOP_ORACLE_BASE_DELAY_SECONDS", "1.0"),
                ),
                oracle_max_delay_seconds=float(
                    os.getenv("LANELOOP_ORACLE_MAX_DELAY_SECONDS", "30.0"),
                ),
                slow_tool_seconds=float(os.getenv("LANELOOP_SLOW_TOOL_SECONDS", "12.0")),
                trivial_max_chars=int(os.getenv("LANELOOP_TRIVIAL_MAX_CHARS", "60")),
                deep_min_chars=int(os.getenv("LANELOOP_DEEP_MIN_CHARS", "400")),
                deep_keywords=_env_csv("LANELOOP_DEEP_KEYWORDS", DEFAULT_DEEP_KEYWORDS),
                clarification_tools=_env_csv(
                    "LANELOOP_CLARIFICATION_TOOLS",
                    ("request_supporting_data",),
                ),
                retain_trace=_env_bool("LANELOOP_RETAIN_TRACE", default=False),
            ),
            guardrails=GuardrailSettings(
                exact_loop_limit=int(os.getenv("LANELOOP_EXACT_LOOP_LIMIT", "3")),
                default_tool_ceiling=int(os.getenv("LANELOOP_DEFAULT_TOOL_CEILING", "10")),
                research_tool_ceiling=int(os.getenv("LANELOOP_RESEARCH_TOOL_CEILING", "25")),
                consecutive_failure_limit=int(
                    os.getenv("LANELOOP_CONSECUTIVE_FAILURE_LIMIT", "3"),
                ),
                similarity_threshold=float(os.getenv("LANELOOP_SIMILARITY_THRESHOLD", "0.7")),
                substantive_min_chars=int(os.getenv("LANELOOP_SUBSTANTIVE_MIN_CHARS", "280")),
                status_update_interval_steps=int(
                    os.getenv("LANELOOP_STATUS_UPDATE_INTERVAL_STEPS", "4"),
                ),
                max_tool_loops=int(os.getenv("LANELOOP_MAX_TOOL_LOOPS", "3")),
                send_tools=_env_csv("LANELOOP_SEND_TOOLS", DEFAULT_SEND_TOOLS),
                side_effect_tools=_env_csv("LANELOOP_SIDE_EFFECT_TOOLS", DEFAULT_SIDE_EFFECT_TOOLS),
                research_tools=_env_csv("LANELOOP_RESEARCH_TOOLS", DEFAULT_RESEARCH_TOOLS),
                trivial_tools=_env_csv("LANELOOP_TRIVIAL_TOOLS", DEFAULT_TRIVIAL_TOOLS),
            ),
            recovery=RecoverySettings(
                max_run_seconds=int(os.getenv("LANELOOP_MAX_RUN_SECONDS", "600")),
                stale_after_seconds=int(os.getenv("LANELOOP_STALE_AFTER_SECONDS", "1800")),
                waiting_timeout_seconds=int(os.getenv("LANELOOP_WAITING_TIMEOUT_SECONDS", "3600")),
                sweep_interval_seconds=float(
                    os.getenv("LANELOOP_RECOVERY_SWEEP_INTERVAL_SECONDS", "15.0"),
                ),
                lock_path=Path(lock_raw) if lock_raw else None,
                recovery_dedup_window_seconds=int(
                    os.getenv("LANELOOP_RECOVERY_DEDUP_WINDOW_SECONDS", "900"),
                ),
            ),
            retry=RetrySettings(
                max_attempts=int(os.getenv("LANELOOP_RETRY_MAX_ATTEMPTS", "3")),
                base_delay_seconds=int(os.getenv("LANELOOP_RETRY_BASE_SECONDS", "30")),
                max_delay_seconds=int(os.getenv("LANELOOP_RETRY_MAX_SECONDS", "900")),
            ),
            producer=ProducerSettings(
                dedup_window_seconds=int(os.getenv("LANELOOP_DEDUP_WINDOW_SECONDS", "60")),
                dedup_similarity=float(os.getenv("LANELOOP_DEDUP_SIMILARITY", "0.9")),
                default_priority=int(os.getenv("LANELOOP_DEFAULT_PRIORITY", "10")),
                user_facing_sources=_env_csv(
                    "LANELOOP_USER_FACING_SOURCES",
                    DEFAULT_USER_FACING_SOURCES,
                ),
            ),
            scheduler=SchedulerSettings(
                tick_interval_seconds=float(
                    os.getenv("LANELOOP_SCHEDULER_TICK_SECONDS", "30.0"),
                ),
                max_backoff_multiplier=int(
                    os.getenv("LANELOOP_SCHEDULER_MAX_BACKOFF_MULTIPLIER", "4"),
                ),
                default_priority=int(os.getenv("LANELOOP_SCHEDULER_DEFAULT_PRIORITY", "5")),
            ),
            oracle=OracleSettings(
                command_template=os.getenv("LANELOOP_ORACLE_COMMAND", ""),
                timeout_seconds=int(os.getenv("LANELOOP_ORACLE_TIMEOUT_SECONDS", "120")),
                scripted_path=Path(scripted_raw) if scripted_raw else None,
                outbox_path=Path(os.getenv("LANELOOP_OUTBOX_PATH", ".laneloop_outbox.jsonl")),
            ),
        )

    @property
    def lock_path(self) -> Path:
        """Advisory lock file path; defaults next to the database."""

        if self.recovery.lock_path is not None:
            return self.recovery.lock_path
        return self.db_path.with_name(f"{self.db_path.name}.lock")

    def validate(self) -> None:
        """Raise configuration error for values the runtime cannot honor."""

        positive_ints = {
            "LANELOOP_SQLITE_BUSY_TIMEOUT_MS": self.store.busy_timeout_ms,
            "LANELOOP_TRIVIAL_MAX_STEPS": self.loop.trivial.max_steps,
            "LANELOOP_TRIVIAL_MAX_MESSAGES": self.loop.trivial.max_messages,
            "LANELOOP_STANDARD_MAX_STEPS": self.loop.standard.max_steps,
            "LANELOOP_STANDARD_MAX_MESSAGES": self.loop.standard.max_messages,
            "LANELOOP_DEEP_MAX_STEPS": self.loop.deep.max_steps,
            "LANELOOP_DEEP_MAX_MESSAGES": self.loop.deep.max_messages,
            "LANELOOP_INVALID_OUTPUT_RETRIES": self.loop.invalid_output_retries,
            "LANELOOP_ORACLE_ATTEMPTS": self.loop.oracle_attempts,
            "LANELOOP_EXACT_LOOP_LIMIT": self.guardrails.exact_loop_limit,
            "LANELOOP_DEFAULT_TOOL_CEILING": self.guardrails.default_tool_ceiling,
            "LANELOOP_RESEARCH_TOOL_CEILING": self.guardrails.research_tool_ceiling,
            "LANELOOP_CONSECUTIVE_FAILURE_LIMIT": self.guardrails.consecutive_failure_limit,
            "LANELOOP_STATUS_UPDATE_INTERVAL_STEPS": (
                self.guardrails.status_update_interval_steps
            ),
            "LANELOOP_MAX_TOOL_LOOPS": self.guardrails.max_tool_loops,
            "LANELOOP_MAX_RUN_SECONDS": self.recovery.max_run_seconds,
            "LANELOOP_STALE_AFTER_SECONDS": self.recovery.stale_after_seconds,
            "LANELOOP_WAITING_TIMEOUT_SECONDS": self.recovery.waiting_timeout_seconds,
            "LANELOOP_RETRY_MAX_ATTEMPTS": self.retry.max_attempts,
            "LANELOOP_RETRY_BASE_SECONDS": self.retry.base_delay_seconds,
            "LANELOOP_RETRY_MAX_SECONDS": self.retry.max_delay_seconds,
            "LANELOOP_SCHEDULER_MAX_BACKOFF_MULTIPLIER": self.scheduler.max_backoff_multiplier,
            "LANELOOP_ORACLE_TIMEOUT_SECONDS": self.oracle.timeout_seconds,
        }
        for name, value in positive_ints.items():
            if value <= 0:
                raise ValueError(f"{name} must be > 0.")

        positive_floats = {
            "LANELOOP_POLL_INTERVAL_SECONDS": self.lanes.poll_interval_seconds,
            "LANELOOP_RECOVERY_SWEEP_INTERVAL_SECONDS": self.recovery.sweep_interval_seconds,
            "LANELOOP_SCHEDULER_TICK_SECONDS": self.scheduler.tick_interval_seconds,
            "LANELOOP_SLOW_TOOL_SECONDS": self.loop.slow_tool_seconds,
        }
        for name, value in positive_floats.items():
            if value <= 0:
                raise ValueError(f"{name} must be > 0.")

        if self.loop.bonus_steps < 0:
            raise ValueError("LANELOOP_BONUS_STEPS must be >= 0.")
        if self.producer.dedup_window_seconds < 0:
            raise ValueError("LANELOOP_DEDUP_WINDOW_SECONDS must be >= 0.")
        if not 0 < self.guardrails.similarity_threshold <= 1:
            raise ValueError("LANELOOP_SIMILARITY_THRESHOLD must be in (0, 1].")
        if not 0 < self.producer.dedup_similarity <= 1:
            raise ValueError("LANELOOP_DEDUP_SIMILARITY must be in (0, 1].")
        if self.guardrails.research_tool_ceiling < self.guardrails.default_tool_ceiling:
            raise ValueError(
                "LANELOOP_RESEARCH_TOOL_CEILING must be >= LANELOOP_DEFAULT_TOOL_CEILING.",
            )
        if self.retry.max_delay_seconds < self.retry.base_delay_seconds:
            raise ValueError("LANELOOP_RETRY_MAX_SECONDS must be >= LANELOOP_RETRY_BASE_SECONDS.")


def _env_csv(name: str, default: tuple[str, ...]) -> tuple[str, ...]:
    raw = os.getenv(name)
    if raw is None:
        return default
    values: list[str] = []
    seen: set[str] = set()
    for part in raw.split(","):
        normalized = part.strip()
        if not normalized or normalized in seen:
            continue
        seen.add(normalized)
        values.append(normalized)
    return tuple(values)


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
