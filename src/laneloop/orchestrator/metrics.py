"""Queue statistics for the `stats` command."""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass

from laneloop.orchestrator.models import ActionEventView, ActionStatus, ActionView

_TERMINAL_STATUSES = {ActionStatus.COMPLETED, ActionStatus.FAILED}


@dataclass(slots=True)
class RetryClassMetric:
    """Retry metrics for one failure class."""

    failure_class: str
    scheduled: int
    completed_after_retry: int

    @property
    def success_ratio(self) -> float:
        if self.scheduled == 0:
            return 0.0
        return self.completed_after_retry / self.scheduled


@dataclass(slots=True)
class QueueMetricsSnapshot:
    """Aggregated queue metrics over the active set and a time window."""

    queue_counts: dict[str, dict[str, int]]
    window_action_count: int
    terminal_status_counts: dict[str, int]
    failure_reason_counts: dict[str, int]
    failure_class_counts: dict[str, int]
    retry_metrics: list[RetryClassMetric]
    recovery_actions_created: int
    recovery_deduplicated: int
    fallback_notifications: int
    review_verdicts: dict[str, int]
    forced_completions: int
    pushes_deduplicated: int
    waiting_timeouts: int

    @property
    def completion_rate(self) -> float | None:
        total = sum(self.terminal_status_counts.values())
        if total == 0:
            return None
        return self.terminal_status_counts.get(ActionStatus.COMPLETED.value, 0) / total


def build_queue_metrics(
    *,
    queue_counts: dict[str, dict[str, int]],
    window_actions: list[ActionView],
    window_events: list[ActionEventView],
) -> QueueMetricsSnapshot:
    """Build one snapshot from store views."""

    terminal_status_counts = Counter[str]()
    failure_reason_counts = Counter[str]()
    failure_class_counts = Counter[str]()
    recovery_actions_created = 0
    for action in window_actions:
        if action.is_recovery:
            recovery_actions_created += 1
        if action.status not in _TERMINAL_STATUSES:
            continue
        if action.status == ActionStatus.FAILED and action.retry is not None and (
            action.retry.next_retry_at is not None
        ):
            continue
        terminal_status_counts[action.status.value] += 1
        if action.status == ActionStatus.FAILED:
            failure_reason_counts[action.failure_reason or "unknown"] += 1
            if action.failure_class is not None:
                failure_class_counts[action.failure_class.value] += 1

    event_counts = Counter[str]()
    review_verdicts = Counter[str]()
    retry_scheduled = Counter[str]()
    retried_actions: dict[str, str] = {}
    completed_actions: set[str] = set()
    for event in window_events:
        event_counts[event.event_type] += 1
        if event.event_type == "review":
            verdict = str(event.details.get("verdict", "unknown"))
            reason = str(event.details.get("reason", "unknown"))
            review_verdicts[f"{reason}:{verdict}"] += 1
        elif event.event_type == "retry_scheduled":
            failure_class = str(event.details.get("failure_class", "unknown"))
            retry_scheduled[failure_class] += 1
            retried_actions.setdefault(event.action_id, failure_class)
        elif event.event_type == ActionStatus.COMPLETED.value:
            completed_actions.add(event.action_id)

    completed_after_retry = Counter[str]()
    for action_id, failure_class in retried_actions.items():
        if action_id in completed_actions:
            completed_after_retry[failure_class] += 1
    retry_metrics = [
        RetryClassMetric(
            failure_class=failure_class,
            scheduled=scheduled,
            completed_after_retry=completed_after_retry[failure_class],
        )
        for failure_class, scheduled in sorted(retry_scheduled.items())
    ]

    return QueueMetricsSnapshot(
        queue_counts=queue_counts,
        window_action_count=len(window_actions),
        terminal_status_counts=dict(sorted(terminal_status_counts.items())),
        failure_reason_counts=dict(failure_reason_counts.most_common()),
        failure_class_counts=dict(failure_class_counts.most_common()),
        retry_metrics=retry_metrics,
        recovery_actions_created=recovery_actions_created,
        recovery_deduplicated=event_counts["recovery_deduplicated"],
        fallback_notifications=event_counts["fallback_notified"],
        review_verdicts=dict(sorted(review_verdicts.items())),
        forced_completions=event_counts["forced_completion"],
        pushes_deduplicated=event_counts["push_deduplicated"],
        waiting_timeouts=event_counts["waiting_timeout"],
    )


def render_stats_lines(*, snapshot: QueueMetricsSnapshot, hours: int) -> list[str]:
    """Render operator-facing metrics lines for CLI output."""

    lines = [
        f"Action queue health (window={hours}h)",
        "Queue lane/status: " + (_fmt_lane_status(snapshot.queue_counts) or "none"),
        f"Window actions: {snapshot.window_action_count}",
        (
            "Terminal status distribution: "
            + (_fmt_key_value(snapshot.terminal_status_counts) or "none")
        ),
        f"Completion rate: {_fmt_ratio(snapshot.completion_rate)}",
        "Failure reasons: " + (_fmt_key_value(snapshot.failure_reason_counts) or "none"),
        (
            "Failure-class distribution: "
            + (_fmt_key_value(snapshot.failure_class_counts) or "none")
        ),
    ]

    if snapshot.retry_metrics:
        lines.append("Retry metrics:")
        for metric in snapshot.retry_metrics:
            lines.append(
                "  "
                f"failure_class={metric.failure_class} scheduled={metric.scheduled} "
                f"completed_after_retry={metric.completed_after_retry} "
                f"success_ratio={_fmt_ratio(metric.success_ratio)}",
            )
    else:
        lines.append("Retry metrics: none")

    lines.extend(
        [
            (
                "Recovery: "
                f"created={snapshot.recovery_actions_created} "
                f"deduplicated={snapshot.recovery_deduplicated}"
            ),
            f"Fallback notifications: {snapshot.fallback_notifications}",
            "Review verdicts: " + (_fmt_key_value(snapshot.review_verdicts) or "none"),
            f"Forced completions: {snapshot.forced_completions}",
            f"Pushes deduplicated: {snapshot.pushes_deduplicated}",
            f"Waiting timeouts: {snapshot.waiting_timeouts}",
        ],
    )
    return lines


def _fmt_ratio(value: float | None) -> str:
    if value is None:
        return "n/a"
    return f"{value:.2%}"


def _fmt_key_value(values: dict[str, int]) -> str:
    if not values:
        return ""
    return " ".join(f"{key}={values[key]}" for key in sorted(values))


def _fmt_lane_status(values: dict[str, dict[str, int]]) -> str:
    flattened: list[str] = []
    for lane in sorted(values):
        for status in sorted(values[lane]):
            flattened.append(f"{lane}/{status}={values[lane][status]}")
    return " ".join(flattened)
