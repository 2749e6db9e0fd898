"""Controllers for laneloop CLI commands."""

from __future__ import annotations

import json
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path

from laneloop.config import Settings
from laneloop.orchestrator.backend import (
    CommandOracle,
    DecisionOracle,
    OutboxToolExecutor,
    ScriptedOracle,
)
from laneloop.orchestrator.dispatcher import run_until_idle
from laneloop.orchestrator.fallback import FallbackNotifier
from laneloop.orchestrator.guardrails import GuardrailEngine
from laneloop.orchestrator.metrics import build_queue_metrics, render_stats_lines
from laneloop.orchestrator.models import ActionStatus, ActionView, Lane, TraceEntryView
from laneloop.orchestrator.recovery import RecoveryMonitor
from laneloop.orchestrator.repository import ActionNotFoundError, ActionStore
from laneloop.orchestrator.retry import RetryPolicy
from laneloop.orchestrator.runtime import OrchestratorRuntime
from laneloop.orchestrator.services import (
    CancelDisposition,
    ProducerService,
    PushAction,
)
from laneloop.orchestrator.trace import SqlTraceStore
from laneloop.storage.common import utc_now


@dataclass(slots=True)
class PushCommand:
    """CLI input for queuing one action."""

    db_path: Path | None
    description: str
    lane: str
    priority: int | None
    source: str | None
    source_id: str | None
    session_id: str | None
    max_attempts: int | None


@dataclass(slots=True)
class ListActionsCommand:
    """CLI input for action listing."""

    db_path: Path | None
    status: str | None
    lane: str | None
    limit: int


@dataclass(slots=True)
class InspectActionCommand:
    """CLI input for action inspection."""

    db_path: Path | None
    action_id: str
    show_trace: bool = True


@dataclass(slots=True)
class CancelActionCommand:
    db_path: Path | None
    action_id: str


@dataclass(slots=True)
class ClearQueueCommand:
    db_path: Path | None
    lane: str | None
    reason: str


@dataclass(slots=True)
class StatsCommand:
    """CLI input for queue health stats."""

    db_path: Path | None
    hours: int


@dataclass(slots=True)
class MaintenanceCommand:
    """CLI input for one-shot recovery and retry sweeps."""

    db_path: Path | None


@dataclass(slots=True)
class ScheduleAddCommand:
    """CLI input for registering a heartbeat schedule."""

    db_path: Path | None
    name: str
    description: str
    interval_seconds: int
    priority: int | None
    first_delay_seconds: int


@dataclass(slots=True)
class ScheduleListCommand:
    db_path: Path | None


@dataclass(slots=True)
class ScheduleRemoveCommand:
    db_path: Path | None
    schedule_id: str


@dataclass(slots=True)
class ServeCommand:
    """CLI input for running the orchestrator process."""

    db_path: Path | None
    until_idle: bool
    duration_seconds: float | None
    max_actions: int | None = None


class LaneloopCliController:
    """Coordinates producer, inspection, maintenance and serve CLI operations."""

    def push(self, command: PushCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        payload = {
            "source": command.source,
            "source_id": command.source_id,
            "session_id": command.session_id,
        }
        with _store(settings) as store:
            producer = ProducerService(
                store=store,
                settings=settings.producer,
                default_max_attempts=settings.retry.max_attempts,
            )
            result = producer.push(
                PushAction(
                    description=command.description,
                    lane=Lane(command.lane.lower()),
                    priority=command.priority,
                    payload=payload,
                    max_attempts=command.max_attempts,
                ),
            )

        action = result.action
        return [
            f"Action {result.disposition.value}: "
            f"action_id={action.action_id} lane={action.lane.value} "
            f"status={action.status.value} priority={action.priority}",
        ]

    def list_actions(self, command: ListActionsCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        status = ActionStatus(command.status.lower()) if command.status else None
        lane = Lane(command.lane.lower()) if command.lane else None
        with _store(settings) as store:
            actions = store.list_actions(status=status, lane=lane, limit=command.limit)

        lines = [f"Actions: {len(actions)}"]
        for action in actions:
            lines.append(f"  {_action_summary(action)}")
        return lines

    def inspect_action(self, command: InspectActionCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _store(settings) as store:
            details = store.get_action_details(
                command.action_id,
                event_limit=settings.store.event_list_limit,
            )
            trace = (
                SqlTraceStore(store.engine).list_for_action(command.action_id)
                if command.show_trace
                else []
            )
        if details is None:
            return [f"Action not found: {command.action_id}"]

        action = details.action
        retry = action.retry
        lines = [
            f"Action: {action.action_id}",
            f"Description: {action.description}",
            f"Lane: {action.lane.value}",
            f"Status: {action.status.value}",
            f"Priority: {action.priority}",
            f"Origin: {action.source or '-'}/{action.source_id or '-'}",
            f"Recovery: {'yes' if action.is_recovery else 'no'}",
            f"Worker: {action.worker_id or '-'}",
            f"Failure reason: {action.failure_reason or '-'}",
            f"Failure class: {action.failure_class.value if action.failure_class else '-'}",
            f"Error: {action.error_summary or '-'}",
            (
                f"Retry: attempts={retry.attempts}/{retry.max_attempts} next="
                f"{retry.next_retry_at.isoformat() if retry.next_retry_at else '-'}"
                if retry is not None
                else "Retry: -"
            ),
            f"Cancel requested: {'yes' if action.cancel_requested else 'no'}",
            f"Events: {len(details.events)}",
        ]
        for event in details.events:
            detail_text = (
                " " + json.dumps(event.details, ensure_ascii=False, sort_keys=True, default=str)
                if event.details
                else ""
            )
            lines.append(
                f"  {event.created_at.isoformat()} {event.event_type} "
                f"{event.status_from.value if event.status_from else '-'} -> "
                f"{event.status_to.value if event.status_to else '-'}{detail_text}",
            )
        if command.show_trace:
            lines.append(f"Trace entries: {len(trace)}")
            for entry in trace:
                lines.append(f"  {_trace_summary(entry)}")
        return lines

    def cancel_action(self, command: CancelActionCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _store(settings) as store:
            producer = ProducerService(store=store, settings=settings.producer)
            try:
                disposition = producer.cancel(command.action_id)
            except ActionNotFoundError:
                return [f"Action not found: {command.action_id}"]

        if disposition == CancelDisposition.REQUESTED:
            return [f"Cancel requested: {command.action_id} (stops at next step boundary)"]
        if disposition == CancelDisposition.CANCELED:
            return [f"Action canceled: {command.action_id}"]
        return [f"Action not cancelable: {command.action_id}"]

    def clear_queue(self, command: ClearQueueCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        lane = Lane(command.lane.lower()) if command.lane else None
        with _store(settings) as store:
            producer = ProducerService(store=store, settings=settings.producer)
            touched = producer.clear_queue(reason=command.reason, lane=lane)

        lines = [f"Queue cleared: {len(touched)} action(s)"]
        lines.extend(f"  {action_id}" for action_id in touched)
        return lines

    def stats(self, command: StatsCommand) -> list[str]:
        """Show operator-facing queue health metrics."""

        settings = Settings.from_env(db_path=command.db_path)
        cutoff = utc_now() - timedelta(hours=max(1, command.hours))
        with _store(settings) as store:
            queue_counts = store.queue_counts()
            window_actions = store.actions_created_since(cutoff)
            window_events = store.events_since(cutoff)

        snapshot = build_queue_metrics(
            queue_counts=queue_counts,
            window_actions=window_actions,
            window_events=window_events,
        )
        return render_stats_lines(snapshot=snapshot, hours=command.hours)

    def recover(self, command: MaintenanceCommand) -> list[str]:
        """Run one watchdog/stale/waiting-timeout sweep."""

        settings = Settings.from_env(db_path=command.db_path)
        with _store(settings) as store:
            result = _recovery_monitor(settings=settings, store=store).sweep()

        return [
            "Recovery sweep: "
            f"watchdog_failed={len(result.watchdog_failed)} "
            f"stale_failed={len(result.stale_failed)} "
            f"waiting_resumed={len(result.waiting_resumed)} "
            f"retry_scheduled={len(result.retried)} "
            f"settled={len(result.settled)}",
        ]

    def retry_sweep(self, command: MaintenanceCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _store(settings) as store:
            requeued = RetryPolicy(
                store=store,
                base_delay_seconds=settings.retry.base_delay_seconds,
                max_delay_seconds=settings.retry.max_delay_seconds,
            ).sweep()

        lines = [f"Retries re-queued: {len(requeued)}"]
        lines.extend(f"  {action_id}" for action_id in requeued)
        return lines

    def add_schedule(self, command: ScheduleAddCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        if command.interval_seconds <= 0:
            raise ValueError("Schedule interval must be > 0 seconds.")
        with _store(settings) as store:
            schedule = store.add_schedule(
                name=command.name,
                description=command.description,
                interval_seconds=command.interval_seconds,
                priority=(
                    command.priority
                    if command.priority is not None
                    else settings.scheduler.default_priority
                ),
                first_fire_at=utc_now() + timedelta(seconds=command.first_delay_seconds),
            )
        return [
            "Schedule added: "
            f"schedule_id={schedule.schedule_id} name={schedule.name} "
            f"interval={schedule.interval_seconds}s "
            f"next_fire_at={schedule.next_fire_at.isoformat()}",
        ]

    def list_schedules(self, command: ScheduleListCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _store(settings) as store:
            schedules = store.list_schedules()

        lines = [f"Schedules: {len(schedules)}"]
        for schedule in schedules:
            last_fired = (
                schedule.last_fired_at.isoformat() if schedule.last_fired_at is not None else "-"
            )
            lines.append(
                f"  {schedule.schedule_id} name={schedule.name} "
                f"interval={schedule.interval_seconds}s priority={schedule.priority} "
                f"enabled={'yes' if schedule.enabled else 'no'} "
                f"next_fire_at={schedule.next_fire_at.isoformat()} last_fired_at={last_fired}",
            )
        return lines

    def remove_schedule(self, command: ScheduleRemoveCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _store(settings) as store:
            removed = store.remove_schedule(command.schedule_id)
        if not removed:
            return [f"Schedule not found: {command.schedule_id}"]
        return [f"Schedule removed: {command.schedule_id}"]

    def serve(self, command: ServeCommand) -> list[str]:
        """Run both lanes with maintenance; `until_idle` drains the queue and returns."""

        settings = Settings.from_env(db_path=command.db_path)
        settings.validate()
        runtime = OrchestratorRuntime(
            settings=settings,
            oracle=build_oracle(settings),
            executor=build_executor(settings),
        )
        try:
            if not command.until_idle:
                runtime.run(duration_seconds=command.duration_seconds)
                return ["Runtime stopped."]

            runtime.store.init_schema()
            with runtime.lock:
                runtime.run_maintenance_once(force=True)
                summaries = run_until_idle(runtime.dispatcher, max_actions=command.max_actions)
        finally:
            runtime.store.close()

        lines = ["Lane summary:"]
        for lane, summary in summaries.items():
            lines.append(
                f"  lane={lane.value} processed={summary.processed} "
                f"completed={summary.completed} failed={summary.failed} "
                f"retried={summary.retried} waiting={summary.waiting}",
            )
        return lines


def build_oracle(settings: Settings) -> DecisionOracle:
    """Scripted oracle when a script path is set, else the configured agent command."""

    if settings.oracle.scripted_path is not None:
        return ScriptedOracle.from_file(settings.oracle.scripted_path)
    if settings.oracle.command_template.strip():
        return CommandOracle(
            command_template=settings.oracle.command_template,
            timeout_seconds=settings.oracle.timeout_seconds,
        )
    raise ValueError("Set LANELOOP_ORACLE_SCRIPT or LANELOOP_ORACLE_COMMAND to serve actions.")


def build_executor(settings: Settings) -> OutboxToolExecutor:
    return OutboxToolExecutor(
        outbox_path=settings.oracle.outbox_path,
        delivery_tools=settings.guardrails.side_effect_tools,
    )


def _recovery_monitor(*, settings: Settings, store: ActionStore) -> RecoveryMonitor:
    trace_store = SqlTraceStore(store.engine)
    return RecoveryMonitor(
        store=store,
        trace_store=trace_store,
        retry_policy=RetryPolicy(
            store=store,
            base_delay_seconds=settings.retry.base_delay_seconds,
            max_delay_seconds=settings.retry.max_delay_seconds,
        ),
        fallback=FallbackNotifier(
            store=store,
            trace_store=trace_store,
            executor=build_executor(settings),
            guardrails=GuardrailEngine(settings.guardrails),
            user_facing_sources=settings.producer.user_facing_sources,
        ),
        settings=settings.recovery,
        retain_trace=settings.loop.retain_trace,
    )


def _action_summary(action: ActionView) -> str:
    summary = (
        f"{action.action_id} lane={action.lane.value} status={action.status.value} "
        f"priority={action.priority} created_at={action.created_at.isoformat()}"
    )
    if action.failure_reason:
        summary += f" reason={action.failure_reason}"
    if action.is_recovery:
        summary += " recovery=yes"
    return summary


def _trace_summary(entry: TraceEntryView) -> str:
    parts = [f"step={entry.step}", entry.kind.value]
    if entry.tool:
        parts.append(entry.tool)
    if entry.success is not None:
        parts.append("ok" if entry.success else "error")
    if entry.duration_ms is not None:
        parts.append(f"{entry.duration_ms}ms")
    if entry.error:
        parts.append(f"error={entry.error}")
    if entry.content:
        parts.append(entry.content)
    return " ".join(parts)


@contextmanager
def _store(settings: Settings) -> Iterator[ActionStore]:
    store = ActionStore(settings.db_path, busy_timeout_ms=settings.store.busy_timeout_ms)
    store.init_schema()
    try:
        yield store
    finally:
        store.close()
