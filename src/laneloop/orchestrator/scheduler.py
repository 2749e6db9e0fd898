"""Heartbeat scheduler: persisted interval schedules polled by a single tick."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta

from laneloop.config import SchedulerSettings
from laneloop.orchestrator.models import ActionStatus, Lane, ScheduleView
from laneloop.orchestrator.repository import ActionStore
from laneloop.orchestrator.services import ProducerService, PushAction, PushDisposition
from laneloop.storage.common import utc_now

logger = logging.getLogger(__name__)

HEARTBEAT_SOURCE = "heartbeat"

_EPOCH = datetime(1970, 1, 1, tzinfo=UTC)


@dataclass(slots=True)
class SchedulerContext:
    """Idle/backoff counters; written only by `HeartbeatScheduler.tick`."""

    backoff_multipliers: dict[str, int] = field(default_factory=dict)
    fired: int = 0
    skipped: int = 0
    last_tick_at: datetime | None = None

    def multiplier(self, schedule_id: str) -> int:
        return self.backoff_multipliers.get(schedule_id, 1)


@dataclass(slots=True)
class TickResult:
    fired: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)


class HeartbeatScheduler:
    """Pushes autonomy-lane actions for due schedules; backs off while work is pending."""

    def __init__(
        self,
        *,
        store: ActionStore,
        producer: ProducerService,
        settings: SchedulerSettings,
        context: SchedulerContext | None = None,
    ) -> None:
        self.store = store
        self.producer = producer
        self.settings = settings
        self.context = context or SchedulerContext()

    def tick(self, *, now: datetime | None = None) -> TickResult:
        current = now or utc_now()
        result = TickResult()
        for schedule in self.store.due_schedules(now=current):
            if self._still_running(schedule):
                self._back_off(schedule, current)
                result.skipped.append(schedule.schedule_id)
                continue

            pushed = self.producer.push(
                PushAction(
                    description=schedule.description,
                    lane=Lane.AUTONOMY,
                    priority=schedule.priority,
                    payload={
                        "source": HEARTBEAT_SOURCE,
                        "source_id": schedule.schedule_id,
                        "schedule_name": schedule.name,
                    },
                    dedup=False,
                ),
            )
            if pushed.disposition != PushDisposition.CREATED:
                self._back_off(schedule, current)
                result.skipped.append(schedule.schedule_id)
                continue

            self.context.backoff_multipliers.pop(schedule.schedule_id, None)
            self.context.fired += 1
            self.store.advance_schedule(
                schedule.schedule_id,
                next_fire_at=current + timedelta(seconds=schedule.interval_seconds),
                fired_at=current,
                action_id=pushed.action.action_id,
            )
            logger.info(
                "Heartbeat %s fired action %s",
                schedule.name,
                pushed.action.action_id,
            )
            result.fired.append(schedule.schedule_id)
        self.context.last_tick_at = current
        return result

    def _still_running(self, schedule: ScheduleView) -> bool:
        active = self.store.recent_for_origin(
            source=HEARTBEAT_SOURCE,
            source_id=schedule.schedule_id,
            since=_EPOCH,
            statuses=(ActionStatus.PENDING, ActionStatus.IN_PROGRESS),
        )
        return bool(active)

    def _back_off(self, schedule: ScheduleView, now: datetime) -> None:
        multiplier = min(
            self.context.multiplier(schedule.schedule_id) * 2,
            self.settings.max_backoff_multiplier,
        )
        self.context.backoff_multipliers[schedule.schedule_id] = multiplier
        self.context.skipped += 1
        self.store.advance_schedule(
            schedule.schedule_id,
            next_fire_at=now + timedelta(seconds=schedule.interval_seconds * multiplier),
        )
        logger.info(
            "Heartbeat %s skipped: previous action still active; next in %dx interval",
            schedule.name,
            multiplier,
        )
