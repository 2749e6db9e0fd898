from __future__ import annotations

from dataclasses import replace
from typing import Any

import allure

from laneloop.config import LaneSettings, Settings
from laneloop.orchestrator.backend import OutboxToolExecutor, ScriptedOracle
from laneloop.orchestrator.models import ActionCreate, ActionStatus, Lane
from laneloop.orchestrator.repository import ActionStore
from laneloop.orchestrator.runtime import OrchestratorRuntime
from laneloop.storage.common import utc_now

pytestmark = [
    allure.epic("Runtime"),
    allure.feature("Orchestrator Runtime"),
]

DONE: dict[str, Any] = {"tools": [], "verification": {"goals_met": True}}


def _runtime(settings: Settings, store: ActionStore, executor: OutboxToolExecutor) -> OrchestratorRuntime:
    return OrchestratorRuntime(
        settings=replace(settings, lanes=LaneSettings(poll_interval_seconds=0.05)),
        oracle=ScriptedOracle([DONE]),
        executor=executor,
        store=store,
    )


def test_forced_maintenance_fires_due_schedule(
    settings: Settings,
    store: ActionStore,
    executor: OutboxToolExecutor,
) -> None:
    runtime = _runtime(settings, store, executor)
    schedule = store.add_schedule(
        name="inbox",
        description="Check the inbox",
        interval_seconds=600,
        priority=2,
        first_fire_at=utc_now(),
    )

    result = runtime.run_maintenance_once(force=True)

    assert result.requeued == []
    assert result.recovery is not None
    assert result.recovery.total == 0
    assert result.tick is not None
    assert result.tick.fired == [schedule.schedule_id]
    [action] = store.list_actions()
    assert action.lane == Lane.AUTONOMY


def test_unforced_maintenance_skips_interval_work(
    settings: Settings,
    store: ActionStore,
    executor: OutboxToolExecutor,
) -> None:
    runtime = _runtime(settings, store, executor)
    runtime.run_maintenance_once(force=True)

    result = runtime.run_maintenance_once()

    assert result.recovery is None
    assert result.tick is None


def test_run_serves_until_duration_and_releases_lock(
    settings: Settings,
    store: ActionStore,
    executor: OutboxToolExecutor,
) -> None:
    runtime = _runtime(settings, store, executor)
    action = store.push(ActionCreate(description="Tidy the notes folder", lane=Lane.USER))

    runtime.run(duration_seconds=1.5)

    assert store.require_action(action.action_id).status == ActionStatus.COMPLETED
    assert not settings.lock_path.exists()
    assert runtime.dispatcher.summaries[Lane.USER].completed == 1
