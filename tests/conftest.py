"""Shared test fixtures."""

from __future__ import annotations

from collections.abc import Callable, Iterator
from pathlib import Path
from typing import Any

import pytest

from laneloop.config import OracleSettings, Settings
from laneloop.orchestrator.backend import OutboxToolExecutor
from laneloop.orchestrator.backend.base import DecisionOracle
from laneloop.orchestrator.loop import ExecutionLoop, build_execution_loop
from laneloop.orchestrator.models import ActionCreate, ActionView, Lane
from laneloop.orchestrator.repository import ActionStore


@pytest.fixture()
def settings(tmp_path: Path) -> Settings:
    return Settings(
        db_path=tmp_path / "laneloop.db",
        oracle=OracleSettings(outbox_path=tmp_path / "outbox.jsonl"),
    )


@pytest.fixture()
def store(settings: Settings) -> Iterator[ActionStore]:
    action_store = ActionStore(settings.db_path)
    action_store.init_schema()
    yield action_store
    action_store.close()


@pytest.fixture()
def executor(settings: Settings) -> OutboxToolExecutor:
    return OutboxToolExecutor(
        outbox_path=settings.oracle.outbox_path,
        delivery_tools=settings.guardrails.side_effect_tools,
    )


@pytest.fixture()
def make_loop(
    store: ActionStore,
    settings: Settings,
    executor: OutboxToolExecutor,
) -> Callable[..., ExecutionLoop]:
    """Build an execution loop that never sleeps between oracle retries."""

    def _make(oracle: DecisionOracle, *, loop_settings: Settings | None = None) -> ExecutionLoop:
        return build_execution_loop(
            loop_settings or settings,
            store=store,
            oracle=oracle,
            executor=executor,
            sleep=lambda _: None,
        )

    return _make


@pytest.fixture()
def claim(store: ActionStore) -> Callable[..., ActionView]:
    """Push one action and claim it, returning the in-progress view."""

    def _claim(
        description: str = "Find tomorrow's weather in Paris",
        *,
        lane: Lane = Lane.USER,
        payload: dict[str, Any] | None = None,
        max_attempts: int = 3,
    ) -> ActionView:
        store.push(
            ActionCreate(
                description=description,
                lane=lane,
                payload=payload or {},
                max_attempts=max_attempts,
            ),
        )
        action = store.claim_next(lane=lane, worker_id=f"test-{lane.value}")
        assert action is not None
        return action

    return _claim
