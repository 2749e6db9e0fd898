from __future__ import annotations

import threading
from datetime import timedelta

import allure
import pytest
from sqlalchemy import inspect as sa_inspect
from sqlalchemy.exc import IntegrityError

from laneloop.orchestrator.models import (
    ActionCreate,
    ActionStatus,
    FailureClass,
    Lane,
)
from laneloop.orchestrator.repository import (
    ActionNotFoundError,
    ActionStore,
    InvalidTransitionError,
)
from laneloop.storage.common import utc_now

pytestmark = [
    allure.epic("Action Queue"),
    allure.feature("Store & Lifecycle"),
]


def test_schema_is_initialized_to_head(store: ActionStore) -> None:
    tables = set(sa_inspect(store.engine).get_table_names())

    assert {"actions", "action_events", "trace_entries", "heartbeat_schedules"} <= tables
    assert "alembic_version" in tables


def test_push_records_pushed_event_with_foreign_keys_enforced(store: ActionStore) -> None:
    with store.engine.connect() as connection:
        assert connection.exec_driver_sql("PRAGMA foreign_keys").scalar() == 1

    action = store.push(ActionCreate(description="Book a table for two", priority=7))

    details = store.get_action_details(action.action_id)
    assert details is not None
    assert details.action.status == ActionStatus.PENDING
    [pushed] = details.events
    assert pushed.event_type == "pushed"
    assert pushed.status_to == ActionStatus.PENDING
    assert pushed.details["priority"] == 7

    with pytest.raises(IntegrityError):
        store.add_event(action_id="no-such-action", event_type="orphan")


def test_claim_next_prefers_priority_then_age(store: ActionStore) -> None:
    low = store.push(ActionCreate(description="low", priority=1))
    first_high = store.push(ActionCreate(description="high-1", priority=50))
    second_high = store.push(ActionCreate(description="high-2", priority=50))
    store.push(ActionCreate(description="autonomy", lane=Lane.AUTONOMY, priority=99))

    claimed = [
        store.claim_next(lane=Lane.USER, worker_id="w"),
        store.claim_next(lane=Lane.USER, worker_id="w"),
        store.claim_next(lane=Lane.USER, worker_id="w"),
    ]

    assert [item.action_id for item in claimed if item is not None] == [
        first_high.action_id,
        second_high.action_id,
        low.action_id,
    ]
    assert store.claim_next(lane=Lane.USER, worker_id="w") is None
    assert all(item is not None and item.status == ActionStatus.IN_PROGRESS for item in claimed)


def test_concurrent_claims_never_share_an_action(store: ActionStore) -> None:
    for index in range(12):
        store.push(ActionCreate(description=f"action {index}"))

    claimed: list[str] = []
    lock = threading.Lock()

    def _worker(worker_id: str) -> None:
        while True:
            action = store.claim_next(lane=Lane.USER, worker_id=worker_id)
            if action is None:
                return
            with lock:
                claimed.append(action.action_id)

    threads = [threading.Thread(target=_worker, args=(f"w{index}",)) for index in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=30)

    assert len(claimed) == 12
    assert len(set(claimed)) == 12


def test_update_status_rejects_edges_outside_the_graph(store: ActionStore) -> None:
    action = store.push(ActionCreate(description="x"))

    with pytest.raises(InvalidTransitionError):
        store.update_status(action.action_id, ActionStatus.COMPLETED)

    store.claim_next(lane=Lane.USER, worker_id="w")
    assert store.update_status(action.action_id, ActionStatus.COMPLETED)

    with pytest.raises(InvalidTransitionError):
        store.update_status(action.action_id, ActionStatus.PENDING)


def test_update_status_with_stale_expectation_returns_false(store: ActionStore) -> None:
    action = store.push(ActionCreate(description="x"))

    assert not store.update_status(
        action.action_id,
        ActionStatus.FAILED,
        reason="late",
        failure_class=FailureClass.CANCELED,
        expected=ActionStatus.IN_PROGRESS,
    )
    assert store.require_action(action.action_id).status == ActionStatus.PENDING


def test_failed_without_retry_cannot_return_to_pending(store: ActionStore) -> None:
    action = store.push(ActionCreate(description="x"))
    store.claim_next(lane=Lane.USER, worker_id="w")
    store.update_status(
        action.action_id,
        ActionStatus.FAILED,
        reason="boom",
        failure_class=FailureClass.INTERNAL_ERROR,
    )

    with pytest.raises(InvalidTransitionError):
        store.update_status(action.action_id, ActionStatus.PENDING)


def test_every_transition_writes_an_event(store: ActionStore) -> None:
    action = store.push(ActionCreate(description="x", payload={"source": "telegram"}))
    store.claim_next(lane=Lane.USER, worker_id="w")
    store.update_status(action.action_id, ActionStatus.WAITING, expected=ActionStatus.IN_PROGRESS)
    store.resume_waiting(action.action_id, note="more input", appended_input="Paris")

    details = store.get_action_details(action.action_id)

    assert details is not None
    assert [event.event_type for event in details.events] == [
        "pushed",
        "claimed",
        "waiting",
        "resumed",
    ]
    assert details.events[2].status_from == ActionStatus.IN_PROGRESS
    assert details.events[2].status_to == ActionStatus.WAITING
    assert details.action.status == ActionStatus.PENDING
    assert details.action.payload["notes"] == ["more input"]
    assert details.action.description.endswith("Additional input: Paris")


def test_touch_and_cancel_only_apply_to_in_progress(store: ActionStore) -> None:
    action = store.push(ActionCreate(description="x"))

    assert not store.touch(action.action_id)
    assert not store.request_cancel(action.action_id)

    store.claim_next(lane=Lane.USER, worker_id="w")
    assert store.touch(action.action_id)
    assert store.request_cancel(action.action_id)
    assert store.is_cancel_requested(action.action_id)


def test_fail_with_retry_then_requeue(store: ActionStore) -> None:
    action = store.push(ActionCreate(description="x", max_attempts=2))
    store.claim_next(lane=Lane.USER, worker_id="w")
    retry_at = utc_now() + timedelta(seconds=30)

    assert store.fail_action(
        action.action_id,
        reason="oracle_unavailable",
        failure_class=FailureClass.ORACLE_UNAVAILABLE,
        retry_at=retry_at,
    )
    failed = store.require_action(action.action_id)
    assert failed.status == ActionStatus.FAILED
    assert failed.retry is not None
    assert failed.retry.attempts == 1
    assert failed.retry.next_retry_at is not None

    assert store.requeue_due_retries(now=utc_now()) == []
    assert store.requeue_due_retries(now=retry_at + timedelta(seconds=1)) == [action.action_id]

    requeued = store.require_action(action.action_id)
    assert requeued.status == ActionStatus.PENDING
    assert requeued.retry is not None
    assert requeued.retry.next_retry_at is None


def test_mark_fallback_notified_succeeds_once(store: ActionStore) -> None:
    action = store.push(ActionCreate(description="x"))

    assert store.mark_fallback_notified(action.action_id)
    assert not store.mark_fallback_notified(action.action_id)


def test_update_payload_merges_and_reindexes_origin(store: ActionStore) -> None:
    action = store.push(ActionCreate(description="x", payload={"source": "slack", "flag": 1}))

    updated = store.update_payload(action.action_id, {"source_id": "C42", "flag": 2})

    assert updated.payload == {"source": "slack", "source_id": "C42", "flag": 2}
    since = utc_now() - timedelta(minutes=1)
    found = store.recent_for_origin(source="slack", source_id="C42", since=since)
    assert [item.action_id for item in found] == [action.action_id]


def test_list_actions_filters_by_status_lane_and_predicate(store: ActionStore) -> None:
    store.push(ActionCreate(description="user one"))
    store.push(ActionCreate(description="autonomy one", lane=Lane.AUTONOMY))
    store.push(ActionCreate(description="user two", payload={"tag": "keep"}))

    assert len(store.list_actions(lane=Lane.USER)) == 2
    assert len(store.list_actions(status=ActionStatus.PENDING)) == 3
    tagged = store.list_actions(lambda item: item.payload.get("tag") == "keep")
    assert [item.description for item in tagged] == ["user two"]


def test_unknown_action_raises_not_found(store: ActionStore) -> None:
    with pytest.raises(ActionNotFoundError):
        store.require_action("missing")
    assert store.get_action_details("missing") is None


def test_queue_counts_group_by_lane_and_status(store: ActionStore) -> None:
    store.push(ActionCreate(description="a"))
    store.push(ActionCreate(description="b"))
    store.push(ActionCreate(description="c", lane=Lane.AUTONOMY))
    store.claim_next(lane=Lane.USER, worker_id="w")

    assert store.queue_counts() == {
        "autonomy": {"pending": 1},
        "user": {"in-progress": 1, "pending": 1},
    }
