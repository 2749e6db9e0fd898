from __future__ import annotations

import random
from collections.abc import Callable
from datetime import timedelta

import allure

from laneloop.orchestrator.failure_classifier import OracleErrorKind
from laneloop.orchestrator.models import ActionStatus, ActionView, FailureClass, Lane
from laneloop.orchestrator.repository import ActionStore
from laneloop.orchestrator.retry import (
    OracleFailure,
    OracleSuccess,
    RetryOutcome,
    RetryPolicy,
    call_with_retry,
)
from laneloop.storage.common import utc_now

pytestmark = [
    allure.epic("Action Queue"),
    allure.feature("Retries"),
]


class _Flaky:
    def __init__(self, errors: list[BaseException], value: str = "ok") -> None:
        self.errors = list(errors)
        self.value = value
        self.calls = 0

    def __call__(self) -> str:
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return self.value


def test_call_with_retry_recovers_from_transient_errors() -> None:
    sleeps: list[float] = []
    fn = _Flaky([ConnectionError("reset"), TimeoutError("slow")])

    outcome = call_with_retry(
        fn,
        attempts=3,
        base_delay_seconds=1.0,
        max_delay_seconds=30.0,
        sleep=sleeps.append,
        rng=random.Random(0),
    )

    assert isinstance(outcome, OracleSuccess)
    assert outcome.value == "ok"
    assert outcome.attempts == 3
    assert len(sleeps) == 2
    assert 1.0 <= sleeps[0] <= 1.3
    assert 2.0 <= sleeps[1] <= 2.6


def test_call_with_retry_stops_on_non_retryable_error() -> None:
    sleeps: list[float] = []
    fn = _Flaky([RuntimeError("something odd")])

    outcome = call_with_retry(
        fn,
        attempts=5,
        base_delay_seconds=1.0,
        max_delay_seconds=30.0,
        sleep=sleeps.append,
    )

    assert isinstance(outcome, OracleFailure)
    assert outcome.attempts == 1
    assert outcome.classification.kind == OracleErrorKind.UNKNOWN
    assert outcome.message == "something odd"
    assert sleeps == []


def test_call_with_retry_gives_up_after_attempts() -> None:
    sleeps: list[float] = []
    fn = _Flaky([TimeoutError("slow")] * 5)

    outcome = call_with_retry(
        fn,
        attempts=2,
        base_delay_seconds=1.0,
        max_delay_seconds=30.0,
        sleep=sleeps.append,
    )

    assert isinstance(outcome, OracleFailure)
    assert outcome.attempts == 2
    assert outcome.classification.kind == OracleErrorKind.TIMEOUT
    assert fn.calls == 2
    assert len(sleeps) == 1


def test_call_with_retry_honours_rate_limit_cooldown() -> None:
    sleeps: list[float] = []
    fn = _Flaky([RuntimeError("429: retry after 5 seconds")])

    outcome = call_with_retry(
        fn,
        attempts=2,
        base_delay_seconds=1.0,
        max_delay_seconds=30.0,
        sleep=sleeps.append,
    )

    assert isinstance(outcome, OracleSuccess)
    assert sleeps == [5.0]


def test_compute_delay_is_capped_full_jitter(store: ActionStore) -> None:
    policy = RetryPolicy(store=store, base_delay_seconds=30, max_delay_seconds=900, rng=random.Random(1))

    first = [policy.compute_delay(retry_number=1) for _ in range(20)]
    late = [policy.compute_delay(retry_number=10) for _ in range(20)]

    assert all(0 <= delay <= 30 for delay in first)
    assert all(0 <= delay <= 900 for delay in late)
    assert max(late) > 30


def test_retryable_failure_schedules_retry_then_sweep_requeues(
    store: ActionStore,
    claim: Callable[..., ActionView],
) -> None:
    action = claim()
    policy = RetryPolicy(store=store, base_delay_seconds=30, max_delay_seconds=900)

    outcome = policy.schedule_or_fail(
        action,
        reason="oracle_unavailable",
        failure_class=FailureClass.ORACLE_UNAVAILABLE,
        error_summary="connection reset",
    )

    assert outcome == RetryOutcome(retried=True, failed=False)
    failed = store.require_action(action.action_id)
    assert failed.status == ActionStatus.FAILED
    assert failed.retry is not None
    assert failed.retry.attempts == 1
    assert failed.error_summary == "connection reset"

    assert policy.sweep(now=utc_now() + timedelta(seconds=31)) == [action.action_id]
    assert store.require_action(action.action_id).status == ActionStatus.PENDING


def test_non_retryable_failure_is_terminal(
    store: ActionStore,
    claim: Callable[..., ActionView],
) -> None:
    action = claim()
    policy = RetryPolicy(store=store)

    outcome = policy.schedule_or_fail(
        action,
        reason="exact_loop_detected",
        failure_class=FailureClass.GUARDRAIL_ABORT,
    )

    assert outcome == RetryOutcome(retried=False, failed=True)
    failed = store.require_action(action.action_id)
    assert failed.retry is None
    assert failed.failure_class == FailureClass.GUARDRAIL_ABORT


def test_attempts_exhausted_fails_terminally(
    store: ActionStore,
    claim: Callable[..., ActionView],
) -> None:
    action = claim(max_attempts=1)
    policy = RetryPolicy(store=store, base_delay_seconds=1, max_delay_seconds=1)

    assert policy.schedule_or_fail(
        action,
        reason="watchdog_timeout",
        failure_class=FailureClass.WATCHDOG_TIMEOUT,
    ).retried
    assert policy.sweep(now=utc_now() + timedelta(seconds=5)) == [action.action_id]
    again = store.claim_next(lane=Lane.USER, worker_id="w2")
    assert again is not None

    outcome = policy.schedule_or_fail(
        again,
        reason="watchdog_timeout",
        failure_class=FailureClass.WATCHDOG_TIMEOUT,
    )

    assert outcome == RetryOutcome(retried=False, failed=True)
    final = store.require_action(action.action_id)
    assert final.status == ActionStatus.FAILED
    assert final.retry is not None
    assert final.retry.next_retry_at is None


def test_stale_expectation_changes_nothing(store: ActionStore, claim: Callable[..., ActionView]) -> None:
    action = claim()
    store.update_status(action.action_id, ActionStatus.COMPLETED)
    policy = RetryPolicy(store=store)

    outcome = policy.schedule_or_fail(
        action,
        reason="stale_orphan",
        failure_class=FailureClass.STALE_ORPHAN,
    )

    assert outcome == RetryOutcome(retried=False, failed=False)
    assert store.require_action(action.action_id).status == ActionStatus.COMPLETED
