from __future__ import annotations

from collections.abc import Callable
from dataclasses import replace
from datetime import timedelta
from typing import Any

import allure
import pytest

from laneloop.config import (
    GuardrailSettings,
    LoopSettings,
    RecoverySettings,
    Settings,
    TierBudget,
)
from laneloop.orchestrator.backend import OutboxToolExecutor, ScriptedOracle
from laneloop.orchestrator.fallback import FALLBACK_MESSAGE
from laneloop.orchestrator.loop import ExecutionLoop
from laneloop.orchestrator.models import (
    ActionStatus,
    ActionView,
    Decision,
    FailureClass,
    Lane,
    ReviewRequest,
    ReviewVerdict,
    StepContext,
    Tier,
)
from laneloop.orchestrator.recovery import RecoveryMonitor
from laneloop.orchestrator.repository import ActionStore
from laneloop.orchestrator.trace import SqlTraceStore
from laneloop.storage.common import utc_now

pytestmark = [
    allure.epic("Execution Loop"),
    allure.feature("Step Loop Scenarios"),
]

TELEGRAM = {"source": "telegram", "source_id": "42"}
DONE: dict[str, Any] = {"tools": [], "verification": {"goals_met": True, "analysis": "delivered"}}


def _step(*tools: tuple[str, dict[str, Any]], goals_met: bool = False) -> dict[str, Any]:
    return {
        "tools": [{"name": name, "metadata": arguments} for name, arguments in tools],
        "verification": {"goals_met": goals_met},
    }


def _search(query: str) -> tuple[str, dict[str, Any]]:
    return ("web_search", {"query": query})


def _telegram(message: str) -> tuple[str, dict[str, Any]]:
    return ("send_telegram", {"chat_id": "42", "message": message})


def _event_types(store: ActionStore, action_id: str) -> list[str]:
    details = store.get_action_details(action_id)
    assert details is not None
    return [event.event_type for event in details.events]


class _UnreachableOracle:
    def decide(self, action: ActionView, context: StepContext) -> Decision:
        raise ConnectionError("connection reset by peer")

    def review(self, request: ReviewRequest) -> ReviewVerdict:
        raise ConnectionError("connection reset by peer")

    def classify(self, action: ActionView) -> Tier:
        return Tier.STANDARD


def test_happy_path_completes_and_drops_trace(
    store: ActionStore,
    executor: OutboxToolExecutor,
    make_loop: Callable[..., ExecutionLoop],
    claim: Callable[..., ActionView],
) -> None:
    executor.register("web_search", lambda args: f"Sunny, 21C ({args['query']})")
    oracle = ScriptedOracle(
        [
            _step(_search("paris weather tomorrow")),
            _step(_telegram("Paris tomorrow: sunny, 21C")),
            DONE,
        ],
    )
    action = claim(payload=TELEGRAM)

    outcome = make_loop(oracle).run(action)

    assert outcome.status == ActionStatus.COMPLETED
    assert outcome.steps == 3
    assert outcome.messages_sent == 1
    assert outcome.tier == Tier.STANDARD
    assert store.require_action(action.action_id).status == ActionStatus.COMPLETED
    assert [record["arguments"]["message"] for record in executor.read_outbox()] == [
        "Paris tomorrow: sunny, 21C",
    ]
    assert _event_types(store, action.action_id)[-2:] == ["tier_selected", "completed"]
    assert SqlTraceStore(store.engine).list_for_action(action.action_id) == []


def test_retain_trace_keeps_observations(
    store: ActionStore,
    settings: Settings,
    executor: OutboxToolExecutor,
    make_loop: Callable[..., ExecutionLoop],
    claim: Callable[..., ActionView],
) -> None:
    executor.register("web_search", lambda _: "Sunny")
    oracle = ScriptedOracle([_step(_search("paris")), DONE])
    action = claim()

    make_loop(oracle, loop_settings=replace(settings, loop=LoopSettings(retain_trace=True))).run(action)

    entries = SqlTraceStore(store.engine).list_for_action(action.action_id)
    assert [entry.tool for entry in entries if entry.tool] == ["web_search"]
    assert entries[1].content == "Sunny"


def test_identical_steps_abort_as_exact_loop(
    store: ActionStore,
    executor: OutboxToolExecutor,
    make_loop: Callable[..., ExecutionLoop],
    claim: Callable[..., ActionView],
) -> None:
    calls: list[dict[str, Any]] = []

    def _search_handler(args: dict[str, Any]) -> str:
        calls.append(args)
        return "no results"

    executor.register("web_search", _search_handler)
    action = claim()

    outcome = make_loop(ScriptedOracle([_step(_search("paris weather"))])).run(action)

    assert outcome.status == ActionStatus.FAILED
    assert outcome.reason == "exact_loop_detected"
    assert outcome.steps == 3
    assert len(calls) == 2
    failed = store.require_action(action.action_id)
    assert failed.failure_class == FailureClass.GUARDRAIL_ABORT
    assert failed.error_summary is not None
    assert "3 steps in a row" in failed.error_summary


def test_repeated_send_forces_completion(
    store: ActionStore,
    executor: OutboxToolExecutor,
    make_loop: Callable[..., ExecutionLoop],
    claim: Callable[..., ActionView],
) -> None:
    action = claim(payload=TELEGRAM)

    outcome = make_loop(ScriptedOracle([_step(_telegram("Done"))])).run(action)

    assert outcome.status == ActionStatus.COMPLETED
    assert outcome.steps == 2
    assert len(executor.read_outbox()) == 1
    assert "forced_completion" in _event_types(store, action.action_id)


def test_invalid_output_is_retried_without_consuming_steps(
    make_loop: Callable[..., ExecutionLoop],
    claim: Callable[..., ActionView],
) -> None:
    oracle = ScriptedOracle(["not json", "still not json", DONE])
    action = claim()

    outcome = make_loop(oracle).run(action)

    assert outcome.status == ActionStatus.COMPLETED
    assert outcome.steps == 1
    assert [step for _, step in oracle.calls] == [1, 1, 1]


def test_persistent_invalid_output_fails_the_action(
    store: ActionStore,
    make_loop: Callable[..., ExecutionLoop],
    claim: Callable[..., ActionView],
) -> None:
    oracle = ScriptedOracle(["garbage"])
    action = claim()

    outcome = make_loop(oracle).run(action)

    assert outcome.status == ActionStatus.FAILED
    assert outcome.reason == "invalid_oracle_output"
    assert len(oracle.calls) == 4
    assert store.require_action(action.action_id).failure_class == FailureClass.INVALID_ORACLE_OUTPUT


def test_empty_plan_without_completion_claim_counts_as_invalid(
    make_loop: Callable[..., ExecutionLoop],
    claim: Callable[..., ActionView],
) -> None:
    oracle = ScriptedOracle([_step()])

    outcome = make_loop(oracle).run(claim())

    assert outcome.reason == "invalid_oracle_output"
    assert len(oracle.calls) == 4


def test_clarification_request_moves_action_to_waiting(
    store: ActionStore,
    executor: OutboxToolExecutor,
    make_loop: Callable[..., ExecutionLoop],
    claim: Callable[..., ActionView],
) -> None:
    executor.register("request_supporting_data", lambda _: "question delivered")
    oracle = ScriptedOracle([_step(("request_supporting_data", {"question": "Which city?"}))])
    action = claim("What's the weather tomorrow?", payload=TELEGRAM)

    outcome = make_loop(oracle).run(action)

    assert outcome.status == ActionStatus.WAITING
    waiting = store.require_action(action.action_id)
    assert waiting.status == ActionStatus.WAITING
    assert waiting.fallback_notified_at is None
    assert SqlTraceStore(store.engine).list_for_action(action.action_id) != []


def test_cancel_request_stops_at_next_step_boundary(
    store: ActionStore,
    executor: OutboxToolExecutor,
    make_loop: Callable[..., ExecutionLoop],
    claim: Callable[..., ActionView],
) -> None:
    action = claim()

    def _cancel_during_search(_: dict[str, Any]) -> str:
        store.request_cancel(action.action_id)
        return "partial results"

    executor.register("web_search", _cancel_during_search)
    oracle = ScriptedOracle([_step(_search("paris"))])

    outcome = make_loop(oracle).run(action)

    assert outcome.status == ActionStatus.FAILED
    assert outcome.reason == "canceled"
    assert len(oracle.calls) == 1
    canceled = store.require_action(action.action_id)
    assert canceled.failure_class == FailureClass.CANCELED
    assert not canceled.cancel_requested


@pytest.mark.parametrize(
    ("verdict", "expected_steps", "expected_reviews"),
    [
        (ReviewVerdict.CONTINUE, 4, 1),
        (ReviewVerdict.TERMINATE, 2, 1),
    ],
)
def test_step_budget_exhaustion_consults_review_once(  # noqa: PLR0913
    store: ActionStore,
    settings: Settings,
    executor: OutboxToolExecutor,
    make_loop: Callable[..., ExecutionLoop],
    claim: Callable[..., ActionView],
    verdict: ReviewVerdict,
    expected_steps: int,
    expected_reviews: int,
) -> None:
    executor.register("web_search", lambda args: f"results for {args['query']}")
    oracle = ScriptedOracle(
        [_step(_search(f"query {index}")) for index in range(6)],
        review=verdict,
    )
    tight = replace(
        settings,
        loop=LoopSettings(standard=TierBudget(max_steps=2, max_messages=3), bonus_steps=2),
    )
    action = claim()

    outcome = make_loop(oracle, loop_settings=tight).run(action)

    assert outcome.status == ActionStatus.FAILED
    assert outcome.reason == "max_steps_exhausted"
    assert outcome.steps == expected_steps
    assert len(oracle.review_requests) == expected_reviews
    assert store.require_action(action.action_id).failure_class == FailureClass.STEP_BUDGET_EXHAUSTED


def test_frequency_ceiling_terminates_when_review_declines(
    settings: Settings,
    executor: OutboxToolExecutor,
    make_loop: Callable[..., ExecutionLoop],
    claim: Callable[..., ActionView],
) -> None:
    executor.register("calculator", lambda args: args["expr"])
    oracle = ScriptedOracle(
        [_step(("calculator", {"expr": str(index)})) for index in range(5)],
        review=ReviewVerdict.TERMINATE,
    )
    capped = replace(settings, guardrails=GuardrailSettings(default_tool_ceiling=2))

    outcome = make_loop(oracle, loop_settings=capped).run(claim())

    assert outcome.status == ActionStatus.FAILED
    assert outcome.reason == "frequency_ceiling_exceeded"
    assert outcome.steps == 3
    assert oracle.review_requests[0].tool == "calculator"


def test_message_budget_completes_after_delivery(
    store: ActionStore,
    executor: OutboxToolExecutor,
    make_loop: Callable[..., ExecutionLoop],
    claim: Callable[..., ActionView],
) -> None:
    executor.register("web_search", lambda _: "windy later")
    oracle = ScriptedOracle(
        [
            _step(_telegram("Paris tomorrow: sunny, 21C")),
            _step(_search("paris wind"), _telegram("Also expect wind in the afternoon")),
        ],
        tier=Tier.TRIVIAL,
    )
    action = claim(payload=TELEGRAM)

    outcome = make_loop(oracle).run(action)

    assert outcome.status == ActionStatus.COMPLETED
    assert outcome.reason == "message_budget_exhausted"
    assert len(executor.read_outbox()) == 1
    assert "review" in _event_types(store, action.action_id)


def test_unreachable_oracle_schedules_retry(
    store: ActionStore,
    make_loop: Callable[..., ExecutionLoop],
    claim: Callable[..., ActionView],
) -> None:
    action = claim(payload=TELEGRAM)

    outcome = make_loop(_UnreachableOracle()).run(action)

    assert outcome.status == ActionStatus.FAILED
    assert outcome.retried
    failed = store.require_action(action.action_id)
    assert failed.retry is not None
    assert failed.retry.next_retry_at is not None
    assert failed.fallback_notified_at is None
    assert "oracle_failure" in _event_types(store, action.action_id)


def test_silent_completion_fails_audit_and_queues_recovery(
    store: ActionStore,
    executor: OutboxToolExecutor,
    make_loop: Callable[..., ExecutionLoop],
    claim: Callable[..., ActionView],
) -> None:
    executor.register("web_search", lambda _: "Sunny, 21C")
    oracle = ScriptedOracle([_step(_search("paris weather")), DONE])
    action = claim(payload=TELEGRAM)

    outcome = make_loop(oracle).run(action)

    assert outcome.status == ActionStatus.FAILED
    assert outcome.reason == "completion_audit"
    assert outcome.recovery_action_id is not None
    failed = store.require_action(action.action_id)
    assert failed.failure_class == FailureClass.COMPLETION_AUDIT
    assert failed.fallback_notified_at is not None
    outbox = executor.read_outbox()
    assert len(outbox) == 1
    assert outbox[0]["arguments"] == {
        "chat_id": "42",
        "message": FALLBACK_MESSAGE.format(reason="completion_audit"),
    }

    recovery = store.claim_next(lane=Lane.USER, worker_id="test-user")
    assert recovery is not None
    assert recovery.action_id == outcome.recovery_action_id
    assert recovery.is_recovery
    assert recovery.payload["recovery_of"] == action.action_id
    assert recovery.source == "telegram"
    assert "Original request: Find tomorrow's weather in Paris" in recovery.description

    recovery_outcome = make_loop(oracle).run(recovery)

    assert recovery_outcome.status == ActionStatus.COMPLETED
    details = store.get_action_details(recovery.action_id)
    assert details is not None
    assert details.events[-1].details["audit_warning"] == ["no_user_message"]


class _WatchdogDuringDecide:
    """Runs a recovery sweep far in the future while the oracle is deciding."""

    def __init__(self, inner: ScriptedOracle) -> None:
        self.inner = inner
        self.monitor: RecoveryMonitor | None = None

    def decide(self, action: ActionView, context: StepContext) -> Decision:
        assert self.monitor is not None
        self.monitor.sweep(now=utc_now() + timedelta(hours=1))
        return self.inner.decide(action, context)

    def review(self, request: ReviewRequest) -> ReviewVerdict:
        return self.inner.review(request)

    def classify(self, action: ActionView) -> Tier:
        return self.inner.classify(action)


def test_watchdog_failure_mid_step_skips_queued_tools(
    store: ActionStore,
    executor: OutboxToolExecutor,
    make_loop: Callable[..., ExecutionLoop],
    claim: Callable[..., ActionView],
) -> None:
    action = claim(payload=TELEGRAM)
    oracle = _WatchdogDuringDecide(ScriptedOracle([_step(_telegram("Here is the full answer"))]))
    loop = make_loop(oracle)
    oracle.monitor = RecoveryMonitor(
        store=store,
        trace_store=loop.trace_store,
        retry_policy=loop.retry_policy,
        fallback=loop.fallback,
        settings=RecoverySettings(max_run_seconds=60),
    )

    outcome = loop.run(action)

    assert outcome.status is None
    assert outcome.reason == "lost_ownership"
    assert executor.read_outbox() == []
    failed = store.require_action(action.action_id)
    assert failed.status == ActionStatus.FAILED
    assert failed.failure_class == FailureClass.WATCHDOG_TIMEOUT
