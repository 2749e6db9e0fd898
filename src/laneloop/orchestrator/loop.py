"""Plan-execute-verify step loop driving one claimed action to a final status."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field

from laneloop.config import LoopSettings, Settings
from laneloop.orchestrator.auditor import CompletionAuditor
from laneloop.orchestrator.backend.base import DecisionOracle, ToolExecutor
from laneloop.orchestrator.failure_classifier import OracleErrorKind, normalize_tool_result
from laneloop.orchestrator.fallback import FallbackNotifier
from laneloop.orchestrator.guardrails import GuardrailEngine, GuardState, message_text
from laneloop.orchestrator.models import (
    ActionStatus,
    ActionView,
    Decision,
    FailureClass,
    ReviewDecision,
    ReviewReason,
    ReviewRequest,
    StepContext,
    Tier,
    ToolError,
    ToolInvocation,
    ToolResult,
    TraceEntryWrite,
    TraceKind,
)
from laneloop.orchestrator.repository import SETTLED_EVENT, ActionStore
from laneloop.orchestrator.retry import OracleFailure, RetryPolicy, call_with_retry
from laneloop.orchestrator.review_gate import ReviewGate
from laneloop.orchestrator.signals import (
    SignalLevel,
    WorkflowSignal,
    build_signal_note,
    should_inject,
)
from laneloop.orchestrator.tiers import TierClassifier, budget_for
from laneloop.orchestrator.trace import SqlTraceStore, TraceStore

logger = logging.getLogger(__name__)

_CONTEXT_OBSERVATIONS = 40
_OBSERVATION_PREVIEW_CHARS = 200

INVALID_OUTPUT_NOTE = (
    "Your previous reply proposed no tools and did not claim the goal is met. Reply with "
    "at least one tool call, or set verification.goals_met to true if the user already "
    "has the final result."
)


@dataclass(slots=True)
class LoopOutcome:
    """What one `ExecutionLoop.run` did to its action."""

    action_id: str
    status: ActionStatus | None
    reason: str | None = None
    tier: Tier = Tier.STANDARD
    steps: int = 0
    messages_sent: int = 0
    retried: bool = False
    recovery_action_id: str | None = None


@dataclass(slots=True)
class _RunState:
    action: ActionView
    guard: GuardState
    tier: Tier
    max_steps: int
    step: int = 0
    notes: list[str] = field(default_factory=list)
    observations: list[str] = field(default_factory=list)

    def add_note(self, note: str) -> None:
        if not self.notes or self.notes[-1] != note:
            self.notes.append(note)


class ExecutionLoop:
    """Runs one action through oracle decisions, guard-rails and tool execution."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        store: ActionStore,
        trace_store: TraceStore,
        oracle: DecisionOracle,
        executor: ToolExecutor,
        settings: LoopSettings,
        guardrails: GuardrailEngine,
        review_gate: ReviewGate,
        auditor: CompletionAuditor,
        retry_policy: RetryPolicy,
        fallback: FallbackNotifier,
        tiers: TierClassifier,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.store = store
        self.trace_store = trace_store
        self.oracle = oracle
        self.executor = executor
        self.settings = settings
        self.guardrails = guardrails
        self.review_gate = review_gate
        self.auditor = auditor
        self.retry_policy = retry_policy
        self.fallback = fallback
        self.tiers = tiers
        self._sleep = sleep
        self._clock = clock
        self._clarification_tools = frozenset(settings.clarification_tools)

    def run(self, action: ActionView) -> LoopOutcome:
        """Drive `action` (already in-progress) until it leaves in-progress."""

        tier, tier_source = self.tiers.classify(action)
        budget = budget_for(tier, self.settings)
        run = _RunState(
            action=action,
            guard=self.guardrails.new_state(max_messages=budget.max_messages),
            tier=tier,
            max_steps=budget.max_steps,
        )
        for note in action.payload.get("notes", []) or []:
            run.add_note(str(note))
        self.store.add_event(
            action_id=action.action_id,
            event_type="tier_selected",
            details={
                "tier": tier.value,
                "source": tier_source,
                "max_steps": budget.max_steps,
                "max_messages": budget.max_messages,
            },
        )
        logger.info(
            "Running action %s (%s tier, %d steps, %d messages)",
            action.action_id,
            tier.value,
            budget.max_steps,
            budget.max_messages,
        )

        outcome = self._drive(run)
        outcome.tier = tier
        outcome.steps = run.step
        outcome.messages_sent = run.guard.messages_sent
        settle_action(
            store=self.store,
            trace_store=self.trace_store,
            fallback=self.fallback,
            action_id=action.action_id,
            retain_trace=self.settings.retain_trace,
        )
        return outcome

    def _drive(self, run: _RunState) -> LoopOutcome:  # noqa: C901, PLR0911, PLR0912
        action = run.action
        invalid_outputs = 0
        bonus_granted = False

        while True:
            if run.step >= run.max_steps:
                if not bonus_granted and self.settings.bonus_steps > 0:
                    review = self._review(run, ReviewReason.STEP_EXHAUSTION)
                    if review.should_continue:
                        bonus_granted = True
                        run.max_steps += self.settings.bonus_steps
                        run.add_note(
                            f"Step budget exhausted; {self.settings.bonus_steps} bonus step(s) "
                            "granted. Compile and deliver the final result now.",
                        )
                        continue
                return self._finish_exhausted(run)

            run.step += 1
            if self.store.is_cancel_requested(action.action_id):
                return self._cancel(run)
            if not self.store.touch(action.action_id):
                return self._lost_ownership(run)

            decision = self._decide(run)
            if isinstance(decision, OracleFailure):
                if decision.classification.kind == OracleErrorKind.INVALID_RESPONSE:
                    invalid_outputs += 1
                    if invalid_outputs > self.settings.invalid_output_retries:
                        return self._fail(
                            run,
                            reason="invalid_oracle_output",
                            failure_class=FailureClass.INVALID_ORACLE_OUTPUT,
                            error_summary=decision.message,
                        )
                    run.add_note(f"{INVALID_OUTPUT_NOTE} Parse error: {decision.message}")
                    run.step -= 1
                    continue
                return self._oracle_unavailable(run, decision)

            if not decision.tools and not decision.verification.goals_met:
                invalid_outputs += 1
                if invalid_outputs > self.settings.invalid_output_retries:
                    return self._fail(
                        run,
                        reason="invalid_oracle_output",
                        failure_class=FailureClass.INVALID_ORACLE_OUTPUT,
                        error_summary="Oracle returned no tools without claiming completion.",
                    )
                run.add_note(INVALID_OUTPUT_NOTE)
                run.step -= 1
                continue
            invalid_outputs = 0

            calls, _ = self.guardrails.dedupe_step(decision.tools)
            loop_check = self.guardrails.begin_step(run.guard, calls)
            if loop_check.aborted:
                return self._fail(
                    run,
                    reason=loop_check.reason or "loop_detected",
                    failure_class=FailureClass.GUARDRAIL_ABORT,
                    error_summary=loop_check.detail,
                )

            filtered = self.guardrails.filter_calls(run.guard, calls, step=run.step)
            for note in filtered.notes:
                run.add_note(note)
            for suppressed in filtered.suppressed:
                self._trace(
                    run,
                    TraceEntryWrite(
                        kind=TraceKind.NOTE,
                        step=run.step,
                        tool=suppressed.call.name,
                        signature=self.guardrails.signature(suppressed.call),
                        content=f"suppressed: {suppressed.code}",
                    ),
                )

            for tool in filtered.ceiling_hits:
                review = self._review(run, ReviewReason.FREQUENCY_CEILING, tool=tool)
                if not review.should_continue:
                    return self._fail(
                        run,
                        reason="frequency_ceiling_exceeded",
                        failure_class=FailureClass.GUARDRAIL_ABORT,
                        error_summary=f"Tool {tool} exceeded its call ceiling.",
                    )
                self.guardrails.soft_reset(run.guard, tool)
                run.add_note(
                    f"Tool {tool} hit its call ceiling for this task. Use the results you "
                    "already have and only call it again if something new is needed.",
                )

            if filtered.message_budget_hit:
                review = self._review(run, ReviewReason.MESSAGE_BUDGET)
                if not review.should_continue:
                    return self._finish_message_budget(run)
                run.guard.max_messages += 1
                run.add_note(
                    "Message budget reached; one more message is allowed. Make it the final "
                    "result.",
                )

            forced_completion = (
                filtered.all_sends_suppressed(self.guardrails.send_tools)
                and run.guard.messages_sent > 0
            )

            if filtered.allowed:
                if self.store.is_cancel_requested(action.action_id):
                    return self._cancel(run)
                # The watchdog may have failed the action while the oracle was deciding.
                if not self.store.touch(action.action_id):
                    return self._lost_ownership(run)
                clarification = self._execute_batch(run, filtered.allowed)
                if clarification:
                    return self._wait_for_input(run)

            if decision.verification.goals_met or forced_completion:
                if forced_completion and not decision.verification.goals_met:
                    self.store.add_event(
                        action_id=action.action_id,
                        event_type="forced_completion",
                        details={"step": run.step, "messages_sent": run.guard.messages_sent},
                    )
                return self._complete(run, decision)

    def _decide(self, run: _RunState) -> Decision | OracleFailure:
        context = StepContext(
            step=run.step,
            max_steps=run.max_steps,
            messages_sent=run.guard.messages_sent,
            max_messages=run.guard.max_messages,
            notes=list(run.notes),
            observations=run.observations[-_CONTEXT_OBSERVATIONS:],
        )
        outcome = call_with_retry(
            lambda: self.oracle.decide(run.action, context),
            attempts=self.settings.oracle_attempts,
            base_delay_seconds=self.settings.oracle_base_delay_seconds,
            max_delay_seconds=self.settings.oracle_max_delay_seconds,
            sleep=self._sleep,
        )
        if isinstance(outcome, OracleFailure):
            return outcome
        decision = outcome.value
        self._trace(
            run,
            TraceEntryWrite(
                kind=TraceKind.ORACLE,
                step=run.step,
                success=decision.verification.goals_met,
                content=decision.reasoning or decision.verification.reasoning or None,
            ),
        )
        return decision

    def _execute_batch(self, run: _RunState, calls: list[ToolInvocation]) -> bool:
        """Run calls sequentially; returns True when a clarification request succeeded."""

        clarification = False
        slow_tool_ms = int(self.settings.slow_tool_seconds * 1000)
        for index, call in enumerate(calls):
            result, duration_ms = self._execute(call)
            succeeded = not isinstance(result, ToolError)
            self._trace(
                run,
                TraceEntryWrite(
                    kind=TraceKind.TOOL,
                    step=run.step,
                    tool=call.name,
                    signature=self.guardrails.signature(call),
                    arguments=call.arguments,
                    success=succeeded,
                    error=result.message if isinstance(result, ToolError) else None,
                    duration_ms=duration_ms,
                    content=_result_content(call, result, self.guardrails),
                ),
            )
            for note in self.guardrails.record_result(run.guard, call, result, step=run.step):
                run.add_note(note)
            run.observations.append(_observation(run.step, call, result))

            skipped = len(calls) - index - 1 if not succeeded else 0
            signal = WorkflowSignal(
                step=run.step,
                tool=call.name,
                level=SignalLevel.ERROR if not succeeded else SignalLevel.INFO,
                duration_ms=duration_ms,
                error=result.message if isinstance(result, ToolError) else None,
                consecutive_failures=run.guard.consecutive_failures[call.name],
                queued_tools_skipped=skipped,
            )
            if should_inject(signal, slow_tool_ms=slow_tool_ms):
                run.add_note(build_signal_note(signal, slow_tool_ms=slow_tool_ms))

            if succeeded and call.name in self._clarification_tools:
                clarification = True
            if not succeeded:
                if skipped:
                    logger.info(
                        "Action %s step %d: %s failed, skipping %d queued call(s)",
                        run.action.action_id,
                        run.step,
                        call.name,
                        skipped,
                    )
                break
        return clarification

    def _execute(self, call: ToolInvocation) -> tuple[ToolResult, int]:
        started = self._clock()
        try:
            result = normalize_tool_result(self.executor.execute(call.name, call.arguments))
        except Exception as error:  # noqa: BLE001
            result = ToolError(message=f"{type(error).__name__}: {error}")
        duration_ms = int((self._clock() - started) * 1000)
        return result, duration_ms

    def _review(
        self,
        run: _RunState,
        reason: ReviewReason,
        *,
        tool: str | None = None,
    ) -> ReviewDecision:
        decision = self.review_gate.review(
            ReviewRequest(
                reason=reason,
                action=run.action,
                recent_trace=run.observations[-self.settings.recent_trace_entries :],
                delivery=run.guard.delivery_summary(),
                tool=tool,
            ),
        )
        self.store.add_event(
            action_id=run.action.action_id,
            event_type="review",
            details={
                "reason": reason.value,
                "tool": tool,
                "verdict": decision.verdict.value,
                "source": decision.source,
                "step": run.step,
            },
        )
        return decision

    def _complete(self, run: _RunState, decision: Decision) -> LoopOutcome:
        action = run.action
        audit = self.auditor.audit(action)
        if not audit.passed and not action.is_recovery:
            recovery = self.auditor.enforce(action, audit)
            return LoopOutcome(
                action_id=action.action_id,
                status=ActionStatus.FAILED,
                reason=FailureClass.COMPLETION_AUDIT.value,
                recovery_action_id=recovery.action_id if recovery is not None else None,
            )

        details: dict[str, object] = {
            "step": run.step,
            "messages_sent": run.guard.messages_sent,
            "verification": decision.verification.reasoning[:500],
        }
        if not audit.passed:
            details["audit_warning"] = list(audit.issues)
            logger.warning(
                "Recovery action %s completed despite audit issues: %s",
                action.action_id,
                audit.summary(),
            )
        if not self.store.update_status(
            action.action_id,
            ActionStatus.COMPLETED,
            expected=ActionStatus.IN_PROGRESS,
            details=details,
        ):
            return self._lost_ownership(run)
        logger.info("Action %s completed at step %d", action.action_id, run.step)
        return LoopOutcome(action_id=action.action_id, status=ActionStatus.COMPLETED)

    def _finish_exhausted(self, run: _RunState) -> LoopOutcome:
        if run.guard.substantive_deliveries > 0:
            if not self.store.update_status(
                run.action.action_id,
                ActionStatus.COMPLETED,
                expected=ActionStatus.IN_PROGRESS,
                details={"step": run.step, "ended_by": "step_exhaustion"},
            ):
                return self._lost_ownership(run)
            return LoopOutcome(
                action_id=run.action.action_id,
                status=ActionStatus.COMPLETED,
                reason="max_steps_exhausted",
            )
        return self._fail(
            run,
            reason="max_steps_exhausted",
            failure_class=FailureClass.STEP_BUDGET_EXHAUSTED,
            error_summary=f"No final result after {run.step} step(s).",
        )

    def _finish_message_budget(self, run: _RunState) -> LoopOutcome:
        if run.guard.any_delivery_succeeded:
            if not self.store.update_status(
                run.action.action_id,
                ActionStatus.COMPLETED,
                expected=ActionStatus.IN_PROGRESS,
                details={"step": run.step, "ended_by": "message_budget"},
            ):
                return self._lost_ownership(run)
            return LoopOutcome(
                action_id=run.action.action_id,
                status=ActionStatus.COMPLETED,
                reason="message_budget_exhausted",
            )
        return self._fail(
            run,
            reason="message_budget_exhausted",
            failure_class=FailureClass.GUARDRAIL_ABORT,
        )

    def _wait_for_input(self, run: _RunState) -> LoopOutcome:
        if not self.store.update_status(
            run.action.action_id,
            ActionStatus.WAITING,
            expected=ActionStatus.IN_PROGRESS,
            details={"step": run.step},
        ):
            return self._lost_ownership(run)
        logger.info("Action %s is waiting for input", run.action.action_id)
        return LoopOutcome(action_id=run.action.action_id, status=ActionStatus.WAITING)

    def _cancel(self, run: _RunState) -> LoopOutcome:
        logger.info("Action %s canceled at step %d", run.action.action_id, run.step)
        return self._fail(run, reason="canceled", failure_class=FailureClass.CANCELED)

    def _oracle_unavailable(self, run: _RunState, failure: OracleFailure) -> LoopOutcome:
        outcome = self.retry_policy.schedule_or_fail(
            run.action,
            reason=FailureClass.ORACLE_UNAVAILABLE.value,
            failure_class=FailureClass.ORACLE_UNAVAILABLE,
            error_summary=failure.message,
        )
        self.store.add_event(
            action_id=run.action.action_id,
            event_type="oracle_failure",
            details=failure.classification.to_event_details(),
        )
        if not outcome.retried and not outcome.failed:
            return self._lost_ownership(run)
        return LoopOutcome(
            action_id=run.action.action_id,
            status=ActionStatus.FAILED,
            reason=FailureClass.ORACLE_UNAVAILABLE.value,
            retried=outcome.retried,
        )

    def _fail(
        self,
        run: _RunState,
        *,
        reason: str,
        failure_class: FailureClass,
        error_summary: str | None = None,
    ) -> LoopOutcome:
        if not self.store.update_status(
            run.action.action_id,
            ActionStatus.FAILED,
            reason=reason,
            failure_class=failure_class,
            error_summary=error_summary,
            expected=ActionStatus.IN_PROGRESS,
            details={"step": run.step},
        ):
            return self._lost_ownership(run)
        logger.info("Action %s failed at step %d: %s", run.action.action_id, run.step, reason)
        return LoopOutcome(action_id=run.action.action_id, status=ActionStatus.FAILED, reason=reason)

    def _lost_ownership(self, run: _RunState) -> LoopOutcome:
        logger.warning(
            "Action %s left in-progress outside the loop (step %d); stopping",
            run.action.action_id,
            run.step,
        )
        return LoopOutcome(action_id=run.action.action_id, status=None, reason="lost_ownership")

    def _trace(self, run: _RunState, entry: TraceEntryWrite) -> None:
        self.trace_store.append(run.action.action_id, entry)


def settle_action(
    *,
    store: ActionStore,
    trace_store: TraceStore,
    fallback: FallbackNotifier,
    action_id: str,
    retain_trace: bool = False,
) -> None:
    """Fallback notification and trace cleanup once an action is final.

    Waiting actions and failures with a scheduled retry are not final and keep
    their trace.
    """

    action = store.get_action(action_id)
    if action is None:
        return
    scheduled_retry = action.retry is not None and action.retry.next_retry_at is not None
    if action.status == ActionStatus.FAILED and not scheduled_retry:
        attempted = fallback.notify_if_silent(action_id)
        store.add_event(
            action_id=action_id,
            event_type=SETTLED_EVENT,
            details={"fallback_attempted": attempted},
        )
    elif action.status != ActionStatus.COMPLETED:
        return
    if not retain_trace:
        trace_store.cleanup(action_id)


def build_execution_loop(
    settings: Settings,
    *,
    store: ActionStore,
    oracle: DecisionOracle,
    executor: ToolExecutor,
    sleep: Callable[[float], None] = time.sleep,
) -> ExecutionLoop:
    """Wire an `ExecutionLoop` and its collaborators from settings."""

    trace_store = SqlTraceStore(store.engine)
    guardrails = GuardrailEngine(settings.guardrails)
    return ExecutionLoop(
        store=store,
        trace_store=trace_store,
        oracle=oracle,
        executor=executor,
        settings=settings.loop,
        guardrails=guardrails,
        review_gate=ReviewGate(oracle=oracle, sleep=sleep),
        auditor=CompletionAuditor(
            store=store,
            trace_store=trace_store,
            guardrails=guardrails,
            user_facing_sources=settings.producer.user_facing_sources,
            recovery_dedup_window_seconds=settings.recovery.recovery_dedup_window_seconds,
        ),
        retry_policy=RetryPolicy(
            store=store,
            base_delay_seconds=settings.retry.base_delay_seconds,
            max_delay_seconds=settings.retry.max_delay_seconds,
        ),
        fallback=FallbackNotifier(
            store=store,
            trace_store=trace_store,
            executor=executor,
            guardrails=guardrails,
            user_facing_sources=settings.producer.user_facing_sources,
        ),
        tiers=TierClassifier(oracle=oracle, settings=settings.loop, sleep=sleep),
        sleep=sleep,
    )


def _result_content(
    call: ToolInvocation,
    result: ToolResult,
    guardrails: GuardrailEngine,
) -> str | None:
    if guardrails.is_send(call.name):
        return message_text(call) or None
    if isinstance(result, ToolError):
        return None
    if result.value is None:
        return None
    return str(result.value)


def _observation(step: int, call: ToolInvocation, result: ToolResult) -> str:
    if isinstance(result, ToolError):
        return f"step {step} {call.name} error: {result.message[:_OBSERVATION_PREVIEW_CHARS]}"
    preview = "" if result.value is None else str(result.value)[:_OBSERVATION_PREVIEW_CHARS]
    return f"step {step} {call.name} ok: {preview}"
