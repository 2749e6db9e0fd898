"""Completion audit run before an action's `goals_met` claim is honored.

The audit reads only the action's own trace. When it finds that the user was
left without a result, the action fails with `completion_audit` and a single
recovery action is queued for the same origin instead of a silent success.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta

from laneloop.orchestrator.guardrails import GuardrailEngine
from laneloop.orchestrator.models import (
    ActionCreate,
    ActionStatus,
    ActionView,
    FailureClass,
    TraceEntryView,
    TraceKind,
)
from laneloop.orchestrator.repository import ActionStore
from laneloop.orchestrator.text_similarity import is_acknowledgement, is_substantive
from laneloop.orchestrator.trace import TraceStore
from laneloop.storage.common import utc_now

logger = logging.getLogger(__name__)

NO_USER_MESSAGE = "no_user_message"
UNDELIVERED_RESULTS = "undelivered_results"
ACKNOWLEDGEMENT_ONLY = "acknowledgement_only"
UNRESOLVED_TOOL_ERROR = "unresolved_tool_error"

_EPOCH = datetime(1970, 1, 1, tzinfo=UTC)
_ISSUE_TEXT: dict[str, str] = {
    NO_USER_MESSAGE: "the user never received a message",
    UNDELIVERED_RESULTS: "results were gathered after the last message and never delivered",
    ACKNOWLEDGEMENT_ONLY: "only acknowledgements were sent although research ran",
    UNRESOLVED_TOOL_ERROR: "a tool error was never followed by a real answer",
}
_ORIGIN_KEYS: tuple[str, ...] = ("source", "source_id", "session_id")


@dataclass(slots=True)
class AuditResult:
    """Findings of one completion audit."""

    issues: list[str] = field(default_factory=list)
    messages_sent: int = 0
    deep_tools_run: int = 0

    @property
    def passed(self) -> bool:
        return not self.issues

    def summary(self) -> str:
        return "; ".join(_ISSUE_TEXT.get(issue, issue) for issue in self.issues)


class CompletionAuditor:
    """Checks a finished trace for undelivered work and queues targeted recovery."""

    def __init__(
        self,
        *,
        store: ActionStore,
        trace_store: TraceStore,
        guardrails: GuardrailEngine,
        user_facing_sources: tuple[str, ...],
        recovery_dedup_window_seconds: int = 900,
    ) -> None:
        self.store = store
        self.trace_store = trace_store
        self.guardrails = guardrails
        self.user_facing_sources = frozenset(user_facing_sources)
        self.recovery_dedup_window_seconds = recovery_dedup_window_seconds

    def is_user_facing(self, action: ActionView) -> bool:
        return action.source is not None and action.source in self.user_facing_sources

    def audit(self, action: ActionView) -> AuditResult:
        entries = [
            entry
            for entry in self.trace_store.list_for_action(action.action_id)
            if entry.kind == TraceKind.TOOL and entry.tool
        ]
        sends = [entry for entry in entries if self._is_successful_send(entry)]
        deep = [
            entry
            for entry in entries
            if entry.success
            and not self.guardrails.is_send(entry.tool or "")
            and self.guardrails.is_deep(entry.tool or "")
        ]
        result = AuditResult(messages_sent=len(sends), deep_tools_run=len(deep))
        if not self.is_user_facing(action):
            return result

        if not sends:
            result.issues.append(NO_USER_MESSAGE)
        else:
            last_send_id = sends[-1].entry_id
            if any(entry.entry_id > last_send_id for entry in deep):
                result.issues.append(UNDELIVERED_RESULTS)
            if deep and all(self._is_ack_only(entry) for entry in sends):
                result.issues.append(ACKNOWLEDGEMENT_ONLY)

        if self._has_unresolved_error(entries, sends):
            result.issues.append(UNRESOLVED_TOOL_ERROR)
        return result

    def enforce(self, action: ActionView, result: AuditResult) -> ActionView | None:
        """Fail `action` and queue one recovery action; returns the recovery action if created."""

        failed = self.store.update_status(
            action.action_id,
            ActionStatus.FAILED,
            reason=FailureClass.COMPLETION_AUDIT.value,
            failure_class=FailureClass.COMPLETION_AUDIT,
            error_summary=result.summary(),
            expected=ActionStatus.IN_PROGRESS,
            details={"issues": list(result.issues)},
        )
        if not failed:
            return None
        logger.warning(
            "Completion audit failed for action %s: %s",
            action.action_id,
            result.summary(),
        )

        existing = self._existing_recovery(action)
        if existing is not None:
            logger.info(
                "Recovery action %s already covers origin of %s",
                existing.action_id,
                action.action_id,
            )
            self.store.add_event(
                action_id=action.action_id,
                event_type="recovery_deduplicated",
                details={"recovery_action_id": existing.action_id},
            )
            return None

        payload: dict[str, object] = {
            key: action.payload[key] for key in _ORIGIN_KEYS if action.payload.get(key)
        }
        payload.update(
            {
                "is_recovery": True,
                "recovery_of": action.action_id,
                "audit_issues": list(result.issues),
            },
        )
        recovery = self.store.push(
            ActionCreate(
                description=_recovery_description(action, result),
                lane=action.lane,
                priority=action.priority,
                payload=payload,
                max_attempts=action.max_attempts,
            ),
        )
        self.store.add_event(
            action_id=action.action_id,
            event_type="recovery_enqueued",
            details={"recovery_action_id": recovery.action_id},
        )
        logger.info("Queued recovery action %s for %s", recovery.action_id, action.action_id)
        return recovery

    def _existing_recovery(self, action: ActionView) -> ActionView | None:
        if action.source is None:
            matches = self.store.list_actions(
                lambda item: item.payload.get("recovery_of") == action.action_id,
                limit=1,
            )
            return matches[0] if matches else None

        active = self.store.recent_for_origin(
            source=action.source,
            source_id=action.source_id,
            since=_EPOCH,
            statuses=(ActionStatus.PENDING, ActionStatus.IN_PROGRESS),
        )
        recent = self.store.recent_for_origin(
            source=action.source,
            source_id=action.source_id,
            since=utc_now() - timedelta(seconds=self.recovery_dedup_window_seconds),
            statuses=(ActionStatus.COMPLETED,),
        )
        for candidate in (*active, *recent):
            if candidate.is_recovery and candidate.action_id != action.action_id:
                return candidate
        return None

    def _is_successful_send(self, entry: TraceEntryView) -> bool:
        return bool(entry.success) and self.guardrails.is_send(entry.tool or "")

    def _is_ack_only(self, entry: TraceEntryView) -> bool:
        text = entry.content or ""
        return is_acknowledgement(text) and not is_substantive(
            text,
            min_chars=self.guardrails.settings.substantive_min_chars,
        )

    def _has_unresolved_error(
        self,
        entries: list[TraceEntryView],
        sends: list[TraceEntryView],
    ) -> bool:
        """A failed tool that never succeeded later, with no real message after the failure."""

        for index, entry in enumerate(entries):
            if entry.success is not False:
                continue
            later = entries[index + 1 :]
            if any(item.tool == entry.tool and item.success for item in later):
                continue
            if not any(
                send.entry_id > entry.entry_id and not self._is_ack_only(send)
                for send in sends
            ):
                return True
        return False


def _recovery_description(action: ActionView, result: AuditResult) -> str:
    return (
        f"Recovery for action {action.action_id}: finish and deliver the original request.\n"
        f"Problem found: {result.summary()}.\n"
        f"\n"
        f"Original request: {action.description}"
    )
