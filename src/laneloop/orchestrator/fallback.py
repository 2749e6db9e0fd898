"""Last-resort notification for user-facing actions that failed in silence."""

from __future__ import annotations

import logging

from laneloop.orchestrator.backend.base import ToolExecutor
from laneloop.orchestrator.failure_classifier import normalize_tool_result
from laneloop.orchestrator.guardrails import GuardrailEngine
from laneloop.orchestrator.models import ActionStatus, ActionView, ToolError, TraceKind
from laneloop.orchestrator.repository import ActionStore
from laneloop.orchestrator.trace import TraceStore

logger = logging.getLogger(__name__)

# source -> (send tool, target argument)
CHANNEL_SEND_TOOLS: dict[str, tuple[str, str]] = {
    "telegram": ("send_telegram", "chat_id"),
    "whatsapp": ("send_whatsapp", "jid"),
    "discord": ("send_discord", "channel_id"),
    "slack": ("send_slack", "channel_id"),
    "gateway": ("send_gateway_chat", "chat_id"),
    "email": ("send_email", "to"),
}

FALLBACK_MESSAGE = (
    "Sorry, I could not finish your request ({reason}). "
    "Nothing was lost; please send it again or ask me to retry."
)


class FallbackNotifier:
    """Sends one apology/status message, bypassing every per-action guard-rail."""

    def __init__(
        self,
        *,
        store: ActionStore,
        trace_store: TraceStore,
        executor: ToolExecutor,
        guardrails: GuardrailEngine,
        user_facing_sources: tuple[str, ...],
    ) -> None:
        self.store = store
        self.trace_store = trace_store
        self.executor = executor
        self.guardrails = guardrails
        self.user_facing_sources = frozenset(user_facing_sources)

    def messages_sent(self, action_id: str) -> int:
        return sum(
            1
            for entry in self.trace_store.list_for_action(action_id)
            if entry.kind == TraceKind.TOOL
            and entry.success
            and self.guardrails.is_send(entry.tool or "")
        )

    def notify_if_silent(self, action_id: str) -> bool:
        """Attempt the notification once; returns whether this call attempted it."""

        action = self.store.get_action(action_id)
        if action is None or not self._eligible(action):
            return False
        if self.messages_sent(action_id) > 0:
            return False

        channel = CHANNEL_SEND_TOOLS.get(action.source or "")
        if channel is None:
            logger.warning("No fallback channel for source %r of %s", action.source, action_id)
            return False
        if not self.store.mark_fallback_notified(action_id):
            return False

        tool, target_key = channel
        arguments = {
            target_key: action.source_id or "",
            "message": FALLBACK_MESSAGE.format(
                reason=(action.failure_class.value if action.failure_class else "error"),
            ),
        }
        try:
            result = normalize_tool_result(self.executor.execute(tool, arguments))
        except Exception as error:  # noqa: BLE001
            result = ToolError(message=str(error))
        if isinstance(result, ToolError):
            logger.warning("Fallback notification for %s failed: %s", action_id, result.message)
        else:
            logger.info("Fallback notification sent for %s via %s", action_id, tool)
        return True

    def _eligible(self, action: ActionView) -> bool:
        if action.status != ActionStatus.FAILED:
            return False
        if action.retry is not None and action.retry.next_retry_at is not None:
            return False
        if action.fallback_notified_at is not None:
            return False
        return action.source is not None and action.source in self.user_facing_sources
