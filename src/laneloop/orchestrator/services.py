"""Producer and cancellation use-cases over the action store."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import timedelta
from enum import Enum
from typing import Any

from laneloop.config import ProducerSettings
from laneloop.orchestrator.models import (
    ActionCreate,
    ActionStatus,
    ActionView,
    FailureClass,
    Lane,
)
from laneloop.orchestrator.repository import SETTLED_EVENT, ActionStore
from laneloop.orchestrator.text_similarity import normalize_message, token_overlap
from laneloop.storage.common import utc_now

logger = logging.getLogger(__name__)

_DEDUP_STATUSES = (
    ActionStatus.PENDING,
    ActionStatus.IN_PROGRESS,
    ActionStatus.WAITING,
    ActionStatus.COMPLETED,
)


@dataclass(slots=True)
class PushAction:
    """High-level command to queue one action."""

    description: str
    lane: Lane = Lane.USER
    priority: int | None = None
    payload: dict[str, Any] = field(default_factory=dict)
    max_attempts: int | None = None
    dedup: bool = True


class PushDisposition(str, Enum):
    CREATED = "created"
    DEDUPLICATED = "deduplicated"
    RESUMED = "resumed"


@dataclass(slots=True)
class PushResult:
    action: ActionView
    disposition: PushDisposition


class CancelDisposition(str, Enum):
    REQUESTED = "requested"
    CANCELED = "canceled"
    NOT_CANCELABLE = "not_cancelable"


class ProducerService:
    """Entry point for channel adapters, the CLI and the heartbeat scheduler."""

    def __init__(
        self,
        *,
        store: ActionStore,
        settings: ProducerSettings,
        default_max_attempts: int = 3,
    ) -> None:
        self.store = store
        self.settings = settings
        self.default_max_attempts = default_max_attempts

    def push(self, command: PushAction) -> PushResult:
        """Queue an action, folding it into a waiting or recent one of the same origin."""

        description = command.description.strip()
        if not description:
            raise ValueError("Action description must not be empty.")
        payload = _normalize_payload(command.payload)
        source = _optional_str(payload.get("source"))
        source_id = _optional_str(payload.get("source_id"))

        if source is not None:
            resumed = self._resume_waiting(
                description=description,
                source=source,
                source_id=source_id,
                lane=command.lane,
            )
            if resumed is not None:
                return PushResult(action=resumed, disposition=PushDisposition.RESUMED)

            duplicate = (
                self._find_duplicate(
                    description=description,
                    source=source,
                    source_id=source_id,
                    lane=command.lane,
                )
                if command.dedup
                else None
            )
            if duplicate is not None:
                logger.info("Push deduplicated against action %s", duplicate.action_id)
                self.store.add_event(
                    action_id=duplicate.action_id,
                    event_type="push_deduplicated",
                    details={"description": description[:200]},
                )
                return PushResult(action=duplicate, disposition=PushDisposition.DEDUPLICATED)

        action = self.store.push(
            ActionCreate(
                description=description,
                lane=command.lane,
                priority=(
                    command.priority
                    if command.priority is not None
                    else self.settings.default_priority
                ),
                payload=payload,
                max_attempts=command.max_attempts or self.default_max_attempts,
            ),
        )
        return PushResult(action=action, disposition=PushDisposition.CREATED)

    def cancel(self, action_id: str, *, reason: str = "canceled") -> CancelDisposition:
        """Cancel cooperatively when running, immediately when queued or waiting."""

        action = self.store.require_action(action_id)
        if action.status == ActionStatus.IN_PROGRESS:
            if self.store.request_cancel(action_id):
                return CancelDisposition.REQUESTED
            return CancelDisposition.NOT_CANCELABLE
        if action.status in (ActionStatus.PENDING, ActionStatus.WAITING):
            if self.store.update_status(
                action_id,
                ActionStatus.FAILED,
                reason=reason,
                failure_class=FailureClass.CANCELED,
                expected=action.status,
            ):
                # Canceled on request; no fallback message is owed.
                self.store.add_event(
                    action_id=action_id,
                    event_type=SETTLED_EVENT,
                    details={"fallback_attempted": False},
                )
                return CancelDisposition.CANCELED
        return CancelDisposition.NOT_CANCELABLE

    def clear_queue(self, *, reason: str = "queue_cleared", lane: Lane | None = None) -> list[str]:
        """Cancel every queued, waiting and running action; returns touched ids."""

        touched: list[str] = []
        for status in (ActionStatus.PENDING, ActionStatus.WAITING, ActionStatus.IN_PROGRESS):
            for action in self.store.list_actions(status=status, lane=lane):
                if self.cancel(action.action_id, reason=reason) != CancelDisposition.NOT_CANCELABLE:
                    touched.append(action.action_id)
        if touched:
            logger.info("Cleared %d action(s): %s", len(touched), reason)
        return touched

    def _resume_waiting(
        self,
        *,
        description: str,
        source: str,
        source_id: str | None,
        lane: Lane,
    ) -> ActionView | None:
        waiting = self.store.find_waiting_for_origin(source=source, source_id=source_id)
        if waiting is None or waiting.lane != lane:
            return None
        resumed = self.store.resume_waiting(
            waiting.action_id,
            note=f"New input arrived: {description}",
            appended_input=description,
        )
        if not resumed:
            return None
        logger.info("Input for %s/%s resumed action %s", source, source_id, waiting.action_id)
        return self.store.require_action(waiting.action_id)

    def _find_duplicate(
        self,
        *,
        description: str,
        source: str,
        source_id: str | None,
        lane: Lane,
    ) -> ActionView | None:
        if self.settings.dedup_window_seconds <= 0:
            return None
        since = utc_now() - timedelta(seconds=self.settings.dedup_window_seconds)
        normalized = normalize_message(description)
        for candidate in self.store.recent_for_origin(
            source=source,
            source_id=source_id,
            since=since,
            statuses=_DEDUP_STATUSES,
        ):
            if candidate.lane != lane or candidate.is_recovery:
                continue
            if normalize_message(candidate.description) == normalized:
                return candidate
            if token_overlap(candidate.description, description) >= self.settings.dedup_similarity:
                return candidate
        return None


def _normalize_payload(payload: dict[str, Any]) -> dict[str, Any]:
    normalized = {key: value for key, value in payload.items() if value is not None}
    for key in ("source", "source_id", "session_id"):
        value = _optional_str(normalized.get(key))
        if value is None:
            normalized.pop(key, None)
        else:
            normalized[key] = value
    if "source" in normalized:
        normalized["source"] = normalized["source"].lower()
    return normalized


def _optional_str(value: object) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None
