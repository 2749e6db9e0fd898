"""Persistent action store: priority queue plus lifecycle state machine."""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from datetime import datetime
from pathlib import Path
from typing import Any
from uuid import uuid4

from sqlalchemy import func, literal_column
from sqlalchemy import update as sa_update
from sqlmodel import Session, col, select

from laneloop.orchestrator.models import (
    ActionCreate,
    ActionDetails,
    ActionEventView,
    ActionStatus,
    ActionView,
    FailureClass,
    Lane,
    RetryState,
    ScheduleView,
    is_transition_allowed,
)
from laneloop.storage.alembic_runner import upgrade_head
from laneloop.storage.common import (
    build_sqlite_engine,
    optional_utc,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from laneloop.storage.sqlmodel_models import ActionEventRow, ActionRow, HeartbeatScheduleRow

logger = logging.getLogger(__name__)

_ACTIVE_STATUSES = (
    ActionStatus.PENDING.value,
    ActionStatus.IN_PROGRESS.value,
    ActionStatus.WAITING.value,
)

# Written once a terminal failure has had its fallback decision made.
SETTLED_EVENT = "settled"


class ActionNotFoundError(RuntimeError):
    """Raised when an action id does not exist in the store."""

    def __init__(self, action_id: str) -> None:
        super().__init__(f"Action not found: {action_id}")
        self.action_id = action_id


class InvalidTransitionError(RuntimeError):
    """Raised when a status change is not an edge of the lifecycle graph."""

    def __init__(self, action_id: str, current: ActionStatus, target: ActionStatus) -> None:
        super().__init__(
            f"Action {action_id} cannot move from {current.value} to {target.value}.",
        )
        self.action_id = action_id
        self.current = current
        self.target = target


class ActionStore:
    """Queue persistence facade backed by SQLModel + SQLite."""

    def __init__(self, db_path: Path, *, busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations up to head."""

        upgrade_head(self.db_path)

    def push(self, payload: ActionCreate) -> ActionView:
        """Create a pending action."""

        now = utc_now()
        action_id = payload.action_id or str(uuid4())
        with Session(self.engine) as session:
            row = ActionRow(
                action_id=action_id,
                description=payload.description,
                priority=payload.priority,
                lane=payload.lane.value,
                status=ActionStatus.PENDING.value,
                payload_json=_dump_payload(payload.payload),
                source=_origin_field(payload.payload, "source"),
                source_id=_origin_field(payload.payload, "source_id"),
                retry_attempts=0,
                retry_max_attempts=payload.max_attempts,
                created_at=to_db_datetime(now),
                updated_at=to_db_datetime(now),
            )
            session.add(row)
            # The event row references the action; insert the action first.
            session.flush()
            self._add_event(
                session=session,
                action_id=action_id,
                event_type="pushed",
                status_from=None,
                status_to=ActionStatus.PENDING,
                details={
                    "lane": payload.lane.value,
                    "priority": payload.priority,
                    "source": row.source,
                },
            )
            session.commit()
            session.refresh(row)
            return _to_action_view(row)

    def claim_next(self, *, lane: Lane, worker_id: str) -> ActionView | None:
        """Atomically move the best pending action of `lane` to in-progress."""

        while True:
            now = to_db_datetime(utc_now())
            with Session(self.engine) as session:
                candidate = session.exec(
                    select(ActionRow)
                    .where(
                        ActionRow.lane == lane.value,
                        ActionRow.status == ActionStatus.PENDING.value,
                    )
                    .order_by(
                        col(ActionRow.priority).desc(),
                        col(ActionRow.created_at).asc(),
                        literal_column("actions.rowid").asc(),
                    )
                    .limit(1),
                ).one_or_none()
                if candidate is None:
                    return None

                result = session.exec(
                    sa_update(ActionRow)
                    .where(
                        col(ActionRow.action_id) == candidate.action_id,
                        col(ActionRow.status) == ActionStatus.PENDING.value,
                    )
                    .values(
                        status=ActionStatus.IN_PROGRESS.value,
                        worker_id=worker_id,
                        started_at=now,
                        heartbeat_at=now,
                        finished_at=None,
                        cancel_requested=False,
                        updated_at=now,
                    ),
                )
                if result.rowcount != 1:
                    session.rollback()
                    continue

                claimed = session.exec(
                    select(ActionRow).where(ActionRow.action_id == candidate.action_id),
                ).one()
                self._add_event(
                    session=session,
                    action_id=claimed.action_id,
                    event_type="claimed",
                    status_from=ActionStatus.PENDING,
                    status_to=ActionStatus.IN_PROGRESS,
                    details={"worker_id": worker_id, "lane": lane.value},
                )
                session.commit()
                return _to_action_view(claimed)

    def update_status(  # noqa: PLR0913
        self,
        action_id: str,
        status: ActionStatus,
        *,
        reason: str | None = None,
        failure_class: FailureClass | None = None,
        error_summary: str | None = None,
        expected: ActionStatus | None = None,
        details: dict[str, object] | None = None,
    ) -> bool:
        """Move an action along one lifecycle edge.

        Returns `False` when the row changed concurrently (or did not match
        `expected`); raises `InvalidTransitionError` for edges outside the graph.
        """

        now = to_db_datetime(utc_now())
        values: dict[str, Any] = {}
        if status == ActionStatus.IN_PROGRESS:
            values = {"started_at": now, "heartbeat_at": now}
        elif status == ActionStatus.COMPLETED:
            values = {
                "finished_at": now,
                "heartbeat_at": now,
                "cancel_requested": False,
                "next_retry_at": None,
                "failure_reason": None,
                "failure_class": None,
            }
        elif status == ActionStatus.FAILED:
            values = {
                "finished_at": now,
                "cancel_requested": False,
                "next_retry_at": None,
                "failure_reason": reason,
                "failure_class": failure_class.value if failure_class is not None else None,
                "error_summary": error_summary,
            }
        elif status == ActionStatus.WAITING:
            values = {"worker_id": None, "heartbeat_at": now, "cancel_requested": False}
        elif status == ActionStatus.PENDING:
            values = {
                "worker_id": None,
                "started_at": None,
                "heartbeat_at": None,
                "finished_at": None,
                "next_retry_at": None,
                "cancel_requested": False,
            }

        event_details: dict[str, object] = dict(details or {})
        if reason is not None:
            event_details["reason"] = reason
        if failure_class is not None:
            event_details["failure_class"] = failure_class.value
        return self._transition(
            action_id=action_id,
            target=status,
            values=values,
            event_type=status.value,
            details=event_details,
            expected=expected,
        )

    def fail_action(  # noqa: PLR0913
        self,
        action_id: str,
        *,
        reason: str,
        failure_class: FailureClass,
        error_summary: str | None = None,
        retry_at: datetime | None = None,
        expected: ActionStatus | None = None,
    ) -> bool:
        """Mark an action failed, optionally with a retry schedule."""

        if retry_at is None:
            return self.update_status(
                action_id,
                ActionStatus.FAILED,
                reason=reason,
                failure_class=failure_class,
                error_summary=error_summary,
                expected=expected,
            )

        now = to_db_datetime(utc_now())
        return self._transition(
            action_id=action_id,
            target=ActionStatus.FAILED,
            values={
                "finished_at": now,
                "cancel_requested": False,
                "failure_reason": reason,
                "failure_class": failure_class.value,
                "error_summary": error_summary,
                "retry_attempts": ActionRow.retry_attempts + 1,
                "next_retry_at": to_db_datetime(retry_at),
            },
            event_type="retry_scheduled",
            details={
                "reason": reason,
                "failure_class": failure_class.value,
                "next_retry_at": to_utc_aware_datetime(retry_at).isoformat(),
            },
            expected=expected,
        )

    def requeue_due_retries(self, *, now: datetime | None = None) -> list[str]:
        """Move failed actions whose retry time has passed back to pending."""

        cutoff = to_db_datetime(now or utc_now())
        requeued: list[str] = []
        with Session(self.engine) as session:
            rows = session.exec(
                select(ActionRow)
                .where(
                    ActionRow.status == ActionStatus.FAILED.value,
                    col(ActionRow.next_retry_at).is_not(None),
                    col(ActionRow.next_retry_at) <= cutoff,
                )
                .order_by(col(ActionRow.next_retry_at).asc()),
            ).all()
            for row in rows:
                if row.retry_attempts > row.retry_max_attempts:
                    continue
                result = session.exec(
                    sa_update(ActionRow)
                    .where(
                        col(ActionRow.action_id) == row.action_id,
                        col(ActionRow.status) == ActionStatus.FAILED.value,
                        col(ActionRow.next_retry_at).is_not(None),
                    )
                    .values(
                        status=ActionStatus.PENDING.value,
                        next_retry_at=None,
                        worker_id=None,
                        started_at=None,
                        heartbeat_at=None,
                        finished_at=None,
                        updated_at=to_db_datetime(utc_now()),
                    ),
                )
                if result.rowcount != 1:
                    continue
                self._add_event(
                    session=session,
                    action_id=row.action_id,
                    event_type="retry_requeued",
                    status_from=ActionStatus.FAILED,
                    status_to=ActionStatus.PENDING,
                    details={"attempt": row.retry_attempts},
                )
                requeued.append(row.action_id)
            session.commit()
        return requeued

    def update_payload(self, action_id: str, patch: dict[str, Any]) -> ActionView:
        """Shallow-merge `patch` into the action payload."""

        with Session(self.engine) as session:
            row = self._get_row(session=session, action_id=action_id)
            merged = _load_payload(row.payload_json)
            merged.update(patch)
            row.payload_json = _dump_payload(merged)
            row.source = _origin_field(merged, "source")
            row.source_id = _origin_field(merged, "source_id")
            row.updated_at = to_db_datetime(utc_now())
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_action_view(row)

    def resume_waiting(
        self,
        action_id: str,
        *,
        note: str,
        appended_input: str | None = None,
        event_type: str = "resumed",
    ) -> bool:
        """Move a waiting action back to pending, recording `note` in its payload."""

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            row = self._get_row(session=session, action_id=action_id)
            if row.status != ActionStatus.WAITING.value:
                return False
            payload = _load_payload(row.payload_json)
            notes = [str(item) for item in payload.get("notes", []) if item]
            notes.append(note)
            payload["notes"] = notes
            description = row.description
            if appended_input:
                description = f"{description}\n\nAdditional input: {appended_input}"

            result = session.exec(
                sa_update(ActionRow)
                .where(
                    col(ActionRow.action_id) == action_id,
                    col(ActionRow.status) == ActionStatus.WAITING.value,
                )
                .values(
                    status=ActionStatus.PENDING.value,
                    description=description,
                    payload_json=_dump_payload(payload),
                    worker_id=None,
                    started_at=None,
                    heartbeat_at=None,
                    updated_at=now,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            self._add_event(
                session=session,
                action_id=action_id,
                event_type=event_type,
                status_from=ActionStatus.WAITING,
                status_to=ActionStatus.PENDING,
                details={"note": note, "has_input": appended_input is not None},
            )
            session.commit()
            return True

    def touch(self, action_id: str) -> bool:
        """Update heartbeat for an in-progress action."""

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(ActionRow)
                .where(
                    col(ActionRow.action_id) == action_id,
                    col(ActionRow.status) == ActionStatus.IN_PROGRESS.value,
                )
                .values(heartbeat_at=now, updated_at=now),
            )
            session.commit()
            return result.rowcount == 1

    def request_cancel(self, action_id: str) -> bool:
        """Flag an in-progress action for cooperative cancellation."""

        with Session(self.engine) as session:
            result = session.exec(
                sa_update(ActionRow)
                .where(
                    col(ActionRow.action_id) == action_id,
                    col(ActionRow.status) == ActionStatus.IN_PROGRESS.value,
                )
                .values(cancel_requested=True, updated_at=to_db_datetime(utc_now())),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            self._add_event(
                session=session,
                action_id=action_id,
                event_type="cancel_requested",
                status_from=ActionStatus.IN_PROGRESS,
                status_to=ActionStatus.IN_PROGRESS,
                details={},
            )
            session.commit()
            return True

    def clear_cancel(self, action_id: str) -> None:
        with Session(self.engine) as session:
            session.exec(
                sa_update(ActionRow)
                .where(col(ActionRow.action_id) == action_id)
                .values(cancel_requested=False),
            )
            session.commit()

    def is_cancel_requested(self, action_id: str) -> bool:
        with Session(self.engine) as session:
            flag = session.exec(
                select(ActionRow.cancel_requested).where(ActionRow.action_id == action_id),
            ).one_or_none()
        return bool(flag)

    def mark_fallback_notified(self, action_id: str) -> bool:
        """Claim the one-time fallback notification slot for an action."""

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(ActionRow)
                .where(
                    col(ActionRow.action_id) == action_id,
                    col(ActionRow.fallback_notified_at).is_(None),
                )
                .values(fallback_notified_at=now, updated_at=now),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            self._add_event(
                session=session,
                action_id=action_id,
                event_type="fallback_notified",
                status_from=None,
                status_to=None,
                details={},
            )
            session.commit()
            return True

    def get_action(self, action_id: str) -> ActionView | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(ActionRow).where(ActionRow.action_id == action_id),
            ).one_or_none()
        return _to_action_view(row) if row is not None else None

    def require_action(self, action_id: str) -> ActionView:
        action = self.get_action(action_id)
        if action is None:
            raise ActionNotFoundError(action_id)
        return action

    def list_actions(
        self,
        predicate: Callable[[ActionView], bool] | None = None,
        *,
        status: ActionStatus | None = None,
        lane: Lane | None = None,
        limit: int | None = None,
    ) -> list[ActionView]:
        """List actions newest first, filtered in SQL by status/lane and in Python by predicate."""

        with Session(self.engine) as session:
            statement = select(ActionRow).order_by(
                col(ActionRow.created_at).desc(),
                literal_column("actions.rowid").desc(),
            )
            if status is not None:
                statement = statement.where(ActionRow.status == status.value)
            if lane is not None:
                statement = statement.where(ActionRow.lane == lane.value)
            if limit is not None and predicate is None:
                statement = statement.limit(limit)
            rows = session.exec(statement).all()

        views = [_to_action_view(row) for row in rows]
        if predicate is not None:
            views = [view for view in views if predicate(view)]
            if limit is not None:
                views = views[:limit]
        return views

    def get_action_details(
        self,
        action_id: str,
        *,
        event_limit: int | None = None,
    ) -> ActionDetails | None:
        """Return action with its event stream (oldest first)."""

        with Session(self.engine) as session:
            row = session.exec(
                select(ActionRow).where(ActionRow.action_id == action_id),
            ).one_or_none()
            if row is None:
                return None
            event_rows = session.exec(
                select(ActionEventRow)
                .where(ActionEventRow.action_id == action_id)
                .order_by(col(ActionEventRow.created_at).asc(), col(ActionEventRow.id).asc()),
            ).all()

        events = [_to_event_view(event_row) for event_row in event_rows]
        if event_limit is not None:
            events = events[-event_limit:]
        return ActionDetails(action=_to_action_view(row), events=events)

    def recent_for_origin(
        self,
        *,
        source: str,
        source_id: str | None,
        since: datetime,
        statuses: tuple[ActionStatus, ...] | None = None,
    ) -> list[ActionView]:
        """Actions created for one origin since `since`, newest first."""

        with Session(self.engine) as session:
            statement = select(ActionRow).where(
                ActionRow.source == source,
                col(ActionRow.created_at) >= to_db_datetime(since),
            )
            if source_id is not None:
                statement = statement.where(ActionRow.source_id == source_id)
            if statuses:
                statement = statement.where(
                    col(ActionRow.status).in_([item.value for item in statuses]),
                )
            rows = session.exec(statement.order_by(col(ActionRow.created_at).desc())).all()
        return [_to_action_view(row) for row in rows]

    def find_waiting_for_origin(self, *, source: str, source_id: str | None) -> ActionView | None:
        """Most recent waiting action for one origin, if any."""

        with Session(self.engine) as session:
            statement = select(ActionRow).where(
                ActionRow.source == source,
                ActionRow.status == ActionStatus.WAITING.value,
            )
            if source_id is not None:
                statement = statement.where(ActionRow.source_id == source_id)
            row = session.exec(
                statement.order_by(col(ActionRow.updated_at).desc()).limit(1),
            ).one_or_none()
        return _to_action_view(row) if row is not None else None

    def stale_in_progress(self, *, heartbeat_before: datetime) -> list[ActionView]:
        """In-progress actions whose last heartbeat is older than the cutoff."""

        cutoff = to_db_datetime(heartbeat_before)
        with Session(self.engine) as session:
            rows = session.exec(
                select(ActionRow).where(
                    ActionRow.status == ActionStatus.IN_PROGRESS.value,
                    func.coalesce(ActionRow.heartbeat_at, ActionRow.started_at) < cutoff,
                ),
            ).all()
        return [_to_action_view(row) for row in rows]

    def overdue_in_progress(self, *, started_before: datetime) -> list[ActionView]:
        """In-progress actions running since before the cutoff."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(ActionRow).where(
                    ActionRow.status == ActionStatus.IN_PROGRESS.value,
                    col(ActionRow.started_at) < to_db_datetime(started_before),
                ),
            ).all()
        return [_to_action_view(row) for row in rows]

    def expired_waiting(self, *, updated_before: datetime) -> list[ActionView]:
        """Waiting actions that have had no input since the cutoff."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(ActionRow).where(
                    ActionRow.status == ActionStatus.WAITING.value,
                    func.coalesce(ActionRow.heartbeat_at, ActionRow.updated_at)
                    < to_db_datetime(updated_before),
                ),
            ).all()
        return [_to_action_view(row) for row in rows]

    def unsettled_failures(
        self,
        *,
        finished_before: datetime,
        sources: frozenset[str],
    ) -> list[ActionView]:
        """Terminal failures from `sources` that never got a `settled` event."""

        settled = select(ActionEventRow.id).where(
            ActionEventRow.action_id == ActionRow.action_id,
            ActionEventRow.event_type == SETTLED_EVENT,
        )
        with Session(self.engine) as session:
            rows = session.exec(
                select(ActionRow).where(
                    ActionRow.status == ActionStatus.FAILED.value,
                    col(ActionRow.next_retry_at).is_(None),
                    col(ActionRow.fallback_notified_at).is_(None),
                    col(ActionRow.source).in_(sorted(sources)),
                    col(ActionRow.finished_at) < to_db_datetime(finished_before),
                    ~settled.exists(),
                ),
            ).all()
        return [_to_action_view(row) for row in rows]

    def active_actions(self) -> list[ActionView]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(ActionRow).where(col(ActionRow.status).in_(_ACTIVE_STATUSES)),
            ).all()
        return [_to_action_view(row) for row in rows]

    def actions_created_since(self, since: datetime) -> list[ActionView]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(ActionRow).where(col(ActionRow.created_at) >= to_db_datetime(since)),
            ).all()
        return [_to_action_view(row) for row in rows]

    def events_since(self, since: datetime) -> list[ActionEventView]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(ActionEventRow)
                .where(col(ActionEventRow.created_at) >= to_db_datetime(since))
                .order_by(col(ActionEventRow.created_at).asc()),
            ).all()
        return [_to_event_view(row) for row in rows]

    def queue_counts(self) -> dict[str, dict[str, int]]:
        """Action counts keyed by lane, then status."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(ActionRow.lane, ActionRow.status, func.count())
                .group_by(ActionRow.lane, ActionRow.status)
                .order_by(ActionRow.lane, ActionRow.status),
            ).all()
        counts: dict[str, dict[str, int]] = {}
        for lane, status, count in rows:
            counts.setdefault(lane, {})[status] = int(count)
        return counts

    def add_event(  # noqa: PLR0913
        self,
        *,
        action_id: str,
        event_type: str,
        status_from: ActionStatus | None = None,
        status_to: ActionStatus | None = None,
        details: dict[str, object] | None = None,
    ) -> None:
        """Append one audit event outside of a status transition."""

        with Session(self.engine) as session:
            self._add_event(
                session=session,
                action_id=action_id,
                event_type=event_type,
                status_from=status_from,
                status_to=status_to,
                details=details or {},
            )
            session.commit()

    def add_schedule(  # noqa: PLR0913
        self,
        *,
        name: str,
        description: str,
        interval_seconds: int,
        priority: int,
        first_fire_at: datetime | None = None,
        schedule_id: str | None = None,
    ) -> ScheduleView:
        """Persist one heartbeat schedule."""

        now = utc_now()
        with Session(self.engine) as session:
            row = HeartbeatScheduleRow(
                schedule_id=schedule_id or str(uuid4()),
                name=name,
                description=description,
                interval_seconds=interval_seconds,
                priority=priority,
                enabled=True,
                next_fire_at=to_db_datetime(first_fire_at or now),
                created_at=to_db_datetime(now),
                updated_at=to_db_datetime(now),
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_schedule_view(row)

    def list_schedules(self, *, enabled_only: bool = False) -> list[ScheduleView]:
        with Session(self.engine) as session:
            statement = select(HeartbeatScheduleRow).order_by(
                col(HeartbeatScheduleRow.created_at).asc(),
            )
            if enabled_only:
                statement = statement.where(col(HeartbeatScheduleRow.enabled).is_(True))
            rows = session.exec(statement).all()
        return [_to_schedule_view(row) for row in rows]

    def remove_schedule(self, schedule_id: str) -> bool:
        with Session(self.engine) as session:
            row = session.exec(
                select(HeartbeatScheduleRow).where(
                    HeartbeatScheduleRow.schedule_id == schedule_id,
                ),
            ).one_or_none()
            if row is None:
                return False
            session.delete(row)
            session.commit()
            return True

    def due_schedules(self, *, now: datetime) -> list[ScheduleView]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(HeartbeatScheduleRow)
                .where(
                    col(HeartbeatScheduleRow.enabled).is_(True),
                    col(HeartbeatScheduleRow.next_fire_at) <= to_db_datetime(now),
                )
                .order_by(col(HeartbeatScheduleRow.next_fire_at).asc()),
            ).all()
        return [_to_schedule_view(row) for row in rows]

    def advance_schedule(
        self,
        schedule_id: str,
        *,
        next_fire_at: datetime,
        fired_at: datetime | None = None,
        action_id: str | None = None,
    ) -> bool:
        """Move a schedule's next fire time, recording the fire when one happened."""

        values: dict[str, Any] = {
            "next_fire_at": to_db_datetime(next_fire_at),
            "updated_at": to_db_datetime(utc_now()),
        }
        if fired_at is not None:
            values["last_fired_at"] = to_db_datetime(fired_at)
            values["last_action_id"] = action_id
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(HeartbeatScheduleRow)
                .where(col(HeartbeatScheduleRow.schedule_id) == schedule_id)
                .values(**values),
            )
            session.commit()
            return result.rowcount == 1

    def _transition(  # noqa: PLR0913
        self,
        *,
        action_id: str,
        target: ActionStatus,
        values: dict[str, Any],
        event_type: str,
        details: dict[str, object],
        expected: ActionStatus | None,
    ) -> bool:
        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            row = self._get_row(session=session, action_id=action_id)
            previous = ActionStatus(row.status)
            if expected is not None and previous != expected:
                return False
            if not is_transition_allowed(previous, target):
                raise InvalidTransitionError(action_id, previous, target)
            if (
                previous == ActionStatus.FAILED
                and target == ActionStatus.PENDING
                and row.next_retry_at is None
            ):
                raise InvalidTransitionError(action_id, previous, target)

            result = session.exec(
                sa_update(ActionRow)
                .where(
                    col(ActionRow.action_id) == action_id,
                    col(ActionRow.status) == previous.value,
                )
                .values(status=target.value, updated_at=now, **values),
            )
            if result.rowcount != 1:
                session.rollback()
                logger.debug("Lost transition race for %s (%s -> %s)", action_id, previous, target)
                return False
            self._add_event(
                session=session,
                action_id=action_id,
                event_type=event_type,
                status_from=previous,
                status_to=target,
                details=details,
            )
            session.commit()
            return True

    def _get_row(self, *, session: Session, action_id: str) -> ActionRow:
        row = session.exec(
            select(ActionRow).where(ActionRow.action_id == action_id),
        ).one_or_none()
        if row is None:
            raise ActionNotFoundError(action_id)
        return row

    def _add_event(  # noqa: PLR0913
        self,
        *,
        session: Session,
        action_id: str,
        event_type: str,
        status_from: ActionStatus | None,
        status_to: ActionStatus | None,
        details: dict[str, object],
    ) -> None:
        session.add(
            ActionEventRow(
                action_id=action_id,
                event_type=event_type,
                status_from=status_from.value if status_from is not None else None,
                status_to=status_to.value if status_to is not None else None,
                details_json=json.dumps(details, ensure_ascii=False, sort_keys=True, default=str)
                if details
                else None,
                created_at=to_db_datetime(utc_now()),
            ),
        )


def _dump_payload(payload: dict[str, Any]) -> str:
    return json.dumps(payload, ensure_ascii=False, sort_keys=True, default=str)


def _load_payload(raw: str | None) -> dict[str, Any]:
    if not raw:
        return {}
    parsed = json.loads(raw)
    if not isinstance(parsed, dict):
        return {}
    return parsed


def _origin_field(payload: dict[str, Any], key: str) -> str | None:
    value = payload.get(key)
    if value is None or value == "":
        return None
    return str(value)


def _to_action_view(row: ActionRow) -> ActionView:
    retry = None
    if row.retry_attempts > 0 or row.next_retry_at is not None:
        retry = RetryState(
            attempts=row.retry_attempts,
            max_attempts=row.retry_max_attempts,
            next_retry_at=optional_utc(row.next_retry_at),
        )
    return ActionView(
        action_id=row.action_id,
        description=row.description,
        priority=row.priority,
        lane=Lane(row.lane),
        status=ActionStatus(row.status),
        payload=_load_payload(row.payload_json),
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
        started_at=optional_utc(row.started_at),
        heartbeat_at=optional_utc(row.heartbeat_at),
        finished_at=optional_utc(row.finished_at),
        worker_id=row.worker_id,
        failure_reason=row.failure_reason,
        failure_class=FailureClass(row.failure_class) if row.failure_class is not None else None,
        error_summary=row.error_summary,
        retry=retry,
        max_attempts=row.retry_max_attempts,
        cancel_requested=bool(row.cancel_requested),
        fallback_notified_at=optional_utc(row.fallback_notified_at),
    )


def _to_event_view(row: ActionEventRow) -> ActionEventView:
    details: dict[str, Any] = {}
    if row.details_json:
        parsed = json.loads(row.details_json)
        if isinstance(parsed, dict):
            details = parsed
    return ActionEventView(
        event_id=row.id or 0,
        action_id=row.action_id,
        event_type=row.event_type,
        status_from=ActionStatus(row.status_from) if row.status_from is not None else None,
        status_to=ActionStatus(row.status_to) if row.status_to is not None else None,
        created_at=to_utc_aware_datetime(row.created_at),
        details=details,
    )


def _to_schedule_view(row: HeartbeatScheduleRow) -> ScheduleView:
    return ScheduleView(
        schedule_id=row.schedule_id,
        name=row.name,
        description=row.description,
        interval_seconds=row.interval_seconds,
        priority=row.priority,
        enabled=bool(row.enabled),
        next_fire_at=to_utc_aware_datetime(row.next_fire_at),
        last_fired_at=optional_utc(row.last_fired_at),
        last_action_id=row.last_action_id,
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )
