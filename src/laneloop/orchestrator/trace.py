"""Append-only per-action trace of tool calls, notes and oracle turns."""

from __future__ import annotations

import json
from typing import Protocol

from sqlalchemy import delete as sa_delete
from sqlalchemy.engine import Engine
from sqlmodel import Session, col, select

from laneloop.orchestrator.models import TraceEntryView, TraceEntryWrite, TraceKind
from laneloop.orchestrator.sanitization import sanitize_preview
from laneloop.storage.common import to_db_datetime, to_utc_aware_datetime, utc_now
from laneloop.storage.sqlmodel_models import TraceEntryRow

_CONTENT_MAX_CHARS = 4_000
_ERROR_MAX_CHARS = 1_000


class TraceStore(Protocol):
    """Observation log consulted by the completion auditor."""

    def append(self, action_id: str, entry: TraceEntryWrite) -> None: ...

    def list_for_action(self, action_id: str) -> list[TraceEntryView]: ...

    def cleanup(self, action_id: str) -> int: ...


class SqlTraceStore:
    """Trace store sharing the action store's SQLite engine."""

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def append(self, action_id: str, entry: TraceEntryWrite) -> None:
        """Persist one observation with secrets redacted from previews."""

        with Session(self.engine) as session:
            session.add(
                TraceEntryRow(
                    action_id=action_id,
                    step=entry.step,
                    kind=entry.kind.value,
                    tool=entry.tool,
                    signature=entry.signature,
                    arguments_json=_dump_arguments(entry.arguments),
                    success=entry.success,
                    error=(
                        sanitize_preview(entry.error, max_chars=_ERROR_MAX_CHARS)
                        if entry.error
                        else None
                    ),
                    duration_ms=entry.duration_ms,
                    content=(
                        sanitize_preview(entry.content, max_chars=_CONTENT_MAX_CHARS)
                        if entry.content
                        else None
                    ),
                    created_at=to_db_datetime(utc_now()),
                ),
            )
            session.commit()

    def list_for_action(self, action_id: str) -> list[TraceEntryView]:
        """Return the action's trace in append order."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(TraceEntryRow)
                .where(TraceEntryRow.action_id == action_id)
                .order_by(col(TraceEntryRow.id).asc()),
            ).all()
        return [_to_entry_view(row) for row in rows]

    def cleanup(self, action_id: str) -> int:
        """Drop trace rows of a settled action; returns removed row count."""

        with Session(self.engine) as session:
            result = session.exec(
                sa_delete(TraceEntryRow).where(col(TraceEntryRow.action_id) == action_id),
            )
            session.commit()
            return int(result.rowcount or 0)


def _dump_arguments(arguments: dict[str, object] | None) -> str | None:
    if not arguments:
        return None
    raw = json.dumps(arguments, ensure_ascii=False, sort_keys=True, default=str)
    return sanitize_preview(raw, max_chars=_CONTENT_MAX_CHARS)


def _load_arguments(raw: str | None) -> dict[str, object]:
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        # Clamped previews are no longer valid JSON.
        return {"preview": raw}
    if not isinstance(parsed, dict):
        return {}
    return parsed


def _to_entry_view(row: TraceEntryRow) -> TraceEntryView:
    return TraceEntryView(
        entry_id=row.id or 0,
        action_id=row.action_id,
        kind=TraceKind(row.kind),
        step=row.step,
        tool=row.tool,
        signature=row.signature,
        arguments=_load_arguments(row.arguments_json),
        success=row.success,
        error=row.error,
        duration_ms=row.duration_ms,
        content=row.content,
        created_at=to_utc_aware_datetime(row.created_at),
    )
