"""SQLModel ORM tables for action queue storage."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Index, Text
from sqlmodel import Field, SQLModel


class ActionRow(SQLModel, table=True):
    __tablename__ = "actions"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_actions_claim", "lane", "status", "priority", "created_at"),
        Index("idx_actions_retry", "status", "next_retry_at"),
    )

    action_id: str = Field(primary_key=True)
    description: str = Field(sa_column=Column(Text, nullable=False))
    priority: int = Field(default=10, index=True)
    lane: str = Field(index=True)
    status: str = Field(index=True)
    payload_json: str = Field(default="{}", sa_column=Column(Text, nullable=False))
    source: str | None = Field(default=None, index=True)
    source_id: str | None = Field(default=None, index=True)
    worker_id: str | None = Field(default=None)
    failure_reason: str | None = Field(default=None, index=True)
    failure_class: str | None = Field(default=None)
    error_summary: str | None = Field(default=None, sa_column=Column(Text))
    retry_attempts: int = Field(default=0)
    retry_max_attempts: int = Field(default=3)
    next_retry_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    cancel_requested: bool = Field(default=False)
    fallback_notified_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True)),
    )
    started_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    heartbeat_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    finished_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class ActionEventRow(SQLModel, table=True):
    __tablename__ = "action_events"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_action_events_action_time", "action_id", "created_at"),)

    id: int | None = Field(default=None, primary_key=True)
    action_id: str = Field(
        sa_column=Column(
            ForeignKey("actions.action_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    event_type: str = Field(index=True)
    status_from: str | None = None
    status_to: str | None = None
    details_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class TraceEntryRow(SQLModel, table=True):
    __tablename__ = "trace_entries"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_trace_entries_action_step", "action_id", "step"),)

    id: int | None = Field(default=None, primary_key=True)
    action_id: str = Field(
        sa_column=Column(
            ForeignKey("actions.action_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    step: int = Field(default=0)
    kind: str = Field(index=True)
    tool: str | None = Field(default=None, index=True)
    signature: str | None = Field(default=None, sa_column=Column(Text))
    arguments_json: str | None = Field(default=None, sa_column=Column(Text))
    success: bool | None = None
    error: str | None = Field(default=None, sa_column=Column(Text))
    duration_ms: int | None = None
    content: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class HeartbeatScheduleRow(SQLModel, table=True):
    __tablename__ = "heartbeat_schedules"  # type: ignore[bad-override]

    schedule_id: str = Field(primary_key=True)
    name: str = Field(index=True)
    description: str = Field(sa_column=Column(Text, nullable=False))
    interval_seconds: int
    priority: int = Field(default=5)
    enabled: bool = Field(default=True, index=True)
    next_fire_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    last_fired_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    last_action_id: str | None = None
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
