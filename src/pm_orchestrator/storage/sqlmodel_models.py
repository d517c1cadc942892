"""SQLModel ORM tables for queue and plan storage."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Index, Text
from sqlmodel import Field, SQLModel

DEFAULT_NAMESPACE = "default"


class QueueTask(SQLModel, table=True):
    __tablename__ = "tasks"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_tasks_claim", "namespace", "status", "created_at"),
        Index("idx_tasks_group", "namespace", "group_id"),
    )

    task_id: str = Field(primary_key=True)
    namespace: str = Field(default=DEFAULT_NAMESPACE, index=True)
    group_id: str = Field(index=True)
    task_type: str = Field(index=True)
    prompt: str = Field(sa_column=Column(Text, nullable=False))
    status: str = Field(index=True)
    output: str | None = Field(default=None, sa_column=Column(Text))
    error_message: str | None = Field(default=None, sa_column=Column(Text))
    failure_type: str | None = Field(default=None, index=True)
    clarification_json: str | None = Field(default=None, sa_column=Column(Text))
    settings_json: str = Field(sa_column=Column(Text, nullable=False))
    attempt: int = Field(default=0)
    worker_id: str | None = Field(default=None, index=True)
    started_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    heartbeat_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    finished_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class QueueTaskEvent(SQLModel, table=True):
    __tablename__ = "task_events"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_task_events_task_time", "task_id", "created_at"),)

    id: int | None = Field(default=None, primary_key=True)
    task_id: str = Field(
        sa_column=Column(
            ForeignKey("tasks.task_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    event_type: str = Field(index=True)
    status_from: str | None = Field(default=None)
    status_to: str | None = Field(default=None)
    details_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class PlanRecord(SQLModel, table=True):
    __tablename__ = "plans"  # type: ignore[bad-override]

    plan_id: str = Field(primary_key=True)
    project_id: str = Field(index=True)
    namespace: str = Field(default=DEFAULT_NAMESPACE, index=True)
    status: str = Field(index=True)
    gate_result_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    dispatched_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True)),
    )
    verified_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))


class PlanTaskRecord(SQLModel, table=True):
    __tablename__ = "plan_tasks"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_plan_tasks_plan_position", "plan_id", "position"),)

    plan_task_id: str = Field(primary_key=True)
    plan_id: str = Field(
        sa_column=Column(
            ForeignKey("plans.plan_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    position: int
    description: str = Field(sa_column=Column(Text, nullable=False))
    task_type: str
    priority: int = Field(default=100)
    dependencies_json: str = Field(default="[]", sa_column=Column(Text, nullable=False))
    blocking: bool = Field(default=True)
    status: str = Field(index=True)
    linked_run_id: str | None = Field(default=None, index=True)
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
