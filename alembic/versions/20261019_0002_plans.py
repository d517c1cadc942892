"""Add plan aggregate and plan task tables for fan-out dispatch."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261019_0002"
down_revision = "20261019_0001"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "plans",
        sa.Column("plan_id", sa.String(), nullable=False),
        sa.Column("project_id", sa.String(), nullable=False),
        sa.Column("namespace", sa.String(), server_default="default", nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("gate_result_json", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("dispatched_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("verified_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("plan_id"),
    )
    op.create_index("ix_plans_project_id", "plans", ["project_id"], unique=False)
    op.create_index("ix_plans_namespace", "plans", ["namespace"], unique=False)
    op.create_index("ix_plans_status", "plans", ["status"], unique=False)

    op.create_table(
        "plan_tasks",
        sa.Column("plan_task_id", sa.String(), nullable=False),
        sa.Column("plan_id", sa.String(), nullable=False),
        sa.Column("position", sa.Integer(), nullable=False),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("task_type", sa.String(), nullable=False),
        sa.Column("priority", sa.Integer(), server_default=sa.text("100"), nullable=False),
        sa.Column("dependencies_json", sa.Text(), server_default="[]", nullable=False),
        sa.Column("blocking", sa.Boolean(), server_default=sa.text("1"), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("linked_run_id", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["plan_id"], ["plans.plan_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("plan_task_id"),
    )
    op.create_index("ix_plan_tasks_plan_id", "plan_tasks", ["plan_id"], unique=False)
    op.create_index("ix_plan_tasks_status", "plan_tasks", ["status"], unique=False)
    op.create_index("ix_plan_tasks_linked_run_id", "plan_tasks", ["linked_run_id"], unique=False)
    op.create_index(
        "idx_plan_tasks_plan_position",
        "plan_tasks",
        ["plan_id", "position"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index("idx_plan_tasks_plan_position", table_name="plan_tasks")
    op.drop_index("ix_plan_tasks_linked_run_id", table_name="plan_tasks")
    op.drop_index("ix_plan_tasks_status", table_name="plan_tasks")
    op.drop_index("ix_plan_tasks_plan_id", table_name="plan_tasks")
    op.drop_table("plan_tasks")
    op.drop_index("ix_plans_status", table_name="plans")
    op.drop_index("ix_plans_namespace", table_name="plans")
    op.drop_index("ix_plans_project_id", table_name="plans")
    op.drop_table("plans")
