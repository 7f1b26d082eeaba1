"""Initial task store schema: tasks, task events and VM read model."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261019_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "vm_tasks",
        sa.Column("task_id", sa.String(), nullable=False),
        sa.Column("task_type", sa.String(), nullable=False),
        sa.Column("vm_name", sa.String(), nullable=False),
        sa.Column("payload_json", sa.Text(), nullable=False),
        sa.Column("target_server", sa.String(), server_default="default", nullable=False),
        sa.Column("status", sa.String(), server_default="pending", nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("result_json", sa.Text(), nullable=True),
        sa.CheckConstraint(
            "task_type IN ('launch_vm', 'delete_vm', 'stop_vm', 'pause_vm', "
            "'snapshot_vm', 'run_command')",
            name="ck_vm_tasks_task_type",
        ),
        sa.CheckConstraint(
            "status IN ('pending', 'processing', 'completed', 'failed')",
            name="ck_vm_tasks_status",
        ),
        sa.PrimaryKeyConstraint("task_id"),
    )
    op.create_index("ix_vm_tasks_task_type", "vm_tasks", ["task_type"])
    op.create_index("ix_vm_tasks_vm_name", "vm_tasks", ["vm_name"])
    op.create_index("ix_vm_tasks_status", "vm_tasks", ["status"])
    op.create_index("ix_vm_tasks_created_at", "vm_tasks", ["created_at"])
    op.create_index("idx_vm_tasks_status_created", "vm_tasks", ["status", "created_at"])

    op.create_table(
        "vm_task_events",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("task_id", sa.String(), nullable=False),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("status_from", sa.String(), nullable=True),
        sa.Column("status_to", sa.String(), nullable=True),
        sa.Column("details_json", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["task_id"], ["vm_tasks.task_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_vm_task_events_task_id", "vm_task_events", ["task_id"])
    op.create_index("ix_vm_task_events_event_type", "vm_task_events", ["event_type"])

    op.create_table(
        "vms",
        sa.Column("vm_id", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("ip_address", sa.String(), nullable=True),
        sa.Column("status", sa.String(), server_default="unknown", nullable=False),
        sa.Column("subdomain", sa.String(), nullable=True),
        sa.Column("port", sa.Integer(), server_default="8080", nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("metadata_json", sa.Text(), nullable=True),
        sa.PrimaryKeyConstraint("vm_id"),
    )
    op.create_index("ix_vms_name", "vms", ["name"], unique=True)
    op.create_index("ix_vms_status", "vms", ["status"])


def downgrade() -> None:
    op.drop_index("ix_vms_status", table_name="vms")
    op.drop_index("ix_vms_name", table_name="vms")
    op.drop_table("vms")
    op.drop_index("ix_vm_task_events_event_type", table_name="vm_task_events")
    op.drop_index("ix_vm_task_events_task_id", table_name="vm_task_events")
    op.drop_table("vm_task_events")
    op.drop_index("idx_vm_tasks_status_created", table_name="vm_tasks")
    op.drop_index("ix_vm_tasks_created_at", table_name="vm_tasks")
    op.drop_index("ix_vm_tasks_status", table_name="vm_tasks")
    op.drop_index("ix_vm_tasks_vm_name", table_name="vm_tasks")
    op.drop_index("ix_vm_tasks_task_type", table_name="vm_tasks")
    op.drop_table("vm_tasks")
