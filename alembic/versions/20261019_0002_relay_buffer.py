"""Relay buffer table with claim metadata and residency expiry."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261019_0002"
down_revision = "20261019_0001"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "relay_buffer",
        sa.Column("task_id", sa.String(), nullable=False),
        sa.Column("task_type", sa.String(), nullable=False),
        sa.Column("payload_json", sa.Text(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("received_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("status", sa.String(), server_default="ready", nullable=False),
        sa.Column("claimed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("claimed_by", sa.String(), nullable=True),
        sa.Column("version", sa.Integer(), server_default="0", nullable=False),
        sa.CheckConstraint(
            "status IN ('ready', 'claimed', 'processing')",
            name="ck_relay_buffer_status",
        ),
        sa.PrimaryKeyConstraint("task_id"),
    )
    op.create_index("ix_relay_buffer_expires_at", "relay_buffer", ["expires_at"])
    op.create_index(
        "idx_relay_buffer_status_received",
        "relay_buffer",
        ["status", "received_at"],
    )


def downgrade() -> None:
    op.drop_index("idx_relay_buffer_status_received", table_name="relay_buffer")
    op.drop_index("ix_relay_buffer_expires_at", table_name="relay_buffer")
    op.drop_table("relay_buffer")
