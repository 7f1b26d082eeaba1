"""SQLModel ORM tables for the task store, VM read model and relay buffer."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, Index, Text
from sqlmodel import Field, SQLModel


class VmTask(SQLModel, table=True):
    __tablename__ = "vm_tasks"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_vm_tasks_status_created", "status", "created_at"),
    )

    task_id: str = Field(primary_key=True)
    task_type: str = Field(index=True)
    vm_name: str = Field(index=True)
    payload_json: str = Field(sa_column=Column(Text, nullable=False))
    target_server: str = Field(default="default")
    status: str = Field(index=True)
    created_at: datetime = Field(
        sa_column=Column(DateTime(timezone=True), nullable=False, index=True),
    )
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    completed_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    error_message: str | None = Field(default=None, sa_column=Column(Text))
    result_json: str | None = Field(default=None, sa_column=Column(Text))


class VmTaskEvent(SQLModel, table=True):
    __tablename__ = "vm_task_events"  # type: ignore[bad-override]

    id: int | None = Field(default=None, primary_key=True)
    task_id: str = Field(foreign_key="vm_tasks.task_id", index=True)
    event_type: str = Field(index=True)
    status_from: str | None = None
    status_to: str | None = None
    details_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class VmRecord(SQLModel, table=True):
    __tablename__ = "vms"  # type: ignore[bad-override]

    vm_id: str = Field(primary_key=True)
    name: str = Field(unique=True, index=True)
    ip_address: str | None = None
    status: str = Field(default="unknown", index=True)
    subdomain: str | None = None
    port: int = Field(default=8080)
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    metadata_json: str | None = Field(default=None, sa_column=Column(Text))


class BufferedTask(SQLModel, table=True):
    __tablename__ = "relay_buffer"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_relay_buffer_status_received", "status", "received_at"),
    )

    task_id: str = Field(primary_key=True)
    task_type: str
    payload_json: str = Field(sa_column=Column(Text, nullable=False))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    received_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    expires_at: datetime = Field(
        sa_column=Column(DateTime(timezone=True), nullable=False, index=True),
    )
    status: str
    claimed_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    claimed_by: str | None = None
    version: int = Field(default=0)
