"""Domain models for the VM task store, relay buffer and VM read model."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from vm_relay.orchestrator.contracts import TaskPayload

CANCELLATION_ERROR = "Task cancelled by user"


class TaskType(str, Enum):
    """Closed set of VM operations a task may request."""

    LAUNCH_VM = "launch_vm"
    DELETE_VM = "delete_vm"
    STOP_VM = "stop_vm"
    PAUSE_VM = "pause_vm"
    SNAPSHOT_VM = "snapshot_vm"
    RUN_COMMAND = "run_command"


class TaskStatus(str, Enum):
    """Durable task lifecycle states."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({TaskStatus.COMPLETED, TaskStatus.FAILED})


class BufferStatus(str, Enum):
    """Claim protocol states of a buffered task."""

    READY = "ready"
    CLAIMED = "claimed"
    PROCESSING = "processing"


@dataclass(slots=True)
class TaskCreate:
    """Input payload for creating a task."""

    task_type: str
    payload: dict[str, Any]
    task_id: str | None = None


@dataclass(slots=True)
class TaskView:
    """Readable task view for services, worker and CLI."""

    task_id: str
    task_type: TaskType
    payload: TaskPayload
    status: TaskStatus
    created_at: datetime
    updated_at: datetime
    completed_at: datetime | None
    error: str | None
    result: dict[str, Any] | None

    @property
    def vm_name(self) -> str:
        return self.payload.vm_name


@dataclass(slots=True)
class TaskPage:
    """One page of tasks with a total independent of page size."""

    tasks: list[TaskView]
    total_count: int
    limit: int
    offset: int

    @property
    def has_more(self) -> bool:
        return self.offset + self.limit < self.total_count


@dataclass(slots=True)
class TaskEventView:
    """Task event entry for the status history."""

    event_id: int
    task_id: str
    event_type: str
    status_from: TaskStatus | None
    status_to: TaskStatus | None
    created_at: datetime
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class TaskDetails:
    """Task details with event stream."""

    task: TaskView
    events: list[TaskEventView]


@dataclass(slots=True)
class VmUpsert:
    """VM read-model write derived from a task result."""

    name: str
    ip_address: str | None = None
    status: str = "unknown"
    subdomain: str | None = None
    port: int = 8080
    metadata: dict[str, Any] | None = None


@dataclass(slots=True)
class VmView:
    """VM read-model row."""

    vm_id: str
    name: str
    ip_address: str | None
    status: str
    subdomain: str | None
    port: int
    created_at: datetime
    updated_at: datetime
    metadata: dict[str, Any] | None

    @property
    def url(self) -> str | None:
        return f"https://{self.subdomain}" if self.subdomain else None


@dataclass(slots=True)
class StoreStats:
    """Task and VM counters grouped by status."""

    tasks: dict[str, int]
    vms: dict[str, int]

    @property
    def total_tasks(self) -> int:
        return sum(self.tasks.values())

    @property
    def total_vms(self) -> int:
        return sum(self.vms.values())


@dataclass(slots=True)
class RelayNotification:
    """At-least-once delivery notification handed off by the message queue."""

    task_id: str
    task_type: str
    payload: dict[str, Any]
    timestamp: datetime

    def to_message(self) -> dict[str, Any]:
        return {
            "taskId": self.task_id,
            "type": self.task_type,
            "payload": self.payload,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass(slots=True)
class BufferedTaskView:
    """Buffered task snapshot with claim metadata."""

    task_id: str
    task_type: str
    payload: dict[str, Any]
    created_at: datetime
    received_at: datetime
    expires_at: datetime
    status: BufferStatus
    claimed_at: datetime | None
    claimed_by: str | None
    version: int

    @property
    def vm_name(self) -> str | None:
        value = self.payload.get("vm_name")
        return value if isinstance(value, str) else None


@dataclass(slots=True)
class BufferStats:
    """Relay buffer counters grouped by claim status."""

    ready: int = 0
    claimed: int = 0
    processing: int = 0

    @property
    def total(self) -> int:
        return self.ready + self.claimed + self.processing
