"""Typed payload and result contracts for each task type.

Payloads arrive as loose JSON mappings (submission surface, relay buffer
snapshots) and are parsed exactly once into one variant of the ``TaskPayload``
union. Handlers only ever see the typed variant for their own task type.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import asdict, dataclass, field
from typing import Any

from vm_relay.errors import ValidationError
from vm_relay.orchestrator.models import TaskType

DEFAULT_TARGET_SERVER = "default"


@dataclass(slots=True, frozen=True)
class LaunchVmPayload:
    vm_name: str
    vm_config: dict[str, Any] = field(default_factory=dict)
    target_server: str = DEFAULT_TARGET_SERVER


@dataclass(slots=True, frozen=True)
class DeleteVmPayload:
    vm_name: str
    target_server: str = DEFAULT_TARGET_SERVER


@dataclass(slots=True, frozen=True)
class StopVmPayload:
    vm_name: str
    target_server: str = DEFAULT_TARGET_SERVER


@dataclass(slots=True, frozen=True)
class PauseVmPayload:
    vm_name: str
    target_server: str = DEFAULT_TARGET_SERVER


@dataclass(slots=True, frozen=True)
class SnapshotVmPayload:
    vm_name: str
    snapshot_id: str | None = None
    target_server: str = DEFAULT_TARGET_SERVER


@dataclass(slots=True, frozen=True)
class RunCommandPayload:
    vm_name: str
    command: str | None = None
    blocking: bool = True
    target_server: str = DEFAULT_TARGET_SERVER


TaskPayload = (
    LaunchVmPayload
    | DeleteVmPayload
    | StopVmPayload
    | PauseVmPayload
    | SnapshotVmPayload
    | RunCommandPayload
)

PAYLOAD_TYPES: dict[TaskType, type] = {
    TaskType.LAUNCH_VM: LaunchVmPayload,
    TaskType.DELETE_VM: DeleteVmPayload,
    TaskType.STOP_VM: StopVmPayload,
    TaskType.PAUSE_VM: PauseVmPayload,
    TaskType.SNAPSHOT_VM: SnapshotVmPayload,
    TaskType.RUN_COMMAND: RunCommandPayload,
}


@dataclass(slots=True)
class LaunchVmResult:
    vm_name: str
    status: str
    ip: str
    port: int
    port_forwards: list[Any]
    subdomain: str
    url: str


@dataclass(slots=True)
class DeleteVmResult:
    vm_name: str
    status: str
    message: str
    tunnel_cleaned: bool


@dataclass(slots=True)
class VmStateResult:
    vm_name: str
    status: str
    message: str


@dataclass(slots=True)
class SnapshotResult:
    vm_name: str
    snapshot_id: str
    status: str
    message: str


@dataclass(slots=True)
class CommandResult:
    vm_name: str
    command: str
    output: str | None
    error: str | None


TaskResult = LaunchVmResult | DeleteVmResult | VmStateResult | SnapshotResult | CommandResult


def parse_task_type(value: str | TaskType) -> TaskType:
    """Resolve a task type, rejecting values outside the closed enum."""

    if isinstance(value, TaskType):
        return value
    try:
        return TaskType(value)
    except ValueError as error:
        allowed = ", ".join(member.value for member in TaskType)
        raise ValidationError(
            f"Invalid task type {value!r}. Must be one of: {allowed}",
        ) from error


def parse_payload(task_type: str | TaskType, raw: Mapping[str, Any] | None) -> TaskPayload:
    """Validate a raw payload mapping into the variant for ``task_type``."""

    resolved = parse_task_type(task_type)
    if raw is None or not isinstance(raw, Mapping):
        raise ValidationError("Missing required fields: type, payload.vm_name")

    vm_name = raw.get("vm_name")
    if not isinstance(vm_name, str) or not vm_name.strip():
        raise ValidationError("Missing required fields: type, payload.vm_name")
    vm_name = vm_name.strip()
    target_server = _optional_str(raw, "target_server") or DEFAULT_TARGET_SERVER

    if resolved is TaskType.LAUNCH_VM:
        vm_config = raw.get("vm_config") or {}
        if not isinstance(vm_config, Mapping):
            raise ValidationError("payload.vm_config must be an object")
        return LaunchVmPayload(
            vm_name=vm_name,
            vm_config=dict(vm_config),
            target_server=target_server,
        )
    if resolved is TaskType.DELETE_VM:
        return DeleteVmPayload(vm_name=vm_name, target_server=target_server)
    if resolved is TaskType.STOP_VM:
        return StopVmPayload(vm_name=vm_name, target_server=target_server)
    if resolved is TaskType.PAUSE_VM:
        return PauseVmPayload(vm_name=vm_name, target_server=target_server)
    if resolved is TaskType.SNAPSHOT_VM:
        return SnapshotVmPayload(
            vm_name=vm_name,
            snapshot_id=_optional_str(raw, "snapshot_id"),
            target_server=target_server,
        )
    if resolved is TaskType.RUN_COMMAND:
        blocking = raw.get("blocking", True)
        if not isinstance(blocking, bool):
            raise ValidationError("payload.blocking must be a boolean")
        return RunCommandPayload(
            vm_name=vm_name,
            command=_optional_str(raw, "command"),
            blocking=blocking,
            target_server=target_server,
        )
    raise ValidationError(f"Unsupported task type: {resolved.value}")


def payload_to_dict(payload: TaskPayload) -> dict[str, Any]:
    """Serialize a payload variant, dropping unset optional fields."""

    return {key: value for key, value in asdict(payload).items() if value is not None}


def result_to_dict(result: TaskResult) -> dict[str, Any]:
    return asdict(result)


def _optional_str(raw: Mapping[str, Any], key: str) -> str | None:
    value = raw.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValidationError(f"payload.{key} must be a string")
    stripped = value.strip()
    return stripped or None
