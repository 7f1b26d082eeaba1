"""Execution engine: routes a typed task payload to its VM operation."""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from typing import Any, Protocol

from vm_relay.errors import ValidationError
from vm_relay.orchestrator.contracts import (
    PAYLOAD_TYPES,
    CommandResult,
    DeleteVmPayload,
    LaunchVmPayload,
    PauseVmPayload,
    RunCommandPayload,
    SnapshotResult,
    SnapshotVmPayload,
    StopVmPayload,
    TaskPayload,
    TaskResult,
    VmStateResult,
    parse_payload,
    parse_task_type,
)
from vm_relay.orchestrator.models import TaskType
from vm_relay.vmcontrol.client import CommandOutput
from vm_relay.workflows.provisioning import ProvisioningWorkflow
from vm_relay.workflows.teardown import TeardownWorkflow

logger = logging.getLogger(__name__)

Handler = Callable[[Any], TaskResult]


class VmOperations(Protocol):
    def patch_vm_status(self, name: str, status: str) -> None: ...

    def snapshot_vm(self, name: str, snapshot_id: str) -> None: ...

    def run_command(self, name: str, command: str, *, blocking: bool = True) -> CommandOutput: ...


class ExecutionEngine:
    """Dispatches each task type to exactly one handler."""

    def __init__(
        self,
        *,
        control: VmOperations,
        provisioning: ProvisioningWorkflow,
        teardown: TeardownWorkflow,
    ) -> None:
        self.control = control
        self.provisioning = provisioning
        self.teardown = teardown
        self._handlers: dict[TaskType, Handler] = {
            TaskType.LAUNCH_VM: self._launch,
            TaskType.DELETE_VM: self._delete,
            TaskType.STOP_VM: self._stop,
            TaskType.PAUSE_VM: self._pause,
            TaskType.SNAPSHOT_VM: self._snapshot,
            TaskType.RUN_COMMAND: self._run_command,
        }
        missing = [task_type.value for task_type in TaskType if task_type not in self._handlers]
        if missing:
            raise ValueError(f"No handler registered for task types: {', '.join(missing)}")

    def dispatch(self, task_type: TaskType | str, payload: TaskPayload) -> TaskResult:
        resolved = parse_task_type(task_type)
        expected = PAYLOAD_TYPES[resolved]
        if not isinstance(payload, expected):
            raise ValidationError(
                f"Payload {type(payload).__name__} does not match task type {resolved.value}",
            )
        logger.info("Executing %s for VM %s", resolved.value, payload.vm_name)
        return self._handlers[resolved](payload)

    def dispatch_raw(self, task_type: TaskType | str, raw_payload: Mapping[str, Any]) -> TaskResult:
        """Parse a buffered payload snapshot and dispatch it."""

        resolved = parse_task_type(task_type)
        return self.dispatch(resolved, parse_payload(resolved, raw_payload))

    def _launch(self, payload: LaunchVmPayload) -> TaskResult:
        return self.provisioning.run(payload)

    def _delete(self, payload: DeleteVmPayload) -> TaskResult:
        return self.teardown.run(payload.vm_name)

    def _stop(self, payload: StopVmPayload) -> TaskResult:
        return self._change_state(payload.vm_name, "stopped")

    def _pause(self, payload: PauseVmPayload) -> TaskResult:
        return self._change_state(payload.vm_name, "paused")

    def _snapshot(self, payload: SnapshotVmPayload) -> TaskResult:
        if not payload.snapshot_id:
            raise ValidationError("Snapshot ID is required")
        self.control.snapshot_vm(payload.vm_name, payload.snapshot_id)
        return SnapshotResult(
            vm_name=payload.vm_name,
            snapshot_id=payload.snapshot_id,
            status="snapshot_created",
            message=f"Snapshot {payload.snapshot_id} created for VM {payload.vm_name}",
        )

    def _run_command(self, payload: RunCommandPayload) -> TaskResult:
        if not payload.command:
            raise ValidationError("Command is required")
        output = self.control.run_command(
            payload.vm_name,
            payload.command,
            blocking=payload.blocking,
        )
        return CommandResult(
            vm_name=payload.vm_name,
            command=payload.command,
            output=output.output,
            error=output.error,
        )

    def _change_state(self, vm_name: str, status: str) -> VmStateResult:
        self.control.patch_vm_status(vm_name, status)
        return VmStateResult(vm_name=vm_name, status=status, message=f"VM {vm_name} {status}")
