"""delete_vm workflow: delete the VM, then best-effort tunnel cleanup."""

from __future__ import annotations

import logging
from typing import Protocol

from vm_relay.errors import VmRelayError
from vm_relay.orchestrator.contracts import DeleteVmResult
from vm_relay.tunnel.exposer import TunnelExposer

logger = logging.getLogger(__name__)


class DeleteControl(Protocol):
    def delete_vm(self, name: str) -> None: ...


class TeardownWorkflow:
    def __init__(self, *, control: DeleteControl, exposer: TunnelExposer) -> None:
        self.control = control
        self.exposer = exposer

    def run(self, vm_name: str) -> DeleteVmResult:
        """Delete ``vm_name``; a failed VM delete fails the task, cleanup failures do not."""

        logger.info("Deleting VM with cleanup: %s", vm_name)
        self.control.delete_vm(vm_name)
        try:
            tunnel_cleaned = self.exposer.unexpose(vm_name)
        except VmRelayError as error:
            logger.warning("Tunnel cleanup for VM %s failed: %s", vm_name, error)
            tunnel_cleaned = False
        if not tunnel_cleaned:
            logger.warning("VM %s deleted but tunnel cleanup was incomplete", vm_name)
        return DeleteVmResult(
            vm_name=vm_name,
            status="deleted",
            message=f"VM {vm_name} deleted",
            tunnel_cleaned=tunnel_cleaned,
        )
