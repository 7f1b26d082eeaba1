"""launch_vm workflow: launch -> workload bootstrap -> tunnel exposure."""

from __future__ import annotations

import logging
from collections.abc import Callable
from enum import Enum
from typing import Any, Protocol

from vm_relay.config import VmControlSettings
from vm_relay.errors import ProvisioningError, VmRelayError
from vm_relay.orchestrator.contracts import LaunchVmPayload, LaunchVmResult
from vm_relay.tunnel.exposer import TunnelExposer
from vm_relay.vmcontrol.client import LaunchedVm
from vm_relay.workflows.workload import WorkloadBootstrapper

logger = logging.getLogger(__name__)


class ProvisioningStep(str, Enum):
    LAUNCH = "launch"
    BOOTSTRAP = "bootstrap"
    EXPOSE = "expose"


class LaunchControl(Protocol):
    def create_vm(self, config: dict[str, Any]) -> LaunchedVm: ...


def build_launch_config(payload: LaunchVmPayload, defaults: VmControlSettings) -> dict[str, Any]:
    """Merge image defaults under the caller's ``vm_config``; unset values are omitted."""

    config: dict[str, Any] = {
        "vmName": payload.vm_name,
        "kernel": defaults.default_kernel,
        "rootfs": defaults.default_rootfs,
        "initramfs": defaults.default_initramfs,
    }
    config.update(payload.vm_config)
    config["vmName"] = payload.vm_name
    return {key: value for key, value in config.items() if value is not None}


class ProvisioningWorkflow:
    """Runs the three launch steps in order and stops at the first failure.

    A failure after the VM exists leaves it running unless a rollback hook
    is configured; the hook receives the VM name before the error propagates.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        control: LaunchControl,
        bootstrapper: WorkloadBootstrapper,
        exposer: TunnelExposer,
        defaults: VmControlSettings,
        rollback: Callable[[str], object] | None = None,
    ) -> None:
        self.control = control
        self.bootstrapper = bootstrapper
        self.exposer = exposer
        self.defaults = defaults
        self.rollback = rollback

    def run(self, payload: LaunchVmPayload) -> LaunchVmResult:
        vm_name = payload.vm_name
        logger.info("Launching VM with full automation: %s", vm_name)
        try:
            launched = self.control.create_vm(build_launch_config(payload, self.defaults))
        except VmRelayError as error:
            raise ProvisioningError(
                ProvisioningStep.LAUNCH.value,
                f"Failed to launch VM {vm_name}: {error}",
                vm_name=vm_name,
            ) from error
        logger.info("VM %s launched at %s", vm_name, launched.ip)

        port = self.bootstrapper.settings.port
        step = ProvisioningStep.BOOTSTRAP
        try:
            self.bootstrapper.bootstrap(vm_name, launched.ip)
            step = ProvisioningStep.EXPOSE
            exposure = self.exposer.expose(vm_name, launched.ip, port)
        except VmRelayError as error:
            failure = ProvisioningError(
                step.value,
                f"Provisioning step '{step.value}' failed for VM {vm_name}: {error}",
                vm_name=vm_name,
            )
            self._handle_partial_failure(vm_name, failure)
            raise failure from error

        return LaunchVmResult(
            vm_name=vm_name,
            status=launched.status,
            ip=launched.ip,
            port=port,
            port_forwards=list(launched.port_forwards),
            subdomain=exposure.subdomain,
            url=exposure.url,
        )

    def _handle_partial_failure(self, vm_name: str, failure: ProvisioningError) -> None:
        if self.rollback is None:
            logger.warning(
                "VM %s left running after failed %s step; clean up manually or submit delete_vm",
                vm_name,
                failure.step,
            )
            return
        logger.warning("Rolling back VM %s after failed %s step", vm_name, failure.step)
        try:
            self.rollback(vm_name)
        except VmRelayError as error:
            logger.error("Rollback of VM %s failed: %s", vm_name, error)
