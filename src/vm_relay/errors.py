"""Error taxonomy shared by stores, workflows and the CLI boundary."""

from __future__ import annotations


class VmRelayError(RuntimeError):
    """Base class for domain errors surfaced to callers."""


class ValidationError(VmRelayError):
    """Bad or missing input. Never retried."""


class NotFoundError(VmRelayError):
    """Unknown task, buffered task or VM record."""


class ConflictError(VmRelayError):
    """Claim race or invalid state transition."""


class UpstreamError(VmRelayError):
    """VM-control, tunnel, DNS or service-control failure."""


class TunnelConfigError(UpstreamError):
    """Tunnel ingress configuration could not be read, edited or written."""


class InternalError(VmRelayError):
    """Task store or relay buffer failure."""


class ProvisioningError(UpstreamError):
    """A launch workflow step failed after the VM may already exist."""

    def __init__(self, step: str, message: str, *, vm_name: str) -> None:
        super().__init__(message)
        self.step = step
        self.vm_name = vm_name
