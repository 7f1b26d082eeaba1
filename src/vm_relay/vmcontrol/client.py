"""HTTP adapter for the remote VM-control API."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import quote

import httpx

from vm_relay.errors import NotFoundError, UpstreamError

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 60.0


@dataclass(slots=True)
class LaunchedVm:
    """VM as reported by VM control right after launch."""

    name: str
    ip: str
    status: str
    port_forwards: list[Any] = field(default_factory=list)


@dataclass(slots=True)
class CommandOutput:
    output: str | None
    error: str | None


@dataclass(slots=True)
class FileUpload:
    path: str
    content: str


def normalize_ip(value: str) -> str:
    """Strip a CIDR suffix such as ``/24`` from an address."""

    return value.strip().split("/", 1)[0]


class VmControlClient:
    """Synchronous VM-control client with per-call timeout.

    Transport errors, timeouts and non-2xx replies are raised as
    ``UpstreamError`` carrying the collaborator's own error message.
    """

    def __init__(
        self,
        base_url: str,
        *,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._client = httpx.Client(
            base_url=base_url.rstrip("/"),
            timeout=httpx.Timeout(timeout_seconds, connect=10.0),
            transport=transport,
        )

    def close(self) -> None:
        self._client.close()

    def create_vm(self, config: dict[str, Any]) -> LaunchedVm:
        name = str(config.get("vmName", ""))
        data = self._request("POST", "/v1/vms", json=config, action=f"launch VM {name}")
        raw_ip = data.get("ip")
        if not isinstance(raw_ip, str) or not raw_ip.strip():
            raise UpstreamError(f"VM control returned no IP address for {name}")
        port_forwards = data.get("portForwards") or data.get("port_forwards") or []
        return LaunchedVm(
            name=name,
            ip=normalize_ip(raw_ip),
            status=str(data.get("status", "running")),
            port_forwards=list(port_forwards) if isinstance(port_forwards, list) else [],
        )

    def get_vm(self, name: str) -> dict[str, Any]:
        return self._request("GET", _vm_path(name), action=f"get VM {name}")

    def delete_vm(self, name: str) -> None:
        self._request("DELETE", _vm_path(name), action=f"delete VM {name}")

    def patch_vm_status(self, name: str, status: str) -> None:
        self._request(
            "PATCH",
            _vm_path(name),
            json={"status": status},
            action=f"set VM {name} status to {status}",
        )

    def run_command(self, name: str, command: str, *, blocking: bool = True) -> CommandOutput:
        data = self._request(
            "POST",
            f"{_vm_path(name)}/cmd",
            json={"cmd": command, "blocking": blocking},
            action=f"run command on VM {name}",
        )
        output = data.get("output")
        error = data.get("error")
        return CommandOutput(
            output=str(output) if output is not None else None,
            error=str(error) if error else None,
        )

    def snapshot_vm(self, name: str, snapshot_id: str) -> None:
        self._request(
            "POST",
            f"{_vm_path(name)}/snapshots",
            json={"snapshotId": snapshot_id},
            action=f"snapshot VM {name}",
        )

    def push_files(self, name: str, files: list[FileUpload]) -> None:
        self._request(
            "POST",
            f"{_vm_path(name)}/files",
            json={"files": [{"path": item.path, "content": item.content} for item in files]},
            action=f"push files to VM {name}",
        )

    def _request(
        self,
        method: str,
        path: str,
        *,
        action: str,
        json: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        try:
            response = self._client.request(method, path, json=json)
        except httpx.TimeoutException as error:
            logger.warning("VM control timed out: %s", action)
            raise UpstreamError(f"Failed to {action}: timeout") from error
        except httpx.HTTPError as error:
            logger.warning("VM control transport error (%s): %s", action, error)
            raise UpstreamError(f"Failed to {action}: {error}") from error

        if response.status_code == httpx.codes.NOT_FOUND and method == "GET":
            raise NotFoundError(f"VM not found: {path.rsplit('/', 1)[-1]}")
        if not response.is_success:
            raise UpstreamError(f"Failed to {action}: {_error_message(response)}")
        if not response.content:
            return {}
        try:
            data = response.json()
        except ValueError:
            return {}
        return data if isinstance(data, dict) else {}


def _vm_path(name: str) -> str:
    return f"/v1/vms/{quote(name, safe='')}"


def _error_message(response: httpx.Response) -> str:
    try:
        data = response.json()
    except ValueError:
        data = None
    if isinstance(data, dict):
        for key in ("error", "message", "detail"):
            value = data.get(key)
            if value:
                return str(value)
    text = response.text.strip()
    return text or f"HTTP {response.status_code}"
