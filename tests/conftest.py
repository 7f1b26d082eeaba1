"""Shared test fixtures."""

from __future__ import annotations

from collections.abc import Iterator
from pathlib import Path
from typing import Any

import pytest

from vm_relay.config import RelaySettings, Settings, TunnelSettings, WorkerSettings
from vm_relay.errors import UpstreamError
from vm_relay.orchestrator.repository import TaskRepository
from vm_relay.relay.buffer import RelayBuffer
from vm_relay.tunnel.service import ProcessResult
from vm_relay.vmcontrol.client import CommandOutput, FileUpload, LaunchedVm, normalize_ip

TUNNEL_CONFIG = """\
tunnel: vm-relay-tunnel
credentials-file: /etc/cloudflared/creds.json

ingress:
  - hostname: existing.sandbox.test
    service: http://10.0.0.9:3000
  - service: http_status:404
"""


class FakeVmControl:
    """In-memory VM-control collaborator recording every call."""

    def __init__(
        self,
        *,
        ip: str = "10.0.0.5/24",
        probe_output: str | None = "<title>VM Relay Demo</title>",
        fail_on: set[str] | None = None,
    ) -> None:
        self.ip = ip
        self.probe_output = probe_output
        self.fail_on = fail_on or set()
        self.calls: list[tuple[str, Any]] = []
        self.vms: dict[str, str] = {}
        self.files: dict[str, list[FileUpload]] = {}
        self.snapshots: list[tuple[str, str]] = []

    def create_vm(self, config: dict[str, Any]) -> LaunchedVm:
        self._record("create_vm", config)
        name = str(config["vmName"])
        self.vms[name] = "running"
        return LaunchedVm(name=name, ip=normalize_ip(self.ip), status="running", port_forwards=[])

    def delete_vm(self, name: str) -> None:
        self._record("delete_vm", name)
        self.vms.pop(name, None)

    def patch_vm_status(self, name: str, status: str) -> None:
        self._record("patch_vm_status", (name, status))
        self.vms[name] = status

    def run_command(self, name: str, command: str, *, blocking: bool = True) -> CommandOutput:
        self._record("run_command", (name, command, blocking))
        if command.startswith("curl"):
            return CommandOutput(output=self.probe_output, error=None)
        return CommandOutput(output=f"ran: {command}", error=None)

    def snapshot_vm(self, name: str, snapshot_id: str) -> None:
        self._record("snapshot_vm", (name, snapshot_id))
        self.snapshots.append((name, snapshot_id))

    def push_files(self, name: str, files: list[FileUpload]) -> None:
        self._record("push_files", (name, [item.path for item in files]))
        self.files.setdefault(name, []).extend(files)

    def call_names(self) -> list[str]:
        return [name for name, _ in self.calls]

    def _record(self, name: str, args: Any) -> None:
        self.calls.append((name, args))
        if name in self.fail_on:
            raise UpstreamError(f"{name} failed: collaborator unavailable")


class RecordingRunner:
    """Command runner double for cloudflared/systemctl invocations."""

    def __init__(self, *, active: bool = True, fail_on: set[str] | None = None) -> None:
        self.active = active
        self.fail_on = fail_on or set()
        self.commands: list[list[str]] = []

    def __call__(self, args: list[str], *, timeout_seconds: float) -> ProcessResult:
        self.commands.append(list(args))
        joined = " ".join(args)
        if any(fragment in joined for fragment in self.fail_on):
            return ProcessResult(args=list(args), returncode=1, stdout="", stderr="boom")
        if "is-active" in args:
            state = "active" if self.active else "inactive"
            return ProcessResult(
                args=list(args),
                returncode=0 if self.active else 3,
                stdout=state,
                stderr="",
            )
        return ProcessResult(args=list(args), returncode=0, stdout="", stderr="")

    def joined(self) -> list[str]:
        return [" ".join(command) for command in self.commands]


@pytest.fixture()
def tunnel_config(tmp_path: Path) -> Path:
    path = tmp_path / "cloudflared" / "config.yml"
    path.parent.mkdir(parents=True)
    path.write_text(TUNNEL_CONFIG, "utf-8")
    return path


@pytest.fixture()
def settings(tmp_path: Path, tunnel_config: Path) -> Settings:
    return Settings(
        db_path=tmp_path / "vm-relay.db",
        relay=RelaySettings(
            retry_delay_seconds=0.0,
            dead_letter_path=tmp_path / "dead-letters.jsonl",
        ),
        worker=WorkerSettings(
            worker_id="worker-test",
            poll_interval_seconds=0.0,
            error_backoff_seconds=0.0,
        ),
        tunnel=TunnelSettings(
            config_path=tunnel_config,
            base_domain="sandbox.test",
            use_sudo=False,
            probe_public_url=False,
        ),
    )


@pytest.fixture()
def repository(settings: Settings) -> Iterator[TaskRepository]:
    repo = TaskRepository(settings.db_path)
    repo.init_schema()
    yield repo
    repo.close()


@pytest.fixture()
def buffer(settings: Settings) -> Iterator[RelayBuffer]:
    relay_buffer = RelayBuffer(settings.effective_buffer_db_path)
    relay_buffer.init_schema()
    yield relay_buffer
    relay_buffer.close()


@pytest.fixture()
def fake_vm_control() -> FakeVmControl:
    return FakeVmControl()


@pytest.fixture()
def command_runner() -> RecordingRunner:
    return RecordingRunner()
