from __future__ import annotations

from pathlib import Path

import allure
import pytest

from vm_relay.config import RelaySettings, Settings, VmControlSettings, WorkerSettings

pytestmark = [
    allure.epic("Configuration"),
    allure.feature("Environment Settings"),
]


def test_from_env_uses_local_development_defaults(monkeypatch) -> None:
    for name in (
        "VM_RELAY_DB_PATH",
        "VM_RELAY_BUFFER_DB_PATH",
        "VM_RELAY_BUFFER_TTL_SECONDS",
        "VM_RELAY_WORKER_ID",
        "VM_RELAY_ROLLBACK_ON_FAILURE",
    ):
        monkeypatch.delenv(name, raising=False)

    settings = Settings.from_env()

    assert settings.db_path == Path(".vm_relay.db")
    assert settings.effective_buffer_db_path == settings.db_path
    assert settings.relay.buffer_ttl_seconds == 3600
    assert settings.relay.max_retries == 3
    assert settings.worker.poll_interval_seconds == 5.0
    assert settings.worker.error_backoff_seconds == 10.0
    assert settings.worker.worker_id.startswith("worker-")
    assert settings.vm_control.rollback_on_failure is False
    settings.validate()


def test_from_env_reads_overrides(monkeypatch, tmp_path: Path) -> None:
    monkeypatch.setenv("VM_RELAY_BUFFER_DB_PATH", str(tmp_path / "buffer.db"))
    monkeypatch.setenv("VM_RELAY_BUFFER_TTL_SECONDS", "120")
    monkeypatch.setenv("VM_RELAY_WORKER_ID", "worker-a")
    monkeypatch.setenv("VM_RELAY_ROLLBACK_ON_FAILURE", "yes")
    monkeypatch.setenv("VM_RELAY_DEFAULT_KERNEL", "/images/vmlinux")
    monkeypatch.setenv("VM_RELAY_BASE_DOMAIN", "vms.example.org")

    settings = Settings.from_env(db_path=tmp_path / "tasks.db")

    assert settings.db_path == tmp_path / "tasks.db"
    assert settings.effective_buffer_db_path == tmp_path / "buffer.db"
    assert settings.relay.buffer_ttl_seconds == 120
    assert settings.worker.worker_id == "worker-a"
    assert settings.vm_control.rollback_on_failure is True
    assert settings.vm_control.default_kernel == "/images/vmlinux"
    assert settings.vm_control.default_rootfs is None
    assert settings.tunnel.base_domain == "vms.example.org"


def test_from_env_rejects_invalid_boolean(monkeypatch) -> None:
    monkeypatch.setenv("VM_RELAY_TUNNEL_USE_SUDO", "maybe")

    with pytest.raises(ValueError, match="Invalid boolean value for VM_RELAY_TUNNEL_USE_SUDO"):
        Settings.from_env()


def test_validate_rejects_non_positive_ttl() -> None:
    settings = Settings(relay=RelaySettings(buffer_ttl_seconds=0))

    with pytest.raises(ValueError, match="VM_RELAY_BUFFER_TTL_SECONDS"):
        settings.validate()


def test_validate_rejects_backoff_shorter_than_poll_interval() -> None:
    settings = Settings(
        worker=WorkerSettings(
            worker_id="w",
            poll_interval_seconds=5.0,
            error_backoff_seconds=1.0,
        ),
    )

    with pytest.raises(ValueError, match="VM_RELAY_ERROR_BACKOFF_SECONDS"):
        settings.validate()


def test_validate_rejects_vm_control_url_without_scheme() -> None:
    settings = Settings(vm_control=VmControlSettings(base_url="127.0.0.1:7000"))

    with pytest.raises(ValueError, match="Invalid VM_RELAY_VM_CONTROL_URL"):
        settings.validate()
