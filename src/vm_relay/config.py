"""Runtime configuration for the task store, relay buffer, worker and workflows."""

from __future__ import annotations

import os
import socket
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import urlparse


@dataclass(slots=True)
class RelaySettings:
    """Relay buffer and message hand-off settings."""

    buffer_ttl_seconds: int = 3_600
    max_retries: int = 3
    retry_delay_seconds: float = 30.0
    dead_letter_path: Path = Path(".vm_relay.dead_letters.jsonl")


@dataclass(slots=True)
class WorkerSettings:
    """Polling worker settings."""

    worker_id: str = field(default_factory=lambda: _default_worker_id())
    poll_interval_seconds: float = 5.0
    error_backoff_seconds: float = 10.0


@dataclass(slots=True)
class VmControlSettings:
    """VM-control collaborator endpoint and launch defaults."""

    base_url: str = "http://127.0.0.1:7000"
    timeout_seconds: float = 60.0
    default_kernel: str | None = None
    default_rootfs: str | None = None
    default_initramfs: str | None = None
    rollback_on_failure: bool = False


@dataclass(slots=True)
class TunnelSettings:
    """Network tunnel exposure settings."""

    tunnel_name: str = "vm-relay-tunnel"
    config_path: Path = Path("/etc/cloudflared/config.yml")
    base_domain: str = "sandbox.example.com"
    service_name: str = "cloudflared"
    cloudflared_bin: str = "cloudflared"
    use_sudo: bool = True
    command_timeout_seconds: float = 30.0
    lock_timeout_seconds: float = 30.0
    restart_settle_seconds: float = 1.0
    connect_settle_seconds: float = 3.0
    probe_public_url: bool = True
    probe_delay_seconds: float = 5.0
    probe_timeout_seconds: float = 10.0


@dataclass(slots=True)
class WorkloadSettings:
    """Demo workload pushed onto freshly launched VMs."""

    app_dir: str = "/home/elara"
    port: int = 3000
    marker: str = "VM Relay Demo"
    stop_settle_seconds: float = 2.0
    start_settle_seconds: float = 3.0
    strict_probe: bool = False


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".vm_relay.db")
    buffer_db_path: Path | None = None
    sqlite_busy_timeout_ms: int = 5_000
    relay: RelaySettings = field(default_factory=RelaySettings)
    worker: WorkerSettings = field(default_factory=WorkerSettings)
    vm_control: VmControlSettings = field(default_factory=VmControlSettings)
    tunnel: TunnelSettings = field(default_factory=TunnelSettings)
    workload: WorkloadSettings = field(default_factory=WorkloadSettings)

    @property
    def effective_buffer_db_path(self) -> Path:
        """Relay buffer database; shares the task database unless overridden."""

        return self.buffer_db_path or self.db_path

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        buffer_db_raw = os.getenv("VM_RELAY_BUFFER_DB_PATH", "").strip()
        return cls(
            db_path=db_path or Path(os.getenv("VM_RELAY_DB_PATH", ".vm_relay.db")),
            buffer_db_path=Path(buffer_db_raw) if buffer_db_raw else None,
            sqlite_busy_timeout_ms=int(os.getenv("VM_RELAY_SQLITE_BUSY_TIMEOUT_MS", "5000")),
            relay=RelaySettings(
                buffer_ttl_seconds=int(os.getenv("VM_RELAY_BUFFER_TTL_SECONDS", "3600")),
                max_retries=int(os.getenv("VM_RELAY_RELAY_MAX_RETRIES", "3")),
                retry_delay_seconds=float(
                    os.getenv("VM_RELAY_RELAY_RETRY_DELAY_SECONDS", "30.0"),
                ),
                dead_letter_path=Path(
                    os.getenv("VM_RELAY_DEAD_LETTER_PATH", ".vm_relay.dead_letters.jsonl"),
                ),
            ),
            worker=WorkerSettings(
                worker_id=os.getenv("VM_RELAY_WORKER_ID", "").strip() or _default_worker_id(),
                poll_interval_seconds=float(os.getenv("VM_RELAY_POLL_INTERVAL_SECONDS", "5.0")),
                error_backoff_seconds=float(
                    os.getenv("VM_RELAY_ERROR_BACKOFF_SECONDS", "10.0"),
                ),
            ),
            vm_control=VmControlSettings(
                base_url=os.getenv("VM_RELAY_VM_CONTROL_URL", "http://127.0.0.1:7000"),
                timeout_seconds=float(os.getenv("VM_RELAY_VM_CONTROL_TIMEOUT_SECONDS", "60.0")),
                default_kernel=_env_optional("VM_RELAY_DEFAULT_KERNEL"),
                default_rootfs=_env_optional("VM_RELAY_DEFAULT_ROOTFS"),
                default_initramfs=_env_optional("VM_RELAY_DEFAULT_INITRAMFS"),
                rollback_on_failure=_env_bool("VM_RELAY_ROLLBACK_ON_FAILURE", default=False),
            ),
            tunnel=TunnelSettings(
                tunnel_name=os.getenv("VM_RELAY_TUNNEL_NAME", "vm-relay-tunnel"),
                config_path=Path(
                    os.getenv("VM_RELAY_TUNNEL_CONFIG_PATH", "/etc/cloudflared/config.yml"),
                ),
                base_domain=os.getenv("VM_RELAY_BASE_DOMAIN", "sandbox.example.com"),
                service_name=os.getenv("VM_RELAY_TUNNEL_SERVICE", "cloudflared"),
                cloudflared_bin=os.getenv("VM_RELAY_CLOUDFLARED_BIN", "cloudflared"),
                use_sudo=_env_bool("VM_RELAY_TUNNEL_USE_SUDO", default=True),
                command_timeout_seconds=float(
                    os.getenv("VM_RELAY_TUNNEL_COMMAND_TIMEOUT_SECONDS", "30.0"),
                ),
                lock_timeout_seconds=float(
                    os.getenv("VM_RELAY_TUNNEL_LOCK_TIMEOUT_SECONDS", "30.0"),
                ),
                probe_public_url=_env_bool("VM_RELAY_TUNNEL_PROBE_PUBLIC_URL", default=True),
            ),
            workload=WorkloadSettings(
                app_dir=os.getenv("VM_RELAY_WORKLOAD_DIR", "/home/elara"),
                port=int(os.getenv("VM_RELAY_WORKLOAD_PORT", "3000")),
                strict_probe=_env_bool("VM_RELAY_WORKLOAD_STRICT_PROBE", default=False),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error for values the runtime cannot work with."""

        if self.sqlite_busy_timeout_ms <= 0:
            raise ValueError("VM_RELAY_SQLITE_BUSY_TIMEOUT_MS must be > 0.")
        if self.relay.buffer_ttl_seconds <= 0:
            raise ValueError("VM_RELAY_BUFFER_TTL_SECONDS must be > 0.")
        if self.relay.max_retries <= 0:
            raise ValueError("VM_RELAY_RELAY_MAX_RETRIES must be > 0.")
        if self.relay.retry_delay_seconds < 0:
            raise ValueError("VM_RELAY_RELAY_RETRY_DELAY_SECONDS must be >= 0.")
        if not self.worker.worker_id.strip():
            raise ValueError("VM_RELAY_WORKER_ID must not be empty.")
        if self.worker.poll_interval_seconds < 0:
            raise ValueError("VM_RELAY_POLL_INTERVAL_SECONDS must be >= 0.")
        if self.worker.error_backoff_seconds < self.worker.poll_interval_seconds:
            raise ValueError(
                "VM_RELAY_ERROR_BACKOFF_SECONDS must be >= VM_RELAY_POLL_INTERVAL_SECONDS.",
            )
        if self.vm_control.timeout_seconds <= 0:
            raise ValueError("VM_RELAY_VM_CONTROL_TIMEOUT_SECONDS must be > 0.")
        _validate_http_url(self.vm_control.base_url, name="VM_RELAY_VM_CONTROL_URL")
        if not self.tunnel.base_domain.strip(" ."):
            raise ValueError("VM_RELAY_BASE_DOMAIN must not be empty.")
        if not self.tunnel.tunnel_name.strip():
            raise ValueError("VM_RELAY_TUNNEL_NAME must not be empty.")
        if self.tunnel.command_timeout_seconds <= 0:
            raise ValueError("VM_RELAY_TUNNEL_COMMAND_TIMEOUT_SECONDS must be > 0.")
        if not 0 < self.workload.port < 65_536:
            raise ValueError(f"VM_RELAY_WORKLOAD_PORT out of range: {self.workload.port}")


def _default_worker_id() -> str:
    return f"worker-{socket.gethostname()}-{os.getpid()}"


def _validate_http_url(value: str, *, name: str) -> None:
    parsed = urlparse(value)
    if parsed.scheme not in {"http", "https"} or not parsed.netloc:
        raise ValueError(
            f"Invalid {name}: {value!r}. Expected an absolute URL with http:// or https:// scheme.",
        )


def _env_optional(name: str) -> str | None:
    value = os.getenv(name, "").strip()
    return value or None


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
