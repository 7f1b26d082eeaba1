"""Tunnel daemon control: DNS routes, service restarts and public URL probes."""

from __future__ import annotations

import logging
import subprocess
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Protocol

import httpx

from vm_relay.config import TunnelSettings
from vm_relay.errors import UpstreamError

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ProcessResult:
    args: list[str]
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0


class CommandRunner(Protocol):
    def __call__(self, args: list[str], *, timeout_seconds: float) -> ProcessResult: ...


def run_subprocess(args: list[str], *, timeout_seconds: float) -> ProcessResult:
    """Run a command to completion; a timeout or missing binary is an ``UpstreamError``."""

    try:
        completed = subprocess.run(  # noqa: S603
            args,
            check=False,
            capture_output=True,
            text=True,
            timeout=timeout_seconds,
        )
    except subprocess.TimeoutExpired as error:
        raise UpstreamError(
            f"Command timed out after {timeout_seconds}s: {' '.join(args)}",
        ) from error
    except OSError as error:
        raise UpstreamError(f"Command failed to start: {' '.join(args)}: {error}") from error
    return ProcessResult(
        args=list(args),
        returncode=completed.returncode,
        stdout=completed.stdout.strip(),
        stderr=completed.stderr.strip(),
    )


class TunnelService:
    """Wraps the ``cloudflared`` CLI and the systemd unit that runs the tunnel."""

    def __init__(
        self,
        settings: TunnelSettings,
        *,
        runner: CommandRunner = run_subprocess,
        sleep: Callable[[float], None] = time.sleep,
        probe_transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.settings = settings
        self._runner = runner
        self._sleep = sleep
        self._probe_transport = probe_transport

    def route_dns(self, hostname: str) -> bool:
        """Register the DNS route for ``hostname``; failures are logged, not raised."""

        return self._soft_run(
            [
                self.settings.cloudflared_bin,
                "tunnel",
                "route",
                "dns",
                self.settings.tunnel_name,
                hostname,
            ],
            action=f"route DNS for {hostname}",
        )

    def delete_dns_route(self, hostname: str) -> bool:
        return self._soft_run(
            [self.settings.cloudflared_bin, "tunnel", "route", "dns", "delete", hostname],
            action=f"delete DNS route for {hostname}",
        )

    def restart(self) -> None:
        result = self._run(self._systemctl("restart", self.settings.service_name))
        if not result.ok:
            raise UpstreamError(
                f"Failed to restart {self.settings.service_name}: "
                f"{result.stderr or result.stdout or f'exit code {result.returncode}'}",
            )
        logger.info("Restarted %s service", self.settings.service_name)

    def is_active(self) -> bool:
        result = self._run(self._systemctl("is-active", self.settings.service_name))
        return result.stdout.strip() == "active"

    def restart_and_verify(self) -> None:
        """Restart the tunnel service and require it to report ``active``."""

        self.restart()
        self._sleep(self.settings.restart_settle_seconds)
        if not self.is_active():
            raise UpstreamError(f"{self.settings.service_name} service is not active after restart")
        self._sleep(self.settings.connect_settle_seconds)

    def probe_url(self, url: str) -> bool:
        """Best-effort reachability check of the public URL; result is only logged."""

        if not self.settings.probe_public_url:
            return False
        self._sleep(self.settings.probe_delay_seconds)
        try:
            with httpx.Client(
                timeout=self.settings.probe_timeout_seconds,
                transport=self._probe_transport,
                follow_redirects=True,
            ) as client:
                response = client.get(url)
        except httpx.HTTPError as error:
            logger.warning("Public URL %s not reachable yet: %s", url, error)
            return False
        if response.is_success:
            logger.info("Public URL %s is reachable", url)
            return True
        logger.warning("Public URL %s answered HTTP %d", url, response.status_code)
        return False

    def _systemctl(self, *args: str) -> list[str]:
        command = ["systemctl", *args]
        return ["sudo", *command] if self.settings.use_sudo else command

    def _run(self, args: list[str]) -> ProcessResult:
        return self._runner(args, timeout_seconds=self.settings.command_timeout_seconds)

    def _soft_run(self, args: list[str], *, action: str) -> bool:
        try:
            result = self._run(args)
        except UpstreamError as error:
            logger.warning("Could not %s: %s", action, error)
            return False
        if not result.ok:
            logger.warning("Could not %s: %s", action, result.stderr or result.stdout)
            return False
        logger.info("Done: %s", action)
        return True
