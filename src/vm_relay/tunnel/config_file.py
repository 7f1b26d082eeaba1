"""Locked, atomic read-modify-write of the tunnel config file."""

from __future__ import annotations

import logging
import os
import tempfile
from collections.abc import Callable
from pathlib import Path

from filelock import FileLock, Timeout

from vm_relay.errors import TunnelConfigError
from vm_relay.tunnel.ingress import IngressEntry, insert_ingress_entry, remove_ingress_entry

logger = logging.getLogger(__name__)


class TunnelConfigFile:
    """Serializes edits of one tunnel config across threads and processes."""

    def __init__(
        self,
        path: Path,
        *,
        lock_timeout_seconds: float = 30.0,
        lock_path: Path | None = None,
    ) -> None:
        self.path = path
        self.lock_timeout_seconds = lock_timeout_seconds
        self._lock = FileLock(str(lock_path or path.with_name(f"{path.name}.lock")))

    def read(self) -> str:
        try:
            return self.path.read_text(encoding="utf-8")
        except OSError as error:
            raise TunnelConfigError(f"Cannot read tunnel config {self.path}: {error}") from error

    def add_entry(self, entry: IngressEntry) -> None:
        self._edit(lambda content: (insert_ingress_entry(content, entry), True))
        logger.info("Added ingress rule %s -> %s", entry.hostname, entry.service)

    def remove_entry(self, hostname: str) -> bool:
        removed = self._edit(lambda content: remove_ingress_entry(content, hostname))
        if removed:
            logger.info("Removed ingress rule for %s", hostname)
        else:
            logger.info("No ingress rule for %s to remove", hostname)
        return removed

    def _edit(self, change: Callable[[str], tuple[str, bool]]) -> bool:
        try:
            with self._lock.acquire(timeout=self.lock_timeout_seconds):
                updated, changed = change(self.read())
                if changed:
                    self._write_atomic(updated)
                return changed
        except Timeout as error:
            raise TunnelConfigError(
                f"Timed out waiting for tunnel config lock {self._lock.lock_file}",
            ) from error

    def _write_atomic(self, content: str) -> None:
        directory = self.path.parent
        try:
            handle, temp_name = tempfile.mkstemp(
                prefix=f".{self.path.name}.",
                suffix=".tmp",
                dir=directory,
            )
        except OSError as error:
            raise TunnelConfigError(f"Cannot write tunnel config {self.path}: {error}") from error
        temp_path = Path(temp_name)
        try:
            with os.fdopen(handle, "w", encoding="utf-8") as stream:
                stream.write(content)
                stream.flush()
                os.fsync(stream.fileno())
            if self.path.exists():
                os.chmod(temp_path, self.path.stat().st_mode & 0o777)
            os.replace(temp_path, self.path)
        except OSError as error:
            temp_path.unlink(missing_ok=True)
            raise TunnelConfigError(f"Cannot write tunnel config {self.path}: {error}") from error
