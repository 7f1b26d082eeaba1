"""Demo workload bootstrap on a freshly launched VM."""

from __future__ import annotations

import html
import logging
import shlex
import time
from collections.abc import Callable
from typing import Protocol

from vm_relay.config import WorkloadSettings
from vm_relay.errors import UpstreamError
from vm_relay.vmcontrol.client import CommandOutput, FileUpload

logger = logging.getLogger(__name__)

APP_FILENAME = "app.py"

_DEMO_APP_TEMPLATE = '''\
import http.server
import socket

PAGE = """<!DOCTYPE html>
<html>
<head><title>{marker}</title></head>
<body>
  <h1>Hello from {marker}!</h1>
  <p><strong>VM Name:</strong> {vm_name}</p>
  <p><strong>VM IP:</strong> {ip}</p>
  <p><strong>Hostname:</strong> %s</p>
</body>
</html>
"""


class Handler(http.server.BaseHTTPRequestHandler):
    def do_GET(self):
        body = (PAGE % socket.gethostname()).encode("utf-8")
        self.send_response(200)
        self.send_header("Content-Type", "text/html; charset=utf-8")
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)


if __name__ == "__main__":
    http.server.ThreadingHTTPServer(("0.0.0.0", {port}), Handler).serve_forever()
'''


class WorkloadControl(Protocol):
    def push_files(self, name: str, files: list[FileUpload]) -> None: ...

    def run_command(self, name: str, command: str, *, blocking: bool = True) -> CommandOutput: ...


def render_demo_app(*, vm_name: str, ip: str, port: int, marker: str) -> str:
    """Source of a dependency-free HTTP app that serves a page containing ``marker``."""

    return _DEMO_APP_TEMPLATE.format(
        marker=_page_text(marker),
        vm_name=_page_text(vm_name),
        ip=_page_text(ip),
        port=int(port),
    )


def _page_text(value: str) -> str:
    # Embedded in a %-formatted triple-quoted literal.
    return html.escape(value).replace("%", "&#37;").replace("\\", "&#92;")


class WorkloadBootstrapper:
    """Pushes the demo app, restarts it detached and probes it from inside the VM."""

    def __init__(
        self,
        control: WorkloadControl,
        settings: WorkloadSettings,
        *,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.control = control
        self.settings = settings
        self._sleep = sleep

    @property
    def app_path(self) -> str:
        return f"{self.settings.app_dir.rstrip('/')}/{APP_FILENAME}"

    def bootstrap(self, vm_name: str, ip: str) -> bool:
        """Install and start the workload; return whether the probe saw the marker.

        Collaborator failures propagate. A missing marker only fails the
        bootstrap when ``strict_probe`` is enabled.
        """

        settings = self.settings
        content = render_demo_app(
            vm_name=vm_name,
            ip=ip,
            port=settings.port,
            marker=settings.marker,
        )
        self.control.push_files(vm_name, [FileUpload(path=self.app_path, content=content)])
        logger.info("Demo app uploaded to VM %s", vm_name)

        self.control.run_command(
            vm_name,
            f'pkill -f "python3.*{APP_FILENAME}" || true',
            blocking=True,
        )
        self._sleep(settings.stop_settle_seconds)
        self.control.run_command(
            vm_name,
            f"cd {shlex.quote(settings.app_dir)} && "
            f"nohup python3 {APP_FILENAME} > app.log 2>&1 &",
            blocking=False,
        )
        logger.info("Demo app started on VM %s", vm_name)
        self._sleep(settings.start_settle_seconds)

        probe = self.control.run_command(
            vm_name,
            f"curl -s http://localhost:{settings.port} | head -n 5",
            blocking=True,
        )
        healthy = bool(probe.output) and settings.marker in (probe.output or "")
        if healthy:
            logger.info("Demo app is running on VM %s", vm_name)
            return True
        if settings.strict_probe:
            raise UpstreamError(f"Demo app probe did not find marker on VM {vm_name}")
        logger.warning("Demo app may not be running properly on VM %s", vm_name)
        return False
