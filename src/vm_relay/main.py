"""CLI entrypoint for vm-relay."""

import functools
import logging
from collections.abc import Callable
from pathlib import Path
from typing import Any

import rich_click as click

from vm_relay import __version__
from vm_relay.errors import VmRelayError
from vm_relay.orchestrator.controllers import (
    RelayCommand,
    StatsCommand,
    TaskListCommand,
    TaskLookupCommand,
    TaskSubmitCommand,
    VmListCommand,
    VmLookupCommand,
    VmRelayCliController,
    WorkerCommand,
)
from vm_relay.orchestrator.models import TaskStatus, TaskType

click.rich_click.USE_MARKDOWN = True
CONTROLLER = VmRelayCliController()

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def _domain_errors(func: Callable[..., None]) -> Callable[..., None]:
    """Render domain and configuration errors as CLI errors with a non-zero exit."""

    @functools.wraps(func)
    def wrapper(*args: Any, **kwargs: Any) -> None:
        try:
            func(*args, **kwargs)
        except (VmRelayError, ValueError) as error:
            raise click.ClickException(str(error)) from error

    return wrapper


def _db_path_option(func: Callable[..., None]) -> Callable[..., None]:
    return click.option(
        "--db-path",
        type=click.Path(path_type=Path),
        default=None,
        help="SQLite DB path.",
    )(func)


@click.group()
@click.version_option(version=__version__, prog_name="vm-relay")
def vm_relay() -> None:
    """VM lifecycle task relay CLI."""


@vm_relay.group()
def tasks() -> None:
    """Task submission and inspection commands."""


@tasks.command("submit")
@_db_path_option
@click.argument(
    "task_type",
    type=click.Choice([task_type.value for task_type in TaskType], case_sensitive=False),
)
@click.argument("vm_name")
@click.option("--vm-config", default=None, help="JSON object forwarded to VM launch.")
@click.option("--target-server", default=None, help="Target server label.")
@click.option("--snapshot-id", default=None, help="Snapshot id for snapshot_vm.")
@click.option("--command", "vm_command", default=None, help="Shell command for run_command.")
@click.option(
    "--blocking/--no-blocking",
    default=True,
    show_default=True,
    help="Wait for run_command to finish inside the VM.",
)
@_domain_errors
def tasks_submit(  # noqa: PLR0913
    db_path: Path | None,
    task_type: str,
    vm_name: str,
    vm_config: str | None,
    target_server: str | None,
    snapshot_id: str | None,
    vm_command: str | None,
    blocking: bool,
) -> None:
    """Submit a VM lifecycle task."""

    _emit_lines(
        CONTROLLER.submit_task(
            TaskSubmitCommand(
                db_path=db_path,
                task_type=task_type.lower(),
                vm_name=vm_name,
                vm_config=vm_config,
                target_server=target_server,
                snapshot_id=snapshot_id,
                command=vm_command,
                blocking=blocking,
            ),
        ),
    )


@tasks.command("status")
@_db_path_option
@click.argument("task_id")
@_domain_errors
def tasks_status(db_path: Path | None, task_id: str) -> None:
    """Show task status, error and result."""

    _emit_lines(CONTROLLER.task_status(TaskLookupCommand(db_path=db_path, task_id=task_id)))


@tasks.command("list")
@_db_path_option
@click.option(
    "--status",
    type=click.Choice([status.value for status in TaskStatus], case_sensitive=False),
    default=None,
    help="Filter by task status.",
)
@click.option("--vm-name", default=None, help="Filter by VM name substring.")
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=1000),
    default=50,
    show_default=True,
    help="Page size.",
)
@click.option(
    "--offset",
    type=click.IntRange(min=0),
    default=0,
    show_default=True,
    help="Rows to skip.",
)
@_domain_errors
def tasks_list(
    db_path: Path | None,
    status: str | None,
    vm_name: str | None,
    limit: int,
    offset: int,
) -> None:
    """List tasks, newest first."""

    _emit_lines(
        CONTROLLER.list_tasks(
            TaskListCommand(
                db_path=db_path,
                status=status.lower() if status else None,
                vm_name=vm_name,
                limit=limit,
                offset=offset,
            ),
        ),
    )


@tasks.command("inspect")
@_db_path_option
@click.argument("task_id")
@_domain_errors
def tasks_inspect(db_path: Path | None, task_id: str) -> None:
    """Show task details with its status history."""

    _emit_lines(CONTROLLER.inspect_task(TaskLookupCommand(db_path=db_path, task_id=task_id)))


@tasks.command("cancel")
@_db_path_option
@click.argument("task_id")
@_domain_errors
def tasks_cancel(db_path: Path | None, task_id: str) -> None:
    """Cancel a pending task."""

    _emit_lines(CONTROLLER.cancel_task(TaskLookupCommand(db_path=db_path, task_id=task_id)))


@vm_relay.group()
def vms() -> None:
    """VM read-model commands."""


@vms.command("list")
@_db_path_option
@click.option("--status", default=None, help="Filter by VM status.")
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=1000),
    default=50,
    show_default=True,
    help="Page size.",
)
@click.option(
    "--offset",
    type=click.IntRange(min=0),
    default=0,
    show_default=True,
    help="Rows to skip.",
)
@_domain_errors
def vms_list(db_path: Path | None, status: str | None, limit: int, offset: int) -> None:
    """List known VMs."""

    _emit_lines(
        CONTROLLER.list_vms(
            VmListCommand(db_path=db_path, status=status, limit=limit, offset=offset),
        ),
    )


@vms.command("status")
@_db_path_option
@click.argument("name")
@_domain_errors
def vms_status(db_path: Path | None, name: str) -> None:
    """Show one VM record."""

    _emit_lines(CONTROLLER.vm_status(VmLookupCommand(db_path=db_path, name=name)))


@vms.command("forget")
@_db_path_option
@click.argument("name")
@_domain_errors
def vms_forget(db_path: Path | None, name: str) -> None:
    """Remove a VM record from the read model."""

    _emit_lines(CONTROLLER.forget_vm(VmLookupCommand(db_path=db_path, name=name)))


@vm_relay.group()
def relay() -> None:
    """Relay buffer inspection and maintenance."""


@relay.command("ready")
@_db_path_option
@_domain_errors
def relay_ready(db_path: Path | None) -> None:
    """List ready buffered tasks, oldest first."""

    _emit_lines(CONTROLLER.relay_ready(RelayCommand(db_path=db_path)))


@relay.command("all")
@_db_path_option
@_domain_errors
def relay_all(db_path: Path | None) -> None:
    """List every buffered task with claim metadata."""

    _emit_lines(CONTROLLER.relay_all(RelayCommand(db_path=db_path)))


@relay.command("stats")
@_db_path_option
@_domain_errors
def relay_stats(db_path: Path | None) -> None:
    """Show buffered task counts per claim status."""

    _emit_lines(CONTROLLER.relay_stats(RelayCommand(db_path=db_path)))


@relay.command("purge")
@_db_path_option
@_domain_errors
def relay_purge(db_path: Path | None) -> None:
    """Delete buffered tasks past their TTL.

    A task whose entry expires before any worker claims it stays pending in
    the task store; retire it with ``vm-relay tasks cancel``.
    """

    _emit_lines(CONTROLLER.relay_purge(RelayCommand(db_path=db_path)))


@relay.command("dead-letters")
@_db_path_option
@_domain_errors
def relay_dead_letters(db_path: Path | None) -> None:
    """Show notifications that could not be buffered."""

    _emit_lines(CONTROLLER.dead_letters(RelayCommand(db_path=db_path)))


@vm_relay.command("worker")
@_db_path_option
@click.option(
    "--once/--loop",
    default=True,
    show_default=True,
    help="Run one poll or keep polling until stopped.",
)
@click.option(
    "--max-polls",
    type=click.IntRange(min=1),
    default=None,
    help="Optional cap for polls in loop mode.",
)
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="INFO",
    show_default=True,
    help="Worker log level.",
)
@_domain_errors
def worker(db_path: Path | None, once: bool, max_polls: int | None, log_level: str) -> None:
    """Run the relay worker."""

    logging.basicConfig(level=log_level.upper(), format=LOG_FORMAT)
    _emit_lines(
        CONTROLLER.run_worker(WorkerCommand(db_path=db_path, once=once, max_polls=max_polls)),
    )


@vm_relay.command("stats")
@_db_path_option
@_domain_errors
def stats(db_path: Path | None) -> None:
    """Show task, VM and relay buffer counts."""

    _emit_lines(CONTROLLER.stats(StatsCommand(db_path=db_path)))


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    vm_relay()
