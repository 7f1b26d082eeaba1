"""Controllers for vm-relay CLI commands."""

from __future__ import annotations

import json
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import httpx

from vm_relay.config import Settings
from vm_relay.errors import ValidationError
from vm_relay.orchestrator.engine import ExecutionEngine, VmOperations
from vm_relay.orchestrator.models import TaskView, VmView
from vm_relay.orchestrator.repository import TaskRepository
from vm_relay.orchestrator.services import InlineRelayQueue, OrchestratorService
from vm_relay.orchestrator.worker import RelayWorker
from vm_relay.relay.buffer import RelayBuffer
from vm_relay.relay.consumer import JsonlDeadLetterSink, RelayConsumer
from vm_relay.tunnel.config_file import TunnelConfigFile
from vm_relay.tunnel.exposer import TunnelExposer
from vm_relay.tunnel.service import CommandRunner, TunnelService, run_subprocess
from vm_relay.vmcontrol.client import VmControlClient
from vm_relay.workflows.provisioning import ProvisioningWorkflow
from vm_relay.workflows.teardown import TeardownWorkflow
from vm_relay.workflows.workload import WorkloadBootstrapper


@dataclass(slots=True)
class TaskSubmitCommand:
    """CLI input for task submission."""

    db_path: Path | None
    task_type: str
    vm_name: str
    vm_config: str | None = None
    target_server: str | None = None
    snapshot_id: str | None = None
    command: str | None = None
    blocking: bool = True


@dataclass(slots=True)
class TaskLookupCommand:
    """CLI input for single-task status/inspect/cancel."""

    db_path: Path | None
    task_id: str


@dataclass(slots=True)
class TaskListCommand:
    db_path: Path | None
    status: str | None
    vm_name: str | None
    limit: int
    offset: int = 0


@dataclass(slots=True)
class VmListCommand:
    db_path: Path | None
    status: str | None
    limit: int
    offset: int = 0


@dataclass(slots=True)
class VmLookupCommand:
    db_path: Path | None
    name: str


@dataclass(slots=True)
class RelayCommand:
    """CLI input for relay buffer inspection and maintenance."""

    db_path: Path | None


@dataclass(slots=True)
class WorkerCommand:
    """CLI input for worker execution."""

    db_path: Path | None
    once: bool
    max_polls: int | None = None


@dataclass(slots=True)
class StatsCommand:
    db_path: Path | None


@dataclass(slots=True)
class Runtime:
    """Store, buffer and submission service sharing one configuration."""

    repository: TaskRepository
    buffer: RelayBuffer
    service: OrchestratorService


def build_execution_engine(  # noqa: PLR0913
    settings: Settings,
    *,
    control: VmOperations | None = None,
    runner: CommandRunner = run_subprocess,
    sleep: Callable[[float], None] = time.sleep,
    probe_transport: httpx.BaseTransport | None = None,
) -> ExecutionEngine:
    """Wire VM control, tunnel and workflows into an engine."""

    vm_control: Any = control or VmControlClient(
        settings.vm_control.base_url,
        timeout_seconds=settings.vm_control.timeout_seconds,
    )
    exposer = TunnelExposer(
        config_file=TunnelConfigFile(
            settings.tunnel.config_path,
            lock_timeout_seconds=settings.tunnel.lock_timeout_seconds,
        ),
        service=TunnelService(
            settings.tunnel,
            runner=runner,
            sleep=sleep,
            probe_transport=probe_transport,
        ),
        base_domain=settings.tunnel.base_domain,
    )
    teardown = TeardownWorkflow(control=vm_control, exposer=exposer)
    provisioning = ProvisioningWorkflow(
        control=vm_control,
        bootstrapper=WorkloadBootstrapper(vm_control, settings.workload, sleep=sleep),
        exposer=exposer,
        defaults=settings.vm_control,
        rollback=teardown.run if settings.vm_control.rollback_on_failure else None,
    )
    return ExecutionEngine(control=vm_control, provisioning=provisioning, teardown=teardown)


class VmRelayCliController:
    """Coordinates submission, inspection, relay and worker CLI operations."""

    def submit_task(self, command: TaskSubmitCommand) -> list[str]:
        payload = _build_payload(command)
        with _runtime(_load_settings(command.db_path)) as runtime:
            task = runtime.service.submit_task(command.task_type, payload)
        return [
            "Task submitted: "
            f"task_id={task.task_id} type={task.task_type.value} status={task.status.value}",
            f"VM: {task.vm_name}",
        ]

    def task_status(self, command: TaskLookupCommand) -> list[str]:
        with _repository(_load_settings(command.db_path)) as repository:
            task = repository.get_task(command.task_id)
        return _task_lines(task)

    def list_tasks(self, command: TaskListCommand) -> list[str]:
        with _repository(_load_settings(command.db_path)) as repository:
            page = repository.list_tasks(
                status=command.status,
                vm_name=command.vm_name,
                limit=command.limit,
                offset=command.offset,
            )

        lines = [
            f"Tasks: {len(page.tasks)} of {page.total_count}"
            + (" (more available)" if page.has_more else ""),
        ]
        for task in page.tasks:
            lines.append(
                f"  {task.task_id} type={task.task_type.value} vm={task.vm_name} "
                f"status={task.status.value} created_at={task.created_at.isoformat()}",
            )
        return lines

    def inspect_task(self, command: TaskLookupCommand) -> list[str]:
        with _repository(_load_settings(command.db_path)) as repository:
            details = repository.get_task_details(command.task_id)

        lines = _task_lines(details.task)
        lines.append(f"Events: {len(details.events)}")
        for event in details.events:
            lines.append(
                f"  {event.created_at.isoformat()} {event.event_type} "
                f"{event.status_from.value if event.status_from else '-'} -> "
                f"{event.status_to.value if event.status_to else '-'}",
            )
        return lines

    def cancel_task(self, command: TaskLookupCommand) -> list[str]:
        with _runtime(_load_settings(command.db_path)) as runtime:
            task = runtime.service.cancel_task(command.task_id)
        return [f"Task cancelled: {task.task_id} status={task.status.value}"]

    def list_vms(self, command: VmListCommand) -> list[str]:
        with _repository(_load_settings(command.db_path)) as repository:
            vms = repository.list_vms(
                status=command.status,
                limit=command.limit,
                offset=command.offset,
            )
        lines = [f"VMs: {len(vms)}"]
        lines.extend(
            f"  {vm.name} status={vm.status} ip={vm.ip_address or '-'} url={vm.url or '-'}"
            for vm in vms
        )
        return lines

    def vm_status(self, command: VmLookupCommand) -> list[str]:
        with _repository(_load_settings(command.db_path)) as repository:
            vm = repository.get_vm(command.name)
        return _vm_lines(vm)

    def forget_vm(self, command: VmLookupCommand) -> list[str]:
        """Drop a VM from the read model without touching the VM itself."""

        with _repository(_load_settings(command.db_path)) as repository:
            repository.delete_vm(command.name)
        return [f"VM record removed: {command.name}"]

    def relay_ready(self, command: RelayCommand) -> list[str]:
        with _buffer(_load_settings(command.db_path)) as buffer:
            entries = buffer.list_ready()
        lines = [f"Ready tasks: {len(entries)}"]
        lines.extend(
            f"  {entry.task_id} type={entry.task_type} vm={entry.vm_name or '-'} "
            f"received_at={entry.received_at.isoformat()}"
            for entry in entries
        )
        return lines

    def relay_all(self, command: RelayCommand) -> list[str]:
        with _buffer(_load_settings(command.db_path)) as buffer:
            entries = buffer.list_all()
        lines = [f"Buffered tasks: {len(entries)}"]
        lines.extend(
            f"  {entry.task_id} type={entry.task_type} status={entry.status.value} "
            f"claimed_by={entry.claimed_by or '-'} expires_at={entry.expires_at.isoformat()}"
            for entry in entries
        )
        return lines

    def relay_stats(self, command: RelayCommand) -> list[str]:
        with _buffer(_load_settings(command.db_path)) as buffer:
            stats = buffer.stats()
        return [
            f"Relay buffer: total={stats.total} ready={stats.ready} "
            f"claimed={stats.claimed} processing={stats.processing}",
        ]

    def relay_purge(self, command: RelayCommand) -> list[str]:
        with _buffer(_load_settings(command.db_path)) as buffer:
            purged = buffer.purge_expired()
        return [f"Expired entries purged: {purged}"]

    def dead_letters(self, command: RelayCommand) -> list[str]:
        settings = _load_settings(command.db_path)
        letters = JsonlDeadLetterSink(settings.relay.dead_letter_path).read_all()
        lines = [f"Dead letters: {len(letters)}"]
        lines.extend(
            f"  {letter.failed_at} task_id={letter.task_id or '-'} "
            f"attempts={letter.attempts} error={letter.error}"
            for letter in letters
        )
        return lines

    def run_worker(self, command: WorkerCommand) -> list[str]:
        settings = _load_settings(command.db_path)
        engine = build_execution_engine(settings)
        try:
            with _runtime(settings) as runtime:
                worker = RelayWorker(
                    buffer=runtime.buffer,
                    repository=runtime.repository,
                    engine=engine,
                    worker_id=settings.worker.worker_id,
                    poll_interval_seconds=settings.worker.poll_interval_seconds,
                    error_backoff_seconds=settings.worker.error_backoff_seconds,
                )
                summary = (
                    worker.run_once()
                    if command.once
                    else worker.run_loop(max_polls=command.max_polls)
                )
        finally:
            if isinstance(engine.control, VmControlClient):
                engine.control.close()

        return [
            "Worker summary: "
            f"polls={summary.polls} processed={summary.processed} "
            f"succeeded={summary.succeeded} failed={summary.failed} "
            f"skipped={summary.skipped} errors={summary.errors} idle_polls={summary.idle_polls}",
        ]

    def stats(self, command: StatsCommand) -> list[str]:
        with _runtime(_load_settings(command.db_path)) as runtime:
            store_stats = runtime.repository.stats()
            buffer_stats = runtime.buffer.stats()

        task_counts = " ".join(f"{key}={value}" for key, value in sorted(store_stats.tasks.items()))
        vm_counts = " ".join(f"{key}={value}" for key, value in sorted(store_stats.vms.items()))
        return [
            f"Tasks: total={store_stats.total_tasks} {task_counts}".rstrip(),
            f"VMs: total={store_stats.total_vms} {vm_counts}".rstrip(),
            f"Relay buffer: total={buffer_stats.total} ready={buffer_stats.ready} "
            f"claimed={buffer_stats.claimed} processing={buffer_stats.processing}",
        ]


def _load_settings(db_path: Path | None) -> Settings:
    settings = Settings.from_env(db_path=db_path)
    settings.validate()
    return settings


def _build_payload(command: TaskSubmitCommand) -> dict[str, Any]:
    payload: dict[str, Any] = {"vm_name": command.vm_name}
    if command.vm_config:
        try:
            vm_config = json.loads(command.vm_config)
        except json.JSONDecodeError as error:
            raise ValidationError(f"--vm-config is not valid JSON: {error}") from error
        payload["vm_config"] = vm_config
    if command.target_server:
        payload["target_server"] = command.target_server
    if command.snapshot_id:
        payload["snapshot_id"] = command.snapshot_id
    if command.command:
        payload["command"] = command.command
    if not command.blocking:
        payload["blocking"] = False
    return payload


def _task_lines(task: TaskView) -> list[str]:
    lines = [
        f"Task: {task.task_id}",
        f"Type: {task.task_type.value}",
        f"VM: {task.vm_name}",
        f"Status: {task.status.value}",
        f"Created: {task.created_at.isoformat()}",
        f"Updated: {task.updated_at.isoformat()}",
        f"Completed: {task.completed_at.isoformat() if task.completed_at else '-'}",
        f"Error: {task.error or '-'}",
    ]
    if task.result is not None:
        lines.append(f"Result: {json.dumps(task.result, ensure_ascii=False, sort_keys=True)}")
    return lines


def _vm_lines(vm: VmView) -> list[str]:
    return [
        f"VM: {vm.name}",
        f"Status: {vm.status}",
        f"IP: {vm.ip_address or '-'}",
        f"Port: {vm.port}",
        f"Subdomain: {vm.subdomain or '-'}",
        f"URL: {vm.url or '-'}",
        f"Updated: {vm.updated_at.isoformat()}",
    ]


@contextmanager
def _repository(settings: Settings) -> Iterator[TaskRepository]:
    repository = TaskRepository(
        db_path=settings.db_path,
        sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms,
    )
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()


@contextmanager
def _buffer(settings: Settings) -> Iterator[RelayBuffer]:
    buffer = RelayBuffer(
        db_path=settings.effective_buffer_db_path,
        ttl_seconds=settings.relay.buffer_ttl_seconds,
        sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms,
    )
    buffer.init_schema()
    try:
        yield buffer
    finally:
        buffer.close()


@contextmanager
def _runtime(settings: Settings) -> Iterator[Runtime]:
    with _repository(settings) as repository, _buffer(settings) as buffer:
        consumer = RelayConsumer(
            buffer,
            dead_letters=JsonlDeadLetterSink(settings.relay.dead_letter_path),
            max_attempts=settings.relay.max_retries,
            retry_delay_seconds=settings.relay.retry_delay_seconds,
        )
        yield Runtime(
            repository=repository,
            buffer=buffer,
            service=OrchestratorService(repository, InlineRelayQueue(consumer), buffer=buffer),
        )
