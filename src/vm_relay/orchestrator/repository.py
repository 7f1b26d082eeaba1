"""Durable task store and VM read model backed by SQLModel + SQLite."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any
from uuid import uuid4

from sqlalchemy import delete, func, text
from sqlalchemy import update as sa_update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from vm_relay.errors import ConflictError, NotFoundError, ValidationError
from vm_relay.orchestrator.contracts import parse_payload, parse_task_type, payload_to_dict
from vm_relay.orchestrator.models import (
    CANCELLATION_ERROR,
    StoreStats,
    TaskCreate,
    TaskDetails,
    TaskEventView,
    TaskPage,
    TaskStatus,
    TaskType,
    TaskView,
    VmUpsert,
    VmView,
)
from vm_relay.storage.alembic_runner import upgrade_head
from vm_relay.storage.common import (
    build_sqlite_engine,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from vm_relay.storage.sqlmodel_models import VmRecord, VmTask, VmTaskEvent

logger = logging.getLogger(__name__)

_STATE_CHANGE_STATUSES = {
    TaskType.STOP_VM: "stopped",
    TaskType.PAUSE_VM: "paused",
}


class TaskRepository:
    """Task store facade: task lifecycle, status history and VM read model."""

    def __init__(self, db_path: Path, *, sqlite_busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=sqlite_busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        upgrade_head(self.db_path)

    def create_task(self, payload: TaskCreate) -> TaskView:
        """Create a pending task after validating its type and payload."""

        task_type = parse_task_type(payload.task_type)
        parsed = parse_payload(task_type, payload.payload)
        now = utc_now()
        task_id = payload.task_id or str(uuid4())
        with self._session() as session:
            row = VmTask(
                task_id=task_id,
                task_type=task_type.value,
                vm_name=parsed.vm_name,
                payload_json=json.dumps(payload_to_dict(parsed), ensure_ascii=False),
                target_server=parsed.target_server,
                status=TaskStatus.PENDING.value,
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            try:
                session.flush()
            except IntegrityError as error:
                session.rollback()
                raise ConflictError(f"Task already exists: {task_id}") from error
            self._add_event(
                session=session,
                task_id=task_id,
                event_type="created",
                status_from=None,
                status_to=TaskStatus.PENDING,
                details={"task_type": task_type.value, "vm_name": parsed.vm_name},
            )
            session.commit()
            session.refresh(row)
            logger.info("Task created: %s (%s) for VM %s", task_id, task_type.value, parsed.vm_name)
            return _to_task_view(row)

    def get_task(self, task_id: str) -> TaskView:
        """Return one task or raise ``NotFoundError``."""

        with self._session() as session:
            return _to_task_view(self._get_row(session=session, task_id=task_id))

    def get_task_details(self, task_id: str) -> TaskDetails:
        """Return task details with its status history."""

        with self._session() as session:
            task = self._get_row(session=session, task_id=task_id)
            event_rows = session.exec(
                select(VmTaskEvent)
                .where(VmTaskEvent.task_id == task_id)
                .order_by(col(VmTaskEvent.created_at).asc(), col(VmTaskEvent.id).asc()),
            ).all()
            view = _to_task_view(task)

        events: list[TaskEventView] = []
        for row in event_rows:
            details = {}
            if row.details_json:
                parsed = json.loads(row.details_json)
                if isinstance(parsed, dict):
                    details = parsed
            events.append(
                TaskEventView(
                    event_id=row.id or 0,
                    task_id=row.task_id,
                    event_type=row.event_type,
                    status_from=TaskStatus(row.status_from) if row.status_from else None,
                    status_to=TaskStatus(row.status_to) if row.status_to else None,
                    created_at=to_utc_aware_datetime(row.created_at),
                    details=details,
                ),
            )
        return TaskDetails(task=view, events=events)

    def list_tasks(
        self,
        *,
        status: TaskStatus | str | None = None,
        vm_name: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> TaskPage:
        """List tasks newest-created first with a total count for pagination."""

        if limit < 1:
            raise ValidationError(f"limit must be >= 1, got {limit}")
        if offset < 0:
            raise ValidationError(f"offset must be >= 0, got {offset}")
        status_filter = _parse_status(status) if status is not None else None

        conditions = []
        if status_filter is not None:
            conditions.append(col(VmTask.status) == status_filter.value)
        if vm_name:
            conditions.append(col(VmTask.vm_name).contains(vm_name, autoescape=True))

        with self._session() as session:
            statement = (
                select(VmTask)
                .where(*conditions)
                .order_by(col(VmTask.created_at).desc(), text("vm_tasks.rowid DESC"))
                .limit(limit)
                .offset(offset)
            )
            rows = session.exec(statement).all()
            total = session.exec(
                select(func.count()).select_from(VmTask).where(*conditions),
            ).one()
        return TaskPage(
            tasks=[_to_task_view(row) for row in rows],
            total_count=int(total),
            limit=limit,
            offset=offset,
        )

    def update_status(
        self,
        task_id: str,
        status: TaskStatus | str,
        *,
        error: str | None = None,
        result: dict[str, Any] | None = None,
    ) -> TaskView:
        """Move a task forward along pending -> processing -> completed/failed.

        Re-applying the current terminal status with the same error/result is a
        no-op. Leaving a terminal status or re-entering pending raises
        ``ConflictError``. The write is conditional on the status read in the
        same attempt, so a concurrent writer forces a re-evaluation.
        """

        target = _parse_status(status)
        while True:
            with self._session() as session:
                row = self._get_row(session=session, task_id=task_id)
                current = TaskStatus(row.status)
                if current == target:
                    if target.is_terminal and not _same_outcome(row, error=error, result=result):
                        raise ConflictError(
                            f"Task {task_id} is already {current.value} with a different outcome",
                        )
                    return _to_task_view(row)
                if current.is_terminal:
                    raise ConflictError(
                        f"Task {task_id} is {current.value}; cannot move to {target.value}",
                    )
                if target == TaskStatus.PENDING:
                    raise ConflictError(f"Task {task_id} cannot re-enter pending")

                now = utc_now()
                values: dict[str, Any] = {
                    "status": target.value,
                    "updated_at": to_db_datetime(now),
                }
                if target.is_terminal:
                    values["completed_at"] = to_db_datetime(now)
                    values["error_message"] = error if target == TaskStatus.FAILED else None
                    values["result_json"] = (
                        _dump_json(result) if target == TaskStatus.COMPLETED else None
                    )
                outcome = session.exec(
                    sa_update(VmTask)
                    .where(
                        col(VmTask.task_id) == task_id,
                        col(VmTask.status) == current.value,
                    )
                    .values(**values),
                )
                if outcome.rowcount != 1:
                    session.rollback()
                    continue

                self._add_event(
                    session=session,
                    task_id=task_id,
                    event_type="status_changed",
                    status_from=current,
                    status_to=target,
                    details={"error": error} if error and target == TaskStatus.FAILED else {},
                )
                if target == TaskStatus.COMPLETED:
                    self._apply_read_model(
                        session=session,
                        task_type=TaskType(row.task_type),
                        vm_name=row.vm_name,
                        result=result,
                    )
                session.commit()
                updated = self._get_row(session=session, task_id=task_id)
                logger.info("Task %s status updated to: %s", task_id, target.value)
                return _to_task_view(updated)

    def cancel_task(self, task_id: str) -> TaskView:
        """Cancel a pending task; any other status is a conflict."""

        with self._session() as session:
            row = self._get_row(session=session, task_id=task_id)
            if row.status != TaskStatus.PENDING.value:
                raise ConflictError(f"Cannot cancel task with status: {row.status}")

            now = utc_now()
            outcome = session.exec(
                sa_update(VmTask)
                .where(
                    col(VmTask.task_id) == task_id,
                    col(VmTask.status) == TaskStatus.PENDING.value,
                )
                .values(
                    status=TaskStatus.FAILED.value,
                    error_message=CANCELLATION_ERROR,
                    result_json=None,
                    completed_at=to_db_datetime(now),
                    updated_at=to_db_datetime(now),
                ),
            )
            if outcome.rowcount != 1:
                session.rollback()
                raise ConflictError(
                    f"Task state changed concurrently while cancelling (task_id={task_id})",
                )
            self._add_event(
                session=session,
                task_id=task_id,
                event_type="cancelled",
                status_from=TaskStatus.PENDING,
                status_to=TaskStatus.FAILED,
                details={"error": CANCELLATION_ERROR},
            )
            session.commit()
            logger.info("Task %s cancelled", task_id)
            return _to_task_view(self._get_row(session=session, task_id=task_id))

    def upsert_vm(self, vm: VmUpsert) -> VmView:
        """Insert or update the VM read-model row keyed by VM name."""

        with self._session() as session:
            self._upsert_vm_row(session=session, vm=vm)
            session.commit()
            return _to_vm_view(self._get_vm_row(session=session, name=vm.name))

    def get_vm(self, name: str) -> VmView:
        with self._session() as session:
            return _to_vm_view(self._get_vm_row(session=session, name=name))

    def list_vms(
        self,
        *,
        status: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[VmView]:
        if limit < 1:
            raise ValidationError(f"limit must be >= 1, got {limit}")
        if offset < 0:
            raise ValidationError(f"offset must be >= 0, got {offset}")
        with self._session() as session:
            statement = select(VmRecord).order_by(col(VmRecord.created_at).desc())
            if status is not None:
                statement = statement.where(VmRecord.status == status)
            rows = session.exec(statement.limit(limit).offset(offset)).all()
        return [_to_vm_view(row) for row in rows]

    def delete_vm(self, name: str) -> None:
        """Delete a VM record or raise ``NotFoundError``."""

        with self._session() as session:
            outcome = session.exec(delete(VmRecord).where(col(VmRecord.name) == name))
            if outcome.rowcount != 1:
                session.rollback()
                raise NotFoundError(f"VM not found: {name}")
            session.commit()

    def stats(self) -> StoreStats:
        """Task and VM counts grouped by status."""

        with self._session() as session:
            task_rows = session.exec(
                select(VmTask.status, func.count()).group_by(VmTask.status),
            ).all()
            vm_rows = session.exec(
                select(VmRecord.status, func.count()).group_by(VmRecord.status),
            ).all()
        tasks = {status.value: 0 for status in TaskStatus}
        tasks.update({str(status): int(count) for status, count in task_rows})
        return StoreStats(
            tasks=tasks,
            vms={str(status): int(count) for status, count in vm_rows},
        )

    def _session(self) -> Session:
        return Session(self.engine)

    def _get_row(self, *, session: Session, task_id: str) -> VmTask:
        row = session.exec(select(VmTask).where(VmTask.task_id == task_id)).one_or_none()
        if row is None:
            raise NotFoundError(f"Task not found: {task_id}")
        return row

    def _get_vm_row(self, *, session: Session, name: str) -> VmRecord:
        row = session.exec(select(VmRecord).where(VmRecord.name == name)).one_or_none()
        if row is None:
            raise NotFoundError(f"VM not found: {name}")
        return row

    def _upsert_vm_row(self, *, session: Session, vm: VmUpsert) -> None:
        now = utc_now()
        row = session.exec(select(VmRecord).where(VmRecord.name == vm.name)).one_or_none()
        if row is None:
            row = VmRecord(
                vm_id=str(uuid4()),
                name=vm.name,
                created_at=now,
                updated_at=now,
            )
        row.ip_address = vm.ip_address
        row.status = vm.status
        row.subdomain = vm.subdomain
        row.port = vm.port
        row.metadata_json = _dump_json(vm.metadata)
        row.updated_at = now
        session.add(row)

    def _apply_read_model(
        self,
        *,
        session: Session,
        task_type: TaskType,
        vm_name: str,
        result: dict[str, Any] | None,
    ) -> None:
        if task_type == TaskType.LAUNCH_VM:
            if not result or not result.get("subdomain"):
                return
            port = result.get("port")
            self._upsert_vm_row(
                session=session,
                vm=VmUpsert(
                    name=str(result.get("vm_name") or vm_name),
                    ip_address=result.get("ip"),
                    status="running",
                    subdomain=str(result["subdomain"]),
                    port=port if isinstance(port, int) else 8080,
                    metadata=result,
                ),
            )
            return
        if task_type == TaskType.DELETE_VM:
            session.exec(delete(VmRecord).where(col(VmRecord.name) == vm_name))
            return
        vm_status = _STATE_CHANGE_STATUSES.get(task_type)
        if vm_status is not None:
            session.exec(
                sa_update(VmRecord)
                .where(col(VmRecord.name) == vm_name)
                .values(status=vm_status, updated_at=to_db_datetime(utc_now())),
            )

    def _add_event(  # noqa: PLR0913
        self,
        *,
        session: Session,
        task_id: str,
        event_type: str,
        status_from: TaskStatus | None,
        status_to: TaskStatus | None,
        details: dict[str, object],
    ) -> None:
        session.add(
            VmTaskEvent(
                task_id=task_id,
                event_type=event_type,
                status_from=status_from.value if status_from is not None else None,
                status_to=status_to.value if status_to is not None else None,
                details_json=json.dumps(details, ensure_ascii=False, sort_keys=True)
                if details
                else None,
                created_at=utc_now(),
            ),
        )


def _parse_status(value: TaskStatus | str) -> TaskStatus:
    if isinstance(value, TaskStatus):
        return value
    try:
        return TaskStatus(value)
    except ValueError as error:
        raise ValidationError(f"Invalid task status: {value!r}") from error


def _dump_json(value: dict[str, Any] | None) -> str | None:
    if value is None:
        return None
    return json.dumps(value, ensure_ascii=False, sort_keys=True)


def _load_json(value: str | None) -> dict[str, Any] | None:
    if not value:
        return None
    parsed = json.loads(value)
    return parsed if isinstance(parsed, dict) else None


def _same_outcome(row: VmTask, *, error: str | None, result: dict[str, Any] | None) -> bool:
    if row.status == TaskStatus.FAILED.value:
        return (row.error_message or None) == (error or None)
    return (_load_json(row.result_json) or None) == (_load_json(_dump_json(result)) or None)


def _to_task_view(row: VmTask) -> TaskView:
    task_type = TaskType(row.task_type)
    return TaskView(
        task_id=row.task_id,
        task_type=task_type,
        payload=parse_payload(task_type, json.loads(row.payload_json)),
        status=TaskStatus(row.status),
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
        completed_at=(
            to_utc_aware_datetime(row.completed_at) if row.completed_at is not None else None
        ),
        error=row.error_message,
        result=_load_json(row.result_json),
    )


def _to_vm_view(row: VmRecord) -> VmView:
    return VmView(
        vm_id=row.vm_id,
        name=row.name,
        ip_address=row.ip_address,
        status=row.status,
        subdomain=row.subdomain,
        port=row.port,
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
        metadata=_load_json(row.metadata_json),
    )
