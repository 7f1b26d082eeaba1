"""Relay buffer: TTL-bounded ready list with an atomic claim protocol."""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from datetime import datetime, timedelta
from pathlib import Path

from sqlalchemy import delete, func
from sqlalchemy import update as sa_update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlmodel import Session, col, select

from vm_relay.errors import ConflictError, InternalError, NotFoundError, ValidationError
from vm_relay.orchestrator.models import (
    BufferedTaskView,
    BufferStats,
    BufferStatus,
    RelayNotification,
)
from vm_relay.storage.alembic_runner import upgrade_head
from vm_relay.storage.common import (
    build_sqlite_engine,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from vm_relay.storage.sqlmodel_models import BufferedTask

logger = logging.getLogger(__name__)


class RelayBuffer:
    """Holds task notifications until a worker claims and retires them.

    Entries live at most ``ttl_seconds`` after they were received; expired
    entries are purged whatever their claim status.
    """

    def __init__(
        self,
        db_path: Path,
        *,
        ttl_seconds: int = 3_600,
        sqlite_busy_timeout_ms: int = 5_000,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.db_path = db_path
        self.ttl = timedelta(seconds=ttl_seconds)
        self._clock = clock
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=sqlite_busy_timeout_ms)

    def close(self) -> None:
        self.engine.dispose()

    def init_schema(self) -> None:
        upgrade_head(self.db_path)

    def write(self, notification: RelayNotification) -> bool:
        """Buffer a notification; return ``False`` when the task id is already buffered."""

        self.purge_expired()
        received_at = self._clock()
        row = BufferedTask(
            task_id=notification.task_id,
            task_type=notification.task_type,
            payload_json=json.dumps(notification.payload, ensure_ascii=False, sort_keys=True),
            created_at=to_db_datetime(notification.timestamp),
            received_at=to_db_datetime(received_at),
            expires_at=to_db_datetime(received_at + self.ttl),
            status=BufferStatus.READY.value,
        )
        try:
            with Session(self.engine) as session:
                session.add(row)
                session.commit()
        except IntegrityError:
            logger.info("Task %s already buffered; ignoring redelivery", notification.task_id)
            return False
        except SQLAlchemyError as error:
            raise InternalError(
                f"Failed to buffer task {notification.task_id}: {error}",
            ) from error
        logger.info("Task %s stored in relay buffer", notification.task_id)
        return True

    def list_ready(self) -> list[BufferedTaskView]:
        """Ready, unexpired entries, oldest received first."""

        self.purge_expired()
        now = to_db_datetime(self._clock())
        with Session(self.engine) as session:
            rows = session.exec(
                select(BufferedTask)
                .where(
                    BufferedTask.status == BufferStatus.READY.value,
                    col(BufferedTask.expires_at) > now,
                )
                .order_by(col(BufferedTask.received_at).asc(), col(BufferedTask.task_id).asc()),
            ).all()
        return [_to_view(row) for row in rows]

    def list_all(self) -> list[BufferedTaskView]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(BufferedTask).order_by(col(BufferedTask.received_at).asc()),
            ).all()
        return [_to_view(row) for row in rows]

    def get(self, task_id: str) -> BufferedTaskView:
        with Session(self.engine) as session:
            row = session.get(BufferedTask, task_id)
            if row is None:
                raise NotFoundError(f"Task not found in relay buffer: {task_id}")
            return _to_view(row)

    def stats(self) -> BufferStats:
        with Session(self.engine) as session:
            rows = session.exec(
                select(BufferedTask.status, func.count()).group_by(BufferedTask.status),
            ).all()
        counts = {str(status): int(count) for status, count in rows}
        return BufferStats(
            ready=counts.get(BufferStatus.READY.value, 0),
            claimed=counts.get(BufferStatus.CLAIMED.value, 0),
            processing=counts.get(BufferStatus.PROCESSING.value, 0),
        )

    def purge_expired(self) -> int:
        """Delete entries past their TTL and return how many were removed."""

        now = to_db_datetime(self._clock())
        try:
            with Session(self.engine) as session:
                expired = session.exec(
                    select(BufferedTask.task_id, BufferedTask.status).where(
                        col(BufferedTask.expires_at) <= now,
                    ),
                ).all()
                if not expired:
                    return 0
                session.exec(delete(BufferedTask).where(col(BufferedTask.expires_at) <= now))
                session.commit()
        except SQLAlchemyError as error:
            raise InternalError(f"Failed to purge expired relay entries: {error}") from error
        for task_id, status in expired:
            if status == BufferStatus.READY.value:
                # Nothing else will pick the task up; only a cancel retires it.
                logger.warning(
                    "Relay buffer entry %s expired unclaimed and was purged; the task stays "
                    "pending until cancelled (vm-relay tasks cancel %s)",
                    task_id,
                    task_id,
                )
                continue
            logger.warning(
                "Relay buffer entry %s expired in status %s and was purged",
                task_id,
                status,
            )
        return len(expired)

    def claim(self, task_id: str, worker_id: str) -> BufferedTaskView:
        """Atomically move a ready entry to claimed for ``worker_id``.

        Exactly one concurrent caller wins; the others get ``ConflictError``
        and the entry is left as the winner wrote it.
        """

        if not worker_id or not worker_id.strip():
            raise ValidationError("Missing workerId")
        self.purge_expired()
        now = self._clock()
        with Session(self.engine) as session:
            outcome = session.exec(
                sa_update(BufferedTask)
                .where(
                    col(BufferedTask.task_id) == task_id,
                    col(BufferedTask.status) == BufferStatus.READY.value,
                    col(BufferedTask.expires_at) > to_db_datetime(now),
                )
                .values(
                    status=BufferStatus.CLAIMED.value,
                    claimed_at=to_db_datetime(now),
                    claimed_by=worker_id,
                    version=col(BufferedTask.version) + 1,
                ),
            )
            if outcome.rowcount != 1:
                session.rollback()
                row = session.get(BufferedTask, task_id)
                if row is None or to_utc_aware_datetime(row.expires_at) <= now:
                    raise NotFoundError(f"Task not found or expired: {task_id}")
                raise ConflictError(f"Task is not ready for claiming (status: {row.status})")
            session.commit()
            claimed = session.get(BufferedTask, task_id)
            if claimed is None:
                raise NotFoundError(f"Task not found or expired: {task_id}")
            logger.info("Task %s claimed by worker %s", task_id, worker_id)
            return _to_view(claimed)

    def mark_processing(self, task_id: str, worker_id: str) -> bool:
        """Advance a claimed entry to processing; only the claim holder may do so."""

        with Session(self.engine) as session:
            outcome = session.exec(
                sa_update(BufferedTask)
                .where(
                    col(BufferedTask.task_id) == task_id,
                    col(BufferedTask.status) == BufferStatus.CLAIMED.value,
                    col(BufferedTask.claimed_by) == worker_id,
                )
                .values(
                    status=BufferStatus.PROCESSING.value,
                    version=col(BufferedTask.version) + 1,
                ),
            )
            if outcome.rowcount != 1:
                session.rollback()
                return False
            session.commit()
        return True

    def release(self, task_id: str, worker_id: str) -> bool:
        """Return a held entry to ready so it can be claimed again."""

        with Session(self.engine) as session:
            outcome = session.exec(
                sa_update(BufferedTask)
                .where(
                    col(BufferedTask.task_id) == task_id,
                    col(BufferedTask.status).in_(
                        [BufferStatus.CLAIMED.value, BufferStatus.PROCESSING.value],
                    ),
                    col(BufferedTask.claimed_by) == worker_id,
                )
                .values(
                    status=BufferStatus.READY.value,
                    claimed_at=None,
                    claimed_by=None,
                    version=col(BufferedTask.version) + 1,
                ),
            )
            if outcome.rowcount != 1:
                session.rollback()
                return False
            session.commit()
        return True

    def delete(self, task_id: str) -> bool:
        """Retire an entry; return ``False`` when it was already gone."""

        with Session(self.engine) as session:
            outcome = session.exec(delete(BufferedTask).where(col(BufferedTask.task_id) == task_id))
            session.commit()
        deleted = outcome.rowcount == 1
        if deleted:
            logger.info("Task %s removed from relay buffer", task_id)
        return deleted

    def discard_ready(self, task_id: str) -> bool:
        """Drop an entry only while nobody has claimed it."""

        with Session(self.engine) as session:
            outcome = session.exec(
                delete(BufferedTask).where(
                    col(BufferedTask.task_id) == task_id,
                    col(BufferedTask.status) == BufferStatus.READY.value,
                ),
            )
            session.commit()
        return outcome.rowcount == 1


def _to_view(row: BufferedTask) -> BufferedTaskView:
    payload = json.loads(row.payload_json)
    return BufferedTaskView(
        task_id=row.task_id,
        task_type=row.task_type,
        payload=payload if isinstance(payload, dict) else {},
        created_at=to_utc_aware_datetime(row.created_at),
        received_at=to_utc_aware_datetime(row.received_at),
        expires_at=to_utc_aware_datetime(row.expires_at),
        status=BufferStatus(row.status),
        claimed_at=to_utc_aware_datetime(row.claimed_at) if row.claimed_at is not None else None,
        claimed_by=row.claimed_by,
        version=row.version,
    )
