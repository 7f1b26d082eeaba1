"""Status reporting from the worker back to the task store."""

from __future__ import annotations

import logging
from typing import Any

from sqlalchemy.exc import SQLAlchemyError

from vm_relay.errors import VmRelayError
from vm_relay.orchestrator.models import TaskStatus
from vm_relay.orchestrator.repository import TaskRepository

logger = logging.getLogger(__name__)


class StatusReporter:
    """Records task progress without ever raising into the worker loop.

    Every method returns ``True`` when the store accepted the transition.
    ``processing`` returning ``False`` means the task must not be executed.
    """

    def __init__(self, repository: TaskRepository) -> None:
        self.repository = repository

    def processing(self, task_id: str) -> bool:
        return self._report(task_id, TaskStatus.PROCESSING)

    def completed(self, task_id: str, result: dict[str, Any]) -> bool:
        return self._report(task_id, TaskStatus.COMPLETED, result=result)

    def failed(self, task_id: str, error: str) -> bool:
        return self._report(task_id, TaskStatus.FAILED, error=error)

    def _report(
        self,
        task_id: str,
        status: TaskStatus,
        *,
        error: str | None = None,
        result: dict[str, Any] | None = None,
    ) -> bool:
        try:
            self.repository.update_status(task_id, status, error=error, result=result)
        except VmRelayError as report_error:
            logger.warning(
                "Task %s: could not record status %s: %s",
                task_id,
                status.value,
                report_error,
            )
            return False
        except SQLAlchemyError as report_error:
            logger.error(
                "Task %s: task store error while recording status %s: %s",
                task_id,
                status.value,
                report_error,
            )
            return False
        return True
