"""Task submission: durable store write followed by a message-queue hand-off."""

from __future__ import annotations

import logging
from typing import Any, Protocol

from vm_relay.errors import InternalError
from vm_relay.orchestrator.contracts import payload_to_dict
from vm_relay.orchestrator.models import RelayNotification, TaskCreate, TaskStatus, TaskView
from vm_relay.orchestrator.repository import TaskRepository
from vm_relay.relay.buffer import RelayBuffer
from vm_relay.relay.consumer import RelayConsumer

logger = logging.getLogger(__name__)


class MessageQueue(Protocol):
    """At-least-once message hand-off to the relay."""

    def send(self, message: dict[str, Any]) -> None: ...


class InlineRelayQueue:
    """Delivers each message straight into a relay consumer in the caller's process."""

    def __init__(self, consumer: RelayConsumer) -> None:
        self.consumer = consumer

    def send(self, message: dict[str, Any]) -> None:
        summary = self.consumer.handle_batch([message])
        if summary.dead_lettered:
            raise InternalError(f"Relay rejected message for task {message.get('taskId')}")


class OrchestratorService:
    """Creates tasks and notifies the relay."""

    def __init__(
        self,
        repository: TaskRepository,
        queue: MessageQueue,
        *,
        buffer: RelayBuffer | None = None,
    ) -> None:
        self.repository = repository
        self.queue = queue
        self.buffer = buffer

    def submit_task(
        self,
        task_type: str,
        payload: dict[str, Any],
        *,
        task_id: str | None = None,
    ) -> TaskView:
        """Persist a pending task and publish its notification.

        The task row is written first so the relay never references an
        unknown task. A failed publish marks the task failed instead of
        leaving it pending forever.
        """

        task = self.repository.create_task(
            TaskCreate(task_type=task_type, payload=payload, task_id=task_id),
        )
        notification = RelayNotification(
            task_id=task.task_id,
            task_type=task.task_type.value,
            payload=payload_to_dict(task.payload),
            timestamp=task.created_at,
        )
        try:
            self.queue.send(notification.to_message())
        except Exception as error:  # noqa: BLE001
            message = f"Failed to enqueue task: {error}"
            logger.error("Task %s: %s", task.task_id, message)
            self.repository.update_status(task.task_id, TaskStatus.FAILED, error=message)
            raise InternalError(message) from error
        logger.info("Task %s queued for relay", task.task_id)
        return task

    def cancel_task(self, task_id: str) -> TaskView:
        """Cancel a pending task and drop its unclaimed relay entry."""

        task = self.repository.cancel_task(task_id)
        if self.buffer is not None and self.buffer.discard_ready(task_id):
            logger.info("Discarded relay entry for cancelled task %s", task_id)
        return task
