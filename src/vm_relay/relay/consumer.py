"""Message-queue hand-off into the relay buffer with bounded retries and dead letters."""

from __future__ import annotations

import json
import logging
import time
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Protocol

from filelock import FileLock

from vm_relay.errors import InternalError, ValidationError
from vm_relay.orchestrator.models import RelayNotification
from vm_relay.relay.buffer import RelayBuffer
from vm_relay.storage.common import from_iso, utc_now

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class DeadLetter:
    """Notification that could not be buffered."""

    task_id: str | None
    message: dict[str, Any]
    error: str
    attempts: int
    failed_at: str


@dataclass(slots=True)
class RelayBatchSummary:
    """Outcome counters for one delivered batch."""

    buffered: int = 0
    duplicates: int = 0
    dead_lettered: int = 0


class DeadLetterSink(Protocol):
    def record(self, letter: DeadLetter) -> None: ...


class JsonlDeadLetterSink:
    """Appends dead letters as JSON lines, serialized across processes by a file lock."""

    def __init__(self, path: Path) -> None:
        self.path = path
        self._lock = FileLock(f"{path}.lock")

    def record(self, letter: DeadLetter) -> None:
        line = json.dumps(
            {
                "task_id": letter.task_id,
                "message": letter.message,
                "error": letter.error,
                "attempts": letter.attempts,
                "failed_at": letter.failed_at,
            },
            ensure_ascii=False,
            sort_keys=True,
            default=str,
        )
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with self._lock, self.path.open("a", encoding="utf-8") as handle:
            handle.write(line + "\n")

    def read_all(self) -> list[DeadLetter]:
        if not self.path.exists():
            return []
        letters: list[DeadLetter] = []
        for raw_line in self.path.read_text(encoding="utf-8").splitlines():
            if not raw_line.strip():
                continue
            data = json.loads(raw_line)
            letters.append(
                DeadLetter(
                    task_id=data.get("task_id"),
                    message=data.get("message") or {},
                    error=str(data.get("error", "")),
                    attempts=int(data.get("attempts", 0)),
                    failed_at=str(data.get("failed_at", "")),
                ),
            )
        return letters


def parse_message(message: Mapping[str, Any]) -> RelayNotification:
    """Convert a queue message into a notification; ``ValidationError`` when malformed."""

    if not isinstance(message, Mapping):
        raise ValidationError("Queue message must be an object")
    task_id = message.get("taskId", message.get("task_id"))
    task_type = message.get("type")
    payload = message.get("payload")
    if not isinstance(task_id, str) or not task_id.strip():
        raise ValidationError("Queue message is missing taskId")
    if not isinstance(task_type, str) or not task_type.strip():
        raise ValidationError("Queue message is missing type")
    if not isinstance(payload, Mapping):
        raise ValidationError("Queue message payload must be an object")

    raw_timestamp = message.get("timestamp")
    if raw_timestamp is None:
        timestamp = utc_now()
    elif isinstance(raw_timestamp, str):
        try:
            timestamp = from_iso(raw_timestamp)
        except ValueError as error:
            raise ValidationError(f"Invalid message timestamp: {raw_timestamp!r}") from error
    else:
        raise ValidationError(f"Invalid message timestamp: {raw_timestamp!r}")

    return RelayNotification(
        task_id=task_id.strip(),
        task_type=task_type.strip(),
        payload=dict(payload),
        timestamp=timestamp,
    )


class RelayConsumer:
    """Buffers delivered queue messages, retrying store failures with a fixed delay."""

    def __init__(  # noqa: PLR0913
        self,
        buffer: RelayBuffer,
        *,
        dead_letters: DeadLetterSink,
        max_attempts: int = 3,
        retry_delay_seconds: float = 30.0,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self.buffer = buffer
        self.dead_letters = dead_letters
        self.max_attempts = max_attempts
        self.retry_delay_seconds = retry_delay_seconds
        self._sleep = sleep

    def handle_batch(self, messages: Iterable[Mapping[str, Any]]) -> RelayBatchSummary:
        summary = RelayBatchSummary()
        for message in messages:
            self._handle_one(message, summary)
        return summary

    def _handle_one(self, message: Mapping[str, Any], summary: RelayBatchSummary) -> None:
        try:
            notification = parse_message(message)
        except ValidationError as error:
            logger.error("Dropping malformed relay message: %s", error)
            self._dead_letter(message, task_id=None, error=str(error), attempts=1)
            summary.dead_lettered += 1
            return

        last_error = ""
        for attempt in range(1, self.max_attempts + 1):
            try:
                stored = self.buffer.write(notification)
            except InternalError as error:
                last_error = str(error)
                logger.warning(
                    "Failed to buffer task %s (attempt %d/%d): %s",
                    notification.task_id,
                    attempt,
                    self.max_attempts,
                    error,
                )
                if attempt < self.max_attempts:
                    self._sleep(self.retry_delay_seconds)
                continue
            if stored:
                summary.buffered += 1
            else:
                summary.duplicates += 1
            return

        logger.error(
            "Task %s dead-lettered after %d attempts",
            notification.task_id,
            self.max_attempts,
        )
        self._dead_letter(
            message,
            task_id=notification.task_id,
            error=last_error,
            attempts=self.max_attempts,
        )
        summary.dead_lettered += 1

    def _dead_letter(
        self,
        message: Mapping[str, Any],
        *,
        task_id: str | None,
        error: str,
        attempts: int,
    ) -> None:
        self.dead_letters.record(
            DeadLetter(
                task_id=task_id,
                message=dict(message) if isinstance(message, Mapping) else {"raw": repr(message)},
                error=error,
                attempts=attempts,
                failed_at=utc_now().isoformat(),
            ),
        )
