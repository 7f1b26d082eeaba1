from __future__ import annotations

from pathlib import Path

import allure
import pytest

from vm_relay.errors import InternalError
from vm_relay.orchestrator.models import BufferStatus, RelayNotification
from vm_relay.relay.buffer import RelayBuffer
from vm_relay.relay.consumer import JsonlDeadLetterSink, RelayConsumer, parse_message

pytestmark = [
    allure.epic("Relay Buffer"),
    allure.feature("Queue Consumer"),
]


class _FlakyBuffer:
    def __init__(self, failures: int) -> None:
        self.failures = failures
        self.attempts = 0
        self.written: list[RelayNotification] = []

    def write(self, notification: RelayNotification) -> bool:
        self.attempts += 1
        if self.attempts <= self.failures:
            raise InternalError("Failed to buffer task: database is locked")
        self.written.append(notification)
        return True


def _message(task_id: str = "task-1", **overrides) -> dict:
    message = {
        "taskId": task_id,
        "type": "launch_vm",
        "payload": {"vm_name": "web-1"},
        "timestamp": "2026-10-19T12:00:00+00:00",
    }
    message.update(overrides)
    return message


def test_parse_message_accepts_both_id_spellings() -> None:
    camel = parse_message(_message())
    snake_source = _message()
    snake_source.pop("taskId")
    snake_source["task_id"] = "task-2"
    snake = parse_message(snake_source)

    assert camel.task_id == "task-1"
    assert camel.timestamp.isoformat() == "2026-10-19T12:00:00+00:00"
    assert snake.task_id == "task-2"
    assert snake.payload == {"vm_name": "web-1"}


def test_batch_buffers_new_messages_and_counts_redeliveries(
    buffer: RelayBuffer,
    tmp_path: Path,
) -> None:
    sink = JsonlDeadLetterSink(tmp_path / "dead.jsonl")
    consumer = RelayConsumer(buffer, dead_letters=sink, retry_delay_seconds=0)

    summary = consumer.handle_batch([_message("a"), _message("b"), _message("a")])

    assert (summary.buffered, summary.duplicates, summary.dead_lettered) == (2, 1, 0)
    assert {entry.task_id for entry in buffer.list_ready()} == {"a", "b"}
    assert buffer.get("a").status == BufferStatus.READY
    assert sink.read_all() == []


def test_malformed_message_is_dead_lettered_without_retry(
    buffer: RelayBuffer,
    tmp_path: Path,
) -> None:
    sink = JsonlDeadLetterSink(tmp_path / "dead.jsonl")
    delays: list[float] = []
    consumer = RelayConsumer(buffer, dead_letters=sink, sleep=delays.append)

    summary = consumer.handle_batch([{"type": "launch_vm", "payload": {}}])

    assert summary.dead_lettered == 1
    assert delays == []
    letters = sink.read_all()
    assert len(letters) == 1
    assert letters[0].task_id is None
    assert letters[0].attempts == 1
    assert "taskId" in letters[0].error


def test_store_failures_are_retried_with_fixed_delay(tmp_path: Path) -> None:
    sink = JsonlDeadLetterSink(tmp_path / "dead.jsonl")
    flaky = _FlakyBuffer(failures=2)
    delays: list[float] = []
    consumer = RelayConsumer(
        flaky,
        dead_letters=sink,
        max_attempts=3,
        retry_delay_seconds=30.0,
        sleep=delays.append,
    )

    summary = consumer.handle_batch([_message()])

    assert summary.buffered == 1
    assert flaky.attempts == 3
    assert delays == [30.0, 30.0]
    assert sink.read_all() == []


def test_exhausted_retries_dead_letter_the_message(tmp_path: Path) -> None:
    sink = JsonlDeadLetterSink(tmp_path / "nested" / "dead.jsonl")
    flaky = _FlakyBuffer(failures=10)
    delays: list[float] = []
    consumer = RelayConsumer(flaky, dead_letters=sink, max_attempts=3, sleep=delays.append)

    summary = consumer.handle_batch([_message("lost")])

    assert summary.dead_lettered == 1
    assert flaky.attempts == 3
    assert len(delays) == 2
    (letter,) = sink.read_all()
    assert letter.task_id == "lost"
    assert letter.attempts == 3
    assert "database is locked" in letter.error
    assert letter.message["payload"] == {"vm_name": "web-1"}


def test_unreachable_buffer_store_is_retried_then_dead_lettered(tmp_path: Path) -> None:
    # No schema: every buffer call fails with a database error before the insert.
    unmigrated = RelayBuffer(tmp_path / "unmigrated.db")
    sink = JsonlDeadLetterSink(tmp_path / "dead.jsonl")
    delays: list[float] = []
    consumer = RelayConsumer(unmigrated, dead_letters=sink, max_attempts=3, sleep=delays.append)

    summary = consumer.handle_batch([_message("t1"), _message("t2")])

    assert (summary.buffered, summary.dead_lettered) == (0, 2)
    assert delays == [30.0] * 4
    letters = sink.read_all()
    assert [letter.task_id for letter in letters] == ["t1", "t2"]
    assert {letter.attempts for letter in letters} == {3}
    assert all("Failed to purge expired relay entries" in letter.error for letter in letters)
    unmigrated.close()


def test_consumer_rejects_non_positive_attempts(tmp_path: Path) -> None:
    with pytest.raises(ValueError, match="max_attempts"):
        RelayConsumer(
            _FlakyBuffer(failures=0),
            dead_letters=JsonlDeadLetterSink(tmp_path / "dead.jsonl"),
            max_attempts=0,
        )
