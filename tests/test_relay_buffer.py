from __future__ import annotations

import logging
import queue
import threading
from datetime import UTC, datetime, timedelta
from pathlib import Path

import allure
import pytest

from vm_relay.errors import ConflictError, NotFoundError, ValidationError
from vm_relay.orchestrator.models import BufferStatus, RelayNotification
from vm_relay.relay.buffer import RelayBuffer

pytestmark = [
    allure.epic("Relay Buffer"),
    allure.feature("Claim Protocol"),
]


class _Clock:
    def __init__(self) -> None:
        self.now = datetime(2026, 10, 19, 12, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


def _notification(task_id: str, vm_name: str = "web-1") -> RelayNotification:
    return RelayNotification(
        task_id=task_id,
        task_type="launch_vm",
        payload={"vm_name": vm_name},
        timestamp=datetime(2026, 10, 19, 11, 59, tzinfo=UTC),
    )


def _buffer(tmp_path: Path, clock: _Clock, ttl_seconds: int = 3600) -> RelayBuffer:
    buffer = RelayBuffer(tmp_path / "buffer.db", ttl_seconds=ttl_seconds, clock=clock)
    buffer.init_schema()
    return buffer


def test_write_is_idempotent_and_never_resets_a_claim(tmp_path: Path) -> None:
    clock = _Clock()
    buffer = _buffer(tmp_path, clock)

    assert buffer.write(_notification("t1")) is True
    buffer.claim("t1", "worker-a")
    assert buffer.write(_notification("t1", vm_name="other")) is False

    entry = buffer.get("t1")
    assert entry.status == BufferStatus.CLAIMED
    assert entry.claimed_by == "worker-a"
    assert entry.vm_name == "web-1"
    assert len(buffer.list_all()) == 1
    buffer.close()


def test_list_ready_returns_oldest_received_first(tmp_path: Path) -> None:
    clock = _Clock()
    buffer = _buffer(tmp_path, clock)
    for task_id in ("t2", "t1", "t3"):
        buffer.write(_notification(task_id))
        clock.advance(1)
    buffer.claim("t1", "worker-a")

    assert [entry.task_id for entry in buffer.list_ready()] == ["t2", "t3"]
    buffer.close()


def test_claim_sets_metadata_and_bumps_version(tmp_path: Path) -> None:
    clock = _Clock()
    buffer = _buffer(tmp_path, clock)
    buffer.write(_notification("t1"))

    claimed = buffer.claim("t1", "worker-a")

    assert claimed.status == BufferStatus.CLAIMED
    assert claimed.claimed_by == "worker-a"
    assert claimed.claimed_at == clock.now
    assert claimed.version == 1
    assert claimed.expires_at == clock.now + timedelta(hours=1)

    with pytest.raises(ConflictError, match=r"not ready for claiming \(status: claimed\)"):
        buffer.claim("t1", "worker-b")
    assert buffer.get("t1").claimed_by == "worker-a"
    assert buffer.get("t1").version == 1
    buffer.close()


def test_claim_validates_worker_and_presence(tmp_path: Path) -> None:
    buffer = _buffer(tmp_path, _Clock())
    buffer.write(_notification("t1"))

    with pytest.raises(ValidationError):
        buffer.claim("t1", "  ")
    with pytest.raises(NotFoundError):
        buffer.claim("missing", "worker-a")
    buffer.close()


def test_mark_processing_only_for_claim_holder(tmp_path: Path) -> None:
    buffer = _buffer(tmp_path, _Clock())
    buffer.write(_notification("t1"))
    buffer.claim("t1", "worker-a")

    assert buffer.mark_processing("t1", "worker-b") is False
    assert buffer.mark_processing("t1", "worker-a") is True

    entry = buffer.get("t1")
    assert entry.status == BufferStatus.PROCESSING
    assert entry.version == 2
    assert buffer.mark_processing("t1", "worker-a") is False
    buffer.close()


def test_release_returns_entry_to_ready(tmp_path: Path) -> None:
    buffer = _buffer(tmp_path, _Clock())
    buffer.write(_notification("t1"))
    buffer.claim("t1", "worker-a")

    assert buffer.release("t1", "worker-b") is False
    assert buffer.release("t1", "worker-a") is True

    entry = buffer.get("t1")
    assert entry.status == BufferStatus.READY
    assert entry.claimed_by is None
    assert buffer.claim("t1", "worker-b").claimed_by == "worker-b"
    buffer.close()


def test_expired_entries_are_purged_whatever_their_status(tmp_path: Path) -> None:
    clock = _Clock()
    buffer = _buffer(tmp_path, clock, ttl_seconds=60)
    buffer.write(_notification("ready"))
    buffer.write(_notification("claimed"))
    buffer.claim("claimed", "worker-a")

    clock.advance(59)
    assert [entry.task_id for entry in buffer.list_ready()] == ["ready"]

    clock.advance(1)
    assert buffer.list_ready() == []
    with pytest.raises(NotFoundError):
        buffer.get("claimed")
    assert buffer.stats().total == 0
    buffer.close()


def test_claim_of_expired_entry_is_not_found(tmp_path: Path) -> None:
    clock = _Clock()
    buffer = _buffer(tmp_path, clock, ttl_seconds=10)
    buffer.write(_notification("t1"))
    clock.advance(11)

    with pytest.raises(NotFoundError, match="not found or expired"):
        buffer.claim("t1", "worker-a")
    buffer.close()


def test_purge_expired_reports_count(tmp_path: Path) -> None:
    clock = _Clock()
    buffer = _buffer(tmp_path, clock, ttl_seconds=10)
    buffer.write(_notification("t1"))
    buffer.write(_notification("t2"))
    clock.advance(30)

    assert buffer.purge_expired() == 2
    assert buffer.purge_expired() == 0
    buffer.close()


def test_purge_of_unclaimed_entry_warns_how_to_retire_task(
    tmp_path: Path,
    caplog: pytest.LogCaptureFixture,
) -> None:
    clock = _Clock()
    buffer = _buffer(tmp_path, clock, ttl_seconds=10)
    buffer.write(_notification("t1"))
    buffer.write(_notification("t2"))
    buffer.claim("t2", "worker-a")
    clock.advance(30)

    with caplog.at_level(logging.WARNING, logger="vm_relay.relay.buffer"):
        assert buffer.purge_expired() == 2

    messages = [record.getMessage() for record in caplog.records]
    assert any("vm-relay tasks cancel t1" in message for message in messages)
    assert any("t2 expired in status claimed" in message for message in messages)
    assert not any("tasks cancel t2" in message for message in messages)
    buffer.close()


def test_stats_and_delete(tmp_path: Path) -> None:
    buffer = _buffer(tmp_path, _Clock())
    for task_id in ("t1", "t2", "t3"):
        buffer.write(_notification(task_id))
    buffer.claim("t2", "worker-a")
    buffer.claim("t3", "worker-a")
    buffer.mark_processing("t3", "worker-a")

    stats = buffer.stats()
    assert (stats.ready, stats.claimed, stats.processing, stats.total) == (1, 1, 1, 3)

    assert buffer.delete("t3") is True
    assert buffer.delete("t3") is False
    assert buffer.discard_ready("t2") is False
    assert buffer.discard_ready("t1") is True
    assert [entry.task_id for entry in buffer.list_all()] == ["t2"]
    buffer.close()


def test_concurrent_claims_have_exactly_one_winner(tmp_path: Path) -> None:
    db_path = tmp_path / "race.db"
    setup = RelayBuffer(db_path)
    setup.init_schema()
    setup.write(_notification("t1"))

    start = threading.Event()
    outcomes: queue.Queue[tuple[str, str]] = queue.Queue()

    def _claimer(worker_id: str) -> None:
        buffer = RelayBuffer(db_path)
        try:
            start.wait(timeout=2)
            buffer.claim("t1", worker_id)
            outcomes.put((worker_id, "won"))
        except ConflictError:
            outcomes.put((worker_id, "conflict"))
        finally:
            buffer.close()

    workers = [f"worker-{index}" for index in range(8)]
    threads = [threading.Thread(target=_claimer, args=(worker_id,)) for worker_id in workers]
    for thread in threads:
        thread.start()
    start.set()
    for thread in threads:
        thread.join(timeout=10)

    results = [outcomes.get_nowait() for _ in workers]
    winners = [worker_id for worker_id, outcome in results if outcome == "won"]
    assert len(winners) == 1
    assert sum(1 for _, outcome in results if outcome == "conflict") == len(workers) - 1
    assert setup.get("t1").claimed_by == winners[0]
    assert setup.get("t1").version == 1
    setup.close()
