"""Pull-based worker: poll the relay buffer, claim, execute and report."""

from __future__ import annotations

import logging
import signal
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass

from vm_relay.errors import ConflictError, NotFoundError, VmRelayError
from vm_relay.orchestrator.contracts import result_to_dict
from vm_relay.orchestrator.engine import ExecutionEngine
from vm_relay.orchestrator.models import BufferedTaskView
from vm_relay.orchestrator.reporter import StatusReporter
from vm_relay.orchestrator.repository import TaskRepository
from vm_relay.relay.buffer import RelayBuffer

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class WorkerRunSummary:
    """Aggregate worker counters for CLI reporting."""

    polls: int = 0
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    errors: int = 0
    idle_polls: int = 0

    def add(self, other: WorkerRunSummary) -> None:
        self.polls += other.polls
        self.processed += other.processed
        self.succeeded += other.succeeded
        self.failed += other.failed
        self.skipped += other.skipped
        self.errors += other.errors
        self.idle_polls += other.idle_polls


class RelayWorker:
    """Single-threaded worker loop.

    The stop token is checked between tasks and during sleeps, so a task that
    has started executing always runs to its reported outcome.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        buffer: RelayBuffer,
        repository: TaskRepository,
        engine: ExecutionEngine,
        worker_id: str,
        poll_interval_seconds: float = 5.0,
        error_backoff_seconds: float = 10.0,
        stop_event: threading.Event | None = None,
    ) -> None:
        self.buffer = buffer
        self.repository = repository
        self.engine = engine
        self.reporter = StatusReporter(repository)
        self.worker_id = worker_id
        self.poll_interval_seconds = poll_interval_seconds
        self.error_backoff_seconds = error_backoff_seconds
        self._stop = stop_event or threading.Event()

    @property
    def stop_requested(self) -> bool:
        return self._stop.is_set()

    def stop(self) -> None:
        """Ask the loop to exit after the in-flight task."""

        self._stop.set()

    def run_once(self) -> WorkerRunSummary:
        """Poll once and process every ready entry in arrival order."""

        summary = WorkerRunSummary(polls=1)
        if self.stop_requested:
            return summary

        ready = self.buffer.list_ready()
        if not ready:
            summary.idle_polls = 1
            return summary

        logger.info("Found %d ready task(s)", len(ready))
        for entry in ready:
            if self.stop_requested:
                break
            try:
                self._process(entry, summary)
            except Exception:  # noqa: BLE001
                logger.exception("Failed to process task %s", entry.task_id)
                summary.errors += 1
        return summary

    def start(self, *, max_polls: int | None = None) -> WorkerRunSummary:
        return self.run_loop(max_polls=max_polls)

    def run_loop(self, *, max_polls: int | None = None) -> WorkerRunSummary:
        """Poll until stopped (or ``max_polls`` polls), backing off after poll errors."""

        aggregate = WorkerRunSummary()
        logger.info("Worker %s started", self.worker_id)
        with self._signal_handlers():
            while not self.stop_requested:
                if max_polls is not None and aggregate.polls >= max_polls:
                    break
                try:
                    aggregate.add(self.run_once())
                except Exception as error:  # noqa: BLE001
                    logger.error("Polling error: %s", error)
                    aggregate.polls += 1
                    aggregate.errors += 1
                    self._sleep_with_stop(self.error_backoff_seconds)
                    continue
                if max_polls is not None and aggregate.polls >= max_polls:
                    break
                self._sleep_with_stop(self.poll_interval_seconds)
        logger.info(
            "Worker %s stopped: processed=%d succeeded=%d failed=%d",
            self.worker_id,
            aggregate.processed,
            aggregate.succeeded,
            aggregate.failed,
        )
        return aggregate

    def _process(self, entry: BufferedTaskView, summary: WorkerRunSummary) -> None:
        task_id = entry.task_id
        try:
            self.buffer.claim(task_id, self.worker_id)
        except (ConflictError, NotFoundError) as error:
            logger.info("Skipping task %s: %s", task_id, error)
            summary.skipped += 1
            return

        if not self.buffer.mark_processing(task_id, self.worker_id):
            logger.warning("Task %s: claim lost before processing", task_id)
            summary.skipped += 1
            return

        if not self.reporter.processing(task_id):
            self._abandon(task_id)
            summary.skipped += 1
            return

        summary.processed += 1
        logger.info("Processing task %s: %s for VM %s", task_id, entry.task_type, entry.vm_name)
        try:
            result = self.engine.dispatch_raw(entry.task_type, entry.payload)
        except VmRelayError as error:
            logger.error("Task %s failed: %s", task_id, error)
            reported = self.reporter.failed(task_id, str(error))
            summary.failed += 1
        except Exception as error:  # noqa: BLE001
            logger.exception("Task %s crashed", task_id)
            reported = self.reporter.failed(task_id, f"Unexpected error: {error}")
            summary.failed += 1
        else:
            logger.info("Task %s completed", task_id)
            reported = self.reporter.completed(task_id, result_to_dict(result))
            summary.succeeded += 1

        if not reported:
            logger.warning("Task %s outcome not recorded; relay entry kept until expiry", task_id)
            return
        self.buffer.delete(task_id)

    def _abandon(self, task_id: str) -> None:
        """Drop or hand back an entry whose task must not run now."""

        try:
            status = self.repository.get_task(task_id).status
        except NotFoundError:
            status = None
        if status is None or status.is_terminal:
            logger.info(
                "Task %s is %s; retiring relay entry without executing",
                task_id,
                status.value if status is not None else "unknown",
            )
            self.buffer.delete(task_id)
            return
        logger.warning("Task %s could not be marked processing; releasing claim", task_id)
        self.buffer.release(task_id, self.worker_id)

    def _sleep_with_stop(self, seconds: float) -> None:
        if seconds > 0:
            self._stop.wait(seconds)

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        if threading.current_thread() is not threading.main_thread():
            # Signal handlers can only be installed in main thread.
            yield
            return

        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            try:
                name = signal.Signals(signum).name
            except ValueError:
                name = str(signum)
            logger.info("Received %s; stopping after the current task", name)
            self.stop()

        signal.signal(signal.SIGINT, _handler)
        signal.signal(signal.SIGTERM, _handler)
        try:
            yield
        finally:
            signal.signal(signal.SIGINT, original_sigint)
            signal.signal(signal.SIGTERM, original_sigterm)
