from __future__ import annotations

import logging
import queue
import threading
from typing import Any, Dict, Iterable, Optional

from ci_runner.errors import RunNotFoundError
from ci_runner.schemas import TestFramework, TestRunStatus
from ci_runner.services.runner import TestRunService
from ci_runner.services.storage import RunRepository

LOGGER = logging.getLogger("ci_runner.queue")


class RunQueue:
    """FIFO of pending test run IDs drained by a single background worker.

    Only one ``consume()`` call executes at a time, so at most one test host
    runs in the whole process. Pausing stops future dequeues; it never touches
    the run in flight or the order of what is waiting.
    """

    def __init__(
        self,
        repo: RunRepository,
        service: Optional[TestRunService] = None,
        *,
        poll_interval: Optional[float] = None,
    ) -> None:
        self._repo = repo
        self._service = service or TestRunService(repo)
        self._queue: "queue.Queue[int]" = queue.Queue()
        self._enqueue_lock = threading.Lock()
        self._resume_gate = threading.Event()
        self._resume_gate.set()
        self._consume_lock = threading.Lock()
        self._state_lock = threading.Lock()
        self._active_run_id: Optional[int] = None
        self._stop = threading.Event()
        self._worker: Optional[threading.Thread] = None
        if poll_interval is None:
            poll_interval = float(repo.get_config()["poll_interval_seconds"])
        self._poll_interval = poll_interval

    # -- Producer side ------------------------------------------------------------------
    def create(
        self,
        working_directory: str,
        assemblies: Iterable[str],
        framework: Optional[TestFramework] = None,
        suffixes: Optional[Iterable[str]] = None,
    ) -> int:
        # IDs are allocated and enqueued together so queue order matches ID order.
        with self._enqueue_lock:
            record = self._repo.create_run(working_directory, assemblies, framework, suffixes)
            self.enqueue(record["id"], working_directory)
        return record["id"]

    def enqueue(self, run_id: int, working_directory: Optional[str] = None) -> None:
        self._queue.put(run_id)
        LOGGER.info("Enqueued test run #%s [%s] for processing.", run_id, working_directory or "?")

    @property
    def paused(self) -> bool:
        return not self._resume_gate.is_set()

    @paused.setter
    def paused(self, value: bool) -> None:
        if value:
            self._resume_gate.clear()
            LOGGER.info("Queue processing paused.")
        else:
            self._resume_gate.set()
            LOGGER.info("Queue processing resumed.")

    @property
    def length(self) -> int:
        return self._queue.qsize()

    @property
    def has_items(self) -> bool:
        return self.length > 0

    @property
    def running(self) -> bool:
        return self._worker is not None and self._worker.is_alive()

    @property
    def active_run_id(self) -> Optional[int]:
        with self._state_lock:
            return self._active_run_id

    def snapshot(self) -> Dict[str, Any]:
        return {
            "length": self.length,
            "paused": self.paused,
            "running": self.running,
            "active_run_id": self.active_run_id,
        }

    def update_poll_interval(self, seconds: float) -> None:
        self._poll_interval = max(0.001, float(seconds))
        LOGGER.info("Updated queue poll interval to %ss", self._poll_interval)

    # -- Consumer side ------------------------------------------------------------------
    def consume(self) -> Optional[int]:
        """Process the oldest pending run, if any; returns the dequeued ID."""
        if not self._consume_lock.acquire(blocking=False):
            return None
        try:
            if self.paused:
                return None
            try:
                run_id = self._queue.get_nowait()
            except queue.Empty:
                return None
            try:
                self._process(run_id)
            finally:
                self._queue.task_done()
            return run_id
        finally:
            self._consume_lock.release()

    def _process(self, run_id: int) -> None:
        run = self._repo.get_run(run_id)
        if run is None:
            LOGGER.warning("Attempted to process test run #%s, but it does not exist.", run_id)
            return
        if run["status"] != TestRunStatus.pending.value:
            LOGGER.warning("Skipping test run #%s: already %s.", run_id, run["status"])
            return

        working_directory = run["working_directory"]
        try:
            self._repo.update_status(run_id, TestRunStatus.running)
        except RunNotFoundError:
            LOGGER.warning("Attempted to process test run #%s, but it does not exist.", run_id)
            return

        with self._state_lock:
            self._active_run_id = run_id
        LOGGER.info("Started test run #%s [%s].", run_id, working_directory)
        try:
            status, message = self._service.execute(run)
        except Exception as exc:
            LOGGER.exception("Unhandled error while processing run %s", run_id)
            status, message = TestRunStatus.failed, f"Unhandled error: {exc}"
        finally:
            with self._state_lock:
                self._active_run_id = None

        try:
            self._repo.update_status(run_id, status, message=message)
        except RunNotFoundError:
            LOGGER.warning("Test run #%s was removed before it finished.", run_id)
            return
        LOGGER.info("Finished test run #%s [%s]: %s.", run_id, working_directory, status.value)

    # -- Worker lifecycle ---------------------------------------------------------------
    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._worker = threading.Thread(target=self._run_loop, name="ci-runner-queue", daemon=True)
        self._worker.start()

    def stop(self, *, timeout_s: float = 5.0) -> None:
        self._stop.set()
        worker = self._worker
        if worker is None:
            return
        worker.join(timeout=timeout_s)
        if worker.is_alive():
            LOGGER.warning("Queue worker still busy with run #%s at shutdown.", self.active_run_id)

    def _run_loop(self) -> None:
        while not self._stop.is_set():
            try:
                self.consume()
            except Exception:
                LOGGER.exception("Queue worker iteration failed")
            self._stop.wait(self._poll_interval)
