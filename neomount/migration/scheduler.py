"""Module that implements the migration of local files to the remote tier."""

from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import auto, Enum
import os
import threading
import time
from typing import Callable, Iterator, List, Optional

import fasteners

import neomount.constants as constants
from neomount.errors import NeomountError, NotFound
from neomount.logger import format_size, log
from neomount.migration.cron import CronSchedule
from neomount.tiers.common import checksum, Entry
from neomount.tiers.local import LocalTier
from neomount.tiers.remote import RemoteClient


class MigrationState(Enum):
    """Phase of the migration scheduler."""

    IDLE = auto()
    SCANNING = auto()
    TRANSFERRING = auto()
    PRUNING = auto()


class TaskState(Enum):
    """State of a single file transfer."""

    PENDING = "pending"
    IN_FLIGHT = "in-flight"
    DONE = "done"
    FAILED = "failed"


@dataclass
class TransferTask:
    """
    Transfer of a single local file to the remote tier.

    A task is skipped (done without uploading) if a checker found an identical copy in
    the remote tier already.
    """

    source_path: str
    destination_path: str
    size: int
    mtime_ns: int
    state: TaskState = TaskState.PENDING
    attempts: int = 0
    error: Optional[str] = None
    skipped: bool = False


@dataclass
class CycleReport:
    """Outcome of a single migration cycle."""

    scanned: int = 0
    deferred: int = 0
    transferred: int = 0
    skipped: int = 0
    failed: int = 0
    pruned: int = 0
    transferred_bytes: int = 0
    duration: float = 0.0
    failures: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.failed == 0


class MigrationScheduler:
    """
    Drains the local tier into the remote tier.

    A cycle goes through these phases:

    1. Scanning: all files in the local tier that haven't been modified within the
    quiescence window become transfer tasks.
    2. Transferring: checkers look for identical copies in the remote tier in parallel,
    then the remaining files are written to the remote tier in parallel. Each write is
    retried with exponential backoff. The local copy of a file is only deleted after the
    remote tier confirmed the checksum of what it stored, and the local file hasn't
    changed in the meanwhile.
    3. Pruning: directories left empty in the local tier are removed bottom-up.

    A failing file never aborts the cycle. It keeps its local copy and is picked up
    again by the next cycle.

    Cycles never interleave. Triggering a cycle while one is running queues a single
    follow-up cycle instead, and cycles of different processes sharing the local tier
    are serialized through a lock file.
    """

    def __init__(
        self,
        local: LocalTier,
        remote: RemoteClient,
        transfers: int = 16,
        checkers: int = 16,
        retries: int = 3,
        backoff_base: float = 1.0,
        backoff_max: float = 60.0,
        min_age: float = 0.0,
        lock_path: Optional[str] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.local = local
        self.remote = remote

        self._transfers = max(1, transfers)
        self._checkers = max(1, checkers)
        self._retries = max(1, retries)
        self._backoff_base = backoff_base
        self._backoff_max = backoff_max
        self._min_age = min_age
        self._lock_path = lock_path or os.path.join(
            local.root, constants.MIGRATION_LOCK_NAME
        )
        self._clock = clock

        self._state = MigrationState.IDLE
        self._state_lock = threading.Lock()
        self._running = False
        self._pending = False

        self._cancel = threading.Event()

    def state(self) -> MigrationState:
        with self._state_lock:
            return self._state

    def _set_state(self, state: MigrationState) -> None:
        with self._state_lock:
            self._state = state

        log.debug(f"migration: {state.name.lower()}")

    #
    # Triggering
    #

    def trigger(self) -> Optional[CycleReport]:
        """
        Run a migration cycle in the calling thread.

        If a cycle is already running then another cycle is queued to run right after
        it and None is returned immediately. Returns the report of the last cycle run.
        """
        with self._state_lock:
            if self._running:
                self._pending = True
                log.info("migration already running, queued another cycle")
                return None

            self._running = True
            self._cancel.clear()

        try:
            while True:
                report = self._run_cycle()

                with self._state_lock:
                    if not self._pending:
                        return report

                    self._pending = False
        finally:
            with self._state_lock:
                self._running = False
                self._pending = False

    def cancel(self) -> None:
        """
        Ask a running cycle to stop.

        Transfers check this before each attempt. A write that is in flight is not
        aborted.
        """
        self._cancel.set()

    def run_forever(self, schedule: CronSchedule, stop: threading.Event) -> None:
        """Trigger cycles according to the schedule until stop is set."""
        log.info(f"migration scheduled at '{schedule.expression}'")
        log.info(f"next migration at {schedule.arm()}")

        # Wake up regularly to keep shutdown responsive
        while not stop.wait(min(schedule.remaining(), 60.0)):
            if not schedule.due():
                continue

            try:
                self.trigger()
            except Exception as e:
                log.error(f"migration cycle failed: {e}")

            log.info(f"next migration at {schedule.arm()}")

    #
    # Cycle
    #

    @contextmanager
    def _process_lock(self) -> Iterator[None]:
        lock = fasteners.InterProcessLock(self._lock_path)

        if not lock.acquire(blocking=False):
            log.info("migration running in another process, waiting for it")
            lock.acquire()

        try:
            yield
        finally:
            lock.release()

    def _run_cycle(self) -> CycleReport:
        report = CycleReport()
        started = time.monotonic()

        log.info("migration started")

        with self._process_lock():
            try:
                self._set_state(MigrationState.SCANNING)
                tasks = self._scan(report)

                if tasks:
                    log.info(
                        f"moving {len(tasks)} file(s) from {self.local.root} to"
                        f" {self.remote.handle.mount_point}"
                    )

                    self._set_state(MigrationState.TRANSFERRING)
                    self._check_all(tasks)
                    self._transfer_all(tasks)
                else:
                    log.info(f"no files to move in {self.local.root}")

                self._set_state(MigrationState.PRUNING)
                report.pruned = len(self.local.prune_empty_dirs())
            finally:
                self._set_state(MigrationState.IDLE)

        for task in tasks:
            if task.state == TaskState.DONE and task.skipped:
                report.skipped += 1
            elif task.state == TaskState.DONE:
                report.transferred += 1
                report.transferred_bytes += task.size
            else:
                report.failed += 1
                report.failures.append(f"{task.source_path}: {task.error}")

        report.duration = time.monotonic() - started

        log.info(
            f"migration completed in {report.duration:.1f}s: {report.transferred}"
            f" transferred ({format_size(report.transferred_bytes)}),"
            f" {report.skipped} already present, {report.failed} failed,"
            f" {report.deferred} deferred, {report.pruned} directories pruned"
        )

        return report

    def _scan(self, report: CycleReport) -> List[TransferTask]:
        """Build transfer tasks for all quiescent files in the local tier."""
        tasks = []
        now_ns = int(self._clock() * 1e9)
        min_age_ns = int(self._min_age * 1e9)

        for entry in self.local.walk():
            report.scanned += 1

            if now_ns - entry.mtime_ns < min_age_ns:
                report.deferred += 1
                continue

            tasks.append(
                TransferTask(
                    source_path=entry.path,
                    destination_path=entry.path,
                    size=entry.size,
                    mtime_ns=entry.mtime_ns,
                )
            )

        return tasks

    def _check_all(self, tasks: List[TransferTask]) -> None:
        """Mark tasks whose file is already present in the remote tier."""
        with ThreadPoolExecutor(self._checkers, "neomount-check") as pool:
            list(pool.map(self._check, tasks))

    def _check(self, task: TransferTask) -> None:
        try:
            remote = self.remote.stat(task.destination_path, fresh=True)
        except NeomountError:
            # Missing or unreachable, in both cases the transfer decides
            return

        if remote.is_dir or remote.size != task.size or remote.checksum is None:
            return

        try:
            local_checksum = checksum(self.local.read(task.source_path))
        except NotFound:
            return

        task.skipped = local_checksum == remote.checksum

    def _transfer_all(self, tasks: List[TransferTask]) -> None:
        with ThreadPoolExecutor(self._transfers, "neomount-transfer") as pool:
            list(pool.map(self._transfer, tasks))

    def _transfer(self, task: TransferTask) -> None:
        """
        Move a single file to the remote tier.

        Never raises: the outcome is recorded in the task.
        """
        try:
            data = self.local.read(task.source_path)
        except (NeomountError, OSError) as e:
            self._fail(task, f"failed to read local copy: {e}")
            return

        digest = checksum(data)

        if not task.skipped and not self._upload(task, data, digest):
            return

        try:
            current: Optional[Entry] = self.local.stat(task.source_path)
        except NotFound:
            current = None

        if current is None:
            task.state = TaskState.DONE
            return

        # Keep the local copy if it was modified while being uploaded
        if current.mtime_ns != task.mtime_ns or current.size != len(data):
            self._fail(task, "local copy changed during transfer")
            return

        try:
            self.local.delete(task.source_path)
        except (NeomountError, OSError) as e:
            self._fail(task, f"failed to delete local copy: {e}")
            return

        task.state = TaskState.DONE

        if task.skipped:
            log.debug(f"migration: {task.source_path} already present remotely")
        else:
            log.debug(f"migration: moved {task.source_path}")

    def _upload(self, task: TransferTask, data: bytes, digest: str) -> bool:
        """Write the file to the remote tier, returning whether it was confirmed."""
        while task.attempts < self._retries:
            if self._cancel.is_set():
                self._fail(task, "cancelled")
                return False

            if task.attempts > 0:
                delay = min(
                    self._backoff_max, self._backoff_base * 2 ** (task.attempts - 1)
                )
                log.warning(
                    f"migration: retrying {task.source_path} in {delay:.1f}s"
                    f" (attempt {task.attempts + 1}/{self._retries}): {task.error}"
                )

                # Cancellation also interrupts the backoff
                if self._cancel.wait(delay):
                    self._fail(task, "cancelled")
                    return False

            task.attempts += 1
            task.state = TaskState.IN_FLIGHT

            try:
                entry = self.remote.write(
                    task.destination_path, data, task.mtime_ns, retry=False
                )
            except (NeomountError, OSError) as e:
                task.error = str(e)
                task.state = TaskState.PENDING
                continue

            if entry.checksum != digest:
                task.error = "remote confirmed a different checksum"
                task.state = TaskState.PENDING
                continue

            return True

        self._fail(task, task.error or "transfer failed")
        return False

    @staticmethod
    def _fail(task: TransferTask, reason: str) -> None:
        task.state = TaskState.FAILED
        task.error = reason

        log.error(f"migration: {task.source_path} stays local: {reason}")
