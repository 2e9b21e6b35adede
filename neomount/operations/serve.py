"""Module that implements the long-lived orchestrator of the serve command."""

import contextlib
import os
import signal
import threading
from typing import Any, Optional

from neomount.config import Config
from neomount.logger import log
from neomount.migration import CronSchedule, MigrationScheduler
import neomount.rpc as rpc
from neomount.union import UnionService, UnionView
from .common import TierOperations
from .events import Event, EventQueue


class ServeOperations(TierOperations):
    """
    Class that encapsulates the orchestrator.

    Startup happens strictly in order: the configuration is validated, the local tier
    is mounted and the remote tier connected. Only once both tiers are ready the union
    view is served and the migration scheduler is started. Any failure before that
    point aborts the startup without serving anything.

    Shutdown (SIGINT or SIGTERM) happens in reverse: the scheduler is cancelled and
    stopped, the remote poller stopped, the remote cache saved and both tiers unmounted.
    """

    def __init__(self, config: Optional[Config] = None, workers: int = 4):
        """Initialize the orchestrator, loading the configuration when run."""
        super().__init__(config)

        self._workers = workers
        self.events = EventQueue()

    def shutdown(self, signum: int = signal.SIGTERM) -> None:
        """Ask the orchestrator to shut down, as if it received a signal."""
        self.events.notify(Event.SHUTDOWN, signum)

    def _run(self, stack: contextlib.ExitStack) -> int:
        """Run the orchestrator until a shutdown signal arrives."""
        config = self.config

        log.info(
            f"starting neomount: {config.local_path} + {config.remote}:"
            f"{config.remote_path} -> {config.merged_path}"
        )

        os.makedirs(config.merged_path, exist_ok=True)

        # Tiers
        local = self._mount_local(stack)
        remote = self._connect_remote(stack)

        remote.start_polling()

        # Union view
        view = UnionView(
            local,
            remote,
            attr_policy=config.union.attr_policy,
            create_policy=config.union.create_policy,
        )

        self._start_disposable_thread(
            self._run_union_service, self.events, view, config.union.endpoint
        )

        # Migration
        scheduler = MigrationScheduler(
            local,
            remote,
            transfers=config.migration.transfers,
            checkers=config.migration.checkers,
            retries=config.migration.retries,
            min_age=config.migration.min_age,
        )

        stop = threading.Event()
        schedule = CronSchedule(config.migration.schedule)

        migration_thread = self._start_thread(
            self._run_migration, self.events, scheduler, schedule, stop
        )
        stack.callback(migration_thread.join, timeout=5.0)
        stack.callback(stop.set)
        stack.callback(scheduler.cancel)

        self._install_signal_handlers(stack)

        log.info(f"serving union view at {config.union.endpoint}")

        signum = self.events.expect(Event.SHUTDOWN)
        log.info(f"received signal {signum}, shutting down")

        return 0

    def _install_signal_handlers(self, stack: contextlib.ExitStack) -> None:
        """Turn SIGINT and SIGTERM into shutdown events while running."""

        def handler(signum: int, _frame: Any) -> None:
            self.shutdown(signum)

        # Signal handlers can only be installed from the main thread
        if threading.current_thread() is not threading.main_thread():
            return

        for sig in (signal.SIGINT, signal.SIGTERM):
            previous = signal.signal(sig, handler)
            stack.callback(signal.signal, sig, previous)

    def _run_union_service(
        self, events: EventQueue, view: UnionView, endpoint: str
    ) -> None:
        """Serve the union view RPC service."""
        try:
            server = rpc.Server(UnionService(view), worker_count=self._workers)
            server.serve(endpoint)

            # This service should never stop running
            events.exception("union service unexpectedly stopped")
        except Exception as e:
            events.exception(f"union service failed: {e}")

    @staticmethod
    def _run_migration(
        events: EventQueue,
        scheduler: MigrationScheduler,
        schedule: CronSchedule,
        stop: threading.Event,
    ) -> None:
        """Run scheduled migration cycles until stopped."""
        try:
            scheduler.run_forever(schedule, stop)
            events.notify(Event.MIGRATION_STOPPED)
        except Exception as e:
            events.exception(f"migration scheduler failed: {e}")
