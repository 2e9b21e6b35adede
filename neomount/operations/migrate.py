"""Module that implements the one-off migration of the migrate command."""

import contextlib

import neomount.constants as constants
from neomount.logger import log
from neomount.migration import MigrationScheduler
from .common import TierOperations


class MigrateOperations(TierOperations):
    """Class that runs a single migration cycle right away."""

    def _run(self, stack: contextlib.ExitStack) -> int:
        config = self.config

        local = self._mount_local(stack)
        remote = self._connect_remote(stack)

        scheduler = MigrationScheduler(
            local,
            remote,
            transfers=config.migration.transfers,
            checkers=config.migration.checkers,
            retries=config.migration.retries,
            min_age=config.migration.min_age,
        )

        report = scheduler.trigger()

        # Another cycle of this scheduler can't be running, so there's always a report
        assert report is not None

        for failure in report.failures:
            log.error(f"failed to move {failure}")

        return 0 if report.ok else constants.MIGRATION_FAILED_CODE
