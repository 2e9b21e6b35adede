"""
Package with the migration of data from the local tier to the remote tier.

Migration runs in cycles that are triggered by a cron schedule, or on demand through
the migrate command.
"""

from .cron import CronExpression, CronSchedule, CronSyntaxError
from .scheduler import (
    CycleReport,
    MigrationScheduler,
    MigrationState,
    TaskState,
    TransferTask,
)
