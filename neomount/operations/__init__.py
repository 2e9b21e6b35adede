"""Package with the logic of the neomount commands."""

from .common import Operations, TierOperations
from .migrate import MigrateOperations
from .serve import ServeOperations
from .store import StoreOperations
