"""
Modules implementing the two storage tiers that the union view composes.

The local tier is a directory on fast local disk and receives all new writes. The
remote tier is an object store reached over a network, which is slow to access but
where data ends up once the migration scheduler has moved it off local disk.

Both tiers hand out the same Entry metadata type and raise the same errors, so the
union view can treat them uniformly. Neither tier knows about the other.
"""

from .cache import CacheMode, RemoteCache
from .common import Entry, FileContents, Kind, Tier
from .local import LocalTier
from .remote import RemoteClient
from .store import ObjectStoreService

__all__ = [
    "CacheMode",
    "Entry",
    "FileContents",
    "Kind",
    "LocalTier",
    "ObjectStoreService",
    "RemoteCache",
    "RemoteClient",
    "Tier",
]
