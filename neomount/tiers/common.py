"""Data structures shared by the local tier, the remote tier and the union view."""

from __future__ import annotations

import collections
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum
import hashlib
import posixpath
import stat
import threading
from typing import Any, Dict, Iterator, Optional, Union

import lz4.frame


class Kind(Enum):
    """Type of a file system entry."""

    FILE = "file"
    DIRECTORY = "directory"


class Tier(Enum):
    """Tier(s) where an entry lives."""

    LOCAL = "local"
    REMOTE = "remote"
    BOTH = "both"


@dataclass
class Entry:
    """
    Metadata of a file or directory in one of the tiers.

    The path is relative to the root of the tier and always normalized (see
    normalize_path). The modification time is kept in nanoseconds to be able to compare
    entries across tiers without float rounding. The checksum is only known for files
    that the remote store or the migration scheduler have hashed.
    """

    path: str
    kind: Kind
    size: int
    mtime_ns: int
    tier: Tier
    checksum: Optional[str] = None

    def __post_init__(self) -> None:
        # Enums travel as their values over RPC and in the cache index
        self.kind = Kind(self.kind)
        self.tier = Tier(self.tier)

    @property
    def name(self) -> str:
        """Return the last component of the path."""
        return posixpath.basename(self.path)

    @property
    def is_dir(self) -> bool:
        return self.kind == Kind.DIRECTORY

    @staticmethod
    def from_stat(path: str, st: Any, tier: Tier) -> Entry:
        """Instantiate from an os.stat_result."""
        kind = Kind.DIRECTORY if stat.S_ISDIR(st.st_mode) else Kind.FILE

        return Entry(
            path=path,
            kind=kind,
            size=st.st_size if kind == Kind.FILE else 0,
            mtime_ns=st.st_mtime_ns,
            tier=tier,
        )


@dataclass
class FileContents:
    """
    Container for the full contents of a file.

    File contents are compressed with LZ4 for transfer to and from the remote store
    since it is fast enough to not add noticeable latency to a transfer while saving
    bandwidth on compressible data.
    """

    compressed_data: bytes
    checksum: str
    size: int

    @staticmethod
    def from_data(data: bytes) -> FileContents:
        """Wrap raw file data into a FileContents object."""
        return FileContents(
            compressed_data=lz4.frame.compress(data),
            checksum=checksum(data),
            size=len(data),
        )

    @property
    def data(self) -> bytes:
        """Retrieve and decompress the original file data."""
        return lz4.frame.decompress(self.compressed_data)


def checksum(data: bytes) -> str:
    """Return the checksum used to confirm that two copies of a file are identical."""
    return hashlib.sha256(data).hexdigest()


def normalize_path(path: str) -> str:
    """
    Turn a user supplied path into the canonical relative form used by the tiers.

    Leading and trailing slashes and "." components are removed and the root becomes
    the empty string. Paths that would escape the root of a tier are rejected.
    """
    parts = []

    for part in path.replace("\\", "/").split("/"):
        if part in ("", "."):
            continue
        elif part == "..":
            raise ValueError(f"path escapes tier root: {path}")

        parts.append(part)

    return "/".join(parts)


def parent_path(path: str) -> str:
    """Return the normalized parent of a normalized path ("" for the root)."""
    return posixpath.dirname(path)


def ancestors(path: str) -> Iterator[str]:
    """Yield the ancestors of a normalized path, from its parent up to the root."""
    while path:
        path = parent_path(path)
        yield path


def join_path(*parts: str) -> str:
    """Join path fragments into a normalized path."""
    return normalize_path("/".join(parts))


def coerce_bytes(data: Union[bytes, bytearray, memoryview]) -> bytes:
    """Return data as bytes, as MessagePack may hand out other buffer types."""
    return bytes(data)


class LockIndex:
    """
    Collection of mutexes to lock critical sections by arbitrary values.

    Its use case is to lock critical sections based on unpredictable input values, like
    paths. Locks are automatically garbage collected when no longer in use (no threads
    in the critical section and none waiting to enter).
    """

    def __init__(self) -> None:
        """Instantiate a LockIndex."""
        self._global_lock = threading.Lock()

        self._locks: Dict[Any, threading.Lock] = collections.defaultdict(threading.Lock)
        self._lock_users: Dict[Any, int] = collections.defaultdict(int)

    @contextmanager
    def lock(self, key: Any, blocking: bool = True) -> Iterator[bool]:
        """Lock a critical section based on the specified key."""
        with self._global_lock:
            self._lock_users[key] += 1
            lock = self._locks[key]

        acquired = lock.acquire(blocking)

        try:
            yield acquired
        finally:
            if acquired:
                lock.release()

            with self._global_lock:
                self._lock_users[key] -= 1

                if self._lock_users[key] == 0:
                    del self._lock_users[key]
                    del self._locks[key]

    @property
    def lock_count(self) -> int:
        """Return the number of locks currently in use."""
        with self._global_lock:
            return len(self._locks)
