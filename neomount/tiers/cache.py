"""
Module that implements the bounded-age cache of the remote tier.

Remote round trips are the dominant cost of union view operations, so results of stat,
list and (in full mode) whole-file reads are kept for a while. Each kind of record has
its own maximum age:

* stat results (including "does not exist") live for attr_timeout
* directory listings live for dir_cache_time
* cached file contents live for max_age since they were last used

None of them lives longer than max_age. Besides expiry, records are replaced whenever
the poller learns from the store that a path has changed, and invalidated when the
remote client itself modifies a path.

Cached contents are stored as blobs in the cache directory and are only served if
their checksum matches the (fresh) metadata of the file, so a stale blob can never be
returned. The blob index is persisted across restarts and LRU cleaned to max_size.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
import os
import threading
import time
from typing import Any, Callable, Dict, List, Optional, Tuple
import uuid

import fasteners

from neomount.logger import log
import neomount.rpc as rpc
from neomount.tiers.common import ancestors, Entry, FileContents


class CacheMode(Enum):
    """What the remote tier is allowed to cache."""

    OFF = "off"
    MINIMAL = "minimal"
    FULL = "full"


@dataclass
class ContentsBlob:
    """
    Information about cached file contents.

    Storage points to the file where the cached contents are stored, the checksum to
    the version of the remote file they belong to.
    """

    storage: str
    size: int
    checksum: str
    last_access: float = field(default_factory=time.time)

    def newer_than(self, other: Optional[ContentsBlob] = None) -> bool:
        """Check if this blob has been used more recently than the other one."""
        return other is None or self.last_access > other.last_access


@dataclass
class _Record:
    """Cached metadata or listing with the time it was fetched."""

    value: object
    fetched: float


class RemoteCache:
    """Cache of remote metadata, directory listings and file contents."""

    def __init__(
        self,
        mode: CacheMode,
        base_path: str,
        max_age: float,
        max_size: int,
        dir_cache_time: float,
        attr_timeout: float,
        clock: Callable[[], float] = time.time,
    ):
        """Instantiate the cache. The base path is only used in full mode."""
        self.mode = mode

        self._base_path = base_path
        self._max_age = max_age
        self._max_size = max_size
        self._dir_cache_time = min(dir_cache_time, max_age)
        self._attr_timeout = min(attr_timeout, max_age)
        self._clock = clock

        self._lock = threading.RLock()
        self._entries: Dict[str, _Record] = {}
        self._listings: Dict[str, _Record] = {}
        self._blobs: Dict[str, ContentsBlob] = {}

        self._encoding = rpc.Encoding(ContentsBlob)

        if self.mode == CacheMode.FULL:
            os.makedirs(self._cache_contents_path, exist_ok=True)

    @property
    def enabled(self) -> bool:
        return self.mode != CacheMode.OFF

    def count(self) -> int:
        """Return the number of cached metadata records and listings."""
        with self._lock:
            return len(self._entries) + len(self._listings)

    def size(self) -> int:
        """Return the total number of bytes of contents being cached."""
        with self._lock:
            return sum(blob.size for blob in self._blobs.values())

    #
    # Metadata
    #

    def get_entry(self, path: str) -> Tuple[bool, Optional[Entry]]:
        """
        Look up cached metadata.

        Returns whether there was a fresh record and the entry it holds, which is None
        if the path was known not to exist.
        """
        return self._get(self._entries, path, self._attr_timeout)

    def put_entry(self, path: str, entry: Optional[Entry]) -> None:
        if not self.enabled:
            return

        with self._lock:
            self._entries[path] = _Record(entry, self._clock())

    def get_listing(self, path: str) -> Optional[List[Entry]]:
        hit, listing = self._get(self._listings, path, self._dir_cache_time)
        return listing if hit else None

    def put_listing(self, path: str, entries: List[Entry]) -> None:
        """Cache a directory listing along with the metadata of its children."""
        if not self.enabled:
            return

        now = self._clock()

        with self._lock:
            self._listings[path] = _Record(list(entries), now)

            for entry in entries:
                self._entries[entry.path] = _Record(entry, now)

    def _get(
        self, records: Dict[str, _Record], path: str, ttl: float
    ) -> Tuple[bool, Any]:
        if not self.enabled:
            return False, None

        with self._lock:
            record = records.get(path)

            if record is None:
                return False, None
            elif self._clock() - record.fetched > ttl:
                del records[path]
                return False, None

            return True, record.value

    #
    # Contents
    #

    def get_contents(self, path: str, checksum: Optional[str]) -> Optional[bytes]:
        """Return cached contents if they belong to the version with the checksum."""
        if self.mode != CacheMode.FULL or checksum is None:
            return None

        with self._lock:
            blob = self._blobs.get(path)

            if blob is None:
                return None

            if blob.checksum != checksum or self._blob_expired(blob):
                self._drop_blob(path)
                return None

            blob.last_access = self._clock()

            try:
                with open(blob.storage, "rb") as f:
                    return f.read()
            except FileNotFoundError:
                # The cached contents file has disappeared from disk
                del self._blobs[path]
                return None

    def put_contents(self, path: str, contents: FileContents) -> None:
        """Save file contents to a blob on disk."""
        if self.mode != CacheMode.FULL or contents.size > self._max_size:
            return

        storage = os.path.join(self._cache_contents_path, uuid.uuid4().hex)

        with open(storage, "wb") as f:
            f.write(contents.data)

        with self._lock:
            self._drop_blob(path)
            self._blobs[path] = ContentsBlob(
                storage=storage,
                size=contents.size,
                checksum=contents.checksum,
                last_access=self._clock(),
            )

            self._lru_cleanup()

    def _blob_expired(self, blob: ContentsBlob) -> bool:
        return self._clock() - blob.last_access > self._max_age

    def _drop_blob(self, path: str) -> None:
        blob = self._blobs.pop(path, None)

        if blob is not None:
            try:
                os.remove(blob.storage)
            except FileNotFoundError:
                pass

    #
    # Invalidation
    #

    def invalidate(self, path: str) -> None:
        """
        Forget everything about a path and what its ancestors say about it.

        Creating a file can also create its parent directories, so the listing of every
        ancestor up to the root is dropped, along with any record of an ancestor being
        missing.
        """
        with self._lock:
            self._entries.pop(path, None)
            self._listings.pop(path, None)
            self._drop_blob(path)
            self._forget_ancestors(path)

    def _forget_ancestors(self, path: str) -> None:
        for ancestor in ancestors(path):
            self._listings.pop(ancestor, None)

            record = self._entries.get(ancestor)

            if record is not None and record.value is None:
                del self._entries[ancestor]

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self._listings.clear()

            for path in list(self._blobs):
                self._drop_blob(path)

    def snapshot(self) -> Dict[str, Optional[Entry]]:
        """Return all fresh cached metadata, for reconciliation with the store."""
        self.expire()

        with self._lock:
            return {path: record.value for path, record in self._entries.items()}

    def apply_changes(self, changed: Dict[str, Optional[Entry]]) -> None:
        """
        Replace stale metadata with the current state reported by the store.

        A changed entry also makes the listings of its ancestors stale (they hold the
        old metadata or miss a new directory), and the listing of a changed directory
        itself.
        """
        now = self._clock()

        with self._lock:
            for path, entry in changed.items():
                log.debug(f"cache: {path} changed remotely")

                self._listings.pop(path, None)
                self._forget_ancestors(path)
                self._entries[path] = _Record(entry, now)

                blob = self._blobs.get(path)

                if blob is None:
                    continue
                elif entry is None or entry.checksum != blob.checksum:
                    self._drop_blob(path)

    def expire(self) -> int:
        """Drop all expired records and blobs. Returns the number of records dropped."""
        now = self._clock()
        dropped = 0

        with self._lock:
            for records, ttl in [
                (self._entries, self._attr_timeout),
                (self._listings, self._dir_cache_time),
            ]:
                for path in [p for p, r in records.items() if now - r.fetched > ttl]:
                    del records[path]
                    dropped += 1

            for path in [p for p, b in self._blobs.items() if self._blob_expired(b)]:
                self._drop_blob(path)
                dropped += 1

        return dropped

    #
    # Persistence of cached contents
    #

    @property
    def _cache_index_path(self) -> str:
        return os.path.join(self._base_path, "index.json")

    @property
    def _cache_lock_path(self) -> str:
        return os.path.join(self._base_path, "index.lock")

    @property
    def _cache_contents_path(self) -> str:
        return os.path.join(self._base_path, "contents")

    def _read_disk_blobs(self) -> Dict[str, ContentsBlob]:
        with open(self._cache_index_path, "r") as f:
            return self._encoding.load_json(f)

    def load(self) -> None:
        """Initialize the cached contents from the disk cache."""
        if self.mode != CacheMode.FULL:
            return

        with fasteners.InterProcessLock(self._cache_lock_path):
            blobs = self._read_disk_blobs()

        with self._lock:
            self._blobs = blobs

    def save(self, merge_disk_cache: bool = True) -> None:
        """
        Update the disk cache index from the in-memory cache.

        Blobs indexed on disk by another process in the meanwhile are merged in, with
        the most recently used one winning. Afterwards the cache is LRU cleaned and
        blob files that are no longer referenced are deleted.
        """
        if self.mode != CacheMode.FULL:
            return

        with fasteners.InterProcessLock(self._cache_lock_path):
            with self._lock:
                if merge_disk_cache:
                    disk_blobs: Dict[str, ContentsBlob] = {}

                    try:
                        disk_blobs = self._read_disk_blobs()
                    except FileNotFoundError:
                        log.debug("no disk cache to merge with")
                    except Exception as e:
                        log.error(f"not merging with existing disk cache: {e}")

                    for path, disk_blob in disk_blobs.items():
                        if disk_blob.newer_than(self._blobs.get(path)):
                            self._blobs[path] = disk_blob

                expired = [p for p, b in self._blobs.items() if self._blob_expired(b)]

                for path in expired:
                    del self._blobs[path]

                self._lru_cleanup()
                self._garbage_collect_blobs()

                with open(self._cache_index_path, "w") as f:
                    self._encoding.dump_json(self._blobs, f)

    def _lru_cleanup(self) -> None:
        """Delete the least recently used blobs until the total size fits again."""
        total = sum(blob.size for blob in self._blobs.values())

        if total <= self._max_size:
            return

        for path, blob in sorted(self._blobs.items(), key=lambda kv: kv[1].last_access):
            if total <= self._max_size:
                break

            total -= blob.size
            self._drop_blob(path)

    def _garbage_collect_blobs(self) -> None:
        """Delete blob files on disk that are no longer referenced."""
        orphans = {
            os.path.join(self._cache_contents_path, fn)
            for fn in os.listdir(self._cache_contents_path)
        }

        orphans -= {blob.storage for blob in self._blobs.values()}

        for path in orphans:
            try:
                os.remove(path)
            except FileNotFoundError:
                # Race condition where blob has already been removed
                pass
