"""
Module with the client side of the remote tier.

RemoteClient implements the remote tier on top of a transport: any object with the
methods of ObjectStoreService. That is either an ObjectStoreService itself (for remotes
of type "local") or an rpc.Client for one served elsewhere (remotes of type "rpc").

On top of the raw store calls the client adds:

* a path prefix, so that a subdirectory of the store can serve as the remote root
* retries with exponential backoff for transient failures (RemoteUnavailable and
QuotaExceeded), while NotFound and other errors propagate immediately
* the bounded-age cache of metadata, listings and contents (see cache.py)
* a poller thread that reconciles the cache with the store on a fixed interval
* a MountHandle that reflects whether the store is reachable
"""

import dataclasses
import threading
import time
from typing import Any, Callable, Dict, List, Optional

import semver

import neomount.constants as constants
from neomount.errors import NeomountError, NotFound, RemoteUnavailable
from neomount.logger import log
from neomount.mount import MountHandle, MountState
from neomount.tiers.cache import CacheMode, RemoteCache
from neomount.tiers.common import (
    coerce_bytes,
    Entry,
    FileContents,
    join_path,
    LockIndex,
    normalize_path,
)


class RemoteClient:
    """Remote object store tier with retries, caching and change polling."""

    def __init__(
        self,
        transport: Any,
        name: str = "remote",
        prefix: str = "",
        cache: Optional[RemoteCache] = None,
        retries: int = 3,
        backoff_base: float = 0.5,
        backoff_max: float = 30.0,
        poll_interval: float = 30.0,
        reconnect_interval: float = 1.0,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Instantiate a client for the store behind the transport.

        Without a cache nothing is cached. A poll interval of 0 disables the poller.
        Reconnects of a failed tier on demand are spaced by the reconnect interval.
        """
        self._transport = transport
        self._prefix = normalize_path(prefix)
        self._cache = cache or RemoteCache(CacheMode.OFF, "", 0, 0, 0, 0)
        self._retries = retries
        self._backoff_base = backoff_base
        self._backoff_max = backoff_max
        self._poll_interval = poll_interval
        self._reconnect_interval = reconnect_interval
        self._sleep = sleep
        self._clock = clock

        self._locks = LockIndex()

        self._connect_lock = threading.RLock()
        self._last_reconnect: Optional[float] = None

        self._poll_stop = threading.Event()
        self._poll_thread: Optional[threading.Thread] = None

        self.handle = MountHandle("remote", f"{name}:{self._prefix}")

    @property
    def cache(self) -> RemoteCache:
        return self._cache

    #
    # Lifecycle
    #

    def connect(self, retry: bool = True) -> None:
        """
        Check that the store is reachable and speaks a compatible protocol.

        Marks the tier ready on success and failed otherwise.
        """
        with self._connect_lock:
            if self.handle.state() == MountState.UNMOUNTED:
                self.handle.mounting()

            try:
                version = semver.VersionInfo.parse(
                    self._call("get_protocol_version", retry=retry)
                )
                expected = semver.VersionInfo.parse(constants.PROTOCOL_VERSION)

                if version.major != expected.major:
                    raise RemoteUnavailable(
                        f"incompatible store protocol ({version} != {expected})"
                    )
            except (NeomountError, ValueError) as e:
                self.handle.failed(str(e))
                raise RemoteUnavailable(f"remote is unreachable: {e}")

            # A failed tier was already recovered by the successful call
            if self.handle.state() == MountState.MOUNTING:
                self.handle.ready()

    def reconnect(self) -> bool:
        """
        Try to bring a failed tier back with a single protocol check.

        Attempts are spaced by the reconnect interval, so callers can invoke this before
        every operation. Returns whether the tier is ready.
        """
        with self._connect_lock:
            if self.handle.state() != MountState.FAILED:
                return self.handle.is_ready()

            now = self._clock()

            if (
                self._last_reconnect is not None
                and now - self._last_reconnect < self._reconnect_interval
            ):
                return False

            self._last_reconnect = now

            try:
                self.connect(retry=False)
            except RemoteUnavailable as e:
                log.debug(f"remote: reconnect failed: {e}")
                return False

            log.info("remote: reconnected")

            return True

    def close(self) -> None:
        """Stop polling, persist the cache and mark the tier unmounted."""
        self.stop_polling()

        try:
            self._cache.save()
        except Exception as e:
            log.error(f"failed to save remote cache: {e}")

        if self.handle.state() != MountState.UNMOUNTED:
            self.handle.unmounted()

    #
    # Transport
    #

    def _backoff(self, attempt: int) -> float:
        """Return the delay before retry number attempt (starting at 1)."""
        return min(self._backoff_max, self._backoff_base * 2 ** (attempt - 1))

    def _call(self, function: str, *args: Any, retry: bool = True) -> Any:
        """Invoke a store function, retrying transient failures with backoff."""
        attempt = 0

        while True:
            try:
                ret = getattr(self._transport, function)(*args)
            except NeomountError as e:
                if not e.retryable or not retry or attempt >= self._retries:
                    if isinstance(e, RemoteUnavailable):
                        self.handle.fail_if_ready(str(e))
                    raise

                attempt += 1
                delay = self._backoff(attempt)

                log.warning(
                    f"remote {function} failed ({e}), retry {attempt}/{self._retries}"
                    f" in {delay:.1f}s"
                )
                self._sleep(delay)
                continue

            # The store answered, so a tier that failed earlier has recovered
            self.handle.recover()

            return ret

    def _remote_path(self, path: str) -> str:
        return join_path(self._prefix, path)

    def _local_path(self, remote_path: str) -> str:
        """Translate a store path to a path relative to the prefix."""
        if not self._prefix:
            return remote_path
        elif remote_path == self._prefix:
            return ""

        return remote_path[len(self._prefix) + 1 :]

    def _local_entry(self, entry: Entry) -> Entry:
        if not self._prefix:
            return entry

        return dataclasses.replace(entry, path=self._local_path(entry.path))

    #
    # Metadata
    #

    def stat(self, path: str, fresh: bool = False) -> Entry:
        """Return the metadata of a path, bypassing the cache if fresh is set."""
        path = normalize_path(path)

        with self._locks.lock(path):
            hit, entry = (False, None) if fresh else self._cache.get_entry(path)

            if not hit:
                try:
                    remote_entry = self._call("stat", self._remote_path(path))
                    entry = self._local_entry(remote_entry)
                except NotFound:
                    self._cache.put_entry(path, None)
                    raise

                self._cache.put_entry(path, entry)

        if entry is None:
            raise NotFound(f"remote: {path}: no such file or directory")

        return entry

    def exists(self, path: str) -> bool:
        try:
            self.stat(path)
            return True
        except NotFound:
            return False

    def list(self, path: str = "") -> List[Entry]:
        path = normalize_path(path)

        with self._locks.lock(("list", path)):
            entries = self._cache.get_listing(path)

            if entries is None:
                entries = [
                    self._local_entry(entry)
                    for entry in self._call("list", self._remote_path(path))
                ]

                self._cache.put_listing(path, entries)

        return entries

    #
    # Contents
    #

    def read(self, path: str, offset: int = 0, length: int = -1) -> bytes:
        """Read length bytes (or everything for -1) starting at offset."""
        path = normalize_path(path)

        if self._cache.mode != CacheMode.FULL:
            return coerce_bytes(
                self._call("read", self._remote_path(path), offset, length)
            )

        entry = self.stat(path)

        if entry.is_dir:
            raise IsADirectoryError(f"remote: {path}: is a directory")

        with self._locks.lock(("contents", path)):
            data = self._cache.get_contents(path, entry.checksum)

            if data is None:
                contents: FileContents = self._call("readfile", self._remote_path(path))
                self._cache.put_contents(path, contents)
                data = coerce_bytes(contents.data)

        end = None if length < 0 else offset + length
        return data[offset:end]

    def write(
        self,
        path: str,
        data: bytes,
        mtime_ns: Optional[int] = None,
        retry: bool = True,
    ) -> Entry:
        """
        Replace the contents of a remote file.

        The returned entry is only handed out after the store confirmed the checksum of
        what it stored. Retries can be disabled for callers with their own policy.
        """
        path = normalize_path(path)
        contents = FileContents.from_data(data)

        try:
            entry = self._local_entry(
                self._call(
                    "write", self._remote_path(path), contents, mtime_ns, retry=retry
                )
            )
        finally:
            self._cache.invalidate(path)

        if entry.checksum != contents.checksum:
            raise IOError(f"remote: {path}: store confirmed a different checksum")

        self._cache.put_entry(path, entry)

        return entry

    #
    # Structure
    #

    def move(self, path: str, new_path: str) -> Entry:
        path = normalize_path(path)
        new_path = normalize_path(new_path)

        try:
            entry = self._local_entry(
                self._call("move", self._remote_path(path), self._remote_path(new_path))
            )
        finally:
            self._cache.invalidate(path)
            self._cache.invalidate(new_path)

        return entry

    def delete(self, path: str) -> None:
        path = normalize_path(path)

        try:
            self._call("delete", self._remote_path(path))
        finally:
            self._cache.invalidate(path)

    #
    # Change polling
    #

    def poll(self) -> int:
        """
        Reconcile the cache with the store once.

        All cached metadata is sent to the store in a single call, which answers with
        the current state of everything that has changed. Returns the number of changed
        paths. A failed tier is reconnected first.
        """
        # A single attempt, the next poll tries again
        if self.handle.state() == MountState.FAILED:
            self.connect(retry=False)

        cached = self._cache.snapshot()

        if len(cached) == 0:
            return 0

        remote_cached: Dict[str, Optional[Entry]] = {
            self._remote_path(path): entry for path, entry in cached.items()
        }

        changed = self._call("get_changed", remote_cached)

        local_changed = {
            self._local_path(remote_path): self._local_entry(entry) if entry else None
            for remote_path, entry in changed.items()
        }

        self._cache.apply_changes(local_changed)

        if local_changed:
            log.info(f"remote: {len(local_changed)} cached path(s) changed remotely")

        return len(local_changed)

    def start_polling(self) -> None:
        """
        Start the poller thread, unless the poll interval is 0.

        Without a cache the poller only serves to reconnect a failed tier.
        """
        if self._poll_interval <= 0:
            return

        if self._poll_thread is not None:
            return

        self._poll_stop.clear()
        self._poll_thread = threading.Thread(target=self._run_poller, daemon=True)
        self._poll_thread.start()

    def stop_polling(self) -> None:
        if self._poll_thread is None:
            return

        self._poll_stop.set()
        self._poll_thread.join(timeout=5.0)
        self._poll_thread = None

    def _run_poller(self) -> None:
        while not self._poll_stop.wait(self._poll_interval):
            try:
                self.poll()
            except NeomountError as e:
                log.warning(f"remote poll failed: {e}")
            except Exception as e:
                log.error(f"remote poll failed unexpectedly: {e}")
