"""
Module with a directory backed object store that speaks the remote tier protocol.

The remote tier client talks to any object exposing the methods of ObjectStoreService,
either in-process (a "local" remote in the remotes file) or over RPC (an "rpc" remote
served with `neomount store`). The store is deliberately simple: it is the reference
implementation of the protocol and the stand-in for a cloud provider in tests.
"""

import os
import os.path
import threading
from typing import Dict, List, Optional, Tuple

import neomount.constants as constants
from neomount.errors import NotFound, QuotaExceeded
from neomount.logger import format_size, log
from neomount.tiers.common import (
    checksum,
    coerce_bytes,
    Entry,
    FileContents,
    Kind,
    normalize_path,
    Tier,
)


class ObjectStoreService:
    """RPC service that stores objects as files below a root directory."""

    def __init__(self, root: str, quota: Optional[int] = None):
        """
        Instantiate a store for the given directory.

        If a quota (in bytes) is given then writes that would make the total size of
        all stored files exceed it fail with QuotaExceeded.
        """
        self._root = os.path.abspath(root)
        self._quota = quota

        self._write_lock = threading.Lock()
        self._used: Optional[int] = None
        self._checksum_lock = threading.Lock()
        self._checksums: Dict[str, Tuple[int, int, str]] = {}

    @staticmethod
    def get_protocol_version() -> str:
        return constants.PROTOCOL_VERSION

    def _abspath(self, path: str) -> str:
        rel = normalize_path(path)
        return os.path.join(self._root, rel) if rel else self._root

    def _entry(self, path: str, st: os.stat_result) -> Entry:
        entry = Entry.from_stat(path, st, Tier.REMOTE)

        if entry.kind == Kind.FILE:
            entry.checksum = self._checksum(path, st)

        return entry

    def _checksum(self, path: str, st: os.stat_result) -> str:
        """Return the checksum of a file, reusing it while size and mtime match."""
        with self._checksum_lock:
            cached = self._checksums.get(path)

        if cached and cached[:2] == (st.st_size, st.st_mtime_ns):
            return cached[2]

        with open(self._abspath(path), "rb") as f:
            digest = checksum(f.read())

        with self._checksum_lock:
            self._checksums[path] = (st.st_size, st.st_mtime_ns, digest)

        return digest

    def _lookup(self, path: str) -> Tuple[str, os.stat_result]:
        path = normalize_path(path)

        try:
            return path, os.stat(self._abspath(path))
        except (FileNotFoundError, NotADirectoryError):
            raise NotFound(f"remote: {path}: no such file or directory")

    #
    # Metadata
    #

    def stat(self, path: str) -> Entry:
        return self._entry(*self._lookup(path))

    def list(self, path: str) -> List[Entry]:
        path, st = self._lookup(path)

        if not os.path.isdir(self._abspath(path)):
            raise NotFound(f"remote: {path}: not a directory")

        entries = []

        for name in sorted(os.listdir(self._abspath(path))):
            if name.startswith(constants.PARTIAL_PREFIX):
                continue

            child = f"{path}/{name}" if path else name

            try:
                entries.append(self.stat(child))
            except NotFound:
                continue

        return entries

    def get_changed(
        self, cached: Dict[str, Optional[Entry]]
    ) -> Dict[str, Optional[Entry]]:
        """
        Return the current state of all cached paths whose state has changed.

        A cached value of None means the path was known to be missing. A returned value
        of None means the path no longer exists. Access times aren't tracked, so any
        difference in kind, size or modification time counts as a change.
        """
        changed: Dict[str, Optional[Entry]] = {}

        for path, old in cached.items():
            try:
                new: Optional[Entry] = self.stat(path)
            except NotFound:
                new = None

            if self._significant(new) != self._significant(old):
                changed[path] = new

        return changed

    @staticmethod
    def _significant(entry: Optional[Entry]) -> Optional[Tuple]:
        if entry is None:
            return None

        return (entry.kind, entry.size, entry.mtime_ns)

    #
    # Contents
    #

    def read(self, path: str, offset: int, length: int) -> bytes:
        path, st = self._lookup(path)

        with open(self._abspath(path), "rb") as f:
            f.seek(offset)
            return f.read(length)

    def readfile(self, path: str) -> FileContents:
        """Read the entire (compressed) contents of a file."""
        path, _ = self._lookup(path)

        with open(self._abspath(path), "rb") as f:
            return FileContents.from_data(f.read())

    def write(
        self, path: str, contents: FileContents, mtime_ns: Optional[int]
    ) -> Entry:
        """
        Replace the contents of an object, creating parent directories as needed.

        The data is checked against the checksum that came with it, so the returned
        entry confirms exactly what was stored.
        """
        path = normalize_path(path)
        data = coerce_bytes(contents.data)

        if checksum(data) != contents.checksum:
            raise IOError(f"remote: {path}: checksum mismatch in transferred data")

        target = self._abspath(path)
        directory, name = os.path.split(target)
        partial = os.path.join(directory, f"{constants.PARTIAL_PREFIX}{name}")

        with self._write_lock:
            replaced = os.path.getsize(target) if os.path.isfile(target) else 0
            self._check_quota(len(data), replaced)

            os.makedirs(directory, exist_ok=True)

            with open(partial, "wb") as f:
                f.write(data)
                f.flush()
                os.fsync(f.fileno())

            if mtime_ns is not None:
                os.utime(partial, ns=(mtime_ns, mtime_ns))

            os.replace(partial, target)
            self._account(len(data) - replaced)

        log.debug(f"store: stored {path} ({format_size(len(data))})")

        return self.stat(path)

    def _usage(self) -> int:
        """
        Return the number of bytes stored, measuring the root directory once.

        After that the total is kept up to date by the writes and deletes of this
        service. Files changed behind its back are only noticed after a restart.
        """
        if self._used is None:
            self._used = 0

            for directory, _, files in os.walk(self._root):
                for name in files:
                    try:
                        self._used += os.path.getsize(os.path.join(directory, name))
                    except FileNotFoundError:
                        continue

        return self._used

    def _check_quota(self, size: int, replaced: int) -> None:
        if self._quota is None:
            return

        # The object being replaced doesn't count towards the quota
        used = self._usage() - replaced

        if used + size > self._quota:
            raise QuotaExceeded(
                f"remote: storing {format_size(size)} exceeds quota of"
                f" {format_size(self._quota)} ({format_size(used)} used)"
            )

    def _account(self, delta: int) -> None:
        if self._used is not None:
            self._used += delta

    #
    # Structure
    #

    def move(self, path: str, new_path: str) -> Entry:
        path, _ = self._lookup(path)
        new_path = normalize_path(new_path)

        target = self._abspath(new_path)

        with self._write_lock:
            replaced = os.path.getsize(target) if os.path.isfile(target) else 0

            os.makedirs(os.path.dirname(target), exist_ok=True)
            os.rename(self._abspath(path), target)
            self._account(-replaced)

        return self.stat(new_path)

    def delete(self, path: str) -> None:
        path, st = self._lookup(path)

        if not path:
            raise PermissionError("cannot delete the store root")

        if os.path.isdir(self._abspath(path)):
            os.rmdir(self._abspath(path))
        else:
            with self._write_lock:
                os.unlink(self._abspath(path))
                self._account(-st.st_size)

        with self._checksum_lock:
            self._checksums.pop(path, None)

    def mkdir(self, path: str) -> Entry:
        path = normalize_path(path)
        os.makedirs(self._abspath(path), exist_ok=True)
        return self.stat(path)
