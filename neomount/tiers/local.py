"""Module with the local tier: plain file system operations on a local directory."""

from contextlib import contextmanager
import os
import os.path
from typing import Callable, Iterator, List, Optional

import neomount.constants as constants
from neomount.errors import ConfigInvalid, InsufficientSpace, NotFound
from neomount.logger import format_size, log
from neomount.mount import MountHandle
from neomount.tiers.common import Entry, normalize_path, Tier


# Files that belong to neomount itself and are never part of the namespace.
_INTERNAL_NAMES = (constants.UNION_SOCKET_NAME, constants.MIGRATION_LOCK_NAME)


def _is_internal(name: str) -> bool:
    return name in _INTERNAL_NAMES or name.startswith(constants.PARTIAL_PREFIX)


@contextmanager
def _translate_errors(path: str) -> Iterator[None]:
    """Raise NotFound for missing paths instead of the OS level exceptions."""
    try:
        yield
    except (FileNotFoundError, NotADirectoryError) as e:
        raise NotFound(f"local: {path}: {e.strerror}")


class LocalTier:
    """
    Read/write tier backed by a directory on local disk.

    There's no caching at this level: every write is flushed to disk before it returns,
    by writing into a temporary file next to the destination, syncing it and renaming it
    in place. That also means that readers never observe a half written file.

    Writes are refused if they would push the free space of the file system below the
    configured floor. The check is advisory: two concurrent writers can both pass it
    before either has written its data.
    """

    def __init__(
        self,
        root: str,
        min_free_space: int = 0,
        free_space_fn: Optional[Callable[[], int]] = None,
    ):
        """
        Instantiate the tier for the given directory.

        The free space function can be overridden to simulate a nearly full disk.
        """
        self.root = os.path.abspath(root)
        self.min_free_space = min_free_space

        self._free_space_fn = free_space_fn
        self.handle = MountHandle("local", self.root)

    def mount(self) -> None:
        """Verify that the tier directory is usable and mark the tier ready."""
        self.handle.mounting()

        if not os.path.isdir(self.root):
            reason = f"local path does not exist: {self.root}"
            self.handle.failed(reason)
            raise ConfigInvalid(reason)

        if not os.access(self.root, os.R_OK | os.W_OK | os.X_OK):
            reason = f"local path is not writable: {self.root}"
            self.handle.failed(reason)
            raise ConfigInvalid(reason)

        self.handle.ready()

    def unmount(self) -> None:
        self.handle.unmounted()

    def abspath(self, path: str) -> str:
        """Return the location of a tier path on disk."""
        rel = normalize_path(path)
        return os.path.join(self.root, rel) if rel else self.root

    #
    # Metadata
    #

    def stat(self, path: str) -> Entry:
        path = normalize_path(path)

        with _translate_errors(path):
            st = os.stat(self.abspath(path))

        return Entry.from_stat(path, st, Tier.LOCAL)

    def exists(self, path: str) -> bool:
        return os.path.lexists(self.abspath(path))

    def list_dir(self, path: str = "") -> List[Entry]:
        """List the entries in a directory, sorted by name."""
        path = normalize_path(path)
        entries = []

        with _translate_errors(path):
            with os.scandir(self.abspath(path)) as it:
                for dirent in it:
                    if _is_internal(dirent.name):
                        continue

                    child = f"{path}/{dirent.name}" if path else dirent.name

                    try:
                        st = dirent.stat()
                    except FileNotFoundError:
                        # Removed between listing and stat
                        continue

                    entries.append(Entry.from_stat(child, st, Tier.LOCAL))

        return sorted(entries, key=lambda e: e.name)

    def walk(self, path: str = "") -> Iterator[Entry]:
        """Yield all files below a directory, depth first."""
        for entry in self.list_dir(path):
            if entry.is_dir:
                try:
                    yield from self.walk(entry.path)
                except NotFound:
                    continue
            else:
                yield entry

    def free_space(self) -> int:
        """Return the number of bytes available to unprivileged writers."""
        if self._free_space_fn is not None:
            return self._free_space_fn()

        st = os.statvfs(self.root)
        return st.f_bavail * st.f_frsize

    def check_space(self, size: int) -> None:
        """Raise InsufficientSpace if writing size bytes would cross the floor."""
        if self.min_free_space <= 0:
            return

        remaining = self.free_space() - size

        if remaining < self.min_free_space:
            raise InsufficientSpace(
                f"writing {format_size(size)} would leave"
                f" {format_size(remaining)} free,"
                f" below the floor of {format_size(self.min_free_space)}"
            )

    #
    # Contents
    #

    def read(self, path: str, offset: int = 0, length: int = -1) -> bytes:
        """Read length bytes (or everything for -1) starting at offset."""
        path = normalize_path(path)

        with _translate_errors(path):
            with open(self.abspath(path), "rb") as f:
                f.seek(offset)
                return f.read(length)

    def write(self, path: str, data: bytes, mtime_ns: Optional[int] = None) -> Entry:
        """Durably replace the contents of a file, creating parents as needed."""
        path = normalize_path(path)

        if not path:
            raise IsADirectoryError("cannot write to the tier root")

        self.check_space(len(data))

        target = self.abspath(path)
        directory, name = os.path.split(target)

        os.makedirs(directory, exist_ok=True)

        partial = os.path.join(directory, f"{constants.PARTIAL_PREFIX}{name}")

        try:
            with open(partial, "wb") as f:
                f.write(data)
                f.flush()
                os.fsync(f.fileno())

            if mtime_ns is not None:
                os.utime(partial, ns=(mtime_ns, mtime_ns))

            os.replace(partial, target)
        except BaseException:
            try:
                os.unlink(partial)
            except FileNotFoundError:
                pass
            raise

        log.debug(f"local: wrote {len(data)} bytes to {path}")

        return self.stat(path)

    #
    # Structure
    #

    def mkdir(self, path: str) -> Entry:
        path = normalize_path(path)
        os.makedirs(self.abspath(path), exist_ok=True)
        return self.stat(path)

    def delete(self, path: str) -> None:
        """Delete a file or an empty directory."""
        path = normalize_path(path)

        if not path:
            raise PermissionError("cannot delete the tier root")

        target = self.abspath(path)

        with _translate_errors(path):
            if os.path.isdir(target) and not os.path.islink(target):
                os.rmdir(target)
            else:
                os.unlink(target)

    def rmdir(self, path: str) -> None:
        """Delete an empty directory."""
        path = normalize_path(path)

        if not path:
            raise PermissionError("cannot delete the tier root")

        with _translate_errors(path):
            os.rmdir(self.abspath(path))

    def rename(self, old: str, new: str) -> Entry:
        """Atomically move an entry within the tier."""
        old = normalize_path(old)
        new = normalize_path(new)

        with _translate_errors(old):
            os.makedirs(os.path.dirname(self.abspath(new)), exist_ok=True)
            os.rename(self.abspath(old), self.abspath(new))

        return self.stat(new)

    def prune_empty_dirs(self, path: str = "") -> List[str]:
        """
        Remove empty directories below path, bottom-up.

        The directory at path itself is kept. Returns the removed paths.
        """
        removed: List[str] = []

        for entry in self.list_dir(path):
            if not entry.is_dir:
                continue

            removed += self.prune_empty_dirs(entry.path)

            try:
                os.rmdir(self.abspath(entry.path))
                removed.append(entry.path)
            except OSError:
                # Not empty (or just got a new file)
                continue

        return removed
