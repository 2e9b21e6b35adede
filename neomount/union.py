"""
Module that merges the local and remote tiers into a single namespace.

The union view answers every request from exactly one tier:

* A path that exists in a single tier is served by that tier.
* A path that exists in both tiers is served by the tier picked by the attribute
policy. With "newest" (the default) the local copy wins unless the remote copy has a
strictly newer modification time. With "ff" (first found) the local copy always wins.
* Directory listings contain every name from both tiers once, with the metadata of the
tier that wins for that name.

New data only ever lands in the local tier, and nothing done through the union view
modifies the remote tier. Data reaches the remote tier through the migration scheduler.

Failures of a tier are never turned into empty results: a path that is missing in one
tier is only skipped if the other tier actually answered.
"""

import dataclasses
from enum import Enum
from typing import Dict, List, Optional, Tuple

from neomount.errors import (
    CrossTierRenameUnsupported,
    NotFound,
    NotReady,
    ReadOnlyTier,
)
from neomount.logger import log
from neomount.mount import MountState
from neomount.tiers.common import Entry, normalize_path, parent_path, Tier
from neomount.tiers.local import LocalTier
from neomount.tiers.remote import RemoteClient


class AttrPolicy(Enum):
    """Policy that decides which tier wins for a path that exists in both."""

    NEWEST = "newest"
    FF = "ff"


class CreatePolicy(Enum):
    """
    Policy that decides where new entries may be created in the local tier.

    "ff" creates missing parent directories as needed. "epmfs" (existing path) only
    creates entries whose parent directory already exists in the union namespace.
    """

    FF = "ff"
    EPMFS = "epmfs"


class UnionView:
    """Merged namespace over a read-write local tier and a read-only remote tier."""

    def __init__(
        self,
        local: LocalTier,
        remote: RemoteClient,
        attr_policy: AttrPolicy = AttrPolicy.NEWEST,
        create_policy: CreatePolicy = CreatePolicy.FF,
    ):
        self.local = local
        self.remote = remote
        self.attr_policy = attr_policy
        self.create_policy = create_policy

    def is_ready(self) -> bool:
        """Return whether both tiers are ready to serve requests."""
        return self.local.handle.is_ready() and self.remote.handle.is_ready()

    def _check_ready(self) -> None:
        """
        Raise NotReady unless both tiers are ready.

        A failed remote tier gets a chance to reconnect first, so that the view comes
        back on its own once the store answers again.
        """
        if self.remote.handle.state() == MountState.FAILED:
            self.remote.reconnect()

        if not self.is_ready():
            raise NotReady(
                f"tiers not ready (local: {self.local.handle.health()},"
                f" remote: {self.remote.handle.health()})"
            )

    #
    # Resolution
    #

    def _lookup(self, path: str) -> Tuple[Optional[Entry], Optional[Entry]]:
        """Return the metadata of a path in the local and remote tier."""
        try:
            local: Optional[Entry] = self.local.stat(path)
        except NotFound:
            local = None

        try:
            remote: Optional[Entry] = self.remote.stat(path)
        except NotFound:
            remote = None

        return local, remote

    def _winner(self, local: Entry, remote: Entry) -> Entry:
        """Pick the authoritative entry of a path that exists in both tiers."""
        if self.attr_policy == AttrPolicy.FF or local.mtime_ns >= remote.mtime_ns:
            return local
        else:
            return remote

    def _resolve(self, path: str) -> Tuple[Entry, Tier]:
        """
        Find the authoritative entry for a path.

        Returns the entry as presented by the union view (tier set to BOTH if the path
        exists in both tiers) and the tier that serves it.
        """
        local, remote = self._lookup(path)

        if local and remote:
            winner = self._winner(local, remote)
            return dataclasses.replace(winner, tier=Tier.BOTH), winner.tier
        elif local:
            return local, Tier.LOCAL
        elif remote:
            return remote, Tier.REMOTE
        else:
            raise NotFound(f"{path}: no such file or directory")

    def resolve_tier(self, path: str) -> Tier:
        """Return the tier (LOCAL or REMOTE) that currently serves a path."""
        self._check_ready()
        return self._resolve(normalize_path(path))[1]

    #
    # Metadata
    #

    def stat(self, path: str) -> Entry:
        self._check_ready()
        return self._resolve(normalize_path(path))[0]

    def exists(self, path: str) -> bool:
        try:
            self.stat(path)
            return True
        except NotFound:
            return False

    def list(self, path: str = "") -> List[Entry]:
        """List a directory of the union namespace, sorted by name."""
        self._check_ready()
        path = normalize_path(path)

        try:
            local: Optional[List[Entry]] = self.local.list_dir(path)
        except NotFound:
            local = None

        try:
            remote: Optional[List[Entry]] = self.remote.list(path)
        except NotFound:
            remote = None

        if local is None and remote is None:
            raise NotFound(f"{path}: no such directory")

        merged: Dict[str, Entry] = {entry.name: entry for entry in remote or []}

        for entry in local or []:
            other = merged.get(entry.name)

            if other is None:
                merged[entry.name] = entry
            else:
                winner = self._winner(entry, other)
                merged[entry.name] = dataclasses.replace(winner, tier=Tier.BOTH)

        return [merged[name] for name in sorted(merged)]

    def statfs(self) -> Dict[str, int]:
        """Return space information about the local tier."""
        self._check_ready()

        return {
            "free_space": self.local.free_space(),
            "min_free_space": self.local.min_free_space,
        }

    #
    # Contents
    #

    def read(self, path: str, offset: int = 0, length: int = -1) -> bytes:
        """Read from the tier that is authoritative for the path."""
        self._check_ready()
        path = normalize_path(path)

        entry, tier = self._resolve(path)

        if entry.is_dir:
            raise IsADirectoryError(f"{path}: is a directory")

        if tier == Tier.LOCAL:
            return self.local.read(path, offset, length)
        else:
            return self.remote.read(path, offset, length)

    def write(self, path: str, data: bytes) -> Entry:
        """
        Replace the contents of a file in the local tier.

        Writing to a path that is currently served by the remote tier creates a local
        copy that shadows it.
        """
        self._check_ready()
        path = normalize_path(path)

        if not path:
            raise IsADirectoryError("cannot write to the root directory")

        local, remote = self._lookup(path)

        if (local and local.is_dir) or (remote and remote.is_dir):
            raise IsADirectoryError(f"{path}: is a directory")

        self._check_create_parent(path)

        return self.local.write(path, data)

    def mkdir(self, path: str) -> Entry:
        self._check_ready()
        path = normalize_path(path)

        self._check_create_parent(path)

        return self.local.mkdir(path)

    def _check_create_parent(self, path: str) -> None:
        """Enforce the create policy for a new entry at path."""
        if self.create_policy != CreatePolicy.EPMFS:
            return

        parent = parent_path(path)

        if not parent:
            return

        local, remote = self._lookup(parent)

        if local is None and remote is None:
            raise NotFound(f"{parent}: parent directory does not exist")

        if not (local or remote).is_dir:
            raise NotADirectoryError(f"{parent}: not a directory")

    #
    # Structure
    #

    def delete(self, path: str) -> None:
        """
        Delete a file or empty directory from the local tier.

        If the remote tier has a copy of the same path then that copy becomes visible
        again. Paths that only exist remotely can't be deleted through the union view.
        """
        self._check_ready()
        path = normalize_path(path)

        local, remote = self._lookup(path)

        if local:
            self.local.delete(path)

            if remote:
                log.debug(f"union: {path} deleted locally, remote copy visible again")
        elif remote:
            raise ReadOnlyTier(f"{path}: only exists in the read-only remote tier")
        else:
            raise NotFound(f"{path}: no such file or directory")

    def rename(self, old: str, new: str) -> Entry:
        """
        Rename an entry within the tier that serves it.

        Both endpoints have to resolve to the local tier (a new path always does), since
        the remote tier can't be modified through the union view.
        """
        self._check_ready()
        old = normalize_path(old)
        new = normalize_path(new)

        _, old_tier = self._resolve(old)

        try:
            _, new_tier = self._resolve(new)
        except NotFound:
            new_tier = Tier.LOCAL

        if old_tier != Tier.LOCAL or new_tier != Tier.LOCAL:
            raise CrossTierRenameUnsupported(
                f"cannot rename {old} ({old_tier.value}) to {new} ({new_tier.value})"
            )

        self._check_create_parent(new)

        return self.local.rename(old, new)


class UnionService:
    """RPC service that exposes the union view to applications."""

    def __init__(self, view: UnionView):
        self._view = view

    def is_ready(self) -> bool:
        return self._view.is_ready()

    def stat(self, path: str) -> Entry:
        return self._view.stat(path)

    def list(self, path: str) -> List[Entry]:
        return self._view.list(path)

    def read(self, path: str, offset: int, length: int) -> bytes:
        return self._view.read(path, offset, length)

    def write(self, path: str, data: bytes) -> Entry:
        return self._view.write(path, bytes(data))

    def mkdir(self, path: str) -> Entry:
        return self._view.mkdir(path)

    def delete(self, path: str) -> None:
        self._view.delete(path)

    def rename(self, old: str, new: str) -> Entry:
        return self._view.rename(old, new)

    def statfs(self) -> Dict[str, int]:
        return self._view.statfs()
