"""
Exceptions raised by the tiers, the union view and the orchestrator.

All of them derive from NeomountError so that they can be registered with the RPC
encoding as a group and recreated faithfully on the other side of a connection. Every
exception carries an errno that a caller can use when it has to report the failure as
an OS-level I/O error.
"""

import errno
from typing import List, Type


class NeomountError(Exception):
    """Base class of all neomount errors."""

    errno = errno.EIO

    # Whether the same operation may succeed when it is simply retried later.
    retryable = False


class ConfigInvalid(NeomountError):
    """The configuration is missing, unreadable or contains invalid values."""

    errno = errno.EINVAL


class RemoteUnavailable(NeomountError):
    """The remote object store can't be reached or didn't answer in time."""

    errno = errno.EIO
    retryable = True


class NotFound(NeomountError):
    """The path doesn't exist in the tier (or in any tier of the union view)."""

    errno = errno.ENOENT


class InsufficientSpace(NeomountError):
    """The write would push local free space below the configured floor."""

    errno = errno.ENOSPC


class CrossTierRenameUnsupported(NeomountError):
    """The endpoints of a rename resolve to different tiers."""

    errno = errno.EXDEV


class QuotaExceeded(NeomountError):
    """The remote provider throttled the request or its quota is exhausted."""

    errno = errno.EDQUOT
    retryable = True


class NotReady(NeomountError):
    """The operation was attempted before all tiers reported ready."""

    errno = errno.EAGAIN
    retryable = True


class ReadOnlyTier(NeomountError):
    """The operation would modify a tier that is read-only from the caller's view."""

    errno = errno.EROFS


def all_errors() -> List[Type[NeomountError]]:
    """Return all neomount exception types, including the base class."""
    return [NeomountError] + NeomountError.__subclasses__()
