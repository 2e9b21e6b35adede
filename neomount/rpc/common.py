"""Definitions shared by the RPC client and server."""

from enum import IntEnum
import inspect
import typing
from typing import Any, List


class Status(IntEnum):
    """Outcome of a call, sent along with the return value or exception."""

    OK = 0
    ERROR = 1
    DENIED = 2


class InvalidTokenError(RuntimeError):
    """Exception raised when an RPC call is made with a wrong authentication token."""


def service_types(service_type: type) -> List[Any]:
    """
    Collect the parameter and return types of the public methods of a service class.

    The encoding on both sides of a connection is built from these, which is how
    dataclasses like Entry become known to it without registering them explicitly.
    """
    types: List[Any] = []

    for name, member in inspect.getmembers(service_type, callable):
        if name.startswith("_"):
            continue

        try:
            types += typing.get_type_hints(member).values()
        except (NameError, TypeError):
            # Unresolvable annotations or not something with annotations
            continue

    return types
