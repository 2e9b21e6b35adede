"""
Serialization of the values that cross process boundaries.

On the wire, values are encoded with MessagePack. Dataclasses and exceptions travel as
MessagePack extension types, so they can't be confused with a plain dict that happens
to have the right keys. Enum members travel as their values and are turned back into
members by the __post_init__ of the dataclass that holds them.

The on-disk cache index is stored as JSON instead, where the same values become dicts
tagged with a single reserved key.
"""

import builtins
import dataclasses
from enum import Enum, IntEnum
import json
import typing
from typing import Any, Dict, IO, Iterable, List, Set, Tuple

import msgpack

from neomount.errors import all_errors

# Key of the dicts that stand in for dataclasses and exceptions in JSON
_JSON_TAG = "__neomount__"


class ExtCode(IntEnum):
    """MessagePack extension type codes."""

    DATACLASS = 1
    EXCEPTION = 2


def discover_dataclasses(*seed_types: Any) -> Set[type]:
    """
    Find all dataclass types reachable from the given types.

    The fields of dataclasses are followed, as are the arguments of generic types like
    Optional[T], List[T] and Dict[K, V].
    """
    found: Set[type] = set()
    explored: Set[Any] = set()
    pending: List[Any] = list(seed_types)

    while pending:
        candidate = pending.pop()

        if candidate in explored:
            continue

        explored.add(candidate)

        if isinstance(candidate, type) and dataclasses.is_dataclass(candidate):
            found.add(candidate)
            pending += typing.get_type_hints(candidate).values()
        else:
            pending += typing.get_args(candidate)

    return found


class Encoding:
    """
    Encoder and decoder for a known set of dataclasses and exceptions.

    Only registered dataclasses can be decoded. Exceptions are recreated with their
    original type if that is a builtin or a registered exception type (all neomount
    errors are), and as a plain Exception with the original arguments otherwise.
    """

    def __init__(self, *types: Any, exceptions: Iterable[type] = ()):
        """Instantiate an encoding for the dataclasses reachable from the types."""
        self._dataclasses: Dict[str, type] = {}
        self._exceptions: Dict[str, type] = {}

        self.register(*types)

        for exception in [*all_errors(), *exceptions]:
            self._exceptions[exception.__qualname__] = exception

    def register(self, *types: Any) -> None:
        for cls in discover_dataclasses(*types):
            self._dataclasses[cls.__qualname__] = cls

    #
    # MessagePack
    #

    def pack(self, obj: Any) -> bytes:
        return msgpack.packb(obj, default=self._to_ext, use_bin_type=True)

    def unpack(self, data: bytes) -> Any:
        return msgpack.unpackb(data, ext_hook=self._from_ext, raw=False)

    def _to_ext(self, obj: Any) -> Any:
        if isinstance(obj, Enum):
            return obj.value

        code, name, payload = self._describe(obj)
        return msgpack.ExtType(code, self.pack([name, payload]))

    def _from_ext(self, code: int, data: bytes) -> Any:
        if code not in (ExtCode.DATACLASS, ExtCode.EXCEPTION):
            return msgpack.ExtType(code, data)

        name, payload = self.unpack(data)

        if code == ExtCode.DATACLASS:
            return self._build_dataclass(name, payload)
        else:
            return self._build_exception(name, payload)

    #
    # JSON
    #

    def dump_json(self, obj: Any, fp: IO[str]) -> None:
        json.dump(obj, fp, default=self._to_tagged)

    def load_json(self, fp: IO[str]) -> Any:
        return json.load(fp, object_hook=self._from_tagged)

    def _to_tagged(self, obj: Any) -> Any:
        if isinstance(obj, Enum):
            return obj.value

        code, name, payload = self._describe(obj)
        return {_JSON_TAG: [code.name.lower(), name, payload]}

    def _from_tagged(self, obj: Dict[str, Any]) -> Any:
        if len(obj) != 1 or _JSON_TAG not in obj:
            return obj

        kind, name, payload = obj[_JSON_TAG]

        if kind == "dataclass":
            return self._build_dataclass(name, payload)
        else:
            return self._build_exception(name, payload)

    #
    # Shared
    #

    def _describe(self, obj: Any) -> Tuple[ExtCode, str, Any]:
        """Break an object down into its type name and serializable contents."""
        name = obj.__class__.__qualname__

        if isinstance(obj, BaseException):
            # Chained exceptions are flattened into their message
            args = [str(a) if isinstance(a, BaseException) else a for a in obj.args]
            return ExtCode.EXCEPTION, name, args
        elif name in self._dataclasses:
            fields = {f.name: getattr(obj, f.name) for f in dataclasses.fields(obj)}
            return ExtCode.DATACLASS, name, fields
        else:
            raise TypeError(f"cannot serialize object of type {name}")

    def _build_dataclass(self, name: str, fields: Dict[str, Any]) -> Any:
        try:
            cls = self._dataclasses[name]
        except KeyError:
            raise TypeError(f"unknown dataclass '{name}'")

        # Fields added by a newer peer are ignored
        known = {f.name for f in dataclasses.fields(cls) if f.init}

        try:
            return cls(**{k: v for k, v in fields.items() if k in known})
        except Exception as e:
            raise TypeError(f"failed to deserialize {name}: {e}")

    def _build_exception(self, name: str, args: List[Any]) -> BaseException:
        cls = self._exceptions.get(name) or getattr(builtins, name, None)

        if isinstance(cls, type) and issubclass(cls, BaseException):
            return cls(*args)
        else:
            return Exception(*args)
