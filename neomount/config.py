"""
Module for configuration variables read from the environment and the remotes file.

The environment configures the orchestrator itself (see Config.load for the variables
and their defaults). The remotes file is an INI file with a section per remote that
describes how to reach its object store:

    [archive]
    type = rpc
    endpoint = tcp://storage.lan:7300
    token = secret

    [scratch]
    type = local
    root = /srv/store

    [photos]
    type = alias
    remote = archive:photos
"""

from __future__ import annotations

from configparser import ConfigParser, Error as ConfigParserError
from dataclasses import dataclass, field
import os
import re
from typing import Any, Callable, Dict, Mapping, Optional

import neomount.constants as constants
from neomount.errors import ConfigInvalid
from neomount.logger import log
from neomount.migration.cron import CronExpression, CronSyntaxError
from neomount.tiers.cache import CacheMode
from neomount.tiers.common import join_path, normalize_path
from neomount.union import AttrPolicy, CreatePolicy

_DURATION_UNITS = {"ms": 0.001, "s": 1, "m": 60, "h": 3600, "d": 86400}

_SIZE_UNITS = {"": 1, "k": 1024, "m": 1024 ** 2, "g": 1024 ** 3, "t": 1024 ** 4}

_DURATION_PATTERN = re.compile(r"^(\d+(?:\.\d+)?)(ms|s|m|h|d)?$")

_SIZE_PATTERN = re.compile(r"^(\d+(?:\.\d+)?)\s*([kmgt]?)(?:i?b)?$", re.IGNORECASE)

# Remote types that can be used in the remotes file
REMOTE_TYPES = ("rpc", "local", "alias")

# Maximum number of aliases that are followed before assuming a loop
_MAX_ALIAS_DEPTH = 8


def parse_duration(text: str) -> float:
    """Parse a duration like "30s", "1.5h" or "250ms" into seconds."""
    match = _DURATION_PATTERN.match(text.strip())

    if not match:
        raise ConfigInvalid(f"invalid duration: {text!r}")

    value, unit = match.groups()
    return float(value) * _DURATION_UNITS[unit or "s"]


def parse_size(text: str) -> int:
    """Parse a size like "100G", "512M" or "1024" into bytes (binary units)."""
    match = _SIZE_PATTERN.match(text.strip())

    if not match:
        raise ConfigInvalid(f"invalid size: {text!r}")

    value, unit = match.groups()
    return int(float(value) * _SIZE_UNITS[unit.lower()])


def _parse_int(text: str, minimum: int = 1) -> int:
    try:
        value = int(text)
    except ValueError:
        raise ConfigInvalid(f"invalid number: {text!r}")

    if value < minimum:
        raise ConfigInvalid(f"expected number >= {minimum}, got {value}")

    return value


class _Environment:
    """Typed access to environment variables that reports the offending key."""

    def __init__(self, environ: Mapping[str, str]):
        self._environ = environ

    def get(self, key: str, default: str) -> str:
        return self._environ.get(key, "").strip() or default

    def parse(self, key: str, default: str, parser: Callable[[str], Any]) -> Any:
        try:
            return parser(self.get(key, default))
        except (ConfigInvalid, ValueError) as e:
            raise ConfigInvalid(f"{key}: {e}")


@dataclass
class CacheConfig:
    """Configuration variables related to caching of the remote tier."""

    mode: CacheMode = CacheMode.FULL
    path: str = os.path.expanduser("~/.cache/neomount")

    max_age: float = 72 * 3600
    max_size: int = 100 * 1024 ** 3

    dir_cache_time: float = 3600
    attr_timeout: float = 3600
    poll_interval: float = 30

    @staticmethod
    def load(env: _Environment) -> CacheConfig:
        config = CacheConfig()

        config.mode = env.parse(
            "VFS_CACHE_MODE", "full", lambda v: CacheMode(v.lower())
        )
        config.path = os.path.expanduser(env.get("CACHE_DIR", config.path))

        config.max_age = env.parse("VFS_CACHE_MAX_AGE", "72h", parse_duration)
        config.max_size = env.parse("VFS_CACHE_MAX_SIZE", "100G", parse_size)

        config.dir_cache_time = env.parse("DIR_CACHE_TIME", "1h", parse_duration)
        config.attr_timeout = env.parse("ATTR_TIMEOUT", "1h", parse_duration)
        config.poll_interval = env.parse("POLL_INTERVAL", "30s", parse_duration)

        return config


@dataclass
class UnionConfig:
    """Configuration variables related to the union view."""

    attr_policy: AttrPolicy = AttrPolicy.NEWEST
    create_policy: CreatePolicy = CreatePolicy.FF
    min_free_space: int = 10 * 1024 ** 3
    endpoint: str = ""

    @staticmethod
    def load(env: _Environment, merged_path: str) -> UnionConfig:
        config = UnionConfig()

        config.attr_policy = env.parse(
            "UNION_ATTR_POLICY", "newest", lambda v: AttrPolicy(v.lower())
        )
        config.create_policy = env.parse(
            "UNION_CREATE_POLICY", "ff", lambda v: CreatePolicy(v.lower())
        )
        config.min_free_space = env.parse("MIN_FREE_SPACE", "10G", parse_size)

        socket_path = os.path.join(merged_path, constants.UNION_SOCKET_NAME)
        config.endpoint = env.get("UNION_ENDPOINT", f"ipc://{socket_path}")

        return config


@dataclass
class MigrationConfig:
    """Configuration variables related to migration of the local tier."""

    schedule: CronExpression = field(
        default_factory=lambda: CronExpression.parse("0 2 * * *")
    )

    transfers: int = 16
    checkers: int = 16
    retries: int = 3
    min_age: float = 0

    @staticmethod
    def load(env: _Environment) -> MigrationConfig:
        config = MigrationConfig()

        try:
            schedule = env.get("MOVE_SCHEDULE", "0 2 * * *")
            config.schedule = CronExpression.parse(schedule)
        except CronSyntaxError as e:
            raise ConfigInvalid(f"MOVE_SCHEDULE: {e}")

        config.transfers = env.parse("MOVE_TRANSFERS", "16", _parse_int)
        config.checkers = env.parse("MOVE_CHECKERS", "16", _parse_int)
        config.retries = env.parse("MOVE_RETRIES", "3", _parse_int)
        config.min_age = env.parse("MOVE_MIN_AGE", "0s", parse_duration)

        return config


@dataclass
class Config:
    """Configuration variables."""

    remote: str = ""
    remote_path: str = ""

    local_path: str = "/mnt/local"
    merged_path: str = "/mnt/merged"

    remotes_file: str = "/config/rclone.conf"
    remote_timeout: float = 30

    cache: CacheConfig = field(default_factory=CacheConfig)
    union: UnionConfig = field(default_factory=UnionConfig)
    migration: MigrationConfig = field(default_factory=MigrationConfig)

    @staticmethod
    def load(environ: Optional[Mapping[str, str]] = None) -> Config:
        """
        Load the configuration from environment variables.

        Defaults to os.environ. Raises ConfigInvalid naming the offending variable if a
        value is missing or malformed.
        """
        env = _Environment(os.environ if environ is None else environ)

        config = Config()

        config.remote = env.get("RCLONE_REMOTE", "")

        if not config.remote:
            raise ConfigInvalid("RCLONE_REMOTE is required")

        config.remote_path = env.parse("RCLONE_REMOTE_PATH", "", normalize_path)

        config.local_path = env.get("LOCAL_PATH", config.local_path)
        config.merged_path = env.get("MERGED_PATH", config.merged_path)

        config.remotes_file = os.path.expanduser(
            env.get("NEOMOUNT_CONFIG", config.remotes_file)
        )
        config.remote_timeout = env.parse("REMOTE_TIMEOUT", "30s", parse_duration)

        config.cache = CacheConfig.load(env)
        config.union = UnionConfig.load(env, config.merged_path)
        config.migration = MigrationConfig.load(env)

        log.debug(f"loaded config: {config}")

        return config


#
# Remotes file
#


@dataclass
class RemoteConfig:
    """Resolved description of how to reach the object store of a remote."""

    name: str
    type: str
    prefix: str = ""

    endpoint: Optional[str] = None
    token: Optional[str] = None

    root: Optional[str] = None


def load_remotes(filename: str) -> Dict[str, Dict[str, str]]:
    """Read all remote sections from the remotes file."""
    parser = ConfigParser(interpolation=None)

    try:
        with open(filename, "r") as f:
            parser.read_string(f.read(), filename)
    except FileNotFoundError:
        raise ConfigInvalid(f"remotes file not found: {filename}")
    except (OSError, ConfigParserError) as e:
        raise ConfigInvalid(f"failed to read remotes file {filename}: {e}")

    return {name: dict(parser[name]) for name in parser.sections()}


def resolve_remote(filename: str, name: str, path: str = "") -> RemoteConfig:
    """
    Resolve a remote name and path to the store that actually serves it.

    Aliases are followed, with the path of every alias prepended to the prefix.
    """
    remotes = load_remotes(filename)
    prefix = normalize_path(path)

    for _ in range(_MAX_ALIAS_DEPTH):
        if name not in remotes:
            available = ", ".join(sorted(remotes)) or "none"
            raise ConfigInvalid(
                f"remote '{name}' not found in {filename} (available: {available})"
            )

        section = remotes[name]
        typ = section.get("type", "")

        if typ == "alias":
            target = section.get("remote", "")

            if ":" not in target:
                raise ConfigInvalid(
                    f"remote '{name}': alias target must look like 'remote:path',"
                    f" got {target!r}"
                )

            name, alias_path = target.split(":", 1)
            prefix = join_path(normalize_path(alias_path), prefix)
        elif typ == "rpc":
            if not section.get("endpoint"):
                raise ConfigInvalid(f"remote '{name}': missing endpoint")

            return RemoteConfig(
                name=name,
                type=typ,
                prefix=prefix,
                endpoint=section["endpoint"],
                token=section.get("token") or None,
            )
        elif typ == "local":
            if not section.get("root"):
                raise ConfigInvalid(f"remote '{name}': missing root")

            return RemoteConfig(
                name=name,
                type=typ,
                prefix=prefix,
                root=os.path.expanduser(section["root"]),
            )
        else:
            raise ConfigInvalid(
                f"remote '{name}': unknown type {typ!r}"
                f" (expected one of {', '.join(REMOTE_TYPES)})"
            )

    raise ConfigInvalid(f"remote '{name}': too many nested aliases")
