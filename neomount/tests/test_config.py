import os.path

import pytest

from neomount.config import (
    Config,
    load_remotes,
    parse_duration,
    parse_size,
    resolve_remote,
)
from neomount.errors import ConfigInvalid
from neomount.tiers import CacheMode
from neomount.union import AttrPolicy, CreatePolicy


def test_parse_duration():
    assert parse_duration("0") == 0
    assert parse_duration("30") == 30
    assert parse_duration("30s") == 30
    assert parse_duration("250ms") == pytest.approx(0.25)
    assert parse_duration("5m") == 300
    assert parse_duration("1.5h") == 5400
    assert parse_duration("3d") == 3 * 86400


@pytest.mark.parametrize("text", ["", "abc", "5x", "-1s", "1 h"])
def test_parse_invalid_duration(text):
    with pytest.raises(ConfigInvalid):
        parse_duration(text)


def test_parse_size():
    assert parse_size("0") == 0
    assert parse_size("1024") == 1024
    assert parse_size("1K") == 1024
    assert parse_size("1.5K") == 1536
    assert parse_size("512M") == 512 * 1024 ** 2
    assert parse_size("10G") == 10 * 1024 ** 3
    assert parse_size("10GiB") == 10 * 1024 ** 3
    assert parse_size("2t") == 2 * 1024 ** 4


@pytest.mark.parametrize("text", ["", "lots", "10X", "-5G"])
def test_parse_invalid_size(text):
    with pytest.raises(ConfigInvalid):
        parse_size(text)


def test_config_defaults():
    cfg = Config.load({"RCLONE_REMOTE": "archive"})

    assert cfg.remote == "archive"
    assert cfg.remote_path == ""
    assert cfg.local_path == "/mnt/local"
    assert cfg.merged_path == "/mnt/merged"
    assert cfg.remotes_file == "/config/rclone.conf"
    assert cfg.remote_timeout == 30

    assert cfg.cache.mode == CacheMode.FULL
    assert cfg.cache.path == os.path.expanduser("~/.cache/neomount")
    assert cfg.cache.max_age == 72 * 3600
    assert cfg.cache.max_size == 100 * 1024 ** 3
    assert cfg.cache.dir_cache_time == 3600
    assert cfg.cache.attr_timeout == 3600
    assert cfg.cache.poll_interval == 30

    assert cfg.union.attr_policy == AttrPolicy.NEWEST
    assert cfg.union.create_policy == CreatePolicy.FF
    assert cfg.union.min_free_space == 10 * 1024 ** 3
    assert cfg.union.endpoint == "ipc:///mnt/merged/.neomount.sock"

    assert str(cfg.migration.schedule) == "0 2 * * *"
    assert cfg.migration.transfers == 16
    assert cfg.migration.checkers == 16
    assert cfg.migration.retries == 3
    assert cfg.migration.min_age == 0


def test_config_load():
    cfg = Config.load(
        {
            "RCLONE_REMOTE": "archive",
            "RCLONE_REMOTE_PATH": "/backups/",
            "LOCAL_PATH": "/data/local",
            "MERGED_PATH": "/data/merged",
            "MOVE_SCHEDULE": "*/15 * * * *",
            "NEOMOUNT_CONFIG": "/etc/remotes.conf",
            "VFS_CACHE_MODE": "minimal",
            "VFS_CACHE_MAX_AGE": "1h",
            "VFS_CACHE_MAX_SIZE": "1G",
            "DIR_CACHE_TIME": "5m",
            "POLL_INTERVAL": "0",
            "ATTR_TIMEOUT": "30s",
            "CACHE_DIR": "/var/cache/neomount",
            "UNION_ATTR_POLICY": "ff",
            "UNION_CREATE_POLICY": "epmfs",
            "MIN_FREE_SPACE": "5G",
            "MOVE_TRANSFERS": "4",
            "MOVE_CHECKERS": "8",
            "MOVE_RETRIES": "5",
            "MOVE_MIN_AGE": "10m",
            "REMOTE_TIMEOUT": "2s",
        }
    )

    assert cfg.remote_path == "backups"
    assert cfg.local_path == "/data/local"
    assert cfg.remotes_file == "/etc/remotes.conf"
    assert cfg.remote_timeout == 2

    assert cfg.cache.mode == CacheMode.MINIMAL
    assert cfg.cache.path == "/var/cache/neomount"
    assert cfg.cache.max_age == 3600
    assert cfg.cache.max_size == 1024 ** 3
    assert cfg.cache.dir_cache_time == 300
    assert cfg.cache.poll_interval == 0
    assert cfg.cache.attr_timeout == 30

    assert cfg.union.attr_policy == AttrPolicy.FF
    assert cfg.union.create_policy == CreatePolicy.EPMFS
    assert cfg.union.min_free_space == 5 * 1024 ** 3
    assert cfg.union.endpoint == "ipc:///data/merged/.neomount.sock"

    assert cfg.migration.schedule.minutes == frozenset({0, 15, 30, 45})
    assert cfg.migration.transfers == 4
    assert cfg.migration.checkers == 8
    assert cfg.migration.retries == 5
    assert cfg.migration.min_age == 600


def test_config_empty_values_use_defaults():
    cfg = Config.load({"RCLONE_REMOTE": "archive", "MOVE_SCHEDULE": " "})

    assert str(cfg.migration.schedule) == "0 2 * * *"


def test_config_union_endpoint():
    cfg = Config.load({"RCLONE_REMOTE": "a", "UNION_ENDPOINT": "tcp://*:7400"})

    assert cfg.union.endpoint == "tcp://*:7400"


def test_config_missing_remote():
    with pytest.raises(ConfigInvalid) as e:
        Config.load({})

    assert "RCLONE_REMOTE" in str(e.value)


@pytest.mark.parametrize(
    "key,value",
    [
        ("MOVE_SCHEDULE", "every night"),
        ("MOVE_SCHEDULE", "61 * * * *"),
        ("VFS_CACHE_MODE", "writes"),
        ("VFS_CACHE_MAX_AGE", "forever"),
        ("VFS_CACHE_MAX_SIZE", "big"),
        ("UNION_ATTR_POLICY", "oldest"),
        ("UNION_CREATE_POLICY", "mfs"),
        ("MIN_FREE_SPACE", "lots"),
        ("MOVE_TRANSFERS", "0"),
        ("MOVE_CHECKERS", "many"),
        ("MOVE_RETRIES", "-1"),
        ("RCLONE_REMOTE_PATH", "../escape"),
    ],
)
def test_config_invalid_value(key, value):
    with pytest.raises(ConfigInvalid) as e:
        Config.load({"RCLONE_REMOTE": "archive", key: value})

    assert key in str(e.value)


@pytest.fixture
def remotes_file(tmp_path):
    path = tmp_path / "remotes.conf"
    path.write_text(
        """
        [archive]
        type = rpc
        endpoint = tcp://storage.lan:7300
        token = secret

        [open]
        type = rpc
        endpoint = tcp://storage.lan:7301

        [scratch]
        type = local
        root = /srv/store

        [photos]
        type = alias
        remote = archive:media/photos

        [holiday]
        type = alias
        remote = photos:2020

        [broken]
        type = ftp

        [loop]
        type = alias
        remote = loop:x
        """
    )
    return str(path)


def test_load_remotes(remotes_file):
    remotes = load_remotes(remotes_file)

    assert remotes["archive"]["endpoint"] == "tcp://storage.lan:7300"
    assert remotes["scratch"]["root"] == "/srv/store"


def test_resolve_rpc_remote(remotes_file):
    remote = resolve_remote(remotes_file, "archive", "/backups")

    assert remote.name == "archive"
    assert remote.type == "rpc"
    assert remote.endpoint == "tcp://storage.lan:7300"
    assert remote.token == "secret"
    assert remote.prefix == "backups"


def test_resolve_remote_without_token(remotes_file):
    assert resolve_remote(remotes_file, "open").token is None


def test_resolve_local_remote(remotes_file):
    remote = resolve_remote(remotes_file, "scratch")

    assert remote.type == "local"
    assert remote.root == "/srv/store"
    assert remote.prefix == ""


def test_resolve_alias(remotes_file):
    remote = resolve_remote(remotes_file, "holiday", "beach")

    assert remote.name == "archive"
    assert remote.type == "rpc"
    assert remote.prefix == "media/photos/2020/beach"


def test_resolve_missing_remote(remotes_file):
    with pytest.raises(ConfigInvalid) as e:
        resolve_remote(remotes_file, "nonexistent")

    assert "archive" in str(e.value)
    assert "scratch" in str(e.value)


def test_resolve_unknown_type(remotes_file):
    with pytest.raises(ConfigInvalid) as e:
        resolve_remote(remotes_file, "broken")

    assert "ftp" in str(e.value)


def test_resolve_alias_loop(remotes_file):
    with pytest.raises(ConfigInvalid):
        resolve_remote(remotes_file, "loop")


def test_missing_remotes_file(tmp_path):
    with pytest.raises(ConfigInvalid) as e:
        resolve_remote(str(tmp_path / "nonexistent"), "archive")

    assert "not found" in str(e.value)


def test_malformed_remotes_file(tmp_path):
    (tmp_path / "remotes.conf").write_text("blabla")

    with pytest.raises(ConfigInvalid):
        load_remotes(str(tmp_path / "remotes.conf"))


def test_missing_endpoint(tmp_path):
    (tmp_path / "remotes.conf").write_text("[a]\ntype = rpc\n")

    with pytest.raises(ConfigInvalid):
        resolve_remote(str(tmp_path / "remotes.conf"), "a")
