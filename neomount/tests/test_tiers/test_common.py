import os
import threading

import pytest

from neomount.tiers.common import (
    ancestors,
    checksum,
    Entry,
    FileContents,
    join_path,
    Kind,
    LockIndex,
    normalize_path,
    parent_path,
    Tier,
)


def test_normalize_path():
    assert normalize_path("") == ""
    assert normalize_path("/") == ""
    assert normalize_path(".") == ""
    assert normalize_path("/a/b/") == "a/b"
    assert normalize_path("a//b/./c") == "a/b/c"


def test_normalize_path_escape():
    with pytest.raises(ValueError):
        normalize_path("a/../../b")


def test_parent_path():
    assert parent_path("a/b/c") == "a/b"
    assert parent_path("a") == ""
    assert parent_path("") == ""


def test_ancestors():
    assert list(ancestors("a/b/c.txt")) == ["a/b", "a", ""]
    assert list(ancestors("a")) == [""]
    assert list(ancestors("")) == []


def test_join_path():
    assert join_path("", "a") == "a"
    assert join_path("a/b", "") == "a/b"
    assert join_path("a/", "/b") == "a/b"


def test_entry_from_stat(tmp_path):
    (tmp_path / "file").write_bytes(b"abc")
    (tmp_path / "dir").mkdir()

    f = Entry.from_stat("file", os.stat(tmp_path / "file"), Tier.LOCAL)
    d = Entry.from_stat("dir", os.stat(tmp_path / "dir"), Tier.LOCAL)

    assert f.kind == Kind.FILE
    assert f.size == 3
    assert f.mtime_ns == os.stat(tmp_path / "file").st_mtime_ns
    assert not f.is_dir

    assert d.is_dir
    assert d.size == 0


def test_entry_name():
    assert Entry("a/b/c.txt", Kind.FILE, 0, 0, Tier.LOCAL).name == "c.txt"
    assert Entry("c.txt", Kind.FILE, 0, 0, Tier.LOCAL).name == "c.txt"


def test_entry_coerces_enum_values():
    entry = Entry("a", "directory", 0, 0, "remote")

    assert entry.kind is Kind.DIRECTORY
    assert entry.tier is Tier.REMOTE


def test_file_contents():
    data = b"hello world" * 100
    contents = FileContents.from_data(data)

    assert contents.size == len(data)
    assert contents.checksum == checksum(data)
    assert len(contents.compressed_data) < len(data)
    assert contents.data == data


def test_checksum():
    assert checksum(b"a") == checksum(b"a")
    assert checksum(b"a") != checksum(b"b")


def test_lock_index_single_key():
    index = LockIndex()

    with index.lock("foo"):
        with index.lock("bar"):
            assert index.lock_count == 2

        with index.lock("foo", blocking=False) as acquired:
            assert not acquired

    assert index.lock_count == 0


def test_lock_index_threads():
    index = LockIndex()
    counter = [0]

    def increment():
        for _ in range(100):
            with index.lock("counter"):
                value = counter[0]
                counter[0] = value + 1

    threads = [threading.Thread(target=increment) for _ in range(8)]

    for t in threads:
        t.start()

    for t in threads:
        t.join()

    assert counter[0] == 800
    assert index.lock_count == 0
