import dataclasses
import threading
import time
from unittest import mock

import pytest

from neomount.errors import RemoteUnavailable
from neomount.migration import (
    CronExpression,
    CycleReport,
    MigrationScheduler,
    MigrationState,
)
from neomount.tiers import CacheMode, FileContents, RemoteCache, RemoteClient, Tier
from neomount.union import UnionView


class FailingWrites:
    """Store wrapper that fails the first writes and runs hooks before each write."""

    def __init__(self, store, failures=0, before_write=None):
        self.store = store
        self.failures = failures
        self.before_write = before_write
        self.writes = 0

    def __getattr__(self, name):
        return getattr(self.store, name)

    def write(self, path, contents, mtime_ns):
        self.writes += 1

        if self.before_write is not None:
            self.before_write(path)

        if self.failures > 0:
            self.failures -= 1
            raise RemoteUnavailable("write failed")

        return self.store.write(path, contents, mtime_ns)


@pytest.fixture
def create_scheduler(local):
    def create(remote, **override_args):
        base_args = dict(transfers=4, checkers=4, retries=3, backoff_base=0)
        return MigrationScheduler(local, remote, **{**base_args, **override_args})

    return create


@pytest.fixture
def create_remote(store, tmp_path):
    clients = []

    def create(transport=None, mode=CacheMode.OFF):
        cache = RemoteCache(
            mode, str(tmp_path / "cache"), 3600, 1024 * 1024, 3600, 3600
        )
        client = RemoteClient(
            transport or store, cache=cache, poll_interval=0, sleep=lambda _: None
        )
        client.connect()
        clients.append(client)
        return client

    yield create

    for client in clients:
        client.close()


def write_remote(store, path, data, mtime_ns=None):
    return store.write(path, FileContents.from_data(data), mtime_ns)


def test_moves_local_files(local, store, remote, create_scheduler):
    write_remote(store, "remote1.txt", b"remote")
    local.write("local1.txt", b"local", mtime_ns=1_500_000_000_000_000_000)
    local.write("dir/local2.txt", b"nested")

    scheduler = create_scheduler(remote)
    report = scheduler.trigger()

    assert report.ok
    assert report.scanned == 2
    assert report.transferred == 2
    assert report.transferred_bytes == 11
    assert report.failed == 0

    assert list(local.walk()) == []

    assert store.readfile("remote1.txt").data == b"remote"
    assert store.readfile("local1.txt").data == b"local"
    assert store.readfile("dir/local2.txt").data == b"nested"

    # Modification times are preserved
    assert store.stat("local1.txt").mtime_ns == 1_500_000_000_000_000_000


def test_union_unchanged_by_migration(local, store, remote, create_scheduler):
    write_remote(store, "remote1.txt", b"remote")
    local.write("local1.txt", b"local")

    view = UnionView(local, remote)
    before = {e.path: e.size for e in view.list("")}

    create_scheduler(remote).trigger()

    assert {e.path: e.size for e in view.list("")} == before
    assert view.read("local1.txt") == b"local"


@pytest.mark.parametrize("mode", [CacheMode.MINIMAL, CacheMode.FULL])
def test_migration_through_cached_view(
    local, store, create_remote, create_scheduler, mode
):
    remote = create_remote(mode=mode)
    view = UnionView(local, remote)

    write_remote(store, "remote1.txt", b"remote file 1")

    assert [e.name for e in view.list("")] == ["remote1.txt"]
    assert view.read("remote1.txt") == b"remote file 1"

    view.write("local1.txt", b"local file")
    view.write("dir/sub/nested.txt", b"nested file")

    assert local.exists("local1.txt")
    assert not remote.exists("local1.txt")
    assert not remote.exists("dir")
    assert view.resolve_tier("local1.txt") == Tier.LOCAL
    assert [e.name for e in view.list("")] == ["dir", "local1.txt", "remote1.txt"]

    report = create_scheduler(remote).trigger()

    assert report.ok
    assert report.transferred == 2

    # Migrated data lives in the remote tier only
    assert not local.exists("local1.txt")
    assert not local.exists("dir")
    assert store.readfile("local1.txt").data == b"local file"
    assert remote.exists("local1.txt")

    # The namespace looks the same, served from the remote tier
    assert view.resolve_tier("local1.txt") == Tier.REMOTE
    assert view.resolve_tier("dir/sub/nested.txt") == Tier.REMOTE
    assert view.stat("dir").is_dir
    assert [e.name for e in view.list("")] == ["dir", "local1.txt", "remote1.txt"]
    assert [e.name for e in view.list("dir")] == ["sub"]
    assert [e.name for e in view.list("dir/sub")] == ["nested.txt"]
    assert view.read("local1.txt") == b"local file"
    assert view.read("dir/sub/nested.txt") == b"nested file"
    assert view.read("remote1.txt") == b"remote file 1"


def test_second_cycle_is_noop(local, store, remote, create_scheduler):
    local.write("a.txt", b"a")

    scheduler = create_scheduler(remote)
    scheduler.trigger()

    with mock.patch.object(store, "write") as write:
        report = scheduler.trigger()

    assert report.scanned == 0
    assert report.transferred == 0
    assert not write.called


def test_lock_file_not_migrated(local, local_root, store, remote, create_scheduler):
    local.write("a.txt", b"a")

    create_scheduler(remote).trigger()

    assert (local_root / ".neomount-migrate.lock").exists()
    assert [e.path for e in store.list("")] == ["a.txt"]


def test_failing_remote_keeps_local(local, store, create_remote, create_scheduler):
    transport = FailingWrites(store, failures=100)
    remote = create_remote(transport)

    local.write("a.txt", b"keep me")

    report = create_scheduler(remote, retries=3).trigger()

    assert not report.ok
    assert report.failed == 1
    assert report.transferred == 0
    assert report.failures == ["a.txt: write failed"]
    assert transport.writes == 3

    assert local.read("a.txt") == b"keep me"
    assert not store.list("")


def test_failure_does_not_abort_cycle(local, store, create_remote, create_scheduler):
    def before_write(path):
        if path == "bad.txt":
            raise RemoteUnavailable("bad file")

    remote = create_remote(FailingWrites(store, before_write=before_write))

    local.write("bad.txt", b"bad")
    local.write("good.txt", b"good")

    report = create_scheduler(remote).trigger()

    assert report.transferred == 1
    assert report.failed == 1

    assert local.exists("bad.txt")
    assert not local.exists("good.txt")
    assert store.readfile("good.txt").data == b"good"


def test_retry_succeeds(local, store, create_remote, create_scheduler):
    transport = FailingWrites(store, failures=2)
    remote = create_remote(transport)

    local.write("a.txt", b"data")

    report = create_scheduler(remote, retries=3).trigger()

    assert report.ok
    assert report.transferred == 1
    assert transport.writes == 3
    assert not local.exists("a.txt")


def test_retry_backoff(local, store, create_remote, create_scheduler):
    remote = create_remote(FailingWrites(store, failures=3))
    local.write("a.txt", b"data")

    scheduler = create_scheduler(remote, retries=4, backoff_base=1.0, backoff_max=3.0)

    with mock.patch.object(scheduler._cancel, "wait", return_value=False) as wait:
        report = scheduler.trigger()

    assert report.ok
    assert wait.call_args_list == [mock.call(1.0), mock.call(2.0), mock.call(3.0)]


def test_confirmed_checksum_mismatch(local, store, create_remote, create_scheduler):
    class CorruptingStore(FailingWrites):
        def write(self, path, contents, mtime_ns):
            entry = self.store.write(path, contents, mtime_ns)
            return dataclasses.replace(entry, checksum="0" * 64)

    remote = create_remote(CorruptingStore(store))
    local.write("a.txt", b"data")

    report = create_scheduler(remote).trigger()

    assert report.failed == 1
    assert local.read("a.txt") == b"data"


def test_already_present_is_skipped(local, store, remote, create_scheduler):
    write_remote(store, "a.txt", b"same")
    write_remote(store, "b.txt", b"older")
    local.write("a.txt", b"same")
    local.write("b.txt", b"newer")

    with mock.patch.object(store, "write", wraps=store.write) as write:
        report = create_scheduler(remote).trigger()

    assert report.skipped == 1
    assert report.transferred == 1
    assert [c.args[0] for c in write.call_args_list] == ["b.txt"]

    assert not local.exists("a.txt")
    assert not local.exists("b.txt")
    assert store.readfile("b.txt").data == b"newer"


def test_min_age_defers_recent_files(local, store, remote, create_scheduler):
    now = 1_700_000_000

    local.write("old.txt", b"old", mtime_ns=(now - 120) * 10 ** 9)
    local.write("new.txt", b"new", mtime_ns=(now - 30) * 10 ** 9)

    scheduler = create_scheduler(remote, min_age=60, clock=lambda: now)
    report = scheduler.trigger()

    assert report.scanned == 2
    assert report.deferred == 1
    assert report.transferred == 1

    assert local.exists("new.txt")
    assert not local.exists("old.txt")


def test_local_change_during_transfer(local, store, create_remote, create_scheduler):
    def before_write(path):
        local.write(path, b"modified while uploading")

    remote = create_remote(FailingWrites(store, before_write=before_write))
    local.write("a.txt", b"original", mtime_ns=1_000_000_000)

    report = create_scheduler(remote).trigger()

    assert report.failed == 1
    assert report.failures == ["a.txt: local copy changed during transfer"]
    assert local.read("a.txt") == b"modified while uploading"


def test_prunes_empty_directories(local, local_root, remote, create_scheduler):
    local.write("a/b/c.txt", b"c")
    local.mkdir("empty")

    report = create_scheduler(remote).trigger()

    assert report.pruned == 3
    assert list(local_root.iterdir()) == [local_root / ".neomount-migrate.lock"]


def test_keeps_directories_with_failed_files(
    local, store, create_remote, create_scheduler
):
    remote = create_remote(FailingWrites(store, failures=100))
    local.write("a/b/c.txt", b"c")

    report = create_scheduler(remote, retries=1).trigger()

    assert report.pruned == 0
    assert local.exists("a/b/c.txt")


def test_state(local, store, create_remote, create_scheduler):
    states = []

    def before_write(path):
        states.append(scheduler.state())

    remote = create_remote(FailingWrites(store, before_write=before_write))
    scheduler = create_scheduler(remote)

    assert scheduler.state() == MigrationState.IDLE

    local.write("a.txt", b"a")
    scheduler.trigger()

    assert states == [MigrationState.TRANSFERRING]
    assert scheduler.state() == MigrationState.IDLE


def test_cancel(local, store, create_remote, create_scheduler):
    def before_write(path):
        scheduler.cancel()

    transport = FailingWrites(store, failures=100, before_write=before_write)
    remote = create_remote(transport)
    scheduler = create_scheduler(remote, transfers=1, retries=5)

    local.write("a.txt", b"a")
    local.write("b.txt", b"b")

    report = scheduler.trigger()

    assert report.failed == 2
    assert transport.writes == 1
    assert local.exists("a.txt")
    assert local.exists("b.txt")

    # Cancellation only applies to the running cycle
    transport.failures = 0
    transport.before_write = None

    assert scheduler.trigger().transferred == 2


def test_trigger_while_running_queues_one_cycle(local, remote, create_scheduler):
    scheduler = create_scheduler(remote)

    started = threading.Event()
    release = threading.Event()
    original = scheduler._run_cycle
    reports = []

    def run_cycle():
        if not started.is_set():
            started.set()
            release.wait(5.0)

        return original()

    with mock.patch.object(scheduler, "_run_cycle", side_effect=run_cycle) as m:
        t = threading.Thread(target=lambda: reports.append(scheduler.trigger()))
        t.start()

        assert started.wait(5.0)

        assert scheduler.trigger() is None
        assert scheduler.trigger() is None

        release.set()
        t.join(5.0)

    assert m.call_count == 2
    assert len(reports) == 1
    assert isinstance(reports[0], CycleReport)


def test_run_forever(remote, create_scheduler):
    scheduler = create_scheduler(remote)
    stop = threading.Event()

    schedule = mock.Mock()
    schedule.expression = CronExpression.parse("* * * * *")
    schedule.remaining.return_value = 0
    schedule.due.return_value = True

    calls = []

    def trigger():
        calls.append(time.monotonic())

        if len(calls) == 1:
            raise RuntimeError("cycle failed")

        stop.set()

    with mock.patch.object(scheduler, "trigger", side_effect=trigger):
        scheduler.run_forever(schedule, stop)

    # A failing cycle doesn't stop the scheduler
    assert len(calls) == 2
    assert schedule.arm.call_count == 3


def test_run_forever_not_due(remote, create_scheduler):
    scheduler = create_scheduler(remote)
    stop = threading.Event()

    schedule = mock.Mock()
    schedule.remaining.return_value = 0

    def due():
        stop.set()
        return False

    schedule.due.side_effect = due

    with mock.patch.object(scheduler, "trigger") as trigger:
        scheduler.run_forever(schedule, stop)

    assert not trigger.called
