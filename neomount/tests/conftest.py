"""Fixtures shared by the tests of the tiers, the union view and migration."""

import pytest

from neomount.tiers import LocalTier, ObjectStoreService, RemoteClient


@pytest.fixture
def local_root(tmp_path):
    path = tmp_path / "local"
    path.mkdir()
    return path


@pytest.fixture
def remote_root(tmp_path):
    path = tmp_path / "remote"
    path.mkdir()
    return path


@pytest.fixture
def local(local_root):
    tier = LocalTier(str(local_root))
    tier.mount()
    return tier


@pytest.fixture
def store(remote_root):
    return ObjectStoreService(str(remote_root))


@pytest.fixture
def remote(store):
    client = RemoteClient(store, poll_interval=0, sleep=lambda _: None)
    client.connect()

    yield client

    client.close()
