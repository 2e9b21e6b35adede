"""Shared functionality between the operations of the neomount commands."""

from abc import ABC
import contextlib
import os
import threading
from typing import Any, Callable, Optional

from neomount.config import Config, resolve_remote
from neomount.errors import ConfigInvalid
from neomount.logger import log
import neomount.rpc as rpc
from neomount.tiers import LocalTier, ObjectStoreService, RemoteCache, RemoteClient


class Operations(ABC):
    """Base class for the logic of a command."""

    def run(self) -> int:
        """Run the operations and clean up properly in case of errors."""
        with contextlib.ExitStack() as stack:
            return self._run(stack)

        # https://github.com/python/mypy/issues/7726
        assert False, "unreachable"

    def _run(self, stack: contextlib.ExitStack) -> int:
        """Run the actual operations."""
        raise NotImplementedError()

    @staticmethod
    def _start_thread(target: Callable[..., None], *args: Any) -> threading.Thread:
        """
        Start a thread with the specified function.

        It is still made a daemon just in case the thread fails to exit properly and
        blocks the shutting down of the program.
        """
        t = threading.Thread(target=target, args=args, daemon=True)
        t.start()
        return t

    @staticmethod
    def _start_disposable_thread(target: Callable[..., None], *args: Any) -> None:
        """Start a disposable thread with the specified function."""
        t = threading.Thread(target=target, args=args, daemon=True)
        t.start()


class TierOperations(Operations):
    """Base class for commands that work on the configured tiers."""

    def __init__(self, config: Optional[Config] = None):
        """
        Initialize the operations with the given configuration.

        Defaults to loading the configuration from the environment when run.
        """
        self._config = config

    @property
    def config(self) -> Config:
        if self._config is None:
            self._config = Config.load()

        return self._config

    def _mount_local(self, stack: contextlib.ExitStack) -> LocalTier:
        """Mount the local tier and unmount it on exit."""
        local = LocalTier(
            self.config.local_path, min_free_space=self.config.union.min_free_space
        )

        local.mount()
        stack.callback(local.unmount)

        return local

    def _connect_remote(self, stack: contextlib.ExitStack) -> RemoteClient:
        """Connect the remote tier and close it on exit."""
        config = self.config
        remote = resolve_remote(config.remotes_file, config.remote, config.remote_path)

        transport: Any

        if remote.type == "local":
            assert remote.root is not None

            if not os.path.isdir(remote.root):
                raise ConfigInvalid(
                    f"remote '{remote.name}': root does not exist: {remote.root}"
                )

            transport = ObjectStoreService(remote.root)
        else:
            assert remote.endpoint is not None

            transport = rpc.Client(
                ObjectStoreService,
                remote.endpoint,
                remote.token,
                timeout_ms=int(config.remote_timeout * 1000),
            )
            stack.callback(transport.close)

        cache = RemoteCache(
            mode=config.cache.mode,
            base_path=os.path.join(config.cache.path, config.remote),
            max_age=config.cache.max_age,
            max_size=config.cache.max_size,
            dir_cache_time=config.cache.dir_cache_time,
            attr_timeout=config.cache.attr_timeout,
        )

        # Load the disk cache.
        try:
            cache.load()
        except FileNotFoundError:
            log.debug("starting with fresh cache")
        except Exception as e:
            log.error(f"failed to load cache: {e}")

        client = RemoteClient(
            transport,
            name=config.remote,
            prefix=remote.prefix,
            cache=cache,
            poll_interval=config.cache.poll_interval,
        )

        client.connect()
        stack.callback(client.close)

        return client
