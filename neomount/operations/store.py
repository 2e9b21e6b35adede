"""Module that implements the object store server of the store command."""

import contextlib
import os
from typing import Optional

from neomount.errors import ConfigInvalid
from neomount.logger import format_size, log
import neomount.rpc as rpc
from neomount.tiers import ObjectStoreService
from .common import Operations


class StoreOperations(Operations):
    """Class that serves a directory as an object store until interrupted."""

    def __init__(
        self,
        root: str,
        endpoint: str,
        token: Optional[str] = None,
        quota: Optional[int] = None,
        workers: int = 4,
    ):
        self._root = root
        self._endpoint = endpoint
        self._token = token
        self._quota = quota
        self._workers = workers

    def _run(self, stack: contextlib.ExitStack) -> int:
        if not os.path.isdir(self._root):
            raise ConfigInvalid(f"store root does not exist: {self._root}")

        service = ObjectStoreService(self._root, self._quota)

        if self._quota is not None:
            log.info(f"store quota is {format_size(self._quota)}")

        if self._token is None:
            log.warning("no token configured, any client can access the store")

        log.info(f"serving {self._root} at {self._endpoint}")

        server = rpc.Server(service, self._token, self._workers)
        server.serve(self._endpoint)
