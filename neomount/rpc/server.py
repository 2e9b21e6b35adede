"""RPC server that exposes the public methods of a service object."""

import hmac
import threading
from typing import Any, List, NoReturn, Optional

import zmq

from neomount.logger import log
from .common import InvalidTokenError, service_types, Status
from .encoding import Encoding


class Server:
    """
    RPC server to expose a service defined through the methods of a class instance.

    Example:
    ```
    class Store:
        def stat(self, path: str) -> Entry:
            ...

    server = rpc.Server(Store(), token="secret", worker_count=4)
    server.serve("tcp://0.0.0.0:7300")
    ```

    Calls arrive on a ROUTER socket and are spread over the worker threads through an
    in-process DEALER socket, so a slow call like a large write doesn't hold up the
    others. Methods starting with an underscore are not exposed.
    """

    def __init__(
        self, service: Any, token: Optional[str] = None, worker_count: int = 1
    ):
        """
        Instantiate an RPC server for the given service instance.

        If a token is specified then clients need to be initialized with that same token
        to be allowed to make calls.
        """
        self.service = service
        self.token = token
        self.worker_count = max(1, worker_count)

        self.context = zmq.Context()

        self._encoding = Encoding(*service_types(service.__class__))
        self._workers_endpoint = f"inproc://neomount-rpc-workers-{id(self)}"

    def serve(self, endpoint: str) -> NoReturn:
        """
        Listen on the endpoint and handle calls until the process exits.

        The endpoint has the format of zmq_bind, like "tcp://0.0.0.0:7300" or
        "ipc:///mnt/merged/.neomount.sock".
        """
        clients = self.context.socket(zmq.ROUTER)
        clients.bind(endpoint)

        workers = self.context.socket(zmq.DEALER)
        workers.bind(self._workers_endpoint)

        for i in range(self.worker_count):
            t = threading.Thread(
                target=self._run_worker, name=f"rpc-worker-{i}", daemon=True
            )
            t.start()

        log.debug(f"rpc: serving {self.service.__class__.__name__} at {endpoint}")

        zmq.proxy(clients, workers)

        raise RuntimeError(f"rpc proxy for {endpoint} stopped")

    def _run_worker(self) -> NoReturn:
        socket = self.context.socket(zmq.REP)
        socket.connect(self._workers_endpoint)

        while True:
            socket.send(self.handle(socket.recv()))

    def handle(self, request: bytes) -> bytes:
        """Execute a single encoded call and return the encoded reply."""
        try:
            token, function, args = self._encoding.unpack(request)
        except Exception as e:
            return self._reply(Status.ERROR, ValueError(f"malformed rpc request: {e}"))

        if not self._authorized(token):
            return self._reply(Status.DENIED, InvalidTokenError("token mismatch"))

        try:
            result = self._dispatch(function, args)
        except Exception as e:
            return self._reply(Status.ERROR, e)

        return self._reply(Status.OK, result)

    def _authorized(self, token: Optional[str]) -> bool:
        if self.token is None or token is None:
            return self.token == token

        return hmac.compare_digest(str(token), self.token)

    def _dispatch(self, function: Optional[str], args: List[Any]) -> Any:
        # A call without a function is a ping
        if function is None:
            return None

        if not isinstance(function, str) or function.startswith("_"):
            raise AttributeError(f"'{function}' is not exposed")

        return getattr(self.service, function)(*args)

    def _reply(self, status: Status, value: Any) -> bytes:
        try:
            return self._encoding.pack((status, value))
        except TypeError as e:
            error = TypeError(f"failed to encode rpc result: {e}")
            return self._encoding.pack((Status.ERROR, error))
