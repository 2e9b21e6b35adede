"""RPC client that invokes the methods of a service exposed by a Server."""

import functools
import logging
import threading
import time
from typing import Any, Callable, Dict, Optional, Tuple

import zmq

from neomount.errors import RemoteUnavailable
from neomount.logger import log, summarize
from .common import InvalidTokenError, service_types, Status
from .encoding import Encoding


def _summarize_args(args: Tuple[Any, ...]) -> Tuple[str, ...]:
    return tuple(summarize(arg, max_length=64) for arg in args)


class Client:
    """
    RPC client for a service exposed by a Server.

    Remote methods are called as if they were methods of the client:
    ```
    store = rpc.Client(ObjectStoreService, "tcp://storage.lan:7300", "secret", 30000)
    entry = store.stat("photos/2024/a.jpg")
    ```

    A client can be shared between threads. Every thread gets its own REQ socket,
    since requests and replies have to alternate strictly on a socket.

    A call that doesn't get a reply within the timeout raises RemoteUnavailable. Its
    socket is stuck waiting for a reply that may never come, so it is discarded and
    the next call of that thread connects a fresh one.
    """

    def __init__(
        self,
        service_type: type,
        endpoint: str,
        token: Optional[str] = None,
        timeout_ms: int = -1,
    ) -> None:
        """
        Instantiate an RPC client for the service type at the given endpoint.

        The endpoint has the format of zmq_connect, like "tcp://localhost:7300". A
        negative timeout waits forever.
        """
        self.endpoint = endpoint
        self.token = token
        self.timeout_ms = timeout_ms

        self.context = zmq.Context()

        self._encoding = Encoding(*service_types(service_type))

        self._sockets: Dict[int, zmq.Socket] = {}
        self._sockets_lock = threading.Lock()

    @property
    def socket_count(self) -> int:
        with self._sockets_lock:
            return len(self._sockets)

    def _socket(self) -> zmq.Socket:
        thread_id = threading.get_ident()

        with self._sockets_lock:
            sock = self._sockets.get(thread_id)

            if sock is None:
                sock = self.context.socket(zmq.REQ)

                sock.setsockopt(zmq.SNDTIMEO, self.timeout_ms)
                sock.setsockopt(zmq.LINGER, 0)
                sock.connect(self.endpoint)

                self._sockets[thread_id] = sock

            return sock

    def _discard_socket(self) -> None:
        with self._sockets_lock:
            sock = self._sockets.pop(threading.get_ident(), None)

        if sock is not None:
            sock.close(linger=0)

    def call(
        self, function: Optional[str], *args: Any, timeout_ms: Optional[int] = None
    ) -> Any:
        """
        Invoke a remote function and return its result or raise its exception.

        The timeout of the client can be overridden for a single call.
        """
        if timeout_ms is None:
            timeout_ms = self.timeout_ms

        request = self._encoding.pack((self.token, function, list(args)))
        sock = self._socket()

        t_call = time.monotonic()

        try:
            sock.send(request)

            replied = sock.poll(timeout_ms if timeout_ms >= 0 else None)
            reply = sock.recv() if replied else None
        except zmq.ZMQError as e:
            self._discard_socket()
            raise RemoteUnavailable(f"rpc call {function} failed: {e}")

        if reply is None:
            self._discard_socket()
            raise RemoteUnavailable(
                f"rpc call {function} to {self.endpoint} timed out ({timeout_ms} ms)"
            )

        status, value = self._encoding.unpack(reply)

        # Explicit check before logging because summarizing arguments is relatively slow
        if log.isEnabledFor(logging.DEBUG):
            t_millis = round((time.monotonic() - t_call) * 1000)
            log.debug(f"rpc::{function}{_summarize_args(args)} - {t_millis} ms")

        if status == Status.OK:
            return value
        elif status == Status.ERROR:
            raise value
        elif status == Status.DENIED:
            raise InvalidTokenError("token mismatch between client and server")
        else:
            raise ValueError(f"unexpected rpc status {status}")

    def ping(self, timeout_ms: Optional[int] = None) -> None:
        """Check if the service is available, raising RemoteUnavailable if not."""
        self.call(None, timeout_ms=timeout_ms)

    def close(self) -> None:
        """Close the sockets of all threads and the ZeroMQ context."""
        # Looked up through __dict__ since __getattr__ would produce a remote call
        context = self.__dict__.get("context")

        if context is None or context.closed:
            return

        with self._sockets_lock:
            for sock in self._sockets.values():
                sock.close(linger=0)

            self._sockets.clear()

        context.destroy(linger=0)

    def __del__(self) -> None:
        self.close()

    def __getattr__(self, name: str) -> Callable[..., Any]:
        """Return a function that calls the remote function with the given name."""
        if name.startswith("__"):
            raise AttributeError(name)

        return functools.partial(self.call, name)
