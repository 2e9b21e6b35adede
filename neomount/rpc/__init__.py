"""
RPC client and server for Python classes based on ZeroMQ and MessagePack.

neomount uses RPC at both of its process boundaries: between the remote tier client and
the object store, and between applications and the union view. Both come down to
calling methods like stat(), read() and write() on an object that lives in another
process, so a single small RPC layer serves both.

* Services are plain classes. Their public methods are exposed without any interface
definition files, and the dataclasses in their type annotations (like Entry and
FileContents) are transported automatically.
* Exceptions raised by a service are raised again on the client with their original
type, so a NotFound in the object store is a NotFound in the union view.
* Calls are handled by multiple worker threads on the server, and clients can be
shared between threads.
* Calls can be authenticated with a shared token.
"""

from .client import Client
from .common import InvalidTokenError, service_types, Status
from .encoding import Encoding
from .server import Server

__all__ = [
    "Client",
    "Encoding",
    "InvalidTokenError",
    "Server",
    "service_types",
    "Status",
]
