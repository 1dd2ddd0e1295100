"""
Broker Console - Listener Registry
====================================
Runtime-mutable collection of the network listeners that feed the broker.

Operators add and remove listeners through the management API while the
process keeps running. Each listener binds synchronously (a bind failure is
reported to the caller), then runs its accept loop as an independent
asyncio task that outlives the request that created it.

Listener kinds (tag stored on the listener when it is built):
    - "tcp"        : plain or TLS TCP socket          (creatable)
    - "ws"         : websocket endpoint               (creatable, alias "websocket")
    - "management" : the management console itself   (registered at startup)
    - "stats"      : read-only statistics endpoint    (registered at startup)

Lifecycle of one listener:
    bind(establish)  -> socket is bound and accepting, errors raise OSError
    serve()          -> runs until close() has been called
    close(callback)  -> once-only: stop accepting, notify the owner with the
                        listener id so it can drop that listener's clients

Concurrency:
    A single asyncio.Lock serialises create/add/delete. list() builds its
    snapshot without awaiting, so it never observes a half-applied change.
"""

import asyncio
import logging
import os
import ssl
import tempfile
from enum import Enum
from typing import Awaitable, Callable

from pydantic import BaseModel
from websockets.asyncio.server import ServerConnection
from websockets.asyncio.server import serve as websocket_serve
from websockets.exceptions import ConnectionClosed

from console.errors import ConflictError, InternalError, ValidationError
from console.hub import ClientConnection


logger = logging.getLogger(__name__)

# How long close() waits for a server's open connections to drain.
CLOSE_TIMEOUT = 5.0
READ_CHUNK = 4096

EstablishFn = Callable[[ClientConnection], Awaitable[None]]
CloseFn = Callable[[str], None]


class DuplicateID(ConflictError):
    """A listener with this id is already registered."""


class UnsupportedKind(ValidationError):
    """The requested listener kind cannot be created at runtime."""


class BindFailure(InternalError):
    """The listener's address could not be bound."""


class ListenerKind(str, Enum):
    TCP = "tcp"
    WEBSOCKET = "ws"
    MANAGEMENT = "management"
    STATS = "stats"

    @classmethod
    def parse(cls, value: str) -> "ListenerKind":
        """Accept the canonical value or the long websocket alias."""
        if value == "websocket":
            return cls.WEBSOCKET
        return cls(value)


class ListenerInfo(BaseModel):
    """Public description of a registered listener."""
    id: str
    type: ListenerKind
    address: str
    protocol: str


def parse_address(address: str) -> tuple[str | None, int]:
    """
    Split "host:port" into its parts.

    An empty host (":1883") means every interface and is returned as None.

    Raises:
        ValueError: If the address has no valid port.
    """
    host, sep, port_text = address.rpartition(":")
    if not sep:
        raise ValueError(f"address {address!r} must be host:port")
    try:
        port = int(port_text)
    except ValueError:
        raise ValueError(f"address {address!r} has an invalid port") from None
    if not 0 <= port <= 65535:
        raise ValueError(f"address {address!r} has an invalid port")
    host = host.strip("[]")
    return host or None, port


def build_ssl_context(cert_pem: str, key_pem: str) -> ssl.SSLContext:
    """
    Create a server TLS context from PEM text.

    Raises:
        ssl.SSLError: If the certificate and key do not form a valid pair.
    """
    with tempfile.TemporaryDirectory(prefix="console-tls-") as tmp:
        cert_path = os.path.join(tmp, "cert.pem")
        key_path = os.path.join(tmp, "key.pem")
        with open(cert_path, "w", encoding="utf-8") as f:
            f.write(cert_pem)
        with open(key_path, "w", encoding="utf-8") as f:
            f.write(key_pem)
        return load_ssl_context(cert_path, key_path)


def load_ssl_context(cert_file: str, key_file: str) -> ssl.SSLContext:
    """Create a server TLS context from PEM files on disk."""
    context = ssl.create_default_context(ssl.Purpose.CLIENT_AUTH)
    context.load_cert_chain(cert_file, key_file)
    return context


def _format_peer(peer) -> str:
    if isinstance(peer, tuple) and len(peer) >= 2:
        return f"{peer[0]}:{peer[1]}"
    return str(peer or "")


class Listener:
    """
    Base class for network listeners.

    Attributes:
        id:          Unique listener id.
        address:     Configured "host:port" string.
        ssl_context: Optional TLS context for the socket.
    """

    kind: ListenerKind

    def __init__(self, listener_id: str, address: str, ssl_context: ssl.SSLContext | None = None):
        self.id = listener_id
        self.address = address
        self.host, self.port = parse_address(address)
        self.ssl_context = ssl_context
        self._server = None
        self._establish: EstablishFn | None = None
        self._stopped = asyncio.Event()
        self._closed = False

    @property
    def protocol(self) -> str:
        raise NotImplementedError

    @property
    def bound_port(self) -> int | None:
        """Actual port after bind (useful when the address asked for port 0)."""
        if self._server is None or not self._server.sockets:
            return None
        return self._server.sockets[0].getsockname()[1]

    def info(self) -> ListenerInfo:
        return ListenerInfo(
            id=self.id,
            type=self.kind,
            address=self.address,
            protocol=self.protocol,
        )

    async def bind(self, establish: EstablishFn) -> None:
        raise NotImplementedError

    async def serve(self) -> None:
        """Keep the listener alive until close() is called."""
        await self._stopped.wait()

    async def close(self, close_clients: CloseFn) -> None:
        """Stop accepting and notify the owner. Only the first call acts."""
        if self._closed:
            return
        self._closed = True
        self._stopped.set()

        if self._server is not None:
            self._server.close()
        close_clients(self.id)

        if self._server is not None:
            try:
                await asyncio.wait_for(self._server.wait_closed(), CLOSE_TIMEOUT)
            except asyncio.TimeoutError:
                logger.warning("listener %s did not drain within %.0fs", self.id, CLOSE_TIMEOUT)


class TCPListener(Listener):
    """Raw TCP (optionally TLS) listener built on asyncio streams."""

    kind = ListenerKind.TCP

    @property
    def protocol(self) -> str:
        return "tcp"

    async def bind(self, establish: EstablishFn) -> None:
        self._establish = establish
        self._server = await asyncio.start_server(
            self._handle,
            self.host,
            self.port,
            ssl=self.ssl_context,
        )

    async def _handle(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        async def receive() -> bytes:
            return await reader.read(READ_CHUNK)

        async def close() -> None:
            writer.close()
            try:
                await writer.wait_closed()
            except (ConnectionError, ssl.SSLError):
                pass

        conn = ClientConnection(self.id, _format_peer(writer.get_extra_info("peername")), receive, close)
        await self._establish(conn)


class WebsocketListener(Listener):
    """Websocket listener; every binary or text frame is handed to the hub."""

    kind = ListenerKind.WEBSOCKET

    @property
    def protocol(self) -> str:
        return "wss" if self.ssl_context else "ws"

    async def bind(self, establish: EstablishFn) -> None:
        self._establish = establish
        self._server = await websocket_serve(
            self._handle,
            self.host,
            self.port,
            ssl=self.ssl_context,
        )

    async def _handle(self, websocket: ServerConnection) -> None:
        async def receive() -> bytes:
            try:
                message = await websocket.recv()
            except ConnectionClosed:
                return b""
            if isinstance(message, str):
                return message.encode("utf-8")
            return message

        conn = ClientConnection(self.id, _format_peer(websocket.remote_address), receive, websocket.close)
        await self._establish(conn)


# Kinds an operator may create through the API
CREATABLE = {
    ListenerKind.TCP: TCPListener,
    ListenerKind.WEBSOCKET: WebsocketListener,
}


class ListenerRegistry:
    """
    Concurrency-safe registry of live listeners.

    Attributes:
        establish:     Hands accepted connections to the broker.
        close_clients: Called with a listener id after it stops accepting.
    """

    def __init__(self, establish: EstablishFn, close_clients: CloseFn):
        self.establish = establish
        self.close_clients = close_clients
        self._lock = asyncio.Lock()
        self._listeners: dict[str, Listener] = {}
        self._tasks: dict[str, asyncio.Task] = {}

    def __len__(self) -> int:
        return len(self._listeners)

    def __contains__(self, listener_id: str) -> bool:
        return listener_id in self._listeners

    def get(self, listener_id: str) -> Listener | None:
        return self._listeners.get(listener_id)

    def list(self) -> list[ListenerInfo]:
        """Snapshot of every listener in registration order."""
        return [listener.info() for listener in list(self._listeners.values())]

    async def create(self, kind: str, listener_id: str, address: str) -> ListenerInfo:
        """
        Build, bind and start a listener of an operator-creatable kind.

        Raises:
            UnsupportedKind: Unknown or non-creatable kind.
            ValidationError: Missing id or malformed address.
            DuplicateID:     The id is already registered.
            BindFailure:     The address could not be bound.
        """
        try:
            factory = CREATABLE[ListenerKind.parse(kind)]
        except (ValueError, KeyError):
            raise UnsupportedKind("unsupported listener type") from None

        if not listener_id:
            raise ValidationError("listener id required")
        try:
            listener = factory(listener_id, address)
        except ValueError as e:
            raise ValidationError(str(e)) from e

        return await self.add(listener)

    async def add(self, listener: Listener) -> ListenerInfo:
        """
        Bind a pre-built listener and start its accept loop.

        Returns once the bind has succeeded or failed; serving continues in
        a background task.
        """
        async with self._lock:
            if listener.id in self._listeners:
                raise DuplicateID(f"listener id {listener.id!r} already exists")
            try:
                await listener.bind(self.establish)
            except OSError as e:
                logger.error("failed to bind listener %s on %s: %s", listener.id, listener.address, e)
                raise BindFailure(f"failed to bind {listener.address}: {e.strerror or e}") from e

            self._listeners[listener.id] = listener
            self._tasks[listener.id] = asyncio.create_task(
                self._run(listener), name=f"listener-{listener.id}"
            )

        logger.info("listener %s (%s) serving on %s", listener.id, listener.kind.value, listener.address)
        return listener.info()

    async def delete(self, listener_id: str) -> None:
        """Stop and remove a listener. Unknown ids are ignored."""
        async with self._lock:
            listener = self._listeners.get(listener_id)
            if listener is None:
                return
            await listener.close(self.close_clients)
            del self._listeners[listener_id]
            task = self._tasks.pop(listener_id, None)

        if task is not None and not task.done():
            await asyncio.wait([task], timeout=CLOSE_TIMEOUT)
        logger.info("listener %s removed", listener_id)

    async def close_all(self) -> None:
        """Remove every listener, newest first."""
        for listener_id in reversed(list(self._listeners)):
            await self.delete(listener_id)

    async def _run(self, listener: Listener) -> None:
        try:
            await listener.serve()
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("listener %s stopped unexpectedly", listener.id)
