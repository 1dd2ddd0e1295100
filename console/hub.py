"""
Broker Console - Connection Hub
=================================
Stand-in for the broker engine behind the listeners. It owns every
inbound client connection, keeps traffic counters for the stats endpoint,
and closes all clients of a listener when that listener is removed.

The wire protocol is not interpreted here: bytes are read and counted
until the peer goes away.

Usage:
    hub = ConnectionHub()
    registry = ListenerRegistry(hub.establish, hub.close_clients)
    snapshot = hub.stats()
"""

import asyncio
import itertools
import logging
import time
from typing import Any, Awaitable, Callable


logger = logging.getLogger(__name__)

VERSION = "2.0.0"


class ClientConnection:
    """
    Transport-agnostic handle over one inbound connection.

    Attributes:
        listener_id: Id of the listener that accepted the connection.
        remote:      Peer address as "host:port".
    """

    def __init__(
        self,
        listener_id: str,
        remote: str,
        receive: Callable[[], Awaitable[bytes]],
        close: Callable[[], Awaitable[None]],
    ):
        self.listener_id = listener_id
        self.remote = remote
        self._receive = receive
        self._close = close
        self._closed = False

    async def receive(self) -> bytes:
        """Next chunk from the peer; b"" once the peer is gone."""
        return await self._receive()

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self._close()


class ConnectionHub:
    """
    Tracks live client connections and broker counters.

    Attributes:
        started: Unix time the hub was created.
    """

    def __init__(self):
        self.started = int(time.time())
        self._ids = itertools.count(1)
        self._clients: dict[int, ClientConnection] = {}
        self._closing: set[asyncio.Task] = set()
        self.clients_total = 0
        self.bytes_received = 0
        self.packets_received = 0

    @property
    def client_count(self) -> int:
        return len(self._clients)

    def clients_for(self, listener_id: str) -> list[ClientConnection]:
        return [c for c in self._clients.values() if c.listener_id == listener_id]

    async def establish(self, conn: ClientConnection) -> None:
        """
        Serve one connection until the peer disconnects or it is closed.

        Called by listeners from their per-connection handler.
        """
        client_id = next(self._ids)
        self._clients[client_id] = conn
        self.clients_total += 1
        logger.debug("client connected on %s from %s", conn.listener_id, conn.remote)
        try:
            while True:
                chunk = await conn.receive()
                if not chunk:
                    break
                self.bytes_received += len(chunk)
                self.packets_received += 1
        except (ConnectionError, asyncio.IncompleteReadError):
            pass
        finally:
            self._clients.pop(client_id, None)
            await conn.close()
            logger.debug("client disconnected on %s from %s", conn.listener_id, conn.remote)

    def close_clients(self, listener_id: str) -> None:
        """
        Close every client that arrived through a listener.

        Used as the close-notification callback of ListenerRegistry. The
        closes run as tasks on the running loop; this returns at once.
        """
        clients = self.clients_for(listener_id)
        if not clients:
            return
        logger.info("closing %d client(s) of listener %s", len(clients), listener_id)
        loop = asyncio.get_running_loop()
        for conn in clients:
            task = loop.create_task(conn.close())
            self._closing.add(task)
            task.add_done_callback(self._closing.discard)

    def stats(self) -> dict[str, Any]:
        """Point-in-time counters for the stats endpoint."""
        now = int(time.time())
        return {
            "version": VERSION,
            "started": self.started,
            "time": now,
            "uptime": now - self.started,
            "clients_connected": self.client_count,
            "clients_total": self.clients_total,
            "bytes_received": self.bytes_received,
            "packets_received": self.packets_received,
        }
