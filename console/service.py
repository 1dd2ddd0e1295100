"""
Broker Console - Service Wiring
=================================
Builds every component from the process configuration, registers the
startup listeners and tears everything down again on shutdown.

Startup order:
    1. Hub, listener registry, settings store (settings.json), ledger
    2. Token service (signing key from JWT_SECRET or the dev fallback)
    3. Discovery advertiser, configured from stored settings
       (MDNS_ENABLED=true forces it on and is persisted)
    4. Listeners: stored TLS listener "mqtts", management console "mgmt",
       TCP "t1" and websocket "ws1"

Any bind failure or unreadable settings file during startup is fatal and
propagates to the caller.

The management console is a listener like any other: ManagementListener
runs uvicorn on a socket it binds itself, so it can be registered in the
ListenerRegistry and closed through the same once-only path.

Usage:
    service = ConsoleService(config)
    await service.run(stop_event)    # returns after stop_event is set
"""

import asyncio
import contextlib
import logging
import math
import os
import socket
import ssl
from datetime import timedelta
from typing import Callable

import uvicorn
from fastapi import FastAPI
from zeroconf import Zeroconf

from console.auth import TokenService
from console.config import resolve_jwt_secret
from console.discovery import AdvertiseError, DiscoveryAdvertiser
from console.hub import ConnectionHub
from console.ledger import CredentialLedger
from console.listeners import (
    CloseFn,
    EstablishFn,
    Listener,
    ListenerKind,
    ListenerRegistry,
    TCPListener,
    WebsocketListener,
    build_ssl_context,
    load_ssl_context,
)
from console.main import create_app
from console.settings import SettingsStore
from console.storage import MemoryStorage


logger = logging.getLogger(__name__)

BACKLOG = 2048


class _ConsoleServer(uvicorn.Server):
    """uvicorn server that leaves signal handling to the owning service."""

    def install_signal_handlers(self) -> None:
        pass

    @contextlib.contextmanager
    def capture_signals(self):
        yield


class ManagementListener(Listener):
    """
    The management console's own HTTP listener.

    Attributes:
        app:              ASGI app served on this listener.
        shutdown_timeout: Upper bound on waiting for in-flight requests.
    """

    kind = ListenerKind.MANAGEMENT

    def __init__(self, listener_id: str, address: str, app: FastAPI, shutdown_timeout: float = 5.0):
        super().__init__(listener_id, address)
        self.app = app
        self.shutdown_timeout = shutdown_timeout
        self._sock: socket.socket | None = None
        self._uvicorn: _ConsoleServer | None = None
        self._done = asyncio.Event()
        self._serving = False

    @property
    def protocol(self) -> str:
        return "http"

    @property
    def bound_port(self) -> int | None:
        if self._sock is None:
            return None
        return self._sock.getsockname()[1]

    async def bind(self, establish: EstablishFn) -> None:
        family = socket.AF_INET6 if self.host and ":" in self.host else socket.AF_INET
        sock = socket.socket(family, socket.SOCK_STREAM)
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            sock.bind((self.host or "", self.port))
            sock.listen(BACKLOG)
        except OSError:
            sock.close()
            raise
        self._sock = sock
        config = uvicorn.Config(
            self.app,
            log_level="info",
            timeout_graceful_shutdown=math.ceil(self.shutdown_timeout),
        )
        self._uvicorn = _ConsoleServer(config)

    async def serve(self) -> None:
        if self._closed:
            return
        self._serving = True
        try:
            await self._uvicorn.serve(sockets=[self._sock])
        finally:
            self._done.set()

    async def close(self, close_clients: CloseFn) -> None:
        if self._closed:
            return
        self._closed = True

        if self._uvicorn is not None and self._serving:
            self._uvicorn.should_exit = True
            try:
                await asyncio.wait_for(self._done.wait(), self.shutdown_timeout + 1)
            except asyncio.TimeoutError:
                logger.warning("management listener %s forced to exit", self.id)
                self._uvicorn.force_exit = True
            # startup can finish after should_exit was set, skipping shutdown
            for server in getattr(self._uvicorn, "servers", []):
                server.close()
        if self._sock is not None:
            self._sock.close()

        close_clients(self.id)


class ConsoleService:
    """
    Owner of all broker console components.

    Attributes:
        config: Configuration dict from ConfigManager.load().
    """

    def __init__(
        self,
        config: dict,
        tls_files: tuple[str, str] | None = None,
        zeroconf_factory: Callable[[], Zeroconf] = Zeroconf,
    ):
        """
        Args:
            config:           Merged configuration.
            tls_files:        Optional (cert, key) paths for the "t1" listener.
            zeroconf_factory: Builds the zeroconf instance for discovery.
        """
        self.config = config
        self.data_dir = config["data_dir"]
        self._tls_files = tls_files

        self.hub = ConnectionHub()
        self.registry = ListenerRegistry(self.hub.establish, self.hub.close_clients)
        self.settings = SettingsStore(self.data_dir)
        self.advertiser = DiscoveryAdvertiser(zeroconf_factory)
        self.storage = MemoryStorage()
        self.ledger: CredentialLedger | None = None
        self.tokens: TokenService | None = None
        self.app: FastAPI | None = None

    async def start(self) -> None:
        os.makedirs(self.data_dir, exist_ok=True)

        try:
            self.settings.load()
        except FileNotFoundError:
            logger.info("no settings file at %s, using defaults", self.settings.path)

        self.ledger = CredentialLedger(self.data_dir)
        auth_cfg = self.config["auth"]
        self.tokens = TokenService(
            resolve_jwt_secret(self.config),
            self.ledger,
            access_ttl=timedelta(minutes=auth_cfg["access_ttl_minutes"]),
            refresh_ttl=timedelta(days=auth_cfg["refresh_ttl_days"]),
        )

        await asyncio.to_thread(self._apply_discovery)

        self.app = create_app(
            token_service=self.tokens,
            ledger=self.ledger,
            registry=self.registry,
            settings=self.settings,
            advertiser=self.advertiser,
            hub=self.hub,
            storage=self.storage,
            data_dir=self.data_dir,
        )

        await self._add_stored_tls_listener()

        addresses = self.config["listeners"]
        if addresses.get("management"):
            await self.registry.add(ManagementListener(
                "mgmt",
                addresses["management"],
                self.app,
                shutdown_timeout=float(self.config["shutdown_timeout"]),
            ))
        if addresses.get("tcp"):
            ssl_context = load_ssl_context(*self._tls_files) if self._tls_files else None
            await self.registry.add(TCPListener("t1", addresses["tcp"], ssl_context))
        if addresses.get("ws"):
            await self.registry.add(WebsocketListener("ws1", addresses["ws"]))

    async def stop(self) -> None:
        await self.registry.close_all()
        await asyncio.to_thread(self.advertiser.stop)
        logger.info("broker console shutdown complete")

    async def run(self, stop_event: asyncio.Event) -> None:
        """Start, wait for stop_event, then shut down."""
        try:
            await self.start()
            await stop_event.wait()
            logger.warning("caught signal, stopping...")
        finally:
            await self.stop()

    # -- Internal helpers ------------------------------------------------------

    def _apply_discovery(self) -> None:
        """Sync env overrides into settings, then start the advertiser."""
        if self.config.get("mdns_enabled"):
            cfg = self.settings.get_discovery()
            cfg.enabled = True
            if self.config.get("mdns_name"):
                cfg.name = self.config["mdns_name"]
            self.settings.update_discovery(cfg)

        cfg = self.settings.get_discovery()
        try:
            self.advertiser.configure(cfg.enabled, cfg.name, cfg.port)
        except AdvertiseError as e:
            logger.error("discovery not started: %s", e)

    async def _add_stored_tls_listener(self) -> None:
        tls = self.settings.get_tls()
        if not (tls.enabled and tls.cert and tls.key):
            return
        try:
            context = build_ssl_context(tls.cert, tls.key)
        except (ssl.SSLError, OSError) as e:
            logger.error("failed to load stored tls config: %s", e)
            return
        await self.registry.add(TCPListener("mqtts", tls.port, context))
