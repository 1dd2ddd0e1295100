"""
Broker Console - Discovery Advertiser
=======================================
Announces the broker on the local network over mDNS / DNS-SD so clients
can find it without configuration.

States:
    - Stopped               : nothing is advertised (state is None)
    - Running(name, port)   : a _mqtt._tcp service record is registered

Transitions go through configure(enabled, name, port):
    1. Same request as the current one -> nothing happens
    2. Otherwise a running broadcast is always unregistered first
    3. enabled=True starts a new broadcast (empty name / zero port fall
       back to the product defaults); a failed start leaves it Stopped
    4. enabled=False leaves it Stopped

All transitions serialise on one lock, so two concurrent configure()
calls can never leave two advertisements or a half-started one behind.

The zeroconf calls are blocking; call from a worker thread, not from the
event loop.
"""

import logging
import socket
import threading
from typing import Callable, NamedTuple

from zeroconf import Error as ZeroconfError
from zeroconf import ServiceInfo, Zeroconf

from console.settings import DEFAULT_SERVICE_NAME, DEFAULT_SERVICE_PORT


logger = logging.getLogger(__name__)

SERVICE_TYPE = "_mqtt._tcp.local."
TXT_RECORD = {"txtv": "0", "lo": "1", "la": "2"}


class AdvertiseError(Exception):
    """The broadcast could not be started."""


class Running(NamedTuple):
    name: str
    port: int
    epoch: int


class DiscoveryAdvertiser:
    """
    Lifecycle manager for the mDNS broadcast.

    Attributes:
        enabled/name/port: The last requested configuration.
    """

    def __init__(
        self,
        zeroconf_factory: Callable[[], Zeroconf] = Zeroconf,
        service_type: str = SERVICE_TYPE,
    ):
        self._factory = zeroconf_factory
        self.service_type = service_type
        self._lock = threading.Lock()
        self._zeroconf: Zeroconf | None = None
        self._info: ServiceInfo | None = None
        self._state: Running | None = None
        self._epoch = 0

        self.enabled = False
        self.name = ""
        self.port = 0

    @property
    def state(self) -> Running | None:
        """None while stopped, otherwise the running broadcast."""
        with self._lock:
            return self._state

    def config(self) -> tuple[bool, str, int]:
        with self._lock:
            return self.enabled, self.name, self.port

    def configure(self, enabled: bool, name: str, port: int) -> None:
        """
        Apply a new configuration, restarting the broadcast if it changed.

        Raises:
            AdvertiseError: If enabled and the broadcast could not start.
        """
        with self._lock:
            if (enabled, name, port) == (self.enabled, self.name, self.port):
                return

            self._stop()

            self.enabled = enabled
            self.name = name
            self.port = port

            if enabled:
                try:
                    self._start(name or DEFAULT_SERVICE_NAME, port or DEFAULT_SERVICE_PORT)
                except AdvertiseError:
                    # Forget the request so an identical retry is attempted
                    self.enabled = False
                    raise

    def stop(self) -> None:
        """Unregister the broadcast. Safe to call when already stopped."""
        with self._lock:
            self._stop()
            self.enabled = False

    # -- Internal helpers (caller holds the lock) ------------------------------

    def _start(self, name: str, port: int) -> None:
        logger.info("starting mdns service name=%s port=%d", name, port)
        zc = None
        try:
            hostname = socket.gethostname()
            ip_addr = socket.gethostbyname(hostname)
            info = ServiceInfo(
                type_=self.service_type,
                name=f"{name}.{self.service_type}",
                addresses=[socket.inet_aton(ip_addr)],
                port=port,
                properties=TXT_RECORD,
                server=f"{hostname}.local.",
            )
            zc = self._factory()
            zc.register_service(info)
        except (OSError, ZeroconfError, ValueError) as e:
            logger.error("failed to start mdns service: %s", e)
            if zc is not None:
                zc.close()
            raise AdvertiseError(f"failed to start discovery broadcast: {e}") from e

        self._zeroconf = zc
        self._info = info
        self._epoch += 1
        self._state = Running(name, port, self._epoch)

    def _stop(self) -> None:
        if self._zeroconf is None:
            return
        logger.info("stopping mdns service")
        try:
            if self._info is not None:
                self._zeroconf.unregister_service(self._info)
        finally:
            self._zeroconf.close()
            self._zeroconf = None
            self._info = None
            self._state = None
