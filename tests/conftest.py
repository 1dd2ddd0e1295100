import socket
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import bcrypt
import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID
from fastapi.testclient import TestClient

from console.auth import TokenService
from console.discovery import DiscoveryAdvertiser
from console.hub import ConnectionHub
from console.ledger import CredentialLedger
from console.listeners import ListenerRegistry
from console.main import create_app
from console.settings import SettingsStore
from console.storage import MemoryStorage


TEST_SECRET = "test-signing-secret"


class FakeZeroconf:
    """Records service registrations instead of touching the network."""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.registered = []
        self.unregistered = []
        self.closed = False

    def register_service(self, info):
        if self.fail:
            raise OSError("multicast unavailable")
        self.registered.append(info)

    def unregister_service(self, info):
        self.unregistered.append(info)

    def close(self):
        self.closed = True


class ZeroconfRecorder:
    """Zeroconf factory that remembers every instance it built."""

    def __init__(self):
        self.instances: list[FakeZeroconf] = []
        self.fail = False

    def __call__(self) -> FakeZeroconf:
        zc = FakeZeroconf(fail=self.fail)
        self.instances.append(zc)
        return zc

    @property
    def active(self) -> list[FakeZeroconf]:
        return [zc for zc in self.instances if zc.registered and not zc.closed]


@pytest.fixture(autouse=True)
def fast_bcrypt(monkeypatch):
    """Lowest bcrypt cost factor; the default makes the suite crawl."""
    original = bcrypt.gensalt
    monkeypatch.setattr(bcrypt, "gensalt", lambda rounds=4, prefix=b"2b": original(4, prefix))


@pytest.fixture(autouse=True)
def local_hostname(monkeypatch):
    monkeypatch.setattr(socket, "gethostbyname", lambda host: "127.0.0.1")


@pytest.fixture
def zeroconf_factory():
    return ZeroconfRecorder()


@pytest.fixture
def ledger(tmp_path):
    return CredentialLedger(str(tmp_path))


@pytest.fixture
def token_service(ledger):
    return TokenService(TEST_SECRET, ledger)


def build_gateway(data_dir, zeroconf_factory, storage=True):
    ledger = CredentialLedger(str(data_dir))
    tokens = TokenService(TEST_SECRET, ledger)
    hub = ConnectionHub()
    registry = ListenerRegistry(hub.establish, hub.close_clients)
    settings = SettingsStore(str(data_dir))
    advertiser = DiscoveryAdvertiser(zeroconf_factory)
    backend = MemoryStorage() if storage else None
    app = create_app(
        token_service=tokens,
        ledger=ledger,
        registry=registry,
        settings=settings,
        advertiser=advertiser,
        hub=hub,
        storage=backend,
        data_dir=str(data_dir),
    )
    return SimpleNamespace(
        app=app,
        ledger=ledger,
        tokens=tokens,
        hub=hub,
        registry=registry,
        settings=settings,
        advertiser=advertiser,
        storage=backend,
        data_dir=data_dir,
    )


@pytest.fixture
def gateway(tmp_path, zeroconf_factory):
    gw = build_gateway(tmp_path, zeroconf_factory)
    with TestClient(gw.app) as client:
        gw.client = client
        yield gw
        client.portal.call(gw.registry.close_all)


@pytest.fixture
def admin_headers(gateway):
    gateway.ledger.add_user("admin", "rightpass", True, "", True)
    pair = gateway.tokens.generate_token_pair("admin")
    return {"Authorization": f"Bearer {pair.access_token}"}


@pytest.fixture(scope="session")
def self_signed_pair():
    """PEM (cert, key) for CN=localhost, valid for one day."""
    key = ec.generate_private_key(ec.SECP256R1())
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, "localhost")])
    now = datetime.now(timezone.utc)
    cert = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - timedelta(minutes=5))
        .not_valid_after(now + timedelta(days=1))
        .sign(key, hashes.SHA256())
    )
    cert_pem = cert.public_bytes(serialization.Encoding.PEM).decode("ascii")
    key_pem = key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption(),
    ).decode("ascii")
    return cert_pem, key_pem
