"""Pytest fixtures for the acme_distributed test suite."""

import logging
import logging.handlers
from collections.abc import Callable, Generator
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.hazmat.primitives.serialization import Encoding
from cryptography.x509.oid import NameOID

from acme_distributed.certificate import Certificate
from acme_distributed.challenges import compute_dns_txt_value
from acme_distributed.config import DnsUnboundConnectorConfig, HttpFileConnectorConfig
from acme_distributed.connectors import RemoteDnsConnector, RemoteFileConnector, SshConnector
from acme_distributed.crypto import generate_rsa_key, write_private_key
from acme_distributed.exceptions import AcmeError, ConnectorError, TransientProviderTimeout


class LogCapture:
    """Helper class to capture and inspect log records."""

    def __init__(self, handler: logging.handlers.MemoryHandler) -> None:
        self._handler = handler

    @property
    def records(self) -> list[logging.LogRecord]:
        """Get all captured log records."""
        return self._handler.buffer

    def get_records(
        self, level: int | None = None, name: str | None = None
    ) -> list[logging.LogRecord]:
        """Get log records filtered by level and/or logger name.

        Args:
            level: Filter by log level (e.g., logging.INFO).
            name: Filter by logger name prefix (e.g., "acme_distributed.challenge").

        Returns:
            List of matching log records.
        """
        records = self.records
        if level is not None:
            records = [r for r in records if r.levelno == level]
        if name is not None:
            records = [r for r in records if r.name.startswith(name)]
        return records

    def get_messages(self, level: int | None = None, name: str | None = None) -> list[str]:
        """Get log messages filtered by level and/or logger name."""
        return [r.getMessage() for r in self.get_records(level, name)]

    def clear(self) -> None:
        """Clear all captured log records."""
        self._handler.buffer.clear()


@pytest.fixture
def log_capture() -> Generator[LogCapture]:
    """Capture logs from the acme_distributed package during a test.

    Usage:
        def test_something(log_capture):
            # do something that logs
            assert "Certificate issued" in log_capture.get_messages(logging.INFO)
    """
    handler = logging.handlers.MemoryHandler(capacity=10000)
    handler.setLevel(logging.DEBUG)

    package_logger = logging.getLogger("acme_distributed")
    original_level = package_logger.level
    package_logger.setLevel(logging.DEBUG)
    package_logger.addHandler(handler)

    try:
        yield LogCapture(handler)
    finally:
        package_logger.removeHandler(handler)
        package_logger.setLevel(original_level)
        handler.close()


# =============================================================================
# Keys and certificates
# =============================================================================


@pytest.fixture(scope="session")
def rsa_key() -> rsa.RSAPrivateKey:
    """One RSA key for the whole session; generating keys is slow."""
    return generate_rsa_key(2048)


def make_pem(
    key: rsa.RSAPrivateKey,
    names: list[str],
    valid_for: timedelta = timedelta(days=90),
    now: datetime | None = None,
) -> bytes:
    """Build a self-signed PEM certificate expiring ``valid_for`` from now."""
    now = now or datetime.now(timezone.utc)
    subject = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, names[0])])
    cert = (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(subject)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(min(now, now + valid_for) - timedelta(days=1))
        .not_valid_after(now + valid_for)
        .add_extension(
            x509.SubjectAlternativeName([x509.DNSName(n) for n in names]), critical=False
        )
        .sign(key, hashes.SHA256())
    )
    return cert.public_bytes(Encoding.PEM)


@pytest.fixture
def pem_factory(rsa_key) -> Callable[..., bytes]:
    """Create PEM certificates: pem_factory(names, valid_for=timedelta(days=90))."""

    def factory(names: list[str], valid_for: timedelta = timedelta(days=90)) -> bytes:
        return make_pem(rsa_key, names, valid_for)

    return factory


@pytest.fixture
def certificate_factory(tmp_path: Path, rsa_key) -> Callable[..., Certificate]:
    """Create Certificate objects whose files live in tmp_path.

    The private key is written unless ``with_key=False``; a PEM is written
    when ``pem`` bytes are given.
    """

    def factory(
        name: str = "example",
        subject: str = "example.com",
        san: tuple[str, ...] = (),
        renew_days: int = 30,
        connector_group: str = "web",
        with_key: bool = True,
        pem: bytes | None = None,
    ) -> Certificate:
        key_path = tmp_path / f"{name}.key"
        pem_path = tmp_path / f"{name}.pem"
        if with_key:
            write_private_key(key_path, rsa_key)
        if pem is not None:
            pem_path.write_bytes(pem)
        return Certificate(
            name=name,
            subject=subject,
            san=san,
            key=key_path,
            path=pem_path,
            renew_days=renew_days,
            connector_group=connector_group,
        )

    return factory


# =============================================================================
# SSH transport
# =============================================================================


class FakeSession:
    """SSH session that records commands and answers through a responder."""

    def __init__(self, hostname: str, responder: Callable[[str], str]):
        self.hostname = hostname
        self.responder = responder
        self.commands: list[str] = []
        self.closed = False

    def exec(self, command: str) -> str:
        if self.closed:
            raise ConnectorError(f"Session to {self.hostname} is closed")
        self.commands.append(command)
        return self.responder(command)

    def close(self) -> None:
        self.closed = True


class FakeTransport:
    """Stands in for SshTransport.

    Every command succeeds by default. Set ``responders[hostname]`` to
    script the output for a host, or add the host to ``unreachable``.
    """

    def __init__(self) -> None:
        self.sessions: list[FakeSession] = []
        self.responders: dict[str, Callable[[str], str]] = {}
        self.unreachable: set[str] = set()

    def start(self, hostname: str, username: str, port: int = 22, timeout: float = 2.0):
        if hostname in self.unreachable:
            raise ConnectorError(f"Cannot connect to {hostname}:{port}: timed out")
        session = FakeSession(hostname, self.responders.get(hostname, lambda _command: "success"))
        self.sessions.append(session)
        return session

    def commands(self, hostname: str) -> list[str]:
        return [c for s in self.sessions if s.hostname == hostname for c in s.commands]


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def connector_factory(transport: FakeTransport) -> Callable[..., SshConnector]:
    """Create connected connectors: connector_factory("web1", dns=False).

    The hostname is "<name>.example.com".
    """

    def factory(name: str, dns: bool = False) -> SshConnector:
        common = {"name": name, "hostname": f"{name}.example.com", "username": "acme"}
        if dns:
            connector: SshConnector = RemoteDnsConnector(
                DnsUnboundConnectorConfig(unbound_ctrl="/usr/sbin/unbound-control", **common),
                transport=transport,
            )
        else:
            connector = RemoteFileConnector(
                HttpFileConnectorConfig(acme_path="/var/www/acme", **common),
                transport=transport,
            )
        connector.connect()
        return connector

    return factory


# =============================================================================
# ACME server
# =============================================================================


class FakeChallenge:
    """Challenge handle whose status follows a script on every reload."""

    def __init__(
        self,
        type: str,
        token: str,
        script: list[str] | None = None,
        timeouts: int = 0,
    ):
        self.type = type
        self.token = token
        self.status = "pending"
        self.error: dict | None = None
        self.script = list(script if script is not None else ["valid"])
        self.timeouts = timeouts
        self.validation_requests = 0
        self.reloads = 0

    @property
    def key_authorization(self) -> str:
        return f"{self.token}.thumbprint"

    @property
    def file_content(self) -> str:
        return self.key_authorization

    @property
    def record_name(self) -> str:
        return "_acme-challenge"

    @property
    def record_content(self) -> str:
        return compute_dns_txt_value(self.key_authorization)

    def request_validation(self) -> None:
        self.validation_requests += 1
        self.status = "processing"

    def reload(self) -> None:
        self.reloads += 1
        if self.timeouts > 0:
            self.timeouts -= 1
            raise TransientProviderTimeout("Timeout during POST challenge")
        if self.script:
            self.status = self.script.pop(0)
            if self.status == "invalid":
                self.error = {"detail": "Connection refused"}


class FakeAuthorization:
    def __init__(self, subject: str, challenges: list[FakeChallenge]):
        self.subject = subject
        self.status = "pending"
        self._challenges = {c.type: c for c in challenges}

    def challenge(self, challenge_type: str) -> FakeChallenge | None:
        return self._challenges.get(challenge_type)

    @property
    def http(self) -> FakeChallenge | None:
        return self.challenge("http-01")

    @property
    def dns(self) -> FakeChallenge | None:
        return self.challenge("dns-01")


class FakeOrder:
    def __init__(self, authority: "FakeAuthority", names: list[str], authorizations):
        self.authority = authority
        self.url = f"https://acme.test/order/{len(authority.orders) + 1}"
        self.names = names
        self.status = "pending"
        self.error: dict | None = None
        self._authorizations = authorizations
        self.csr: x509.CertificateSigningRequest | None = None
        self.certificate_requests = 0

    def authorizations(self) -> list[FakeAuthorization]:
        return list(self._authorizations)

    def finalize(self, csr: x509.CertificateSigningRequest) -> None:
        self.csr = csr
        self.status = "processing"

    def reload(self) -> None:
        if self.status == "processing":
            self.status = self.authority.final_order_status
            if self.status == "invalid":
                self.error = {"detail": "Error finalizing order"}

    def certificate(self) -> bytes:
        self.certificate_requests += 1
        if self.authority.certificate_timeouts > 0:
            self.authority.certificate_timeouts -= 1
            raise TransientProviderTimeout("Timeout during POST certificate")
        return make_pem(self.authority.key, self.names)


class FakeAuthority:
    """Scripted stand-in for AcmeClient.

    Each order gets one authorization per name with an http-01 and a
    dns-01 challenge. ``scripts`` maps a name to the statuses its
    challenges report on successive reloads.
    """

    def __init__(self, key: rsa.RSAPrivateKey):
        self.key = key
        self.orders: list[FakeOrder] = []
        self.scripts: dict[str, list[str]] = {}
        self.challenge_timeouts: dict[str, int] = {}
        self.new_order_error: Exception | None = None
        self.new_order_timeouts = 0
        self.no_authorizations = False
        self.final_order_status = "valid"
        self.certificate_timeouts = 0
        self.new_order_calls = 0

    def new_order(self, names: list[str]) -> FakeOrder:
        self.new_order_calls += 1
        if self.new_order_timeouts > 0:
            self.new_order_timeouts -= 1
            raise TransientProviderTimeout("Timeout during POST newOrder")
        if self.new_order_error is not None:
            raise self.new_order_error
        authorizations = []
        if not self.no_authorizations:
            for i, name in enumerate(names):
                challenges = [
                    FakeChallenge(
                        challenge_type,
                        f"token{i}",
                        script=self.scripts.get(name),
                        timeouts=self.challenge_timeouts.get(name, 0),
                    )
                    for challenge_type in ("http-01", "dns-01")
                ]
                authorizations.append(FakeAuthorization(name, challenges))
        order = FakeOrder(self, names, authorizations)
        self.orders.append(order)
        return order

    def __enter__(self) -> "FakeAuthority":
        return self

    def __exit__(self, *args) -> None:
        pass


@pytest.fixture
def authority(rsa_key) -> FakeAuthority:
    return FakeAuthority(rsa_key)


@pytest.fixture
def rate_limited() -> AcmeError:
    return AcmeError.from_response(
        {"type": "urn:ietf:params:acme:error:rateLimited", "detail": "Too many orders"}, 429
    )


@pytest.fixture
def no_sleep() -> Callable[[float], None]:
    """A sleep that records the requested delays instead of waiting."""

    delays: list[float] = []

    def sleep(seconds: float) -> None:
        delays.append(seconds)

    sleep.delays = delays  # type: ignore[attr-defined]
    return sleep
