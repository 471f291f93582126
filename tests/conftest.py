"""
Shared fixtures: an in-memory execution gateway, a fake ACME client backed
by a throwaway CA, and config objects rooted in a temporary directory.
"""

import posixpath
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Dict, List, Optional, Union

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID

from autocert.acme_client import AcmeClient, AcmeSession, Authorization, Challenge, Order
from autocert.config_loader import Config, Settings
from autocert.gateway import CommandResult, ExecutionGateway
from autocert.registry import DomainRegistry


class FakeGateway(ExecutionGateway):
    """ExecutionGateway over a dict of files, recording every command."""

    def __init__(self, files: Optional[Dict[str, bytes]] = None, is_remote: bool = False):
        self.files: Dict[str, bytes] = dict(files or {})
        self.modes: Dict[str, int] = {}
        self.dirs = set()
        self.commands: List[str] = []
        self.results: Dict[str, CommandResult] = {}
        self.is_remote = is_remote

    @property
    def description(self) -> str:
        return "fake-remote" if self.is_remote else "fake-local"

    def read_file(self, path: str) -> bytes:
        if path not in self.files:
            raise FileNotFoundError(path)
        return self.files[path]

    def write_file(self, path: str, data: Union[bytes, str], mode: Optional[int] = None) -> None:
        if isinstance(data, str):
            data = data.encode("utf-8")
        self.files[path] = data
        if mode is not None:
            self.modes[path] = mode

    def ensure_dir(self, path: str) -> None:
        self.dirs.add(path)

    def exists(self, path: str) -> bool:
        return path in self.files or path in self.dirs

    def run(self, command: str, timeout: int = 120) -> CommandResult:
        self.commands.append(command)
        return self.results.get(command, CommandResult(exit_code=0))

    def remove(self, path: str) -> None:
        self.files.pop(path, None)

    def chmod(self, path: str, mode: int) -> None:
        self.modes[path] = mode

    def list_dir(self, path: str) -> List[str]:
        return sorted(posixpath.basename(p) for p in self.files if posixpath.dirname(p) == path)

    def join(self, *parts: str) -> str:
        return posixpath.join(*parts)

    def dirname(self, path: str) -> str:
        return posixpath.dirname(path)

    def basename(self, path: str) -> str:
        return posixpath.basename(path)


class FakeCA:
    """A self-signed CA that issues leaf certificates for tests."""

    def __init__(self, name: str = "Test Intermediate CA"):
        self.key = ec.generate_private_key(ec.SECP256R1())
        self.name = x509.Name([
            x509.NameAttribute(NameOID.ORGANIZATION_NAME, "Test CA Org"),
            x509.NameAttribute(NameOID.COMMON_NAME, name),
        ])
        now = datetime.now(timezone.utc)
        self.cert = (
            x509.CertificateBuilder()
            .subject_name(self.name)
            .issuer_name(self.name)
            .public_key(self.key.public_key())
            .serial_number(x509.random_serial_number())
            .not_valid_before(now - timedelta(days=1))
            .not_valid_after(now + timedelta(days=3650))
            .add_extension(x509.BasicConstraints(ca=True, path_length=None), critical=True)
            .sign(self.key, hashes.SHA256())
        )

    @property
    def pem(self) -> str:
        return self.cert.public_bytes(serialization.Encoding.PEM).decode("ascii")

    def issue(self, domain: str, public_key, days: int = 90) -> str:
        now = datetime.now(timezone.utc)
        cert = (
            x509.CertificateBuilder()
            .subject_name(x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, domain)]))
            .issuer_name(self.name)
            .public_key(public_key)
            .serial_number(x509.random_serial_number())
            .not_valid_before(now - timedelta(hours=1))
            .not_valid_after(now + timedelta(days=days))
            .add_extension(x509.SubjectAlternativeName([x509.DNSName(domain)]), critical=False)
            .sign(self.key, hashes.SHA256())
        )
        return cert.public_bytes(serialization.Encoding.PEM).decode("ascii")

    def issue_with_key(self, domain: str, days: int = 90):
        """Return (private key PEM bytes, leaf PEM) for a new key."""
        key = ec.generate_private_key(ec.SECP256R1())
        key_pem = key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption(),
        )
        return key_pem, self.issue(domain, key.public_key(), days=days)


class FakeAcmeClient(AcmeClient):
    """AcmeClient that validates instantly and signs CSRs with a FakeCA."""

    def __init__(self, ca: FakeCA, challenge_types=("http-01", "dns-01"), days: int = 90):
        self.ca = ca
        self.challenge_types = challenge_types
        self.days = days
        self.calls: List[str] = []
        self.orders: List[List[str]] = []
        self.validation_error: Optional[Exception] = None
        self._pem: Optional[str] = None

    def create_order(self, identifiers: List[str]) -> Order:
        self.calls.append("create_order")
        self.orders.append(list(identifiers))
        return Order(url="https://acme.test/order/1", identifiers=list(identifiers))

    def get_authorizations(self, order: Order) -> List[Authorization]:
        self.calls.append("get_authorizations")
        return [
            Authorization(
                url=f"https://acme.test/authz/{identifier}",
                identifier=identifier,
                status="pending",
                challenges=[
                    Challenge(type=t, url=f"https://acme.test/chall/{t}", token=f"token-{identifier}")
                    for t in self.challenge_types
                ],
            )
            for identifier in order.identifiers
        ]

    def get_challenge_key_authorization(self, challenge: Challenge) -> str:
        return f"{challenge.token}.thumbprint"

    def complete_challenge(self, challenge: Challenge) -> None:
        self.calls.append("complete_challenge")

    def wait_for_valid_status(self, challenge, retries=15, interval=3, timeout=120) -> None:
        self.calls.append(f"wait:{retries}:{interval}:{timeout}")
        if self.validation_error:
            raise self.validation_error

    def finalize_order(self, order: Order, csr_pem: bytes) -> Order:
        self.calls.append("finalize_order")
        csr = x509.load_pem_x509_csr(csr_pem)
        leaf = self.ca.issue(order.identifiers[0], csr.public_key(), days=self.days)
        self._pem = leaf + self.ca.pem
        return order

    def get_certificate(self, order: Order) -> str:
        self.calls.append("get_certificate")
        return self._pem


@pytest.fixture
def ca():
    return FakeCA()


@pytest.fixture
def config(tmp_path: Path) -> Config:
    """Config rooted in a temporary directory, with fast ECDSA keys."""
    return Config(settings=Settings(
        email="admin@example.com",
        certs_dir=str(tmp_path / "certs"),
        config_dir=str(tmp_path / "config"),
        web_root="/var/www/html",
        nginx_conf_dir="/etc/nginx/conf.d",
        key_type="ecdsa",
        elliptic_curve="secp256r1",
    ))


@pytest.fixture
def registry(config: Config) -> DomainRegistry:
    return DomainRegistry(config.domains_file)


@pytest.fixture
def fake_acme(ca) -> FakeAcmeClient:
    return FakeAcmeClient(ca)


@pytest.fixture
def acme_session(config, fake_acme) -> AcmeSession:
    return AcmeSession(config, client_factory=lambda **kwargs: fake_acme)
