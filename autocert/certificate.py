"""
Certificate issuance, renewal and storage.

CertificateManager drives one ACME order per domain through an explicit
state machine, publishes challenge proofs through the domain's execution
gateway, and stores the resulting key and certificates under
<certs_dir>/<domain>/. Remote domains additionally get the files installed
under <remote_certs_dir>/<domain>/ on the remote host.
"""

import os
import posixpath
import re
import tempfile
import time
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, rsa
from cryptography.x509.oid import NameOID

from .acme_client import AcmeSession
from .challenges import ChallengeContext, ChallengeError, ChallengeUnsupported, build_strategy
from .config_loader import Config, ConfigurationError
from .gateway import ExecutionGateway, open_gateway
from .helpers import days_until, is_expiring_soon, is_valid_domain
from .logger import get_logger
from .registry import DomainRecord, DomainRegistry, RemoteTarget


VALIDATION_RETRIES = 15
VALIDATION_INTERVAL = 3
VALIDATION_TIMEOUT = 120

KEY_FILE_MODE = 0o600
CERT_FILE_MODE = 0o644

_PEM_CERT_RE = re.compile(
    r"-----BEGIN CERTIFICATE-----[\s\S]*?-----END CERTIFICATE-----"
)


class CertificateError(Exception):
    """Base error for certificate handling."""
    pass


class MalformedCertificateBundle(CertificateError):
    """Raised when a PEM bundle contains no usable certificate."""
    pass


class CertificateNotFound(CertificateError):
    """Raised when no certificate is stored for a domain."""
    pass


class IssuanceState(Enum):
    """States of one issuance attempt."""
    CREATED = "created"
    ORDER_OPEN = "order-open"
    AUTHORIZING = "authorizing"
    VALIDATING = "validating"
    FINALIZING = "finalizing"
    DOWNLOADING = "downloading"
    SAVED = "saved"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (IssuanceState.SAVED, IssuanceState.FAILED)


# Orders with several authorizations loop VALIDATING -> AUTHORIZING
_TRANSITIONS = {
    IssuanceState.CREATED: {IssuanceState.ORDER_OPEN},
    IssuanceState.ORDER_OPEN: {IssuanceState.AUTHORIZING},
    IssuanceState.AUTHORIZING: {IssuanceState.VALIDATING},
    IssuanceState.VALIDATING: {IssuanceState.AUTHORIZING, IssuanceState.FINALIZING},
    IssuanceState.FINALIZING: {IssuanceState.DOWNLOADING},
    IssuanceState.DOWNLOADING: {IssuanceState.SAVED},
}


@dataclass
class IssuanceAttempt:
    """Tracks the state transitions of one issuance."""
    domain: str
    state: IssuanceState = IssuanceState.CREATED
    history: List[IssuanceState] = field(default_factory=lambda: [IssuanceState.CREATED])
    error: Optional[str] = None

    def advance(self, state: IssuanceState, detail: str = "") -> None:
        """
        Move to the next state.

        Raises:
            CertificateError: If the transition is not allowed
        """
        if state not in _TRANSITIONS.get(self.state, set()):
            raise CertificateError(
                f"Invalid issuance transition for {self.domain}: "
                f"{self.state.value} -> {state.value}"
            )
        self.state = state
        self.history.append(state)
        get_logger().step(self.domain, state.value, detail)

    def fail(self, error: BaseException) -> None:
        if self.state.is_terminal:
            return
        self.state = IssuanceState.FAILED
        self.history.append(IssuanceState.FAILED)
        self.error = str(error)
        get_logger().step(self.domain, IssuanceState.FAILED.value, self.error)


@dataclass
class CertificatePaths:
    """Locations of the four certificate artifacts of a domain."""
    private_key: str
    cert: str
    chain: str
    fullchain: str

    @classmethod
    def for_dir(cls, directory: str, join: Callable[..., str] = os.path.join) -> "CertificatePaths":
        return cls(
            private_key=join(directory, "cert.key"),
            cert=join(directory, "cert.pem"),
            chain=join(directory, "chain.pem"),
            fullchain=join(directory, "fullchain.pem"),
        )

    def to_dict(self) -> Dict[str, str]:
        return {
            "private_key": self.private_key,
            "cert": self.cert,
            "chain": self.chain,
            "fullchain": self.fullchain,
        }


@dataclass(frozen=True)
class CertificateBundle:
    """Leaf certificate and intermediate chain, both PEM text."""
    leaf: str
    chain: str

    @property
    def fullchain(self) -> str:
        return self.leaf + self.chain


@dataclass(frozen=True)
class CertificateMaterial:
    """A private key together with its certificate bundle."""
    private_key: bytes
    bundle: CertificateBundle


def parse_bundle(pem: str) -> CertificateBundle:
    """
    Split a PEM bundle into leaf and chain.

    The first certificate is the leaf; the remaining certificates, in their
    original order, form the chain.

    Raises:
        MalformedCertificateBundle: If no certificate block is found
    """
    blocks = _PEM_CERT_RE.findall(pem or "")
    if not blocks:
        raise MalformedCertificateBundle("No PEM certificate found in bundle")
    leaf = blocks[0] + "\n"
    chain = "".join(block + "\n" for block in blocks[1:])
    return CertificateBundle(leaf=leaf, chain=chain)


def serialize_bundle(leaf: str, chain: str) -> str:
    """Concatenate leaf and chain into a full chain bundle."""
    return leaf + chain


def generate_private_key(
    key_type: str = "rsa",
    rsa_key_size: int = 2048,
    elliptic_curve: str = "secp384r1",
):
    """
    Generate a certificate private key.

    Args:
        key_type: "rsa" or "ecdsa"
        rsa_key_size: RSA modulus size in bits
        elliptic_curve: Curve name for ECDSA keys

    Returns:
        A cryptography private key object
    """
    if key_type == "ecdsa":
        curves = {"secp256r1": ec.SECP256R1(), "secp384r1": ec.SECP384R1()}
        if elliptic_curve not in curves:
            raise ConfigurationError(f"Unsupported elliptic curve: {elliptic_curve}")
        return ec.generate_private_key(curves[elliptic_curve])
    if key_type == "rsa":
        return rsa.generate_private_key(public_exponent=65537, key_size=rsa_key_size)
    raise ConfigurationError(f"Unsupported key type: {key_type}")


def private_key_to_pem(key) -> bytes:
    return key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )


def create_csr(domain: str, key) -> bytes:
    """Build a PEM certificate signing request for a single domain."""
    csr = (
        x509.CertificateSigningRequestBuilder()
        .subject_name(x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, domain)]))
        .add_extension(x509.SubjectAlternativeName([x509.DNSName(domain)]), critical=False)
        .sign(key, hashes.SHA256())
    )
    return csr.public_bytes(serialization.Encoding.PEM)


def _public_key_bytes(public_key) -> bytes:
    return public_key.public_bytes(
        encoding=serialization.Encoding.DER,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )


def verify_material(material: CertificateMaterial) -> None:
    """
    Check that the key belongs to the leaf and that the chain follows it.

    Raises:
        MalformedCertificateBundle: If a certificate cannot be parsed
        CertificateError: If key, leaf and chain do not belong together
    """
    try:
        leaf = x509.load_pem_x509_certificate(material.bundle.leaf.encode("ascii"))
        key = serialization.load_pem_private_key(material.private_key, password=None)
    except ValueError as e:
        raise MalformedCertificateBundle(f"Unreadable certificate material: {e}")

    if _public_key_bytes(leaf.public_key()) != _public_key_bytes(key.public_key()):
        raise CertificateError("Private key does not match the leaf certificate")

    if material.bundle.chain:
        first = parse_bundle(material.bundle.chain).leaf
        try:
            issuer_cert = x509.load_pem_x509_certificate(first.encode("ascii"))
        except ValueError as e:
            raise MalformedCertificateBundle(f"Unreadable chain certificate: {e}")
        if leaf.issuer != issuer_cert.subject:
            raise CertificateError("Chain does not start with the issuer of the leaf certificate")


def _name_attribute(name: x509.Name, oid) -> Optional[str]:
    values = name.get_attributes_for_oid(oid)
    return values[0].value if values else None


@dataclass
class CertificateInfo:
    """Summary of a stored certificate."""
    domain: str
    subject: Optional[str]
    issuer: Optional[str]
    not_before: datetime
    not_after: datetime
    days_remaining: int
    serial_number: str
    paths: Optional[CertificatePaths] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "domain": self.domain,
            "subject": self.subject,
            "issuer": self.issuer,
            "not_before": self.not_before.isoformat(),
            "not_after": self.not_after.isoformat(),
            "days_remaining": self.days_remaining,
            "serial_number": self.serial_number,
        }


def inspect_certificate(
    pem: str,
    domain: str,
    now: Optional[datetime] = None,
) -> CertificateInfo:
    """
    Read validity, subject and issuer from a PEM certificate.

    Raises:
        MalformedCertificateBundle: If the PEM cannot be parsed
    """
    leaf_pem = parse_bundle(pem).leaf
    try:
        cert = x509.load_pem_x509_certificate(leaf_pem.encode("ascii"))
    except ValueError as e:
        raise MalformedCertificateBundle(f"Failed to parse certificate for {domain}: {e}")

    not_before = cert.not_valid_before_utc
    not_after = cert.not_valid_after_utc
    issuer = _name_attribute(cert.issuer, NameOID.ORGANIZATION_NAME) or _name_attribute(
        cert.issuer, NameOID.COMMON_NAME
    )
    return CertificateInfo(
        domain=domain,
        subject=_name_attribute(cert.subject, NameOID.COMMON_NAME),
        issuer=issuer,
        not_before=not_before,
        not_after=not_after,
        days_remaining=days_until(not_after, now),
        serial_number=format(cert.serial_number, "x"),
    )


class CertificateStore:
    """
    Local storage of certificate material, one directory per domain.
    """

    def __init__(self, certs_dir: str):
        self.certs_dir = certs_dir

    def domain_dir(self, domain: str) -> str:
        return os.path.join(self.certs_dir, domain)

    def paths(self, domain: str) -> CertificatePaths:
        return CertificatePaths.for_dir(self.domain_dir(domain))

    def exists(self, domain: str) -> bool:
        return os.path.exists(self.paths(domain).cert)

    def domains(self) -> List[str]:
        try:
            return sorted(
                entry.name for entry in os.scandir(self.certs_dir) if entry.is_dir()
            )
        except FileNotFoundError:
            return []

    def load_certificate(self, domain: str) -> str:
        """
        Raises:
            CertificateNotFound: If the domain has no stored certificate
        """
        path = self.paths(domain).cert
        try:
            return Path(path).read_text()
        except FileNotFoundError:
            raise CertificateNotFound(f"No certificate found for {domain}: {path}")

    def save(self, domain: str, material: CertificateMaterial) -> CertificatePaths:
        """
        Write the four artifacts of a domain.

        Every file is written to a temporary name in the domain directory
        with its final mode, and only renamed into place once all four are
        complete. On failure the temporary files are removed and the
        previous artifacts stay untouched.

        Raises:
            CertificateError: If the material is inconsistent
        """
        logger = get_logger()
        verify_material(material)

        directory = self.domain_dir(domain)
        os.makedirs(directory, exist_ok=True)
        paths = self.paths(domain)

        artifacts = [
            (paths.private_key, material.private_key, KEY_FILE_MODE),
            (paths.cert, material.bundle.leaf.encode("ascii"), CERT_FILE_MODE),
            (paths.chain, material.bundle.chain.encode("ascii"), CERT_FILE_MODE),
            (paths.fullchain, material.bundle.fullchain.encode("ascii"), CERT_FILE_MODE),
        ]

        staged = []
        try:
            for final_path, data, mode in artifacts:
                fd, tmp_path = tempfile.mkstemp(
                    prefix=f".{os.path.basename(final_path)}.", dir=directory
                )
                staged.append((tmp_path, final_path))
                with os.fdopen(fd, "wb") as f:
                    f.write(data)
                os.chmod(tmp_path, mode)

            for tmp_path, final_path in staged:
                os.replace(tmp_path, final_path)
        except OSError as e:
            for tmp_path, _ in staged:
                if os.path.exists(tmp_path):
                    os.unlink(tmp_path)
            raise CertificateError(f"Failed to store certificate for {domain}: {e}")

        logger.debug(f"  Certificate stored in {directory}")
        return paths


@dataclass
class IssueOptions:
    """Per-call options of issue and renew. None falls back to settings."""
    email: Optional[str] = None
    staging: Optional[bool] = None
    web_root: Optional[str] = None
    challenge_type: Optional[str] = None
    cleanup: bool = True
    verify_write: Optional[bool] = None
    force: bool = False
    renew_before_days: Optional[int] = None


@dataclass
class IssueResult:
    """Outcome of a successful issuance."""
    domain: str
    paths: CertificatePaths
    info: CertificateInfo
    web_root: Optional[str] = None
    remote_dir: Optional[str] = None
    attempt: Optional[IssuanceAttempt] = None


@dataclass
class RenewOutcome:
    """Outcome of a renew call."""
    domain: str
    renewed: bool
    reason: str
    days_remaining: Optional[int] = None
    result: Optional[IssueResult] = None


class CertificateManager:
    """
    Issues, renews and inspects certificates.

    Collaborators are injectable: the ACME session (and through it the ACME
    client), the SSH client factory used for remote domains and the sleep
    function used by DNS propagation waits.
    """

    def __init__(
        self,
        config: Config,
        registry: Optional[DomainRegistry] = None,
        acme_session: Optional[AcmeSession] = None,
        store: Optional[CertificateStore] = None,
        ssh_factory: Optional[Callable[[RemoteTarget], Any]] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.config = config
        self.registry = registry or DomainRegistry(config.domains_file)
        self.acme_session = acme_session or AcmeSession(config)
        self.store = store or CertificateStore(config.settings.certs_dir)
        self.ssh_factory = ssh_factory
        self.sleep = sleep

    def resolve_web_root(
        self,
        record: DomainRecord,
        options: IssueOptions,
        remote: bool = False,
    ) -> str:
        """
        Web root used for http-01 proofs, by precedence: explicit option,
        remote web root (remote domains only), the record, settings,
        /var/www/html.
        """
        return record.resolve_web_root(options.web_root, self.config.settings.web_root, remote)

    def issue(self, domain: str, options: Optional[IssueOptions] = None) -> IssueResult:
        """
        Obtain a new certificate for a domain.

        Raises:
            ConfigurationError: If the contact email or challenge setup is missing
            ChallengeError: If a challenge cannot be prepared or validated
            CertificateError: If the returned certificate cannot be stored
            TransportError: If the remote host cannot be reached
        """
        logger = get_logger()
        options = options or IssueOptions()
        settings = self.config.settings

        if not is_valid_domain(domain):
            raise ConfigurationError(f"Invalid domain name: {domain}")

        record = self.registry.get_or_blank(domain)
        email = options.email or settings.email or record.email
        staging = settings.staging if options.staging is None else options.staging
        challenge_type = options.challenge_type or settings.challenge_type

        acme = self.acme_session.get(email, staging)
        attempt = IssuanceAttempt(domain)

        logger.subsection(f"Issuing certificate: {domain}")
        try:
            with open_gateway(record.ssh, self.ssh_factory) as gateway:
                web_root = self.resolve_web_root(record, options, gateway.is_remote)
                if challenge_type == "http-01":
                    logger.info(f"  Web root: {web_root} ({gateway.description})")

                strategy = build_strategy(
                    challenge_type,
                    gateway=gateway,
                    web_root=web_root,
                    dns_provider=settings.dns_provider,
                    dns_credentials=settings.dns_credentials,
                    verify_write=options.verify_write,
                    sleep=self.sleep,
                )

                order = acme.create_order([domain])
                attempt.advance(IssuanceState.ORDER_OPEN, order.url or "")
                authorizations = acme.get_authorizations(order)

                contexts = []
                for authorization in authorizations:
                    attempt.advance(IssuanceState.AUTHORIZING, authorization.identifier)
                    challenge = authorization.find_challenge(challenge_type)
                    if challenge is None:
                        raise ChallengeUnsupported(
                            f"Authorization for {authorization.identifier} does not offer {challenge_type}"
                        )

                    context = ChallengeContext(
                        authorization_id=authorization.url,
                        challenge_type=challenge_type,
                        token=challenge.token,
                        key_authorization=acme.get_challenge_key_authorization(challenge),
                        domain=authorization.identifier,
                    )
                    logger.info(f"  Processing {challenge_type} challenge: {context.domain}")
                    strategy.prepare(context)
                    contexts.append(context)

                    attempt.advance(IssuanceState.VALIDATING, context.domain)
                    acme.complete_challenge(challenge)
                    logger.info("  Waiting for ACME validation...")
                    acme.wait_for_valid_status(
                        challenge,
                        retries=VALIDATION_RETRIES,
                        interval=VALIDATION_INTERVAL,
                        timeout=VALIDATION_TIMEOUT,
                    )
                    logger.info(f"  Validation passed: {context.domain}")

                if options.cleanup:
                    for context in contexts:
                        strategy.cleanup(context)
                else:
                    logger.info("  Skipping challenge cleanup")

                attempt.advance(IssuanceState.FINALIZING)
                key = generate_private_key(
                    settings.key_type, settings.rsa_key_size, settings.elliptic_curve
                )
                acme.finalize_order(order, create_csr(domain, key))

                attempt.advance(IssuanceState.DOWNLOADING)
                bundle = parse_bundle(acme.get_certificate(order))
                material = CertificateMaterial(private_key=private_key_to_pem(key), bundle=bundle)
                paths = self.store.save(domain, material)

                remote_dir = None
                if gateway.is_remote:
                    remote_dir = self._install_remote(gateway, record.ssh, domain, paths)

                self.registry.record_issuance(domain, email=email, web_root=web_root)
                attempt.advance(IssuanceState.SAVED)
        except Exception as e:
            attempt.fail(e)
            if isinstance(e, ChallengeError):
                logger.warning("  Validation failed, challenge proofs kept for debugging")
            raise

        info = inspect_certificate(bundle.leaf, domain)
        info.paths = paths
        logger.success(f"Certificate issued: {domain} (expires in {info.days_remaining} days)")
        return IssueResult(
            domain=domain,
            paths=paths,
            info=info,
            web_root=web_root,
            remote_dir=remote_dir,
            attempt=attempt,
        )

    def _install_remote(
        self,
        gateway: ExecutionGateway,
        target: RemoteTarget,
        domain: str,
        paths: CertificatePaths,
    ) -> str:
        """Upload the four artifacts to <remote_certs_dir>/<domain>/."""
        logger = get_logger()
        remote_dir = posixpath.join(target.remote_certs_dir, domain)
        remote_paths = CertificatePaths.for_dir(remote_dir, join=posixpath.join)

        logger.info(f"  Installing certificate on {gateway.description}: {remote_dir}")
        gateway.ensure_dir(remote_dir)
        gateway.upload(paths.private_key, remote_paths.private_key, mode=KEY_FILE_MODE)
        gateway.upload(paths.cert, remote_paths.cert, mode=CERT_FILE_MODE)
        gateway.upload(paths.chain, remote_paths.chain, mode=CERT_FILE_MODE)
        gateway.upload(paths.fullchain, remote_paths.fullchain, mode=CERT_FILE_MODE)
        return remote_dir

    def renew(self, domain: str, options: Optional[IssueOptions] = None) -> RenewOutcome:
        """
        Re-issue a certificate when it is due.

        A certificate is due when it is missing or unreadable, or when its
        remaining days are at or below the threshold. ``force`` skips the
        check.
        """
        logger = get_logger()
        options = options or IssueOptions()
        threshold = options.renew_before_days
        if threshold is None:
            threshold = self.config.settings.renew_before_days

        info = None
        if not options.force:
            try:
                info = self.get_info(domain)
            except CertificateNotFound:
                logger.info(f"No certificate found for {domain}, issuing")
            except CertificateError as e:
                logger.warning(f"Stored certificate for {domain} is unreadable, re-issuing: {e}")

            if info is not None and not is_expiring_soon(info.not_after, threshold):
                logger.info(f"{domain}: {info.days_remaining} days remaining, renewal not due")
                return RenewOutcome(
                    domain=domain,
                    renewed=False,
                    reason="not due",
                    days_remaining=info.days_remaining,
                )

        record = self.registry.get_or_blank(domain)
        merged = replace(options, email=options.email or record.email)
        result = self.issue(domain, merged)
        return RenewOutcome(
            domain=domain,
            renewed=True,
            reason="forced" if options.force else "due",
            days_remaining=result.info.days_remaining,
            result=result,
        )

    def get_info(self, domain: str) -> CertificateInfo:
        """
        Raises:
            CertificateNotFound: If no certificate is stored for the domain
            MalformedCertificateBundle: If the stored certificate is unreadable
        """
        info = inspect_certificate(self.store.load_certificate(domain), domain)
        info.paths = self.store.paths(domain)
        return info

    def list_domains(self) -> List[str]:
        """Domains with stored certificates or registry entries, sorted."""
        return sorted(set(self.store.domains()) | set(self.registry.domains()))

    def list_certificates(self) -> List[CertificateInfo]:
        """Readable certificates, soonest expiry first."""
        logger = get_logger()
        infos = []
        for domain in self.list_domains():
            try:
                infos.append(self.get_info(domain))
            except CertificateError as e:
                logger.debug(f"Skipping {domain}: {e}")
        return sorted(infos, key=lambda info: info.days_remaining)
