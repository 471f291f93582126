"""
ACME challenge strategies for HTTP-01 and DNS-01 validation.

A strategy publishes the proof for one authorization (prepare) and removes
it again afterwards (cleanup). File proofs go through an ExecutionGateway,
so the same code serves local and remote web roots.
"""

import base64
import hashlib
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Type

from .config_loader import ConfigurationError, SUPPORTED_CHALLENGE_TYPES
from .gateway import ExecutionGateway, TransportError
from .helpers import normalize_web_root
from .logger import get_logger


HTTP_01 = "http-01"
DNS_01 = "dns-01"

ACME_CHALLENGE_PATH = ".well-known/acme-challenge"
DNS_RECORD_PREFIX = "_acme-challenge"
DNS_PROPAGATION_SECONDS = 60


class ChallengeError(Exception):
    """Base error for challenge handling."""
    pass


class ChallengeUnsupported(ChallengeError):
    """Raised when an authorization offers no challenge of the requested type."""
    pass


class ProofWriteFailed(ChallengeError):
    """Raised when a challenge proof cannot be published or verified."""
    pass


class ValidationTimeout(ChallengeError):
    """Raised when the CA does not validate a challenge in time."""
    pass


class ValidationFailed(ChallengeError):
    """Raised when the CA marks a challenge invalid."""
    pass


class UnsupportedProvider(ConfigurationError):
    """Raised when no DNS provider is configured or the name is unknown."""
    pass


@dataclass(frozen=True)
class ChallengeContext:
    """Everything a strategy needs for one authorization round."""
    authorization_id: str
    challenge_type: str
    token: str
    key_authorization: str
    domain: str


class ChallengeStrategy(ABC):
    """Publishes and removes challenge proofs."""

    challenge_type: str = ""

    @abstractmethod
    def prepare(self, context: ChallengeContext) -> str:
        """
        Publish the proof for a challenge.

        Returns:
            Location of the proof (file path or DNS record name)

        Raises:
            ProofWriteFailed: If the proof cannot be published
        """

    @abstractmethod
    def cleanup(self, context: ChallengeContext) -> None:
        """Remove the proof. Never raises."""


class FileChallenge(ChallengeStrategy):
    """
    HTTP-01 strategy: the key authorization is served from
    <web_root>/.well-known/acme-challenge/<token>.
    """

    challenge_type = HTTP_01

    def __init__(
        self,
        gateway: ExecutionGateway,
        web_root: str,
        verify_write: Optional[bool] = None,
    ):
        self.gateway = gateway
        self.web_root = normalize_web_root(web_root)
        # Remote writes are always read back
        self.verify_write = gateway.is_remote or bool(verify_write)

    def challenge_dir(self) -> str:
        return self.gateway.join(self.web_root, ACME_CHALLENGE_PATH)

    def proof_path(self, context: ChallengeContext) -> str:
        return self.gateway.join(self.challenge_dir(), context.token)

    def prepare(self, context: ChallengeContext) -> str:
        logger = get_logger()
        proof_path = self.proof_path(context)

        try:
            self.gateway.ensure_dir(self.challenge_dir())
            self.gateway.write_file(proof_path, context.key_authorization, mode=0o644)

            if self.verify_write:
                if not self.gateway.exists(proof_path):
                    raise ProofWriteFailed(f"Challenge file missing after write: {proof_path}")
                written = self.gateway.read_file(proof_path).decode("utf-8").strip()
                if written != context.key_authorization:
                    raise ProofWriteFailed(f"Challenge file content mismatch: {proof_path}")
        except ProofWriteFailed:
            raise
        except (OSError, TransportError) as e:
            raise ProofWriteFailed(f"Failed to write challenge file {proof_path}: {e}")

        logger.info(f"  Challenge file created: {proof_path} ({self.gateway.description})")
        return proof_path

    def cleanup(self, context: ChallengeContext) -> None:
        logger = get_logger()
        proof_path = self.proof_path(context)
        try:
            self.gateway.remove(proof_path)
            logger.debug(f"  Challenge file removed: {proof_path}")
        except (OSError, TransportError) as e:
            logger.warning(f"  Failed to remove challenge file {proof_path}: {e}")


class DnsProvider(ABC):
    """
    Publishes and removes TXT records with a DNS hosting provider.
    """

    def __init__(self, credentials: Optional[Dict[str, Any]] = None):
        self.credentials = credentials or {}

    @abstractmethod
    def add_record(self, name: str, value: str) -> None:
        """Create a TXT record."""

    @abstractmethod
    def remove_record(self, name: str, value: str) -> None:
        """Delete a TXT record."""


class ManualDnsProvider(DnsProvider):
    """
    Provider for zones updated by an operator or an external hook: the
    record to publish is logged and nothing is called.
    """

    def add_record(self, name: str, value: str) -> None:
        logger = get_logger()
        logger.warning(f"  Publish DNS TXT record manually: {name} = {value}")

    def remove_record(self, name: str, value: str) -> None:
        get_logger().info(f"  DNS TXT record can now be removed: {name}")


_DNS_PROVIDERS: Dict[str, Type[DnsProvider]] = {
    "manual": ManualDnsProvider,
}


def register_dns_provider(name: str, provider_class: Type[DnsProvider]) -> None:
    """Make a DNS provider available under a configuration name."""
    _DNS_PROVIDERS[name.lower().strip()] = provider_class


def get_dns_provider(name: Optional[str], credentials: Optional[Dict[str, Any]] = None) -> DnsProvider:
    """
    Resolve a DNS provider instance by name.

    Raises:
        UnsupportedProvider: If no name is given or the name is unknown
    """
    if not name:
        raise UnsupportedProvider("dns-01 validation requires dns_provider to be configured")

    provider_class = _DNS_PROVIDERS.get(name.lower().strip())
    if provider_class is None:
        raise UnsupportedProvider(
            f"Unsupported DNS provider: {name}. "
            f"Available: {', '.join(sorted(_DNS_PROVIDERS))}"
        )
    return provider_class(credentials)


def dns_record_name(domain: str) -> str:
    return f"{DNS_RECORD_PREFIX}.{domain}"


def dns_record_value(key_authorization: str) -> str:
    """base64url(sha256(key_authorization)) without padding."""
    digest = hashlib.sha256(key_authorization.encode("utf-8")).digest()
    return base64.urlsafe_b64encode(digest).decode("ascii").rstrip("=")


class DnsChallenge(ChallengeStrategy):
    """
    DNS-01 strategy: publishes _acme-challenge.<domain> TXT and waits a
    fixed propagation delay.
    """

    challenge_type = DNS_01

    def __init__(
        self,
        provider: DnsProvider,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.provider = provider
        self.sleep = sleep

    def prepare(self, context: ChallengeContext) -> str:
        logger = get_logger()
        name = dns_record_name(context.domain)
        value = dns_record_value(context.key_authorization)

        logger.info(f"  Adding DNS TXT record: {name}")
        logger.debug(f"  Record value: {value}")
        try:
            self.provider.add_record(name, value)
        except Exception as e:
            raise ProofWriteFailed(f"Failed to add DNS record {name}: {e}")

        logger.info(f"  Waiting {DNS_PROPAGATION_SECONDS}s for DNS propagation...")
        self.sleep(DNS_PROPAGATION_SECONDS)
        return name

    def cleanup(self, context: ChallengeContext) -> None:
        logger = get_logger()
        name = dns_record_name(context.domain)
        try:
            self.provider.remove_record(name, dns_record_value(context.key_authorization))
            logger.debug(f"  DNS TXT record removed: {name}")
        except Exception as e:
            logger.warning(f"  Failed to remove DNS record {name}: {e}")


def build_strategy(
    challenge_type: str,
    gateway: Optional[ExecutionGateway] = None,
    web_root: Optional[str] = None,
    dns_provider: Optional[str] = None,
    dns_credentials: Optional[Dict[str, Any]] = None,
    verify_write: Optional[bool] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> ChallengeStrategy:
    """
    Select the challenge strategy for a challenge type.

    Raises:
        ConfigurationError: If the type is unsupported or its inputs are missing
    """
    if challenge_type == HTTP_01:
        if gateway is None or not web_root:
            raise ConfigurationError("http-01 validation requires a gateway and a web root")
        return FileChallenge(gateway, web_root, verify_write=verify_write)

    if challenge_type == DNS_01:
        return DnsChallenge(get_dns_provider(dns_provider, dns_credentials), sleep=sleep)

    raise ConfigurationError(
        f"Unsupported challenge type: {challenge_type}. "
        f"Must be one of: {', '.join(SUPPORTED_CHALLENGE_TYPES)}"
    )
