"""
ACME protocol client.

AcmeClient is the contract the certificate orchestrator talks to;
LetsEncryptClient implements it with the ``acme`` library against the Let's
Encrypt production or staging directory.
"""

import os
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

import josepy as jose
import requests
from acme import client as acme_client
from acme import errors as acme_errors
from acme import messages
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

from . import __version__
from .challenges import ValidationFailed, ValidationTimeout
from .config_loader import Config, ConfigurationError
from .logger import get_logger


LETSENCRYPT_PRODUCTION = "https://acme-v02.api.letsencrypt.org/directory"
LETSENCRYPT_STAGING = "https://acme-staging-v02.api.letsencrypt.org/directory"

ACCOUNT_KEY_SIZE = 2048
FINALIZE_TIMEOUT_SECONDS = 180


class AcmeError(Exception):
    """Raised when communication with the ACME server fails."""
    pass


@dataclass
class Challenge:
    """A challenge offered by the CA for one authorization."""
    type: str
    url: str
    token: str
    status: str = "pending"
    raw: Any = None


@dataclass
class Authorization:
    """An authorization of one identifier within an order."""
    url: str
    identifier: str
    status: str
    challenges: List[Challenge] = field(default_factory=list)
    raw: Any = None

    def find_challenge(self, challenge_type: str) -> Optional[Challenge]:
        for challenge in self.challenges:
            if challenge.type == challenge_type:
                return challenge
        return None


@dataclass
class Order:
    """An ACME order and the authorizations it requires."""
    url: Optional[str]
    identifiers: List[str]
    status: str = "pending"
    raw: Any = None


class AcmeClient(ABC):
    """Operations the certificate orchestrator needs from an ACME server."""

    @abstractmethod
    def create_order(self, identifiers: List[str]) -> Order:
        """Open an order for the given DNS identifiers."""

    @abstractmethod
    def get_authorizations(self, order: Order) -> List[Authorization]:
        """Fetch the authorizations of an order."""

    @abstractmethod
    def get_challenge_key_authorization(self, challenge: Challenge) -> str:
        """Key authorization string for a challenge."""

    @abstractmethod
    def complete_challenge(self, challenge: Challenge) -> None:
        """Tell the CA the proof is in place."""

    @abstractmethod
    def wait_for_valid_status(
        self,
        challenge: Challenge,
        retries: int = 15,
        interval: float = 3,
        timeout: float = 120,
    ) -> None:
        """
        Poll a challenge until the CA marks it valid.

        Raises:
            ValidationFailed: If the CA marks the challenge invalid
            ValidationTimeout: If retries or the timeout are exhausted first
        """

    @abstractmethod
    def finalize_order(self, order: Order, csr_pem: bytes) -> Order:
        """Submit the CSR of a ready order."""

    @abstractmethod
    def get_certificate(self, order: Order) -> str:
        """Download the PEM bundle (leaf first) of a finalized order."""


def load_or_create_account_key(path: str) -> rsa.RSAPrivateKey:
    """
    Load the ACME account key, generating and persisting one (mode 0600) on
    first use.
    """
    logger = get_logger()
    key_path = Path(path)
    if key_path.exists():
        logger.debug(f"Using existing account key: {key_path}")
        return serialization.load_pem_private_key(key_path.read_bytes(), password=None)

    logger.info(f"Generating new ACME account key: {key_path}")
    key = rsa.generate_private_key(public_exponent=65537, key_size=ACCOUNT_KEY_SIZE)
    key_path.parent.mkdir(parents=True, exist_ok=True)
    pem = key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )
    fd = os.open(key_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "wb") as f:
        f.write(pem)
    os.chmod(key_path, 0o600)
    return key


def _convert_challenge(challb) -> Challenge:
    return Challenge(
        type=challb.chall.typ,
        url=challb.uri,
        token=challb.chall.encode("token"),
        status=challb.status.name,
        raw=challb,
    )


class LetsEncryptClient(AcmeClient):
    """AcmeClient backed by acme.client.ClientV2."""

    def __init__(
        self,
        email: str,
        account_key_path: str,
        staging: bool = False,
        directory_url: Optional[str] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.email = email
        self.staging = staging
        self.directory_url = directory_url or (LETSENCRYPT_STAGING if staging else LETSENCRYPT_PRODUCTION)
        self.sleep = sleep

        key = load_or_create_account_key(account_key_path)
        self._account_key = jose.JWKRSA(key=key)
        self._client = self._register()

    def _register(self) -> acme_client.ClientV2:
        logger = get_logger()
        env = "staging" if self.staging else "production"
        logger.info(f"Connecting to Let's Encrypt ({env})...")

        try:
            net = acme_client.ClientNetwork(self._account_key, user_agent=f"auto-cert/{__version__}")
            directory = messages.Directory.from_json(net.get(self.directory_url).json())
            client = acme_client.ClientV2(directory, net=net)

            registration = messages.NewRegistration.from_data(
                email=self.email,
                terms_of_service_agreed=True,
            )
            try:
                client.new_account(registration)
                logger.info(f"Registered ACME account for {self.email}")
            except acme_errors.ConflictError as error:
                logger.debug(f"ACME account already exists: {error.location}")
                existing = client.query_registration(messages.RegistrationResource(uri=error.location))
                client.net.account = existing
        except (acme_errors.Error, messages.Error, requests.RequestException) as e:
            raise AcmeError(f"ACME account setup failed: {e}")

        return client

    def create_order(self, identifiers: List[str]) -> Order:
        new_order = messages.NewOrder(identifiers=[
            messages.Identifier(typ=messages.IDENTIFIER_FQDN, value=name) for name in identifiers
        ])
        try:
            response = self._client._post(self._client.directory["newOrder"], new_order)
        except (acme_errors.Error, messages.Error, requests.RequestException) as e:
            raise AcmeError(f"Failed to create order for {', '.join(identifiers)}: {e}")

        body = messages.Order.from_json(response.json())
        orderr = messages.OrderResource(body=body, uri=response.headers.get("Location"))
        return Order(
            url=orderr.uri,
            identifiers=list(identifiers),
            status=body.status.name if body.status else "pending",
            raw=orderr,
        )

    def get_authorizations(self, order: Order) -> List[Authorization]:
        authorizations = []
        resources = []
        for url in order.raw.body.authorizations:
            try:
                authzr = self._client._authzr_from_response(self._client._post_as_get(url), uri=url)
            except (acme_errors.Error, messages.Error, requests.RequestException) as e:
                raise AcmeError(f"Failed to fetch authorization {url}: {e}")
            resources.append(authzr)
            authorizations.append(Authorization(
                url=url,
                identifier=authzr.body.identifier.value,
                status=authzr.body.status.name,
                challenges=[_convert_challenge(c) for c in authzr.body.challenges],
                raw=authzr,
            ))
        order.raw = order.raw.update(authorizations=resources)
        return authorizations

    def get_challenge_key_authorization(self, challenge: Challenge) -> str:
        return challenge.raw.chall.key_authorization(self._account_key)

    def complete_challenge(self, challenge: Challenge) -> None:
        challb = challenge.raw
        try:
            self._client.answer_challenge(challb, challb.chall.response(self._account_key))
        except (acme_errors.Error, messages.Error, requests.RequestException) as e:
            raise AcmeError(f"Failed to answer challenge {challenge.url}: {e}")

    def _challenge_status(self, challenge: Challenge) -> Tuple[str, Optional[str]]:
        response = self._client._post_as_get(challenge.url)
        body = messages.ChallengeBody.from_json(response.json())
        error = str(body.error) if body.error else None
        return body.status.name, error

    def wait_for_valid_status(
        self,
        challenge: Challenge,
        retries: int = 15,
        interval: float = 3,
        timeout: float = 120,
    ) -> None:
        logger = get_logger()
        deadline = time.monotonic() + timeout

        for attempt in range(1, retries + 1):
            try:
                status, error = self._challenge_status(challenge)
            except (acme_errors.Error, messages.Error, requests.RequestException) as e:
                raise AcmeError(f"Failed to poll challenge {challenge.url}: {e}")

            challenge.status = status
            logger.debug(f"  Challenge status ({attempt}/{retries}): {status}")
            if status == "valid":
                return
            if status == "invalid":
                raise ValidationFailed(f"Challenge {challenge.url} is invalid: {error or 'no detail'}")
            if time.monotonic() + interval > deadline:
                break
            self.sleep(interval)

        raise ValidationTimeout(
            f"Challenge {challenge.url} not valid after {retries} attempts / {timeout}s"
        )

    def finalize_order(self, order: Order, csr_pem: bytes) -> Order:
        orderr = order.raw.update(csr_pem=csr_pem)
        deadline = datetime.now() + timedelta(seconds=FINALIZE_TIMEOUT_SECONDS)
        try:
            finalized = self._client.finalize_order(orderr, deadline)
        except acme_errors.TimeoutError:
            raise AcmeError(f"Timed out waiting for order {order.url} to be finalized")
        except (acme_errors.Error, messages.Error, requests.RequestException) as e:
            raise AcmeError(f"Failed to finalize order {order.url}: {e}")

        order.raw = finalized
        order.status = finalized.body.status.name
        return order

    def get_certificate(self, order: Order) -> str:
        fullchain_pem = getattr(order.raw, "fullchain_pem", None)
        if not fullchain_pem:
            raise AcmeError(f"Order {order.url} has no certificate to download")
        return fullchain_pem


class AcmeSession:
    """
    Caches one AcmeClient per (email, staging) pair.

    A session belongs to a single CertificateManager, so account setup
    happens once per run rather than once per domain.
    """

    def __init__(
        self,
        config: Config,
        client_factory: Optional[Callable[..., AcmeClient]] = None,
    ):
        self.config = config
        self.client_factory = client_factory or LetsEncryptClient
        self._clients: Dict[Tuple[str, bool], AcmeClient] = {}

    def get(self, email: Optional[str], staging: bool) -> AcmeClient:
        """
        Return the cached client for a contact and environment, creating it
        on first use.

        Raises:
            ConfigurationError: If no contact email is available
        """
        if not email:
            raise ConfigurationError(
                "An email address is required (use --email, AUTO_CERT_EMAIL or config email)"
            )

        key = (email, staging)
        if key not in self._clients:
            account_key_path = self.config.account_key_path(email, staging=staging)
            self._clients[key] = self.client_factory(
                email=email,
                account_key_path=account_key_path,
                staging=staging,
            )
        return self._clients[key]
