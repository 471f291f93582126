"""
Tests for the ACME account key, client session cache, account registration,
orders, authorizations and challenge polling.
"""

import os
import stat
from datetime import datetime
from unittest.mock import MagicMock, patch

import pytest
import requests
from acme import errors as acme_errors
from cryptography.hazmat.primitives.asymmetric import rsa

from autocert.acme_client import (
    LETSENCRYPT_PRODUCTION,
    LETSENCRYPT_STAGING,
    AcmeError,
    AcmeSession,
    Authorization,
    Challenge,
    LetsEncryptClient,
    Order,
    load_or_create_account_key,
)
from autocert.challenges import ValidationFailed, ValidationTimeout
from autocert.config_loader import ConfigurationError


class TestAccountKey:
    """Tests for load_or_create_account_key()."""

    def test_generated_with_owner_only_mode(self, tmp_path):
        path = tmp_path / "accounts" / "admin_example_com_prod.pem"

        key = load_or_create_account_key(str(path))

        assert isinstance(key, rsa.RSAPrivateKey)
        assert stat.S_IMODE(os.stat(path).st_mode) == 0o600

    def test_existing_key_is_reused(self, tmp_path):
        path = str(tmp_path / "account.pem")
        first = load_or_create_account_key(path)
        second = load_or_create_account_key(path)

        assert first.private_numbers() == second.private_numbers()


class TestAcmeSession:
    """Tests for AcmeSession caching."""

    def test_one_client_per_email_and_environment(self, config):
        factory = MagicMock(side_effect=lambda **kwargs: object())
        session = AcmeSession(config, client_factory=factory)

        prod = session.get("admin@example.com", staging=False)
        assert session.get("admin@example.com", staging=False) is prod
        staging = session.get("admin@example.com", staging=True)
        other = session.get("ops@example.com", staging=False)

        assert len({id(prod), id(staging), id(other)}) == 3
        assert factory.call_count == 3

    def test_account_key_path_per_environment(self, config):
        factory = MagicMock()
        AcmeSession(config, client_factory=factory).get("admin@example.com", staging=True)

        kwargs = factory.call_args.kwargs
        assert kwargs["account_key_path"].endswith(os.path.join("accounts", "admin_example_com_staging.pem"))
        assert kwargs["staging"] is True
        assert kwargs["email"] == "admin@example.com"

    @pytest.mark.parametrize("email", [None, ""])
    def test_missing_email(self, config, email):
        with pytest.raises(ConfigurationError, match="email"):
            AcmeSession(config, client_factory=MagicMock()).get(email, staging=False)


class TestModels:
    """Tests for the order and authorization models."""

    def test_find_challenge(self):
        authz = Authorization(
            url="u",
            identifier="example.com",
            status="pending",
            challenges=[Challenge("dns-01", "c1", "t"), Challenge("http-01", "c2", "t")],
        )
        assert authz.find_challenge("http-01").url == "c2"
        assert authz.find_challenge("tls-alpn-01") is None

    def test_order_defaults(self):
        order = Order(url=None, identifiers=["example.com"])
        assert order.status == "pending"


def _client(sleep=None):
    """A LetsEncryptClient with registration skipped and a mock ClientV2."""
    with patch.object(LetsEncryptClient, "_register", return_value=MagicMock()), \
            patch("autocert.acme_client.load_or_create_account_key", return_value=MagicMock()), \
            patch("autocert.acme_client.jose.JWKRSA"):
        return LetsEncryptClient(
            email="admin@example.com",
            account_key_path="unused",
            sleep=sleep or (lambda s: None),
        )


def _polling_client(statuses, sleep=None):
    """A LetsEncryptClient with scripted poll results."""
    client = _client(sleep)
    client._challenge_status = MagicMock(side_effect=statuses)
    return client


class TestLetsEncryptClient:
    """Tests for directory selection and wait_for_valid_status()."""

    def test_directory_urls(self):
        assert _polling_client([]).directory_url == LETSENCRYPT_PRODUCTION
        with patch.object(LetsEncryptClient, "_register"), \
                patch("autocert.acme_client.load_or_create_account_key"), \
                patch("autocert.acme_client.jose.JWKRSA"):
            client = LetsEncryptClient("admin@example.com", "unused", staging=True)
        assert client.directory_url == LETSENCRYPT_STAGING

    def test_valid_after_pending(self):
        slept = []
        client = _polling_client([("pending", None), ("processing", None), ("valid", None)], slept.append)
        challenge = Challenge("http-01", "https://acme.test/chall/1", "tok")

        client.wait_for_valid_status(challenge, retries=15, interval=3, timeout=120)

        assert challenge.status == "valid"
        assert slept == [3, 3]

    def test_invalid_raises_validation_failed(self):
        client = _polling_client([("invalid", "urn:ietf:params:acme:error:unauthorized")])

        with pytest.raises(ValidationFailed, match="unauthorized"):
            client.wait_for_valid_status(Challenge("http-01", "u", "tok"))

    def test_retries_exhausted(self):
        client = _polling_client([("pending", None)] * 4)

        with pytest.raises(ValidationTimeout):
            client.wait_for_valid_status(Challenge("http-01", "u", "tok"), retries=4, interval=0, timeout=120)

        assert client._challenge_status.call_count == 4

    def test_deadline_stops_polling_early(self):
        client = _polling_client([("pending", None)] * 15)

        with pytest.raises(ValidationTimeout):
            client.wait_for_valid_status(Challenge("http-01", "u", "tok"), retries=15, interval=10, timeout=5)

        assert client._challenge_status.call_count == 1

    def test_get_certificate_requires_finalized_order(self):
        client = _polling_client([])
        order = Order(url="o", identifiers=["example.com"], raw=MagicMock(fullchain_pem=None))

        with pytest.raises(AcmeError):
            client.get_certificate(order)


ORDER_URL = "https://acme.test/order/1"
AUTHZ_URL = "https://acme.test/authz/1"
CHALLENGE_URL = "https://acme.test/chall/1"
TOKEN = "A" * 43


def _registering_client(network, client_v2):
    """Build a LetsEncryptClient against a mock network and ClientV2."""
    with patch("autocert.acme_client.load_or_create_account_key", return_value=MagicMock()), \
            patch("autocert.acme_client.jose.JWKRSA"), \
            patch("autocert.acme_client.acme_client.ClientNetwork", return_value=network), \
            patch("autocert.acme_client.messages.Directory.from_json"), \
            patch("autocert.acme_client.acme_client.ClientV2", return_value=client_v2):
        return LetsEncryptClient("admin@example.com", "unused", staging=True)


class TestRegistration:
    """Tests for ACME account registration."""

    def test_new_account(self):
        network, client_v2 = MagicMock(), MagicMock()

        client = _registering_client(network, client_v2)

        assert client._client is client_v2
        network.get.assert_called_once_with(LETSENCRYPT_STAGING)
        registration = client_v2.new_account.call_args.args[0]
        assert registration.contact == ("mailto:admin@example.com",)
        assert registration.terms_of_service_agreed is True
        client_v2.query_registration.assert_not_called()

    def test_existing_account_is_reused(self):
        network, client_v2 = MagicMock(), MagicMock()
        existing = MagicMock()
        client_v2.new_account.side_effect = acme_errors.ConflictError("https://acme.test/acct/7")
        client_v2.query_registration.return_value = existing

        _registering_client(network, client_v2)

        resource = client_v2.query_registration.call_args.args[0]
        assert resource.uri == "https://acme.test/acct/7"
        assert client_v2.net.account is existing

    def test_unreachable_directory(self):
        network = MagicMock()
        network.get.side_effect = requests.ConnectionError("connection refused")

        with pytest.raises(AcmeError, match="account setup failed"):
            _registering_client(network, MagicMock())


class TestOrders:
    """Tests for create_order(), get_authorizations() and finalize_order()."""

    def test_create_order(self):
        client = _client()
        response = MagicMock(headers={"Location": ORDER_URL})
        response.json.return_value = {
            "status": "pending",
            "identifiers": [
                {"type": "dns", "value": "example.com"},
                {"type": "dns", "value": "www.example.com"},
            ],
            "authorizations": [AUTHZ_URL],
            "finalize": "https://acme.test/finalize/1",
        }
        client._client._post.return_value = response

        order = client.create_order(["example.com", "www.example.com"])

        assert order.url == ORDER_URL
        assert order.identifiers == ["example.com", "www.example.com"]
        assert order.status == "pending"
        assert list(order.raw.body.authorizations) == [AUTHZ_URL]
        posted = client._client._post.call_args.args[1]
        assert [i.value for i in posted.identifiers] == ["example.com", "www.example.com"]

    def test_create_order_failure(self):
        client = _client()
        client._client._post.side_effect = requests.ConnectionError("reset")

        with pytest.raises(AcmeError, match="example.com"):
            client.create_order(["example.com"])

    def test_get_authorizations(self):
        client = _client()
        challb = MagicMock(uri=CHALLENGE_URL)
        challb.chall.typ = "http-01"
        challb.chall.encode.return_value = "tok"
        challb.status.name = "pending"
        authzr = MagicMock()
        authzr.body.identifier.value = "example.com"
        authzr.body.status.name = "pending"
        authzr.body.challenges = [challb]
        client._client._authzr_from_response.return_value = authzr
        raw = MagicMock()
        raw.body.authorizations = [AUTHZ_URL]
        order = Order(url=ORDER_URL, identifiers=["example.com"], raw=raw)

        authorizations = client.get_authorizations(order)

        assert authorizations == [Authorization(
            url=AUTHZ_URL,
            identifier="example.com",
            status="pending",
            challenges=[Challenge("http-01", CHALLENGE_URL, "tok", "pending", challb)],
            raw=authzr,
        )]
        client._client._post_as_get.assert_called_once_with(AUTHZ_URL)
        client._client._authzr_from_response.assert_called_once_with(
            client._client._post_as_get.return_value, uri=AUTHZ_URL
        )
        raw.update.assert_called_once_with(authorizations=[authzr])
        assert order.raw is raw.update.return_value

    def test_get_authorizations_failure(self):
        client = _client()
        client._client._post_as_get.side_effect = requests.Timeout("slow")
        raw = MagicMock()
        raw.body.authorizations = [AUTHZ_URL]

        with pytest.raises(AcmeError, match=AUTHZ_URL):
            client.get_authorizations(Order(url=ORDER_URL, identifiers=["example.com"], raw=raw))

    def test_finalize_order(self):
        client = _client()
        raw = MagicMock()
        finalized = MagicMock()
        finalized.body.status.name = "valid"
        client._client.finalize_order.return_value = finalized
        order = Order(url=ORDER_URL, identifiers=["example.com"], raw=raw)

        result = client.finalize_order(order, b"CSR")

        raw.update.assert_called_once_with(csr_pem=b"CSR")
        orderr, deadline = client._client.finalize_order.call_args.args
        assert orderr is raw.update.return_value
        assert isinstance(deadline, datetime)
        assert result is order
        assert order.raw is finalized
        assert order.status == "valid"

    def test_finalize_timeout(self):
        client = _client()
        client._client.finalize_order.side_effect = acme_errors.TimeoutError()

        with pytest.raises(AcmeError, match="Timed out"):
            client.finalize_order(Order(url=ORDER_URL, identifiers=["example.com"], raw=MagicMock()), b"CSR")


class TestChallenges:
    """Tests for complete_challenge() and challenge status lookups."""

    def test_complete_challenge_answers_with_account_key(self):
        client = _client()
        challb = MagicMock()

        client.complete_challenge(Challenge("http-01", CHALLENGE_URL, "tok", raw=challb))

        challb.chall.response.assert_called_once_with(client._account_key)
        client._client.answer_challenge.assert_called_once_with(challb, challb.chall.response.return_value)

    def test_complete_challenge_failure(self):
        client = _client()
        client._client.answer_challenge.side_effect = acme_errors.Error("rejected")

        with pytest.raises(AcmeError, match=CHALLENGE_URL):
            client.complete_challenge(Challenge("http-01", CHALLENGE_URL, "tok", raw=MagicMock()))

    def test_status_of_valid_challenge(self):
        client = _client()
        client._client._post_as_get.return_value.json.return_value = {
            "type": "http-01",
            "url": CHALLENGE_URL,
            "status": "valid",
            "token": TOKEN,
        }

        status, error = client._challenge_status(Challenge("http-01", CHALLENGE_URL, TOKEN))

        assert (status, error) == ("valid", None)
        client._client._post_as_get.assert_called_once_with(CHALLENGE_URL)

    def test_status_of_invalid_challenge_carries_error(self):
        client = _client()
        client._client._post_as_get.return_value.json.return_value = {
            "type": "http-01",
            "url": CHALLENGE_URL,
            "status": "invalid",
            "token": TOKEN,
            "error": {
                "type": "urn:ietf:params:acme:error:unauthorized",
                "detail": "Invalid response from http://example.com",
            },
        }

        status, error = client._challenge_status(Challenge("http-01", CHALLENGE_URL, TOKEN))

        assert status == "invalid"
        assert "Invalid response from http://example.com" in error
