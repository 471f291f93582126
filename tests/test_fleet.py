"""
Tests for renew_all() and FleetSummary.
"""

import json
from datetime import datetime, timezone
from unittest.mock import MagicMock

import pytest

from autocert.certificate import CertificateInfo, IssueOptions, IssueResult, RenewOutcome
from autocert.fleet import DomainResult, FleetSummary, RenewalStatus, renew_all
from autocert.gateway import TransportError
from autocert.registry import DomainRecord, RemoteTarget


EXPIRY = datetime(2027, 1, 15, tzinfo=timezone.utc)


def _renewed(domain: str) -> RenewOutcome:
    info = CertificateInfo(
        domain=domain,
        subject=domain,
        issuer="Test CA",
        not_before=datetime(2026, 10, 17, tzinfo=timezone.utc),
        not_after=EXPIRY,
        days_remaining=89,
        serial_number="01",
    )
    return RenewOutcome(
        domain=domain,
        renewed=True,
        reason="expires in 10 days",
        days_remaining=89,
        result=IssueResult(domain=domain, paths=None, info=info),
    )


def _manager(outcomes, records=None):
    """A CertificateManager stand-in whose renew() follows a per-domain script."""
    manager = MagicMock()
    manager.config.settings.staging = False
    manager.list_domains.return_value = list(outcomes)
    records = records or {}
    manager.registry.get.side_effect = lambda domain: records.get(domain)

    def renew(domain, options):
        outcome = outcomes[domain]
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    manager.renew.side_effect = renew
    return manager


@pytest.fixture
def notifier():
    notifier = MagicMock()
    notifier.is_enabled.return_value = True
    return notifier


class TestRenewAll:
    """Tests for renew_all()."""

    def test_failure_does_not_stop_the_batch(self, notifier):
        manager = _manager({
            "a.example.com": _renewed("a.example.com"),
            "b.example.com": TransportError("Connection refused"),
            "c.example.com": RenewOutcome("c.example.com", renewed=False, reason="not-due", days_remaining=60),
        })

        summary = renew_all(manager, notifier=notifier)

        assert [r.domain for r in summary.renewed] == ["a.example.com"]
        assert [r.domain for r in summary.skipped] == ["c.example.com"]
        assert [r.domain for r in summary.failed] == ["b.example.com"]
        assert summary.failed[0].message == "TransportError: Connection refused"
        assert summary.skipped[0].message == "Not due (60 days remaining)"
        assert summary.exit_code == 1
        assert manager.renew.call_count == 3

    def test_domains_processed_in_order(self):
        outcomes = {
            d: RenewOutcome(d, renewed=False, reason="not-due", days_remaining=50)
            for d in ("a.com", "b.com", "c.com")
        }
        manager = _manager(outcomes)

        renew_all(manager)

        assert [c.args[0] for c in manager.renew.call_args_list] == ["a.com", "b.com", "c.com"]

    def test_options_passed_to_every_renew(self):
        manager = _manager({"a.com": RenewOutcome("a.com", False, "not-due", 50)})
        options = IssueOptions(force=True, renew_before_days=45)

        renew_all(manager, options)

        manager.renew.assert_called_once_with("a.com", options)

    def test_all_skipped_is_success(self):
        manager = _manager({"a.com": RenewOutcome("a.com", False, "not-due", 50)})

        summary = renew_all(manager)

        assert summary.success
        assert summary.exit_code == 0
        assert summary.total == 1

    def test_empty_registry(self):
        summary = renew_all(_manager({}))
        assert summary.total == 0
        assert summary.success

    def test_listing_failure_is_reported(self):
        manager = MagicMock()
        manager.config.settings.staging = False
        manager.list_domains.side_effect = OSError("permission denied")

        summary = renew_all(manager)

        assert summary.failed[0].domain == "*"
        assert "permission denied" in summary.failed[0].message
        assert summary.exit_code == 1

    def test_notifications(self, notifier):
        records = {"b.example.com": DomainRecord("b.example.com", ssh=RemoteTarget(host="10.0.0.7"))}
        manager = _manager({
            "a.example.com": _renewed("a.example.com"),
            "b.example.com": TransportError("timeout"),
            "c.example.com": RenewOutcome("c.example.com", False, "not-due", 60),
        }, records)

        renew_all(manager, notifier=notifier)

        contexts = [c.args[0] for c in notifier.notify.call_args_list]
        assert [(c.domain, c.status, c.target) for c in contexts] == [
            ("a.example.com", "SUCCESS", "local"),
            ("b.example.com", "FAILED", "10.0.0.7"),
        ]
        assert contexts[0].expiry_date == EXPIRY
        assert contexts[1].failure_reason == "TransportError: timeout"

    def test_disabled_notifier_is_not_called(self, notifier):
        notifier.is_enabled.return_value = False
        renew_all(_manager({"a.com": _renewed("a.com")}), notifier=notifier)
        notifier.notify.assert_not_called()

    def test_staging_from_options(self):
        summary = renew_all(_manager({}), IssueOptions(staging=True))
        assert summary.staging is True


class TestFleetSummary:
    """Tests for FleetSummary serialization."""

    def test_to_dict(self):
        summary = FleetSummary()
        summary.add_result(DomainResult("a.com", RenewalStatus.RENEWED, "Renewed (expires in 3 days)", 89))
        summary.add_result(DomainResult("b.com", RenewalStatus.FAILED, "CertificateError: boom"))
        summary.finalize()

        data = summary.to_dict()

        assert data["task"] == "renew-all"
        assert data["letsencrypt_environment"] == "production"
        assert data["statistics"] == {"total_domains": 2, "renewed": 1, "skipped": 0, "failed": 1}
        assert data["failed"][0] == {
            "domain": "b.com",
            "status": "FAILED",
            "message": "CertificateError: boom",
            "days_remaining": None,
        }
        assert data["success"] is False
        assert data["completed_at"] is not None

    def test_to_json_round_trips(self):
        summary = FleetSummary(staging=True)
        assert json.loads(summary.to_json())["letsencrypt_environment"] == "staging"
