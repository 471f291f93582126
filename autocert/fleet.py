"""
Bulk renewal over every known domain.

Domains are processed one at a time. A failure is recorded against its
domain and never stops the batch.
"""

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from .certificate import CertificateManager, IssueOptions
from .logger import get_logger
from .notification import NotificationContext, NotificationManager


class RenewalStatus(Enum):
    """Outcome of one domain in a bulk renewal."""
    RENEWED = "renewed"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass
class DomainResult:
    """Result of renewing one domain."""
    domain: str
    status: RenewalStatus
    message: str
    days_remaining: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "domain": self.domain,
            "status": self.status.value.upper(),
            "message": self.message,
            "days_remaining": self.days_remaining,
        }


@dataclass
class FleetSummary:
    """Per-domain results of a renew-all run, bucketed by status."""
    started_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    completed_at: Optional[str] = None
    staging: bool = False
    renewed: List[DomainResult] = field(default_factory=list)
    skipped: List[DomainResult] = field(default_factory=list)
    failed: List[DomainResult] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.renewed) + len(self.skipped) + len(self.failed)

    @property
    def success(self) -> bool:
        return not self.failed

    @property
    def exit_code(self) -> int:
        return 0 if self.success else 1

    @property
    def results(self) -> List[DomainResult]:
        return self.renewed + self.skipped + self.failed

    def add_result(self, result: DomainResult) -> None:
        if result.status == RenewalStatus.RENEWED:
            self.renewed.append(result)
        elif result.status == RenewalStatus.SKIPPED:
            self.skipped.append(result)
        else:
            self.failed.append(result)

    def finalize(self) -> None:
        self.completed_at = datetime.now(timezone.utc).isoformat()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "task": "renew-all",
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "letsencrypt_environment": "staging" if self.staging else "production",
            "success": self.success,
            "exit_code": self.exit_code,
            "statistics": {
                "total_domains": self.total,
                "renewed": len(self.renewed),
                "skipped": len(self.skipped),
                "failed": len(self.failed),
            },
            "renewed": [r.to_dict() for r in self.renewed],
            "skipped": [r.to_dict() for r in self.skipped],
            "failed": [r.to_dict() for r in self.failed],
        }

    def to_json(self, indent: int = 2) -> str:
        return json.dumps(self.to_dict(), indent=indent)


def _target_of(manager: CertificateManager, domain: str) -> str:
    record = manager.registry.get(domain)
    if record and record.ssh:
        return record.ssh.host
    return "local"


def _notify(
    notifier: Optional[NotificationManager],
    manager: CertificateManager,
    domain: str,
    status: str,
    expiry_date: Optional[datetime] = None,
    failure_reason: Optional[str] = None,
) -> None:
    if notifier is None or not notifier.is_enabled():
        return
    try:
        target = _target_of(manager, domain)
    except Exception as e:
        get_logger().debug(f"Could not resolve target of {domain}: {e}")
        target = "unknown"
    notifier.notify(NotificationContext(
        domain=domain,
        status=status,
        target=target,
        expiry_date=expiry_date,
        failure_reason=failure_reason,
    ))


def renew_all(
    manager: CertificateManager,
    options: Optional[IssueOptions] = None,
    notifier: Optional[NotificationManager] = None,
) -> FleetSummary:
    """
    Renew every domain known to the manager, strictly in sequence.

    Each domain's renew runs independently: any exception, including
    transport errors for unreachable hosts, is recorded as a failed result
    naming the domain and the batch continues.

    Args:
        manager: CertificateManager used for each domain
        options: Options passed to every renew call
        notifier: Optional notification manager, told about renewed and
            failed domains

    Returns:
        FleetSummary with renewed, skipped and failed buckets
    """
    logger = get_logger()
    options = options or IssueOptions()
    staging = manager.config.settings.staging if options.staging is None else options.staging
    summary = FleetSummary(staging=staging)

    try:
        domains = manager.list_domains()
    except Exception as e:
        logger.error(f"Failed to list domains: {e}")
        summary.failed.append(DomainResult(
            domain="*",
            status=RenewalStatus.FAILED,
            message=f"Failed to list domains: {e}",
        ))
        summary.finalize()
        return summary

    logger.section(f"Renewing {len(domains)} domain(s)")

    for domain in domains:
        try:
            outcome = manager.renew(domain, options)
        except Exception as e:
            message = f"{type(e).__name__}: {e}"
            logger.failure(f"{domain}: {message}")
            summary.add_result(DomainResult(domain, RenewalStatus.FAILED, message))
            _notify(notifier, manager, domain, "FAILED", failure_reason=message)
            continue

        if not outcome.renewed:
            summary.add_result(DomainResult(
                domain,
                RenewalStatus.SKIPPED,
                f"Not due ({outcome.days_remaining} days remaining)",
                outcome.days_remaining,
            ))
            continue

        summary.add_result(DomainResult(
            domain,
            RenewalStatus.RENEWED,
            f"Renewed ({outcome.reason})",
            outcome.days_remaining,
        ))
        expiry = outcome.result.info.not_after if outcome.result else None
        _notify(notifier, manager, domain, "SUCCESS", expiry_date=expiry)

    summary.finalize()
    logger.info(
        f"Renew-all complete: {len(summary.renewed)} renewed, "
        f"{len(summary.skipped)} skipped, {len(summary.failed)} failed"
    )
    return summary
