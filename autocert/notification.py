"""
Notifications for certificate renewal events.

Supported channels:
- Email via the SendGrid API
- Microsoft Teams via an incoming webhook

Sending is best effort: failures are logged and never interrupt a run.
"""

import os
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from html import escape
from typing import List, Optional, TYPE_CHECKING

import requests

from .logger import get_logger

if TYPE_CHECKING:
    from .config_loader import NotificationsConfig, EmailNotificationConfig, TeamsNotificationConfig


SENDGRID_URL = "https://api.sendgrid.com/v3/mail/send"
REQUEST_TIMEOUT = 30


@dataclass
class NotificationContext:
    """Details of one renewal event."""
    domain: str
    status: str  # "SUCCESS" or "FAILED"
    target: str = "local"
    expiry_date: Optional[datetime] = None
    failure_reason: Optional[str] = None

    @property
    def expiry_text(self) -> str:
        if self.expiry_date is None:
            return "N/A"
        return self.expiry_date.strftime("%Y-%m-%d %H:%M UTC")

    @property
    def succeeded(self) -> bool:
        return self.status == "SUCCESS"


class NotificationSender(ABC):
    """Base class for notification channels."""

    @abstractmethod
    def send(self, context: NotificationContext) -> bool:
        """
        Send a notification.

        Returns:
            True if the channel accepted the notification
        """


class SendGridNotifier(NotificationSender):
    """Email notifications through SendGrid."""

    def __init__(self, config: "EmailNotificationConfig"):
        self.config = config
        self.api_key = os.environ.get("SENDGRID_API_KEY", "")
        self.logger = get_logger()

    def render(self, context: NotificationContext) -> str:
        color = "#28a745" if context.succeeded else "#dc3545"
        rows = [
            ("Domain", context.domain),
            ("Target", context.target),
            ("Expiry Date", context.expiry_text),
            ("Status", context.status),
        ]
        if context.failure_reason:
            rows.append(("Failure Reason", context.failure_reason))

        table = "\n".join(
            f'<tr><td style="font-weight:bold;padding:6px">{escape(name)}</td>'
            f'<td style="padding:6px">{escape(value)}</td></tr>'
            for name, value in rows
        )
        return (
            "<!DOCTYPE html><html><body style=\"font-family: Arial, sans-serif\">"
            f'<h2 style="color:{color}">Certificate Renewal {escape(context.status)}</h2>'
            f"<table>{table}</table></body></html>"
        )

    def send(self, context: NotificationContext) -> bool:
        if not self.api_key:
            self.logger.warning("SENDGRID_API_KEY not set, skipping email notification")
            return False
        if not self.config.from_email or not self.config.to_emails:
            self.logger.warning("Email from_email/to_emails not configured, skipping email notification")
            return False

        payload = {
            "personalizations": [{"to": [{"email": email} for email in self.config.to_emails]}],
            "from": {"email": self.config.from_email},
            "subject": f"{context.status}: certificate renewal for {context.domain}",
            "content": [{"type": "text/html", "value": self.render(context)}],
        }

        try:
            response = requests.post(
                SENDGRID_URL,
                json=payload,
                headers={"Authorization": f"Bearer {self.api_key}"},
                timeout=REQUEST_TIMEOUT,
            )
        except requests.RequestException as e:
            self.logger.error(f"Failed to send email notification: {e}")
            return False

        if response.status_code in (200, 202):
            self.logger.info(f"Email notification sent for {context.domain}")
            return True
        self.logger.error(f"SendGrid API error: {response.status_code} - {response.text}")
        return False


class TeamsWebhookNotifier(NotificationSender):
    """Microsoft Teams notifications through an incoming webhook."""

    def __init__(self, config: "TeamsNotificationConfig"):
        self.config = config
        self.logger = get_logger()

    @property
    def webhook_url(self) -> str:
        return self.config.webhook_url or os.environ.get("TEAMS_WEBHOOK_URL", "")

    def render(self, context: NotificationContext) -> dict:
        facts = [
            {"name": "Domain", "value": context.domain},
            {"name": "Target", "value": context.target},
            {"name": "Expiry Date", "value": context.expiry_text},
            {"name": "Status", "value": context.status},
        ]
        if context.failure_reason:
            facts.append({"name": "Failure Reason", "value": context.failure_reason})

        return {
            "@type": "MessageCard",
            "@context": "http://schema.org/extensions",
            "themeColor": "28a745" if context.succeeded else "dc3545",
            "summary": f"Certificate Renewal {context.status}: {context.domain}",
            "sections": [{
                "activityTitle": f"Certificate Renewal {context.status}",
                "facts": facts,
                "markdown": True,
            }],
        }

    def send(self, context: NotificationContext) -> bool:
        webhook_url = self.webhook_url
        if not webhook_url:
            self.logger.warning("Teams webhook URL not configured, skipping Teams notification")
            return False

        try:
            response = requests.post(webhook_url, json=self.render(context), timeout=REQUEST_TIMEOUT)
        except requests.RequestException as e:
            self.logger.error(f"Failed to send Teams notification: {e}")
            return False

        if response.status_code == 200:
            self.logger.info(f"Teams notification sent for {context.domain}")
            return True
        self.logger.error(f"Teams webhook error: {response.status_code} - {response.text}")
        return False


class NotificationManager:
    """
    Fans a notification out to every enabled channel.
    """

    def __init__(self, config: "NotificationsConfig"):
        self.config = config
        self.logger = get_logger()
        self.notifiers: List[NotificationSender] = []

        if config.email.enabled:
            self.notifiers.append(SendGridNotifier(config.email))
            self.logger.debug("Email notifications enabled")
        if config.teams.enabled:
            self.notifiers.append(TeamsWebhookNotifier(config.teams))
            self.logger.debug("Teams notifications enabled")

    def is_enabled(self) -> bool:
        return len(self.notifiers) > 0

    def notify(self, context: NotificationContext) -> None:
        """
        Send through all enabled channels. Never raises.
        """
        for notifier in self.notifiers:
            try:
                notifier.send(context)
            except Exception as e:
                self.logger.error(f"Notification failed ({type(notifier).__name__}): {e}")
