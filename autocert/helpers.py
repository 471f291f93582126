"""
Common utility functions.

Provides helper functions for expiry calculations, path normalization
and other small shared operations.
"""

import math
import re
import time
from datetime import datetime, timezone
from typing import Optional, Union


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def days_until(
    expires_on: datetime,
    now: Optional[datetime] = None,
) -> int:
    """
    Whole days remaining until expiration, rounded down.

    Args:
        expires_on: Certificate expiration datetime
        now: Reference time (defaults to current UTC time)

    Returns:
        Number of days remaining (negative if expired)
    """
    now = _as_utc(now) if now else datetime.now(timezone.utc)
    delta = _as_utc(expires_on) - now
    return math.floor(delta.total_seconds() / 86400)


def is_expiring_soon(
    expires_on: Optional[datetime],
    threshold_days: int = 30,
    now: Optional[datetime] = None,
) -> bool:
    """
    Check if a certificate is due for renewal.

    A certificate is due when its remaining whole days are at or below
    the threshold. A missing expiry counts as due.

    Args:
        expires_on: Certificate expiration datetime
        threshold_days: Number of days before expiration to consider "soon"
        now: Reference time (defaults to current UTC time)

    Returns:
        True if certificate is expired, unknown or expiring within threshold
    """
    if expires_on is None:
        return True
    return days_until(expires_on, now) <= threshold_days


def format_days_remaining(expires_on: Optional[datetime]) -> Union[int, str]:
    """
    Days remaining until expiration, or "unknown".
    """
    if expires_on is None:
        return "unknown"
    return days_until(expires_on)


def format_expiration_status(
    expires_on: Optional[datetime],
    threshold_days: int = 30,
) -> str:
    """
    Format a human-readable expiration status.

    Args:
        expires_on: Certificate expiration datetime
        threshold_days: Days threshold for "expiring" status

    Returns:
        Formatted status string
    """
    days = format_days_remaining(expires_on)

    if isinstance(days, str):
        return "Unknown expiration"

    if days < 0:
        return f"EXPIRED ({abs(days)} days ago)"
    elif days == 0:
        return "EXPIRES TODAY"
    elif days <= threshold_days:
        return f"EXPIRING in {days} day{'s' if days != 1 else ''}"
    else:
        return f"Valid ({days} days remaining)"


def normalize_web_root(web_root: str) -> str:
    """Strip trailing slashes so joined paths never contain '//'."""
    stripped = web_root.rstrip("/")
    return stripped or "/"


def is_valid_domain(domain: str) -> bool:
    """
    Check that a string is a plausible DNS name (no wildcard, no path).
    """
    if not domain or len(domain) > 253:
        return False
    label = r"[a-zA-Z0-9]([a-zA-Z0-9\-]{0,61}[a-zA-Z0-9])?"
    return re.fullmatch(rf"{label}(\.{label})*", domain) is not None


def epoch_millis() -> int:
    """Current time as integer milliseconds since the epoch."""
    return int(time.time() * 1000)
