"""
Clock and deadline utilities.

All deadline arithmetic is done on calendar dates in UTC. The clock is
injectable so scoring and cache-expiry logic can be tested deterministically.
"""

import math
from datetime import date, datetime, timezone
from typing import Callable, Optional

from funding_discovery.core.domain_models import TimelineUrgency


Clock = Callable[[], datetime]


def now_utc() -> datetime:
    """
    Get current datetime in UTC.

    Returns:
        datetime: Current time, timezone-aware
    """
    return datetime.now(timezone.utc)


def ensure_aware(dt: datetime) -> datetime:
    """Assume UTC for naive datetimes."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def days_until(deadline: Optional[date], now: Optional[datetime] = None) -> Optional[int]:
    """
    Whole days from now until the deadline, rounded up.

    A deadline later today counts as 0 days left; yesterday is -1.
    Returns None for rolling (missing) deadlines.
    """
    if deadline is None:
        return None

    now = ensure_aware(now or now_utc())
    if isinstance(deadline, datetime):
        deadline_dt = ensure_aware(deadline)
    else:
        deadline_dt = datetime(deadline.year, deadline.month, deadline.day, tzinfo=timezone.utc)

    delta = (deadline_dt - now).total_seconds() / 86400
    return math.ceil(delta)


def timeline_urgency(days_left: Optional[int]) -> TimelineUrgency:
    """
    Bucket days-to-deadline into an urgency level.

    <0 expired, <=7 critical, <=30 urgent, <=90 moderate, otherwise
    comfortable. Rolling deadlines are comfortable.
    """
    if days_left is None:
        return TimelineUrgency.COMFORTABLE
    if days_left < 0:
        return TimelineUrgency.EXPIRED
    if days_left <= 7:
        return TimelineUrgency.CRITICAL
    if days_left <= 30:
        return TimelineUrgency.URGENT
    if days_left <= 90:
        return TimelineUrgency.MODERATE
    return TimelineUrgency.COMFORTABLE


def age_description(calculated_at: Optional[datetime], now: Optional[datetime] = None) -> str:
    """Human-readable age such as "3 days ago" or "Just now"."""
    if calculated_at is None:
        return "Unknown"

    now = ensure_aware(now or now_utc())
    diff = now - ensure_aware(calculated_at)
    days = diff.days
    hours = diff.seconds // 3600

    if days > 0:
        return f"{days} day{'s' if days > 1 else ''} ago"
    if hours > 0:
        return f"{hours} hour{'s' if hours > 1 else ''} ago"
    return "Just now"
