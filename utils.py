"""
CheckOnMe utility helpers - consolidated

Shared datetime/formatting functions used across checkins.py, notifier.py and app.py.
All instants are stored as ISO-8601 UTC strings with second precision so that
string order equals time order inside the escalation index.
"""

from __future__ import annotations
import datetime as dt
import re
from typing import Optional, Union
from zoneinfo import ZoneInfo

from config import TIMEZONE

LOCAL_TZ = ZoneInfo(TIMEZONE)


# ---- datetime parsing/conversion ----

def now_utc() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


def to_local(d: Optional[dt.datetime]) -> Optional[dt.datetime]:
    """Convert datetime to local timezone."""
    if not d:
        return None
    if d.tzinfo is None:
        d = d.replace(tzinfo=dt.timezone.utc)
    return d.astimezone(LOCAL_TZ)


def to_utc(d: Union[dt.datetime, dt.date, None]) -> Optional[dt.datetime]:
    """
    Convert datetime/date to UTC.
    Naive datetimes are assumed to be in the display timezone.
    """
    if d is None:
        return None

    if isinstance(d, dt.date) and not isinstance(d, dt.datetime):
        d = dt.datetime.combine(d, dt.time.min)

    if d.tzinfo is None:
        d = d.replace(tzinfo=LOCAL_TZ)

    return d.astimezone(dt.timezone.utc)


def iso_utc(d: dt.datetime) -> str:
    """Canonical storage form: UTC, second precision, '+00:00' offset."""
    return to_utc(d).replace(microsecond=0).isoformat()


# ---- human-readable formatting ----

def fmt_local(d: Optional[dt.datetime]) -> str:
    """'Oct 18, 7:30 PM CDT' style timestamp for outbound messages."""
    local = to_local(d)
    if not local:
        return ""
    return local.strftime("%b %d, %I:%M %p %Z").replace(" 0", " ")


def format_phone_number(phone: str) -> str:
    """Normalise to E.164-ish: 10 digits get +1, everything else gets a leading +."""
    cleaned = re.sub(r"\D", "", phone or "")
    if len(cleaned) == 10:
        return f"+1{cleaned}"
    return f"+{cleaned}"
