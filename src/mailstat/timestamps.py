"""
Every timestamp that enters the cache goes through `normalize`.

Servers send the Date header with an offset most of the time, but not
always. What a naive value means depends on the server, so the caller has
to say it: each server profile carries its `naive_timezone`.
"""
from datetime import date, datetime, timezone, tzinfo
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .errors import ConfigError

# Anything older is a broken Date header, not a real message.
CLEARLY_ERRONEOUS = datetime(1980, 1, 1, tzinfo=timezone.utc)


def zone(name: Optional[str]) -> tzinfo:
    "`UTC` or an IANA name"
    if name is None or name.upper() == "UTC":
        return timezone.utc
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        raise ConfigError(f"unknown time zone {name!r}") from None


def normalize(value: datetime, naive_timezone: tzinfo) -> datetime:
    "Aware UTC instant. A naive `value` is read in `naive_timezone`."
    if value.tzinfo is None or value.tzinfo.utcoffset(value) is None:
        value = value.replace(tzinfo=naive_timezone)
    return value.astimezone(timezone.utc).replace(microsecond=0)


def is_erroneous(value: datetime) -> bool:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value < CLEARLY_ERRONEOUS


def format_utc(value: datetime) -> str:
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def parse_stored(text: str) -> tuple[datetime, bool]:
    """
    Read a cached timestamp. Returns the instant and whether it was stored
    with a zone. Values without one are read as UTC and reported as not
    normalized, so the next sync fetches them again.
    """
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    value = datetime.fromisoformat(text)
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc), False
    return value.astimezone(timezone.utc), True


def utc_today() -> date:
    return datetime.now(timezone.utc).date()
