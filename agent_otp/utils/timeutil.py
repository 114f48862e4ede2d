"""Time helpers.

All timestamps are stored as naive UTC datetimes so SQLite and PostgreSQL
columns compare the same way.
"""
import math
from datetime import datetime, timedelta, timezone
from typing import Optional, Union


def utcnow() -> datetime:
    """Current UTC time without tzinfo"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def calculate_expires_at(ttl_seconds: int, now: Optional[datetime] = None) -> datetime:
    """Expiry timestamp ``ttl_seconds`` from now"""
    return (now or utcnow()) + timedelta(seconds=ttl_seconds)


def parse_timestamp(value: Union[datetime, str]) -> datetime:
    """Accept a datetime or ISO-8601 string and return naive UTC"""
    if isinstance(value, str):
        value = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def is_expired(expires_at: Union[datetime, str], now: Optional[datetime] = None) -> bool:
    """True once ``expires_at`` is in the past"""
    return parse_timestamp(expires_at) < (now or utcnow())


def seconds_until(expires_at: Union[datetime, str], now: Optional[datetime] = None) -> int:
    """Whole seconds left before expiry, rounded down so a TTL never outlives the record"""
    delta = (parse_timestamp(expires_at) - (now or utcnow())).total_seconds()
    return math.floor(delta)


def to_iso(value: datetime) -> str:
    """Serialize a naive UTC datetime with an explicit Z suffix"""
    return value.isoformat() + "Z"


def clamp_ttl(ttl_seconds: Optional[int], default: int, minimum: int, maximum: int) -> int:
    """Apply the default TTL and clamp it to [minimum, maximum]"""
    if ttl_seconds is None:
        ttl_seconds = default
    return max(minimum, min(maximum, int(ttl_seconds)))
