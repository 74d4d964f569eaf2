"""
CLOCK - Time helpers shared by the engine and the scheduler

All timestamps in the state store are UTC ISO-8601 strings with a trailing
"Z". Durations for recurring work are written as compact frequency strings:

    "30m"  -> 30 minutes
    "6h"   -> 6 hours
    "1d"   -> 1 day
"""

import re
from datetime import datetime, timedelta, timezone
from typing import Optional, Union

from loguru import logger


DEFAULT_FREQUENCY = "6h"

_FREQUENCY_PATTERN = re.compile(r"^(\d+)(m|h|d)$")
_UNIT_SECONDS = {"m": 60, "h": 3600, "d": 86400}


class FrequencyError(ValueError):
    """Raised when a frequency string cannot be parsed."""


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def to_iso(dt: datetime) -> str:
    """Serialize a datetime the way the state files store it."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def parse_timestamp(value: Union[str, datetime, None]) -> Optional[datetime]:
    """
    Parse a stored timestamp.

    Naive values are assumed to be UTC. Returns None for empty or
    unparseable input so callers can treat "unknown" explicitly.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        try:
            dt = datetime.fromisoformat(str(value).strip().replace("Z", "+00:00"))
        except ValueError:
            logger.warning(f"Unparseable timestamp: {value!r}")
            return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def hours_between(earlier: datetime, later: datetime) -> float:
    return (later - earlier).total_seconds() / 3600


def parse_frequency_strict(frequency: str) -> timedelta:
    """Parse "<int><m|h|d>" or raise FrequencyError."""
    match = _FREQUENCY_PATTERN.match(str(frequency).strip())
    if not match:
        raise FrequencyError(f"Invalid frequency: {frequency!r}")
    value, unit = int(match.group(1)), match.group(2)
    return timedelta(seconds=value * _UNIT_SECONDS[unit])


def parse_frequency(frequency: Optional[str], default: str = DEFAULT_FREQUENCY) -> timedelta:
    """
    Parse a frequency string, failing closed to the default duration.

    A bad frequency never stops the scheduler: it is logged and the
    default (6h unless configured otherwise) is used instead.
    """
    try:
        return parse_frequency_strict(frequency or "")
    except FrequencyError:
        logger.warning(f"Invalid frequency {frequency!r}, falling back to {default}")
        return parse_frequency_strict(default)
