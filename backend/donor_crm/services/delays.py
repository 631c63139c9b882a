import re
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

# "<integer><unit>" with unit m/h/d, case-insensitive, surrounding whitespace allowed.
DELAY_PATTERN = re.compile(r"^(\d+)\s*([mhd])$", re.IGNORECASE)

_UNIT_SECONDS = {
    "m": 60,
    "h": 60 * 60,
    "d": 24 * 60 * 60,
}

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    """Current time as a naive UTC datetime, the form pymongo hands back from the database."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def parse_delay(value: Any) -> timedelta:
    """
    Parse a node delay such as "10m", "2h" or "3d".
    Anything that does not match the grammar (None, "", "5", "abc", non-strings) is no delay.
    """
    if not value or not isinstance(value, str):
        return timedelta(0)
    match = DELAY_PATTERN.match(value.strip())
    if not match:
        return timedelta(0)
    amount = int(match.group(1))
    unit = match.group(2).lower()
    return timedelta(seconds=amount * _UNIT_SECONDS[unit])


def parse_delay_ms(value: Any) -> int:
    return int(parse_delay(value).total_seconds() * 1000)


def node_delay(node: Any) -> timedelta:
    """Delay configured on a journey node (its data.delay), zero when absent."""
    data = getattr(node, "data", None) or {}
    return parse_delay(data.get("delay"))
