"""
Departure-time resolution for traffic-aware commute queries.

Google's "best_guess" traffic model needs a concrete future instant. Users
pick a wall-clock label ("08:00"), and we turn it into the next weekday at
that time so estimates always reflect business-day traffic, never a Sunday
morning.
"""

import re
from datetime import datetime, timedelta, timezone, tzinfo
from typing import Optional

from errors import InvalidTimeFormat

TIME_LABEL_RE = re.compile(r"^([01]\d|2[0-3]):([0-5]\d)$")

_SATURDAY = 5
_SUNDAY = 6


def parse_time_label(label: str, field: str = "time") -> tuple:
    """Return (hour, minute) for a 24-hour "HH:MM" label."""
    if not isinstance(label, str):
        raise InvalidTimeFormat(repr(label), field=field)
    match = TIME_LABEL_RE.fullmatch(label)
    if not match:
        raise InvalidTimeFormat(label, field=field)
    return int(match.group(1)), int(match.group(2))


def _is_host_local(instant: datetime) -> bool:
    """True for a fixed-offset instant whose offset is the host zone's."""
    return (
        isinstance(instant.tzinfo, timezone)
        and instant.utcoffset() == instant.astimezone().utcoffset()
    )


def resolve_departure_time(
    label: str,
    now: Optional[datetime] = None,
    tz: Optional[tzinfo] = None,
) -> datetime:
    """Next weekday instant at ``label`` that is strictly after ``now``.

    ``now`` defaults to the current time in ``tz`` (or the host's local zone).
    Day arithmetic keeps the wall-clock time, so a DST change between today
    and the resolved day does not shift 08:00 to 07:00.

    Host-local instants carry a fixed offset (``datetime.astimezone()``), so
    without ``tz`` they are stepped as naive local wall-clock times and
    converted back once the day is chosen.
    """
    hour, minute = parse_time_label(label)
    host_local = False
    if now is None:
        if tz is not None:
            now = datetime.now(tz)
        else:
            now = datetime.now()
            host_local = True
    elif tz is None and _is_host_local(now):
        now = now.astimezone().replace(tzinfo=None)
        host_local = True

    departure = now.replace(hour=hour, minute=minute, second=0, microsecond=0)
    if departure <= now:
        departure += timedelta(days=1)
    while departure.weekday() in (_SATURDAY, _SUNDAY):
        departure += timedelta(days=1)
    if host_local:
        return departure.astimezone()
    return departure


def to_epoch_seconds(instant: datetime) -> int:
    return int(instant.timestamp())
