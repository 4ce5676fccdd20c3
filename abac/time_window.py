"""
Time-based access checks for policy rules.

A rule's timeBasedAccess restricts when it can match:
  - validFrom / validUntil: absolute instants
  - allowedDays: lowercase weekday names
  - allowedHours: "HH:MM" intervals, start inclusive, end exclusive

Days and hours are read from the wall clock of the server's local zone, or
of the zone named by the request context's "timezone" attribute.
An interval whose end is before its start wraps past midnight.
"""

from dataclasses import dataclass
from datetime import datetime, timezone, tzinfo
from typing import Optional, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from abac.schemas import WEEKDAYS, TimeBasedAccess
from abac.values import as_aware


@dataclass(frozen=True)
class TimeWindowOutcome:
    satisfied: bool
    reason: Optional[str] = None
    warning: Optional[str] = None


def resolve_timezone(name: Optional[str]) -> Tuple[Optional[tzinfo], Optional[str]]:
    """
    Look up an IANA zone name.

    Returns:
        (tzinfo or None, warning or None); None means server-local time
    """
    if not name:
        return None, None
    if str(name).upper() in ("UTC", "Z"):
        return timezone.utc, None
    try:
        return ZoneInfo(str(name)), None
    except (ZoneInfoNotFoundError, ValueError):
        return None, f"Unknown timezone {name!r}, using server local time"


def local_time(now: datetime, tz: Optional[tzinfo] = None) -> datetime:
    """Wall-clock view of an instant in the evaluation zone."""
    now = as_aware(now)
    return now.astimezone(tz) if tz is not None else now.astimezone()


def weekday_name(moment: datetime) -> str:
    return WEEKDAYS[moment.weekday()]


def _minutes(hhmm: str) -> int:
    hours, minutes = hhmm.strip().split(":")
    hours, minutes = int(hours), int(minutes)
    if not (0 <= hours <= 23 and 0 <= minutes <= 59):
        raise ValueError(hhmm)
    return hours * 60 + minutes


def _in_slot(current: int, start: int, end: int) -> bool:
    if start < end:
        return start <= current < end
    if start > end:
        return current >= start or current < end
    return False


def check_time_window(
    window: Optional[TimeBasedAccess],
    now: datetime,
    tz: Optional[tzinfo] = None
) -> TimeWindowOutcome:
    """
    Decide whether a rule's time restrictions allow evaluation at `now`.

    Args:
        window: the rule's timeBasedAccess (None = unrestricted)
        now: evaluation instant
        tz: zone for day/hour checks (None = server local)

    Returns:
        TimeWindowOutcome
    """
    if window is None:
        return TimeWindowOutcome(True)

    instant = as_aware(now)

    if window.valid_from is not None and instant < as_aware(window.valid_from):
        return TimeWindowOutcome(False, "Policy not yet valid")

    if window.valid_until is not None and instant > as_aware(window.valid_until):
        return TimeWindowOutcome(False, "Policy expired")

    wall = local_time(instant, tz)

    if window.allowed_days:
        allowed_days = {day.lower() for day in window.allowed_days}
        if weekday_name(wall) not in allowed_days:
            return TimeWindowOutcome(False, f"Not allowed on {weekday_name(wall)}")

    if window.allowed_hours:
        current = wall.hour * 60 + wall.minute
        malformed = []
        for slot in window.allowed_hours:
            try:
                if _in_slot(current, _minutes(slot.start), _minutes(slot.end)):
                    return TimeWindowOutcome(True)
            except (ValueError, AttributeError):
                malformed.append(f"{slot.start}-{slot.end}")
        warning = f"Malformed allowedHours: {', '.join(malformed)}" if malformed else None
        return TimeWindowOutcome(False, f"Outside allowed hours at {wall.strftime('%H:%M')}", warning)

    return TimeWindowOutcome(True)
