from datetime import datetime, time, timedelta, timezone
from typing import List, Protocol
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from polly.utils.datetime_utils import to_utc
from polly.utils.logging import get_logger

logger = get_logger()

ONE_MINUTE = timedelta(minutes=1)


class QuietHoursSettings(Protocol):
    """Anything carrying a quiet-hours window, e.g. NotificationPreferences"""

    quiet_hours_start: time
    quiet_hours_end: time
    timezone: str


def resolve_timezone(name: str) -> ZoneInfo:
    """Return the IANA zone for `name`, falling back to UTC when it is unknown."""
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("Unknown timezone, falling back to UTC", timezone=name)
        return ZoneInfo("UTC")


def _minutes(value: time) -> int:
    return value.hour * 60 + value.minute


def _local(prefs: QuietHoursSettings, instant: datetime) -> datetime:
    return to_utc(instant).astimezone(resolve_timezone(prefs.timezone))


def is_in_quiet_hours(prefs: QuietHoursSettings, instant: datetime) -> bool:
    """
    Check whether `instant` falls inside the user's quiet-hours window.

    The window is compared at minute precision on the user's wall clock.
    A window whose start is after its end wraps midnight, so 22:00-08:00
    covers [22:00, 24:00) and [00:00, 08:00). A zero-length window is
    never quiet.

    Args:
        prefs: Object exposing quiet_hours_start, quiet_hours_end and timezone
        instant: Point in time; naive values are read as UTC

    Returns:
        bool: True when delivery should be held back
    """
    current = _minutes(_local(prefs, instant).time())
    start = _minutes(prefs.quiet_hours_start)
    end = _minutes(prefs.quiet_hours_end)

    if start > end:
        return current >= start or current < end
    return start <= current < end


def _window_end_candidates(
    prefs: QuietHoursSettings, local_now: datetime
) -> List[datetime]:
    """
    UTC instants at which the local wall clock reads the window end.

    Both folds are listed for the current and the next local date, so a
    window end inside a repeated hour yields both of its instants. A wall
    time skipped by a spring-forward shift maps to an instant after the gap.
    """
    zone = local_now.tzinfo
    end = prefs.quiet_hours_end
    end_of_window = time(end.hour, end.minute, 0)

    candidates = []
    for offset in (0, 1):
        day = local_now.date() + timedelta(days=offset)
        for fold in (0, 1):
            local_end = datetime.combine(day, end_of_window, tzinfo=zone).replace(
                fold=fold
            )
            candidates.append(local_end.astimezone(timezone.utc))
    return sorted(set(candidates))


def next_delivery_time(prefs: QuietHoursSettings, instant: datetime) -> datetime:
    """
    Earliest instant at or after `instant` that is outside quiet hours.

    Outside quiet hours the instant is returned unchanged (as aware UTC).
    Inside, the first window end (seconds zeroed) that is later than the
    instant and itself outside quiet hours bounds the search. Comparisons
    happen in UTC, so repeated and skipped local hours around DST shifts are
    ordered correctly. When the clock jumps over the window end, the result
    is the moment of the jump rather than the end re-read after it.
    """
    instant = to_utc(instant)
    if not is_in_quiet_hours(prefs, instant):
        return instant

    local_now = _local(prefs, instant)
    bound = min(
        candidate
        for candidate in _window_end_candidates(prefs, local_now)
        if candidate > instant and not is_in_quiet_hours(prefs, candidate)
    )

    # Quiet at `quiet`, clear at `bound`; both on whole UTC minutes
    quiet = instant.replace(second=0, microsecond=0)
    while bound - quiet > ONE_MINUTE:
        steps = (bound - quiet) // ONE_MINUTE
        midpoint = quiet + ONE_MINUTE * (steps // 2)
        if is_in_quiet_hours(prefs, midpoint):
            quiet = midpoint
        else:
            bound = midpoint
    return bound
