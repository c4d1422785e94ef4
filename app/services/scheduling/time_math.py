"""
Wall-clock and timezone arithmetic for call scheduling.

Everything here is pure: no I/O, no clock reads. Callers pass ``now``
explicitly so the functions are deterministic under test.

Naive datetimes passed as ``now`` are treated as UTC.
"""

import re
from datetime import UTC, date, datetime, time, timedelta
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from app.config import settings

DEFAULT_TIMEZONE = "America/New_York"

# Qualitative call-time buckets offered by the old signup form
LOOSE_TIME_BUCKETS: list[tuple[str, tuple[int, int]]] = [
    ("early", (7, 0)),
    ("mid", (9, 0)),
    ("late", (11, 0)),
]

TWELVE_HOUR_PATTERN = re.compile(r"(\d{1,2})(?::(\d{2}))?\s*(am|pm)", re.IGNORECASE)

# Display labels from the signup form -> IANA zones
TIMEZONE_LABELS: dict[str, str] = {
    "Eastern (ET)": "America/New_York",
    "Central (CT)": "America/Chicago",
    "Mountain (MT)": "America/Denver",
    "Pacific (PT)": "America/Los_Angeles",
    "Alaska (AKT)": "America/Anchorage",
    "Hawaii (HST)": "Pacific/Honolulu",
    "London (GMT)": "Europe/London",
    "Central European (CET)": "Europe/Paris",
    "Gulf (GST)": "Asia/Dubai",
    "India (IST)": "Asia/Kolkata",
    "Singapore (SGT)": "Asia/Singapore",
    "Tokyo (JST)": "Asia/Tokyo",
    "Sydney (AEST)": "Australia/Sydney",
}

_TIMEZONE_LABELS_LOWER = {label.lower(): zone for label, zone in TIMEZONE_LABELS.items()}

# Longest real-world gap is a skipped calendar day (Pacific/Apia, 2011)
_MAX_GAP_MINUTES = 48 * 60


def parse_loose_time(text: str | None) -> tuple[int, int] | None:
    """
    Parse a free-text call time into a 24-hour (hour, minute).

    Recognizes the "early" / "mid" / "late" buckets and explicit
    ``H[:MM] am|pm`` values. Returns None when nothing usable is found;
    the caller decides the default.

    Examples:
        >>> parse_loose_time("Early morning")
        (7, 0)
        >>> parse_loose_time("7:30 pm")
        (19, 30)
        >>> parse_loose_time("12am")
        (0, 0)
    """
    if not isinstance(text, str) or not text.strip():
        return None

    lowered = text.strip().lower()
    for keyword, parsed in LOOSE_TIME_BUCKETS:
        if keyword in lowered:
            return parsed

    match = TWELVE_HOUR_PATTERN.search(lowered)
    if not match:
        return None

    hour = int(match.group(1))
    minute = int(match.group(2)) if match.group(2) else 0
    if not 1 <= hour <= 12 or minute > 59:
        return None

    meridiem = match.group(3).lower()
    if meridiem == "pm" and hour != 12:
        hour += 12
    elif meridiem == "am" and hour == 12:
        hour = 0

    return hour, minute


def _default_timezone() -> str:
    configured = settings.DEFAULT_TIMEZONE
    if configured and _is_known_zone(configured):
        return configured
    return DEFAULT_TIMEZONE


def _is_known_zone(name: str) -> bool:
    try:
        ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError, OSError):
        return False
    return True


def normalize_timezone(label: str | None) -> str:
    """
    Map a stored timezone value to a canonical IANA zone name.

    Valid IANA names pass through unchanged, signup display labels are
    translated, and anything else falls back to the default zone. Never
    raises.
    """
    if not isinstance(label, str):
        return _default_timezone()

    candidate = label.strip()
    if not candidate:
        return _default_timezone()

    if "/" in candidate and _is_known_zone(candidate):
        return candidate

    mapped = TIMEZONE_LABELS.get(candidate) or _TIMEZONE_LABELS_LOWER.get(candidate.lower())
    if mapped:
        return mapped

    return _default_timezone()


def get_zone(label: str | None) -> ZoneInfo:
    """ZoneInfo for a stored timezone value, after normalization."""
    return ZoneInfo(normalize_timezone(label))


def ensure_utc(moment: datetime) -> datetime:
    """Return ``moment`` as an aware UTC datetime."""
    if moment.tzinfo is None:
        return moment.replace(tzinfo=UTC)
    return moment.astimezone(UTC)


def resolve_civil_time(day: date, hour: int, minute: int, zone: ZoneInfo) -> datetime:
    """
    UTC instant of the wall-clock time ``hour:minute`` on ``day`` in ``zone``.

    Ambiguous times (fall back) resolve to the earlier instant. Times that
    do not exist (spring forward) round forward to the first valid instant
    after the gap, i.e. the moment of the transition.
    """
    wall = datetime.combine(day, time(hour, minute))
    local = wall.replace(tzinfo=zone)
    as_utc = local.astimezone(UTC)
    if as_utc.astimezone(zone).replace(tzinfo=None) == wall:
        return as_utc

    # Inside a gap: walk forward from the pre-transition reading until the
    # zone's wall clock reaches or passes the requested time.
    probe = wall.replace(tzinfo=zone, fold=1).astimezone(UTC)
    for _ in range(_MAX_GAP_MINUTES):
        if probe.astimezone(zone).replace(tzinfo=None) >= wall:
            return probe
        probe += timedelta(minutes=1)
    return as_utc


def next_occurrence_utc(hour: int, minute: int, timezone: str | None, now: datetime) -> datetime:
    """
    Next UTC instant strictly after ``now`` at which ``hour:minute`` occurs
    on the wall clock in ``timezone``.

    The UTC offset is resolved for the target calendar date itself, so a
    schedule computed across a DST transition lands on the requested local
    time rather than an hour off.

    Raises:
        ValueError: hour/minute outside 0-23 / 0-59
    """
    if not 0 <= hour <= 23 or not 0 <= minute <= 59:
        raise ValueError(f"Invalid civil time {hour}:{minute}")

    zone = get_zone(timezone)
    now_utc = ensure_utc(now)
    day = now_utc.astimezone(zone).date()

    while True:
        candidate = resolve_civil_time(day, hour, minute, zone)
        if candidate > now_utc:
            return candidate
        day += timedelta(days=1)


def start_of_utc_day(now: datetime) -> datetime:
    now_utc = ensure_utc(now)
    return now_utc.replace(hour=0, minute=0, second=0, microsecond=0)


def utc_today(now: datetime) -> date:
    """Calendar date used for the once-per-day call marker."""
    return ensure_utc(now).date()


def due_window(now: datetime, lookahead_minutes: int | None = None) -> tuple[datetime, datetime]:
    """
    Window of scheduled instants that count as due right now:
    [start of today UTC, now + lookahead].
    """
    if lookahead_minutes is None:
        lookahead_minutes = settings.DUE_WINDOW_LOOKAHEAD_MINUTES
    now_utc = ensure_utc(now)
    return start_of_utc_day(now_utc), now_utc + timedelta(minutes=lookahead_minutes)


def local_cutoff_utc(now: datetime, timezone: str | None, cutoff_hour: int) -> datetime:
    """UTC instant of ``cutoff_hour:00`` on the customer's local date of ``now``."""
    zone = get_zone(timezone)
    local_day = ensure_utc(now).astimezone(zone).date()
    return resolve_civil_time(local_day, cutoff_hour, 0, zone)


def local_part_of_day(now: datetime, timezone: str | None) -> str:
    """Part of the day on the customer's wall clock."""
    local_hour = ensure_utc(now).astimezone(get_zone(timezone)).hour
    if 5 <= local_hour < 12:
        return "morning"
    if 12 <= local_hour < 17:
        return "afternoon"
    if 17 <= local_hour < 21:
        return "evening"
    return "night"
