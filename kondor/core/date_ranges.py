"""KONDOR — Rolling Range Resolver.

Date-level (calendar day) helpers aligned to an IANA timezone. "Today" is
always the calendar date of *now* in the brand's timezone; a range that
contains today is still accumulating upstream and is considered open.
"""

from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone as dt_timezone
from typing import Dict, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from kondor.core.errors import QueryValidationError

DEFAULT_TZ = "UTC"

PRESET_DAYS: Dict[str, int] = {
    "today": 1,
    "last_7d": 7,
    "last_14d": 14,
    "last_28d": 28,
    "last_30d": 30,
    "last_90d": 90,
}

COMPARE_MODES = ("previous_period", "previous_year")


@dataclass(frozen=True)
class DateRange:
    """Closed calendar interval [start, end]."""

    start: date
    end: date

    def __post_init__(self):
        if self.start > self.end:
            raise QueryValidationError(
                "dateRange.start must not be after dateRange.end",
                code="INVALID_DATE_RANGE",
                details={"start": self.start.isoformat(), "end": self.end.isoformat()},
            )

    @property
    def days(self) -> int:
        return (self.end - self.start).days + 1

    @classmethod
    def parse(cls, start: str, end: str) -> "DateRange":
        try:
            return cls(date.fromisoformat(str(start)), date.fromisoformat(str(end)))
        except ValueError as e:
            raise QueryValidationError(
                f"Invalid date range: {e}", code="INVALID_DATE_RANGE"
            ) from e

    def to_dict(self) -> Dict[str, str]:
        return {"start": self.start.isoformat(), "end": self.end.isoformat()}

    def __str__(self) -> str:
        return f"{self.start.isoformat()}..{self.end.isoformat()}"


def is_valid_timezone(name: Optional[str]) -> bool:
    if not name:
        return False
    try:
        ZoneInfo(str(name))
        return True
    except (ZoneInfoNotFoundError, ValueError):
        return False


def resolve_timezone(name: Optional[str]) -> str:
    """Return *name* if it is a valid IANA zone, else UTC."""
    return str(name) if is_valid_timezone(name) else DEFAULT_TZ


def today_in(tz_name: Optional[str], now: Optional[datetime] = None) -> date:
    """Calendar date of *now* in *tz_name* (UTC when the zone is invalid)."""
    now = now or datetime.now(dt_timezone.utc)
    if now.tzinfo is None:
        now = now.replace(tzinfo=dt_timezone.utc)
    return now.astimezone(ZoneInfo(resolve_timezone(tz_name))).date()


def build_rolling_range(
    days: int, tz_name: Optional[str] = None, now: Optional[datetime] = None
) -> DateRange:
    """[today - (days - 1), today] in the given timezone."""
    window = max(1, int(days or 1))
    end = today_in(tz_name, now)
    return DateRange(end - timedelta(days=window - 1), end)


def range_touches_today(
    date_range: DateRange, tz_name: Optional[str] = None, now: Optional[datetime] = None
) -> bool:
    today = today_in(tz_name, now)
    return date_range.start <= today <= date_range.end


def resolve_preset(
    preset: str, tz_name: Optional[str] = None, now: Optional[datetime] = None
) -> DateRange:
    """Expand a named preset ("last_7d", "yesterday", ...) in the brand timezone."""
    if preset == "yesterday":
        yesterday = today_in(tz_name, now) - timedelta(days=1)
        return DateRange(yesterday, yesterday)
    if preset not in PRESET_DAYS:
        raise QueryValidationError(
            f"Unknown date preset: {preset}",
            code="INVALID_DATE_RANGE",
            details={"preset": preset, "allowed": ["yesterday", *PRESET_DAYS]},
        )
    return build_rolling_range(PRESET_DAYS[preset], tz_name, now)


def _shift_year(d: date, years: int) -> date:
    try:
        return d.replace(year=d.year + years)
    except ValueError:
        # Feb 29 → Feb 28
        return d.replace(year=d.year + years, day=28)


def build_compare_range(date_range: DateRange, mode: str) -> DateRange:
    """Prior window for a compare-to request.

    previous_period: same length, ending the day before ``start``.
    previous_year: the same calendar days one year earlier.
    """
    if mode == "previous_period":
        prev_end = date_range.start - timedelta(days=1)
        return DateRange(prev_end - timedelta(days=date_range.days - 1), prev_end)
    if mode == "previous_year":
        return DateRange(_shift_year(date_range.start, -1), _shift_year(date_range.end, -1))
    raise QueryValidationError(
        f"Unsupported compare mode: {mode}",
        code="INVALID_COMPARE_MODE",
        details={"allowed": list(COMPARE_MODES)},
    )
