"""
Pipeline Pulse — Date Ranges
=============================
Parsing and presets for the date windows every dashboard query is scoped to.

The API accepts the combined form "YYYY-MM-DD_YYYY-MM-DD" (dateRange),
a separate startDate/endDate pair, or a single date. All ranges are UTC and
inclusive: the end is pushed to 23:59:59.999999 of its day.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Callable, Dict, Optional

from scripts.lib.data_sync import parse_datetime
from scripts.lib.errors import DateRangeError

DATE_FORMAT = "%Y-%m-%d"
RANGE_SEPARATOR = "_"


@dataclass(frozen=True)
class DateRange:
    start: datetime
    end: datetime

    @property
    def days(self) -> int:
        """Whole days covered, counting both ends."""
        return (self.end.date() - self.start.date()).days + 1

    def contains(self, value: Any) -> bool:
        return in_range(value, self)

    def to_dict(self) -> Dict[str, str]:
        return {"start": self.start.isoformat(), "end": self.end.isoformat()}

    def __str__(self) -> str:
        return format_date_range(self)


def start_of_day(d: date) -> datetime:
    return datetime.combine(d, time.min, tzinfo=timezone.utc)


def end_of_day(d: date) -> datetime:
    return datetime.combine(d, time.max, tzinfo=timezone.utc)


def for_days(start: date, end: date) -> DateRange:
    if start > end:
        raise DateRangeError(
            f"Start date {start} is after end date {end}",
            value=f"{start}{RANGE_SEPARATOR}{end}",
        )
    return DateRange(start_of_day(start), end_of_day(end))


def _parse_day(text: str, raw: str) -> date:
    try:
        return datetime.strptime(text.strip(), DATE_FORMAT).date()
    except (ValueError, AttributeError):
        raise DateRangeError(f"Invalid date '{text}', expected YYYY-MM-DD", value=raw)


def parse_date_range_string(value: str) -> DateRange:
    """Parse "YYYY-MM-DD_YYYY-MM-DD" into an inclusive DateRange."""
    if not value or RANGE_SEPARATOR not in value:
        raise DateRangeError(
            f"Invalid date range '{value}', expected YYYY-MM-DD_YYYY-MM-DD", value=value,
        )
    start_text, _, end_text = value.partition(RANGE_SEPARATOR)
    return for_days(_parse_day(start_text, value), _parse_day(end_text, value))


def format_date_range(date_range: DateRange) -> str:
    return (
        f"{date_range.start.strftime(DATE_FORMAT)}{RANGE_SEPARATOR}"
        f"{date_range.end.strftime(DATE_FORMAT)}"
    )


def resolve_date_range(
    date_range: Optional[str] = None,
    start_date: Optional[str] = None,
    end_date: Optional[str] = None,
    single_date: Optional[str] = None,
    today: Optional[date] = None,
) -> DateRange:
    """
    Pick the range from request params, in order of precedence:
    dateRange (a range string or a preset name), startDate+endDate, date,
    then today.
    """
    if date_range and date_range.strip().lower().replace("-", "_") in PRESETS:
        return get_preset(date_range, today)
    if date_range:
        return parse_date_range_string(date_range)
    if start_date and end_date:
        raw = f"{start_date}{RANGE_SEPARATOR}{end_date}"
        return for_days(_parse_day(start_date[:10], raw), _parse_day(end_date[:10], raw))
    if single_date:
        day = _parse_day(single_date[:10], single_date)
        return for_days(day, day)
    day = today or datetime.now(timezone.utc).date()
    return for_days(day, day)


def previous_period(date_range: DateRange) -> DateRange:
    """The range of equal length ending the day before date_range starts."""
    end = date_range.start.date() - timedelta(days=1)
    start = end - timedelta(days=date_range.days - 1)
    return for_days(start, end)


def in_range(value: Any, date_range: DateRange) -> bool:
    """Inclusive membership test; unparseable values are out of range."""
    parsed = parse_datetime(value)
    if parsed is None:
        return False
    return date_range.start <= parsed <= date_range.end


# ---------------------------------------------------------------------------
# Presets
# ---------------------------------------------------------------------------

def _quarter_start(d: date) -> date:
    return date(d.year, 3 * ((d.month - 1) // 3) + 1, 1)


def _last_month(d: date) -> DateRange:
    last_day = d.replace(day=1) - timedelta(days=1)
    return for_days(last_day.replace(day=1), last_day)


PRESETS: Dict[str, Callable[[date], DateRange]] = {
    "today": lambda d: for_days(d, d),
    "yesterday": lambda d: for_days(d - timedelta(days=1), d - timedelta(days=1)),
    "last_7_days": lambda d: for_days(d - timedelta(days=6), d),
    "last_30_days": lambda d: for_days(d - timedelta(days=29), d),
    "last_90_days": lambda d: for_days(d - timedelta(days=89), d),
    "this_month": lambda d: for_days(d.replace(day=1), d),
    "last_month": _last_month,
    "this_quarter": lambda d: for_days(_quarter_start(d), d),
    "this_year": lambda d: for_days(date(d.year, 1, 1), d),
    "last_year": lambda d: for_days(date(d.year - 1, 1, 1), date(d.year - 1, 12, 31)),
}


def get_preset(name: str, today: Optional[date] = None) -> DateRange:
    key = name.strip().lower().replace("-", "_")
    if key not in PRESETS:
        raise DateRangeError(
            f"Unknown date preset '{name}'. Options: {', '.join(PRESETS)}", value=name,
        )
    return PRESETS[key](today or datetime.now(timezone.utc).date())
