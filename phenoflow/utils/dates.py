"""Date utilities for scene search and incremental updates."""
from datetime import date, datetime, timedelta, timezone

from dateutil import parser as date_parser


def parse_date(value):
    """
    Parse YYYY-MM-DD (or a date/datetime) into a date.

    Args:
        value: String, date or datetime

    Returns:
        datetime.date
    """
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return datetime.strptime(value, "%Y-%m-%d").date()


def parse_stac_datetime(value):
    """
    Parse a STAC ``datetime`` property into an aware UTC datetime.

    Fractional seconds and a trailing ``Z`` are accepted.
    """
    parsed = date_parser.isoparse(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def stac_datetime_range(start_date, end_date):
    """Closed STAC datetime interval covering whole days."""
    start = parse_date(start_date).strftime("%Y-%m-%d")
    end = parse_date(end_date).strftime("%Y-%m-%d")
    return f"{start}T00:00:00Z/{end}T23:59:59Z"


def day_of_year(value):
    """Day of year (1-366) for a date or datetime."""
    return parse_date(value).timetuple().tm_yday


def missing_date_ranges(covered_start, covered_end, start_date, end_date):
    """
    Sub-ranges of [start_date, end_date] not inside [covered_start, covered_end].

    Args:
        covered_start: First date already held (or None)
        covered_end: Last date already held (or None)
        start_date: Requested start
        end_date: Requested end

    Returns:
        List of (start, end) YYYY-MM-DD tuples
    """
    start = parse_date(start_date)
    end = parse_date(end_date)
    if covered_start is None or covered_end is None:
        return [(start.isoformat(), end.isoformat())]

    covered_start = parse_date(covered_start)
    covered_end = parse_date(covered_end)
    ranges = []
    if start < covered_start:
        ranges.append((start.isoformat(), min(end, covered_start - timedelta(days=1)).isoformat()))
    if end > covered_end:
        ranges.append((max(start, covered_end + timedelta(days=1)).isoformat(), end.isoformat()))
    return ranges
