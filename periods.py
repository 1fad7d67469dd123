from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Iterator

from errors import InvalidRequest


@dataclass(frozen=True)
class TimeRange:
    """Half-open ``[start, end)`` window in unix seconds."""

    start: int
    end: int

    def contains(self, unix_time: int) -> bool:
        return self.start <= unix_time < self.end


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def fixed_offset(utc_offset: int) -> timezone:
    return timezone(timedelta(minutes=utc_offset))


def month_range(year: int, month: int, utc_offset: int) -> TimeRange:
    tz = fixed_offset(utc_offset)
    start = datetime(year, month, 1, tzinfo=tz)
    if month == 12:
        end = datetime(year + 1, 1, 1, tzinfo=tz)
    else:
        end = datetime(year, month + 1, 1, tzinfo=tz)
    return TimeRange(int(start.timestamp()), int(end.timestamp()))


def parse_year_month(value: str) -> tuple[int, int]:
    parts = value.strip().split("-")
    if len(parts) != 2:
        raise InvalidRequest(f"Invalid year-month value: {value!r}")
    try:
        year, month = int(parts[0]), int(parts[1])
    except ValueError as exc:
        raise InvalidRequest(f"Invalid year-month value: {value!r}") from exc
    if year < 1970 or not 1 <= month <= 12:
        raise InvalidRequest(f"Invalid year-month value: {value!r}")
    return year, month


def year_month_key(year: int, month: int) -> int:
    return year * 100 + month


def year_month_of(unix_time: int, utc_offset: int) -> tuple[int, int]:
    local = datetime.fromtimestamp(unix_time, fixed_offset(utc_offset))
    return local.year, local.month


def iter_months(
    start_year: int, start_month: int, end_year: int, end_month: int
) -> Iterator[tuple[int, int]]:
    year, month = start_year, start_month
    while (year, month) <= (end_year, end_month):
        yield year, month
        if month == 12:
            year, month = year + 1, 1
        else:
            month += 1
