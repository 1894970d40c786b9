from dataclasses import dataclass
from datetime import date, datetime
from typing import Optional
from zoneinfo import ZoneInfo

from config import get_settings


@dataclass(frozen=True)
class Period:
    start: date
    end: date

    def contains(self, value: date) -> bool:
        return self.start <= value <= self.end


def local_today() -> date:
    settings = get_settings()
    tz = ZoneInfo(settings.timezone)
    return datetime.now(tz).date()


def month_period(today: date) -> Period:
    first = today.replace(day=1)
    if first.month == 12:
        next_month = first.replace(year=first.year + 1, month=1)
    else:
        next_month = first.replace(month=first.month + 1)
    return Period(first, next_month - date.resolution)


def parse_iso_date(value: Optional[str], field: str) -> Optional[date]:
    if not value:
        return None
    try:
        return date.fromisoformat(value)
    except ValueError as exc:
        raise ValueError(f"{field} must be in YYYY-MM-DD format") from exc


def resolve_range(
    start: Optional[str], end: Optional[str]
) -> tuple[Optional[date], Optional[date]]:
    start_date = parse_iso_date(start, "start_date")
    end_date = parse_iso_date(end, "end_date")
    if start_date and end_date and start_date > end_date:
        raise ValueError("Start date must be before end date")
    return start_date, end_date
