from datetime import date, datetime
from typing import Optional
from zoneinfo import ZoneInfo

from config import get_settings


def local_today() -> date:
    settings = get_settings()
    tz = ZoneInfo(settings.timezone)
    return datetime.now(tz).date()


def month_key(value: date) -> str:
    return f"{value.year}-{value.month:02d}"


def add_months(value: date, months: int) -> date:
    total_months = value.month - 1 + months
    year = value.year + total_months // 12
    month = total_months % 12 + 1
    return date(year, month, 1)


def upcoming_month_keys(months: int, *, today: Optional[date] = None) -> list[str]:
    today = today or local_today()
    first = today.replace(day=1)
    return [month_key(add_months(first, i)) for i in range(months)]

