from __future__ import annotations

import math
from datetime import date, datetime, time, timedelta, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError


def _get_zone(timezone_name: str) -> ZoneInfo:
    try:
        return ZoneInfo(timezone_name)
    except ZoneInfoNotFoundError as exc:
        raise RuntimeError(
            f"Timezone '{timezone_name}' is not available. "
            "Install tzdata in your environment: pip install tzdata"
        ) from exc


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def to_timezone(dt: datetime, timezone_name: str) -> datetime:
    return ensure_utc(dt).astimezone(_get_zone(timezone_name))


def trading_day(dt: datetime, timezone_name: str = "Asia/Kolkata") -> date:
    return to_timezone(dt, timezone_name).date()


def parse_hhmm(value: str) -> time:
    hour_text, minute_text = value.strip().split(":", 1)
    return time(int(hour_text), int(minute_text))


def in_time_window(dt: datetime, start: str, end: str, timezone_name: str) -> bool:
    """Inclusive on both ends at minute resolution (15:15:59 is inside 15:00-15:15)."""
    local = to_timezone(dt, timezone_name)
    current = time(local.hour, local.minute)
    return parse_hhmm(start) <= current <= parse_hhmm(end)


def days_since(start: datetime, now: datetime) -> int:
    elapsed = (ensure_utc(now) - ensure_utc(start)).total_seconds()
    if elapsed <= 0:
        return 0
    return math.ceil(elapsed / 86400.0)


def elapsed_days(start: datetime, now: datetime) -> float:
    return max(0.0, (ensure_utc(now) - ensure_utc(start)).total_seconds() / 86400.0)


def trading_day_bounds(dt: datetime, timezone_name: str) -> tuple[datetime, datetime]:
    """UTC start and end of the local trading day containing ``dt``."""
    zone = _get_zone(timezone_name)
    local_day = trading_day(dt, timezone_name)
    start = datetime.combine(local_day, time(0, 0), tzinfo=zone)
    end = start + timedelta(days=1)
    return start.astimezone(timezone.utc), end.astimezone(timezone.utc)
