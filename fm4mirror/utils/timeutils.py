"""
Time helpers: broadcast days (YYYYMMDD ints), millisecond timestamps, naive UTC
"""
import time
from datetime import date, datetime, timedelta, timezone
from zoneinfo import ZoneInfo


def utcnow() -> datetime:
    """Naive UTC now, matching how SQLite DateTime columns round-trip."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def now_ms() -> int:
    return int(time.time() * 1000)


def format_broadcast_day(day: date) -> int:
    return day.year * 10000 + day.month * 100 + day.day


def parse_broadcast_day(broadcast_day: int) -> date:
    return date(broadcast_day // 10000, (broadcast_day % 10000) // 100, broadcast_day % 100)


def today_broadcast_day(tz_name: str, now: datetime = None) -> int:
    now = now or datetime.now(ZoneInfo(tz_name))
    return format_broadcast_day(now.date())


def shift_broadcast_day(broadcast_day: int, days: int) -> int:
    return format_broadcast_day(parse_broadcast_day(broadcast_day) + timedelta(days=days))


def days_between(older_day: int, newer_day: int) -> int:
    return abs((parse_broadcast_day(newer_day) - parse_broadcast_day(older_day)).days)


def ms_to_local(timestamp_ms: int, tz_name: str) -> datetime:
    return datetime.fromtimestamp(timestamp_ms / 1000, tz=ZoneInfo(tz_name))


def naive_utc_to_ms(value: datetime) -> int:
    """Inverse of utcnow(): naive UTC datetime -> epoch milliseconds"""
    return int(value.replace(tzinfo=timezone.utc).timestamp() * 1000)
