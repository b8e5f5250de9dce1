from __future__ import annotations
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional
from zoneinfo import ZoneInfo

logger = logging.getLogger(__name__)

MOSCOW_TIMEZONE = "Europe/Moscow"
# Бизнес-таймзона окна поиска: фиксированный UTC+3 без DST
MOSCOW_UTC_OFFSET = timedelta(hours=3)
MOSCOW_TZ_FIXED = timezone(MOSCOW_UTC_OFFSET)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _as_aware(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def to_ozon_iso(dt: datetime) -> str:
    return _as_aware(dt).astimezone(timezone.utc).replace(microsecond=0).isoformat().replace("+00:00", "Z")


def add_moscow_days(source: datetime, days: int) -> datetime:
    local = _as_aware(source).astimezone(MOSCOW_TZ_FIXED)
    return (local + timedelta(days=days)).astimezone(timezone.utc)


def start_of_moscow_day(source: datetime) -> datetime:
    local = _as_aware(source).astimezone(MOSCOW_TZ_FIXED)
    return local.replace(hour=0, minute=0, second=0, microsecond=0).astimezone(timezone.utc)


def end_of_moscow_day(source: datetime) -> datetime:
    local = _as_aware(source).astimezone(MOSCOW_TZ_FIXED)
    return local.replace(hour=23, minute=59, second=59, microsecond=0).astimezone(timezone.utc)


def format_moscow_day(source: datetime) -> str:
    return _as_aware(source).astimezone(MOSCOW_TZ_FIXED).strftime("%Y-%m-%d")


def parse_iso_date(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    s = str(value).strip()
    if not s:
        return None
    if s.endswith("Z") or s.endswith("z"):
        s = s[:-1] + "+00:00"
    try:
        return _as_aware(datetime.fromisoformat(s))
    except ValueError:
        return None


def parse_last_day(value: Optional[str]) -> Optional[datetime]:
    """
    Дедлайн задачи: 'YYYY-MM-DD' или 'dd.mm.yyyy' -> конец этого дня по Москве,
    полная ISO-строка разбирается как есть.
    """
    if not value:
        return None
    s = str(value).strip()
    if not s:
        return None
    if "T" in s:
        return parse_iso_date(s)
    for fmt in ("%Y-%m-%d", "%d.%m.%Y"):
        try:
            day = datetime.strptime(s, fmt)
        except ValueError:
            continue
        return end_of_moscow_day(day.replace(tzinfo=MOSCOW_TZ_FIXED))
    return None


def format_timeslot_range(from_iso: Optional[str], to_iso: Optional[str],
                          tz_name: Optional[str] = None) -> Optional[str]:
    if not from_iso or not to_iso:
        return None
    start = parse_iso_date(from_iso)
    end = parse_iso_date(to_iso)
    if start is None or end is None:
        return f"{from_iso} — {to_iso}"
    try:
        zone = ZoneInfo(tz_name or MOSCOW_TIMEZONE)
    except Exception as e:
        logger.debug("format_timeslot_range: bad timezone %s: %s", tz_name, e)
        return f"{from_iso} — {to_iso}"
    a = start.astimezone(zone).strftime("%d.%m, %H:%M")
    b = end.astimezone(zone).strftime("%d.%m, %H:%M")
    if tz_name:
        return f"{a} — {b} ({tz_name})"
    return f"{a} — {b}"


def describe_timeslot(slot: Optional[dict]) -> Optional[str]:
    if not slot:
        return None
    f = slot.get("from_in_timezone")
    t = slot.get("to_in_timezone")
    if not f or not t:
        return None
    return f"{f} — {t}"
