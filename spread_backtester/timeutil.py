from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, time, timezone, timedelta, tzinfo
from typing import Optional, List, Union
import re
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError


_TZ_RE = re.compile(r"^UTC([+-])(\d{1,2})(?::?(\d{2}))?$")
_INTERVAL_RE = re.compile(r"^([MHD])(\d+)$")
_HHMM_RE = re.compile(r"^(\d{1,2}):(\d{2})(?::(\d{2}))?$")

WEEKDAYS = ("MON", "TUE", "WED", "THU", "FRI", "SAT", "SUN")
_UNIT_MINUTES = {"M": 1, "H": 60, "D": 1440}


def parse_tz(tz_str: str) -> tzinfo:
    """'UTC', 'UTC+3', 'UTC+5:30' or an IANA name such as 'Asia/Kolkata'."""
    raw = (tz_str or "UTC").strip()
    up = raw.upper()
    if up == "UTC":
        return timezone.utc
    m = _TZ_RE.match(up)
    if m:
        sign = 1 if m.group(1) == "+" else -1
        hours = int(m.group(2))
        minutes = int(m.group(3) or 0)
        if hours > 14 or minutes >= 60:
            raise ValueError(f"Unsupported timezone offset: {tz_str}")
        return timezone(sign * timedelta(hours=hours, minutes=minutes))
    try:
        return ZoneInfo(raw)
    except (ZoneInfoNotFoundError, ValueError):
        raise ValueError(f"Unsupported timezone format: {tz_str} (use 'UTC', 'UTC+5:30' or an IANA name)")


@dataclass(frozen=True)
class Interval:
    unit: str  # minute | hour | day
    bin_size: int
    minutes: int

    @property
    def ms(self) -> int:
        return self.minutes * 60_000


def parse_interval(spec: str) -> Interval:
    s = str(spec or "").strip().upper()
    m = _INTERVAL_RE.match(s)
    if not m:
        raise ValueError(f'Unsupported interval "{spec}". Use M<n>, H<n>, D<n> (e.g., M5, M30, H1, D1).')
    n = int(m.group(2))
    if n <= 0:
        raise ValueError(f'Invalid interval "{spec}"')
    unit = {"M": "minute", "H": "hour", "D": "day"}[m.group(1)]
    return Interval(unit=unit, bin_size=n, minutes=n * _UNIT_MINUTES[m.group(1)])


def parse_date(s: str) -> date:
    try:
        return datetime.strptime(str(s).strip(), "%Y-%m-%d").date()
    except ValueError:
        raise ValueError(f"Invalid date {s!r}; expected YYYY-MM-DD")


def parse_hhmm(s: Optional[str]) -> time:
    """'HH:mm' or 'HH:mm:ss'. Anything after a comma is ignored; empty means midnight."""
    raw = "" if s is None else str(s)
    t = raw.split(",")[0].strip()
    if not t:
        return time(0, 0)
    m = _HHMM_RE.match(t)
    if not m:
        raise ValueError(f"Invalid time {s!r}; expected HH:mm or HH:mm:ss")
    h, mi, sec = int(m.group(1)), int(m.group(2)), int(m.group(3) or 0)
    if h > 23 or mi > 59 or sec > 59:
        raise ValueError(f"Invalid time {s!r}")
    return time(h, mi, sec)


def local_ms(d: date, t: time, tz: tzinfo) -> int:
    dt = datetime.combine(d, t).replace(tzinfo=tz)
    return int(dt.timestamp() * 1000)


def to_local(ts_ms: int, tz: tzinfo) -> datetime:
    return datetime.fromtimestamp(ts_ms / 1000, tz=timezone.utc).astimezone(tz)


def iso_local(ts_ms: Optional[int], tz: tzinfo) -> Optional[str]:
    if ts_ms is None:
        return None
    return to_local(ts_ms, tz).isoformat(timespec="seconds")


def iso_utc(ts_ms: int) -> str:
    return datetime.fromtimestamp(ts_ms / 1000, tz=timezone.utc).isoformat(timespec="seconds")


def date_key(ts_ms: int, tz: tzinfo) -> str:
    return to_local(ts_ms, tz).strftime("%Y-%m-%d")


def hhmm(ts_ms: int, tz: tzinfo) -> str:
    return to_local(ts_ms, tz).strftime("%H:%M")


def utc_day_start_ms(ts_ms: int) -> int:
    d = datetime.fromtimestamp(ts_ms / 1000, tz=timezone.utc).date()
    return local_ms(d, time(0, 0), timezone.utc)


def parse_ts_ms(value: Union[int, float, str, None]) -> Optional[int]:
    """Epoch seconds/ms/us numbers or ISO-8601 strings to epoch ms (naive ISO means UTC)."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        v = float(value)
        if v != v:
            return None
        # Heuristic on magnitude: seconds, milliseconds, microseconds.
        if v > 1e14:
            return int(v // 1000)
        if v > 1e11:
            return int(v)
        return int(v * 1000)
    s = str(value).strip()
    if not s:
        return None
    if s.lstrip("-").isdigit():
        return parse_ts_ms(int(s))
    try:
        dt = datetime.fromisoformat(s.replace("Z", "+00:00"))
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return int(dt.timestamp() * 1000)


def normalize_weekdays(days: Optional[List[str]]) -> List[str]:
    out: List[str] = []
    for d in days or []:
        key = str(d).strip().upper()[:3]
        if key not in WEEKDAYS:
            raise ValueError(f"Unknown weekday {d!r}; use MON..SUN")
        if key not in out:
            out.append(key)
    return out


@dataclass
class WeekdayFilter:
    days: List[str]
    tz: tzinfo

    def within(self, ts_ms: int) -> bool:
        if not self.days:
            return True
        return WEEKDAYS[to_local(ts_ms, self.tz).weekday()] in self.days


_ISO_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
_LEGACY_EXPIRY_RE = re.compile(r"^(\d{1,2})([A-Za-z]{3})(\d{4})$")
_MONTHS = ("JAN", "FEB", "MAR", "APR", "MAY", "JUN", "JUL", "AUG", "SEP", "OCT", "NOV", "DEC")


def normalize_expiry(expiry: Optional[str]) -> Optional[str]:
    """Canonical YYYY-MM-DD; also accepts the legacy DDMMMYYYY form (08JAN2026)."""
    if not expiry:
        return None
    s = str(expiry).strip()
    if _ISO_DATE_RE.match(s):
        try:
            return parse_date(s).isoformat()
        except ValueError:
            return None
    m = _LEGACY_EXPIRY_RE.match(s)
    if m and m.group(2).upper() in _MONTHS:
        try:
            return date(int(m.group(3)), _MONTHS.index(m.group(2).upper()) + 1, int(m.group(1))).isoformat()
        except ValueError:
            return None
    return None


def is_canonical_expiry(s: object) -> bool:
    return isinstance(s, str) and bool(_ISO_DATE_RE.match(s))
