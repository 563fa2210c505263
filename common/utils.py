from __future__ import annotations

from typing import Any, Iterator, List, Optional, Sequence, TypeVar
from datetime import date, datetime, time, timezone


T = TypeVar("T")


def parse_iso8601(ts: str) -> datetime:
    """Parse a strict ISO-8601 timestamp with optional 'Z'. Naive values are taken as UTC."""
    if ts.endswith("Z"):
        ts = ts[:-1] + "+00:00"
    dt = datetime.fromisoformat(ts)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def parse_capture_time(value: Any) -> Optional[datetime]:
    """
    Capture timestamps arrive as epoch milliseconds (tiles, Graph API) or ISO strings.
    Returns None for anything unparsable.
    """
    if value is None or isinstance(value, bool):
        return None
    try:
        if isinstance(value, (int, float)):
            return datetime.fromtimestamp(float(value) / 1000.0, tz=timezone.utc)
        s = str(value).strip()
        if not s:
            return None
        if s.lstrip("-").isdigit():
            return datetime.fromtimestamp(int(s) / 1000.0, tz=timezone.utc)
        return parse_iso8601(s)
    except (ValueError, OverflowError, OSError):
        return None


def day_start(d: Any) -> Optional[datetime]:
    """YYYY-MM-DD (or date/datetime) -> 00:00:00 UTC of that day."""
    dd = _as_date(d)
    return None if dd is None else datetime.combine(dd, time.min, tzinfo=timezone.utc)


def day_end(d: Any) -> Optional[datetime]:
    """YYYY-MM-DD (or date/datetime) -> last millisecond of that day, UTC."""
    dd = _as_date(d)
    return None if dd is None else datetime.combine(dd, time(23, 59, 59, 999000), tzinfo=timezone.utc)


def _as_date(d: Any) -> Optional[date]:
    if d is None or d == "":
        return None
    if isinstance(d, datetime):
        return d.date()
    if isinstance(d, date):
        return d
    return date.fromisoformat(str(d).strip()[:10])


def batched(items: Sequence[T], size: int) -> Iterator[List[T]]:
    """Fixed-size partitions of `items`; the last one may be short."""
    if size <= 0:
        raise ValueError("batch size must be > 0")
    for i in range(0, len(items), size):
        yield list(items[i : i + size])


def clamp(v: float, lo: float, hi: float) -> float:
    return float(min(hi, max(lo, v)))
