"""
Calendar-day logic for ledgers.

Canonical rules:
- Work dates are calendar dates (no time component).
- "Today" is the calendar date in the fixed ledger offset (default UTC+05:30),
  not the host's local zone.
- Naive datetimes are assumed UTC.
- Month partitions are addressed by English month name, January..December.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from typing import Any, Iterable, Optional

MONTHS: tuple[str, ...] = (
    "January",
    "February",
    "March",
    "April",
    "May",
    "June",
    "July",
    "August",
    "September",
    "October",
    "November",
    "December",
)

_ISO_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")


def ledger_tz(offset_minutes: int) -> timezone:
    return timezone(timedelta(minutes=int(offset_minutes)))


def to_utc(dt: datetime) -> datetime:
    """Normalize a datetime to tz-aware UTC. Naive datetimes are assumed UTC."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def utc_now() -> datetime:
    return datetime.now(tz=timezone.utc)


def ledger_today(tz: timezone, *, now: Optional[datetime] = None) -> date:
    return to_utc(now or utc_now()).astimezone(tz).date()


def parse_work_date(value: Any, *, tz: timezone) -> date:
    """
    Parse a submitted work date.

    - `date` passes through; `datetime` is reduced to its calendar day in `tz`.
    - 'YYYY-MM-DD' strings are taken literally (no zone shift).
    - Full ISO timestamps are converted to `tz` first.
    """
    if value is None:
        raise ValueError("date is required")
    if isinstance(value, datetime):
        return to_utc(value).astimezone(tz).date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        s = value.strip()
        if not s:
            raise ValueError("date is required")
        if _ISO_DATE_RE.match(s):
            return date.fromisoformat(s)
        if s.endswith("Z") or s.endswith("z"):
            s = s[:-1] + "+00:00"
        try:
            dt = datetime.fromisoformat(s)
        except ValueError as e:
            raise ValueError(f"unparseable date: {value!r}") from e
        return to_utc(dt).astimezone(tz).date()
    raise ValueError(f"unsupported date type: {type(value).__name__}")


def parse_cell_date(cell: Any) -> Optional[date]:
    """Best-effort parse of a ledger date cell; None when it is not a date."""
    if cell is None:
        return None
    if isinstance(cell, date) and not isinstance(cell, datetime):
        return cell
    s = str(cell).strip()
    if not s:
        return None
    if _ISO_DATE_RE.match(s):
        try:
            return date.fromisoformat(s)
        except ValueError:
            return None
    # "2024-06-10T00:00:00..." style cells.
    if len(s) > 10 and _ISO_DATE_RE.match(s[:10]) and s[10] in ("T", " "):
        try:
            return date.fromisoformat(s[:10])
        except ValueError:
            return None
    return None


def is_backdated(work_date: date, *, tz: timezone, now: Optional[datetime] = None) -> bool:
    """True iff the work date is strictly before today in `tz`. Future dates never are."""
    return work_date < ledger_today(tz, now=now)


def month_partition(d: date) -> str:
    return MONTHS[d.month - 1]


@dataclass(frozen=True)
class BusinessCalendar:
    """
    Pluggable business-day predicate.

    Default: Monday-Friday. No built-in holiday calendar; holidays are configured.
    """

    non_business_weekdays: frozenset[int] = field(default_factory=lambda: frozenset({5, 6}))
    holidays: frozenset[date] = field(default_factory=frozenset)

    @classmethod
    def of(cls, *, non_business_weekdays: Iterable[int] = (5, 6), holidays: Iterable[date] = ()) -> "BusinessCalendar":
        return cls(non_business_weekdays=frozenset(non_business_weekdays), holidays=frozenset(holidays))

    def is_business_day(self, d: date) -> bool:
        if d.weekday() in self.non_business_weekdays:
            return False
        return d not in self.holidays

    __call__ = is_business_day
