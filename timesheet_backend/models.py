from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import date
from enum import Enum
from typing import Optional

from timesheet_backend.errors import ValidationError
from timesheet_backend.time.ledger_time import month_partition

MAX_ENTRY_HOURS = 24.0
LEDGER_NAME_PREFIX = "Timesheet - "
HEADER_ROW: tuple[str, ...] = ("Date", "Project", "Task", "Hours")


def ledger_name_for(email: str) -> str:
    return f"{LEDGER_NAME_PREFIX}{email}"


@dataclass(frozen=True, slots=True)
class User:
    email: str
    display_name: Optional[str] = None
    disabled: bool = False

    def __post_init__(self) -> None:
        email = (self.email or "").strip()
        if not email:
            raise ValidationError("user email is required")
        object.__setattr__(self, "email", email)
        name = (self.display_name or "").strip()
        object.__setattr__(self, "display_name", name or None)

    @property
    def label(self) -> str:
        return self.display_name or self.email


@dataclass(frozen=True, slots=True)
class Entry:
    """
    Immutable timesheet entry (one ledger row).

    Routed to the partition of `date`'s month, never the month of submission.
    """

    date: date
    project: str
    description: str
    hours: float

    def __post_init__(self) -> None:
        problems = []
        if not isinstance(self.date, date):
            problems.append("date is required")

        project = (self.project or "").strip() if isinstance(self.project, str) else ""
        if not project:
            problems.append("project is required")
        description = (self.description or "").strip() if isinstance(self.description, str) else ""
        if not description:
            problems.append("description is required")

        hours = self.hours
        if isinstance(hours, bool) or not isinstance(hours, (int, float)):
            problems.append("hours must be a number")
        elif math.isnan(float(hours)) or not 0 < float(hours) <= MAX_ENTRY_HOURS:
            problems.append(f"hours must be in (0, {MAX_ENTRY_HOURS:g}]")

        if problems:
            raise ValidationError(problems)

        object.__setattr__(self, "project", project)
        object.__setattr__(self, "description", description)
        object.__setattr__(self, "hours", float(hours))

    @property
    def partition(self) -> str:
        return month_partition(self.date)

    def as_row(self) -> list[object]:
        hours = int(self.hours) if self.hours.is_integer() else self.hours
        return [self.date.isoformat(), self.project, self.description, hours]


@dataclass(frozen=True, slots=True)
class LedgerRef:
    ledger_id: str
    name: str
    created: bool = False


@dataclass(frozen=True, slots=True)
class Ack:
    ledger_id: str
    partition: str
    is_backdated: bool
    alert_sent: bool = False

    def to_dict(self) -> dict[str, object]:
        return {
            "ledger_id": self.ledger_id,
            "partition": self.partition,
            "is_backdated": self.is_backdated,
            "alert_sent": self.alert_sent,
        }


class Status(str, Enum):
    OK = "ok"
    MISSING = "missing"
    INCOMPLETE = "incomplete"


@dataclass(frozen=True, slots=True)
class ReportItem:
    user: User
    status: Status
    hours_logged: Optional[float] = None

    def to_dict(self) -> dict[str, object]:
        out: dict[str, object] = {"email": self.user.email, "status": self.status.value}
        if self.user.display_name:
            out["display_name"] = self.user.display_name
        if self.hours_logged is not None:
            out["hours_logged"] = self.hours_logged
        return out


@dataclass(frozen=True)
class ReconciliationReport:
    """Transient, one per run. Holds only missing/incomplete users, in roster order."""

    run_date: date
    items: tuple[ReportItem, ...] = field(default_factory=tuple)
    skipped: bool = False

    @property
    def missing(self) -> list[ReportItem]:
        return [i for i in self.items if i.status is Status.MISSING]

    @property
    def incomplete(self) -> list[ReportItem]:
        return [i for i in self.items if i.status is Status.INCOMPLETE]

    def __bool__(self) -> bool:
        return bool(self.items)

    def __len__(self) -> int:
        return len(self.items)

    def to_dict(self) -> dict[str, object]:
        return {
            "run_date": self.run_date.isoformat(),
            "skipped": self.skipped,
            "reports": [i.to_dict() for i in self.items],
        }
