from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from datetime import date
from typing import Any, Callable, Optional, Sequence

from timesheet_backend.alerts.dispatcher import AlertDispatcher
from timesheet_backend.common.logging import log_event
from timesheet_backend.ledger.locator import LedgerLocator
from timesheet_backend.models import ReconciliationReport, ReportItem, Status, User
from timesheet_backend.stores.base import RosterStore, TabularStore, iter_roster
from timesheet_backend.time.ledger_time import BusinessCalendar, month_partition, parse_cell_date

logger = logging.getLogger(__name__)

READ_RANGE = "A:D"


def parse_hours(cell: Any) -> float:
    """Hours cell -> float. Empty or non-numeric counts as 0."""
    if cell is None or isinstance(cell, bool):
        return 0.0
    if isinstance(cell, (int, float)):
        return float(cell) if cell == cell else 0.0
    s = str(cell).strip()
    if not s:
        return 0.0
    try:
        v = float(s)
    except ValueError:
        return 0.0
    return v if v == v else 0.0


def rows_for_day(rows: Sequence[Sequence[Any]], day: date) -> list[Sequence[Any]]:
    """Rows whose date cell is `day`. The header row never parses as a date."""
    out = []
    for row in rows:
        if not row:
            continue
        if parse_cell_date(row[0]) == day:
            out.append(row)
    return out


class RosterReconciler:
    """
    Daily sweep: every active roster user is classified ok / missing / incomplete
    for `today`, and one batched report goes to the dispatcher.

    Roster failure aborts the run. Any per-user failure degrades that user to
    "missing"; it never aborts the sweep.
    """

    def __init__(
        self,
        roster: RosterStore,
        locator: LedgerLocator,
        tables: TabularStore,
        dispatcher: AlertDispatcher,
        *,
        calendar: Optional[Callable[[date], bool]] = None,
        min_hours: float = 8.0,
        max_workers: int = 4,
    ) -> None:
        self._roster = roster
        self._locator = locator
        self._tables = tables
        self._dispatcher = dispatcher
        self._is_business_day = calendar if calendar is not None else BusinessCalendar()
        self._min_hours = float(min_hours)
        self._max_workers = max(1, int(max_workers))

    def _active_users(self) -> list[User]:
        users = []
        for user in iter_roster(self._roster):
            if user.disabled:
                logger.debug("reconcile: skipping disabled user %s", user.email)
                continue
            users.append(user)
        return users

    def _read_rows(self, user: User, ledger_id: str, today: date) -> list[list[Any]]:
        try:
            return self._tables.read_range(ledger_id, month_partition(today), READ_RANGE)
        except Exception as e:
            logger.warning("reconcile: read failed user=%s ledger_id=%s: %s; counting as no rows", user.email, ledger_id, e)
            return []

    def check_user(self, user: User, today: date) -> ReportItem:
        try:
            ledger = self._locator.locate(user)
        except Exception as e:
            logger.warning("reconcile: ledger lookup failed user=%s: %s; counting as missing", user.email, e)
            return ReportItem(user=user, status=Status.MISSING)
        if ledger is None:
            return ReportItem(user=user, status=Status.MISSING)

        todays = rows_for_day(self._read_rows(user, ledger.ledger_id, today), today)
        if not todays:
            return ReportItem(user=user, status=Status.MISSING)

        total = sum(parse_hours(row[3] if len(row) > 3 else None) for row in todays)
        if total < self._min_hours:
            return ReportItem(user=user, status=Status.INCOMPLETE, hours_logged=total)
        return ReportItem(user=user, status=Status.OK, hours_logged=total)

    def run(self, today: date) -> ReconciliationReport:
        if not self._is_business_day(today):
            log_event(logger, "reconcile.skipped", run_date=today.isoformat(), reason="non_business_day")
            return ReconciliationReport(run_date=today, skipped=True)

        users = self._active_users()
        with ThreadPoolExecutor(max_workers=self._max_workers, thread_name_prefix="reconcile") as pool:
            # map() keeps roster order.
            results = list(pool.map(lambda u: self.check_user(u, today), users))

        items = tuple(r for r in results if r.status is not Status.OK)
        report = ReconciliationReport(run_date=today, items=items)
        delivered = self._dispatcher.send_daily_report(report) if report else False
        log_event(
            logger,
            "reconcile.completed",
            run_date=today.isoformat(),
            users_checked=len(users),
            missing_count=len(report.missing),
            incomplete_count=len(report.incomplete),
            report_delivered=delivered,
        )
        return report
