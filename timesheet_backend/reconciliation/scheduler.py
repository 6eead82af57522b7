from __future__ import annotations

import logging
import time
from datetime import datetime, timezone
from typing import Callable, Optional

from timesheet_backend.common.logging import log_event
from timesheet_backend.models import ReconciliationReport
from timesheet_backend.reconciliation.reconciler import RosterReconciler
from timesheet_backend.time.ledger_time import ledger_today, utc_now

logger = logging.getLogger(__name__)


class ReconciliationScheduler:
    """Turns a trigger time into the ledger-local "today" and runs one sweep."""

    def __init__(
        self,
        reconciler: RosterReconciler,
        *,
        tz: timezone,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._reconciler = reconciler
        self._tz = tz
        self._clock = clock

    def run_once(self, now: Optional[datetime] = None) -> ReconciliationReport:
        now = now or self._clock()
        today = ledger_today(self._tz, now=now)
        started = time.monotonic()
        report = self._reconciler.run(today)
        log_event(
            logger,
            "reconcile.run",
            run_date=today.isoformat(),
            triggered_at=now.isoformat(),
            skipped=report.skipped,
            reported_users=len(report),
            duration_ms=int((time.monotonic() - started) * 1000),
        )
        return report
