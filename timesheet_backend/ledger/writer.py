from __future__ import annotations

import logging
from datetime import date, datetime, timezone
from typing import Callable, Optional

from timesheet_backend.alerts.dedupe import AlertDeduper, InMemoryAlertDeduper, backdated_alert_key
from timesheet_backend.alerts.dispatcher import AlertDispatcher
from timesheet_backend.common.logging import log_event
from timesheet_backend.errors import PartitionNotFoundError, ValidationError
from timesheet_backend.ledger.locator import LedgerLocator
from timesheet_backend.models import Ack, Entry, User
from timesheet_backend.stores.base import TabularStore
from timesheet_backend.time.ledger_time import is_backdated, ledger_today, utc_now

logger = logging.getLogger(__name__)

APPEND_RANGE = "A:D"


class EntryWriter:
    def __init__(
        self,
        locator: LedgerLocator,
        tables: TabularStore,
        dispatcher: AlertDispatcher,
        *,
        tz: timezone,
        clock: Callable[[], datetime] = utc_now,
        deduper: Optional[AlertDeduper] = None,
    ) -> None:
        self._locator = locator
        self._tables = tables
        self._dispatcher = dispatcher
        self._tz = tz
        self._clock = clock
        self._deduper = deduper if deduper is not None else InMemoryAlertDeduper()

    def append(self, user: User, entry: Entry, *, notify: bool = True) -> Ack:
        """
        Append one entry to the user's ledger, in the partition of the entry's month.

        Validation happens before any store call. A back-dated entry raises an
        alert (unless `notify` is False); alert failures never fail the append.
        """
        if not isinstance(user, User):
            raise ValidationError("user is required")
        if not isinstance(entry, Entry):
            raise ValidationError("entry is required")

        ledger = self._locator.locate_or_create(user)
        partition = entry.partition
        row = entry.as_row()
        try:
            self._tables.append_row(ledger.ledger_id, partition, APPEND_RANGE, row)
        except PartitionNotFoundError:
            log_event(
                logger,
                "ledger.partition_missing",
                severity="WARNING",
                ledger_id=ledger.ledger_id,
                partition=partition,
            )
            self._locator.repair(user, ledger)
            self._tables.append_row(ledger.ledger_id, partition, APPEND_RANGE, row)

        now = self._clock()
        backdated = is_backdated(entry.date, tz=self._tz, now=now)
        log_event(
            logger,
            "entry.appended",
            user_email=user.email,
            ledger_id=ledger.ledger_id,
            partition=partition,
            work_date=entry.date.isoformat(),
            hours=entry.hours,
            is_backdated=backdated,
        )

        alert_sent = False
        if backdated and notify:
            alert_sent = self.alert_backdated(user, entry.date, submitted_on=ledger_today(self._tz, now=now))
        return Ack(ledger_id=ledger.ledger_id, partition=partition, is_backdated=backdated, alert_sent=alert_sent)

    def alert_backdated(self, user: User, work_date: date, *, submitted_on: date) -> bool:
        """At most one alert per (user, work date, submission day). Never raises."""
        key = backdated_alert_key(user.email, work_date, submitted_on)
        try:
            if not self._deduper.claim(key):
                return False
            sent = self._dispatcher.send_backdated_alert(user, user.display_name, work_date, submitted_on)
            if not sent:
                # Let a later submission try again.
                self._deduper.release(key)
            return sent
        except Exception as e:
            log_event(
                logger,
                "alert.failed",
                severity="ERROR",
                message=f"back-dated alert failed: {e}",
                user_email=user.email,
                work_date=work_date.isoformat(),
                error_type=type(e).__name__,
            )
            return False
