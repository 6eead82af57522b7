"""
Exposed boundary: entry submission and the daily reconciliation run.

`TimesheetService.from_env()` wires the Google/Firebase/Slack adapters from
environment config + secrets; `build_service()` takes any store implementations
(tests pass in-memory fakes).
"""

from __future__ import annotations

import dataclasses
import logging
from datetime import date as calendar_date
from datetime import datetime
from functools import lru_cache
from typing import Any, Callable, Iterable, List, Mapping, Optional

from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError
from pydantic.config import ConfigDict

from timesheet_backend.alerts.dedupe import (
    AlertDeduper,
    FirestoreAlertDeduper,
    InMemoryAlertDeduper,
    NullAlertDeduper,
)
from timesheet_backend.alerts.dispatcher import AlertDispatcher
from timesheet_backend.common.config import TimesheetConfig
from timesheet_backend.common.logging import log_event
from timesheet_backend.coordination.ledger_latch import InMemoryKeyedLatch, KeyedLatch
from timesheet_backend.coordination.ledger_lease import FirestoreLedgerLease
from timesheet_backend.errors import TimesheetError, ValidationError
from timesheet_backend.ledger.locator import LedgerLocator
from timesheet_backend.ledger.writer import EntryWriter
from timesheet_backend.models import Ack, Entry, ReconciliationReport, User
from timesheet_backend.reconciliation.reconciler import RosterReconciler
from timesheet_backend.reconciliation.scheduler import ReconciliationScheduler
from timesheet_backend.stores.base import NotificationChannel, ResourceStore, RosterStore, TabularStore
from timesheet_backend.time.ledger_time import BusinessCalendar, ledger_tz, ledger_today, parse_work_date, utc_now

logger = logging.getLogger(__name__)


class EntryPayload(BaseModel):
    model_config = ConfigDict(extra="ignore")

    date: str = Field(..., min_length=1, description="Work date, YYYY-MM-DD")
    hours: float
    project: str = Field(..., min_length=1)
    description: str = Field(..., min_length=1)


class SubmitterPayload(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    user_email: str = Field(..., alias="userEmail", min_length=1)
    user_name: Optional[str] = Field(default=None, alias="userName")
    tasks: Optional[List[EntryPayload]] = None


@dataclasses.dataclass(frozen=True)
class SubmitRequest:
    user_email: str
    user_name: Optional[str]
    entries: List[EntryPayload]
    batch: bool


def _pydantic_problems(e: PydanticValidationError, *, prefix: str = "") -> list[str]:
    out = []
    for err in e.errors():
        loc = ".".join(str(p) for p in err.get("loc", ()))
        out.append(f"{prefix}{loc}: {err.get('msg', 'invalid')}" if loc else f"{prefix}{err.get('msg', 'invalid')}")
    return out


def parse_submit_payload(payload: Any) -> SubmitRequest:
    """
    HTTP body -> SubmitRequest.

    Either a single entry (`date`, `hours`, `project`, `description` at top level)
    or a `tasks` list; `userEmail` is always required.
    """
    if not isinstance(payload, Mapping):
        raise ValidationError("request body must be a JSON object")
    problems: list[str] = []
    submitter: Optional[SubmitterPayload] = None
    try:
        submitter = SubmitterPayload.model_validate(payload)
    except PydanticValidationError as e:
        problems.extend(_pydantic_problems(e))

    batch = payload.get("tasks") is not None
    entries: list[EntryPayload] = []
    if not batch:
        try:
            entries.append(EntryPayload.model_validate(payload))
        except PydanticValidationError as e:
            problems.extend(_pydantic_problems(e))
    elif submitter is not None:
        entries = list(submitter.tasks or [])
        if not entries:
            problems.append("tasks: must contain at least one entry")

    if problems or submitter is None:
        raise ValidationError(problems or ["invalid request"])
    return SubmitRequest(
        user_email=submitter.user_email,
        user_name=submitter.user_name,
        entries=entries,
        batch=batch,
    )


class TimesheetService:
    def __init__(
        self,
        *,
        config: TimesheetConfig,
        writer: EntryWriter,
        scheduler: ReconciliationScheduler,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.config = config
        self._writer = writer
        self._scheduler = scheduler
        self._tz = ledger_tz(config.utc_offset_minutes)
        self._clock = clock

    @classmethod
    def from_env(cls) -> "TimesheetService":
        from timesheet_backend.common.secrets import get_slack_webhook_url
        from timesheet_backend.persistence.google_clients import (
            get_authorized_session,
            get_firestore_client,
            get_gspread_client,
            init_firebase_admin,
        )
        from timesheet_backend.stores.drive import DriveResourceStore
        from timesheet_backend.stores.roster import FirebaseRosterStore
        from timesheet_backend.stores.sheets import SheetsTabularStore
        from timesheet_backend.stores.slack import SlackWebhookChannel

        cfg = TimesheetConfig.from_env()
        init_firebase_admin()
        needs_firestore = cfg.lock_backend == "firestore" or cfg.alert_dedupe_backend == "firestore"
        return build_service(
            cfg,
            resources=DriveResourceStore(get_authorized_session(), timeout_s=cfg.http_timeout_s),
            tables=SheetsTabularStore(get_gspread_client()),
            roster=FirebaseRosterStore(),
            channel=SlackWebhookChannel(get_slack_webhook_url(), timeout_s=cfg.http_timeout_s),
            db=get_firestore_client() if needs_firestore else None,
        )

    def _entry(self, *, date: Any, hours: Any, project: Any, description: Any) -> Entry:
        problems: list[str] = []
        work_date: Optional[calendar_date] = None
        try:
            work_date = parse_work_date(date, tz=self._tz)
        except ValueError as e:
            problems.append(f"date: {e}")
        try:
            return Entry(date=work_date, project=project, description=description, hours=hours)  # type: ignore[arg-type]
        except ValidationError as e:
            # Entry reports "date is required" for an unparseable date; keep the parse error instead.
            problems.extend(p for p in e.problems if not (work_date is None and p.startswith("date")))
        raise ValidationError(problems)

    def submit_entry(
        self,
        date: Any,
        hours: Any,
        project: Any,
        description: Any,
        user_email: Any,
        user_name: Optional[str] = None,
    ) -> Ack:
        user = User(email=user_email, display_name=user_name)
        entry = self._entry(date=date, hours=hours, project=project, description=description)
        return self._writer.append(user, entry)

    def submit_entries(
        self,
        user_email: Any,
        user_name: Optional[str],
        entries: Iterable[Mapping[str, Any]],
    ) -> list[Ack]:
        """
        Multi-task day submission. Every entry is validated before anything is
        written; one back-dated alert per distinct work date.
        """
        user = User(email=user_email, display_name=user_name)
        parsed: list[Entry] = []
        problems: list[str] = []
        for i, raw in enumerate(entries):
            try:
                parsed.append(
                    self._entry(
                        date=raw.get("date"),
                        hours=raw.get("hours"),
                        project=raw.get("project"),
                        description=raw.get("description"),
                    )
                )
            except ValidationError as e:
                problems.extend(f"tasks[{i}].{p}" for p in e.problems)
        if problems:
            raise ValidationError(problems)
        if not parsed:
            raise ValidationError("tasks: must contain at least one entry")

        acks = [self._writer.append(user, entry, notify=False) for entry in parsed]

        submitted_on = ledger_today(self._tz, now=self._clock())
        alerted: set[calendar_date] = set()
        for i, (entry, ack) in enumerate(zip(parsed, acks)):
            if not ack.is_backdated or entry.date in alerted:
                continue
            alerted.add(entry.date)
            sent = self._writer.alert_backdated(user, entry.date, submitted_on=submitted_on)
            acks[i] = dataclasses.replace(ack, alert_sent=sent)
        return acks

    def run_daily_reconciliation(self, now: Optional[datetime] = None) -> ReconciliationReport:
        return self._scheduler.run_once(now)



def _build_latches(cfg: TimesheetConfig, db: Any) -> list[KeyedLatch]:
    latches: list[KeyedLatch] = [InMemoryKeyedLatch(ttl_s=cfg.lock_ttl_s)]
    if cfg.lock_backend == "firestore":
        latches.append(FirestoreLedgerLease(db, ttl_s=cfg.lock_ttl_s))
    return latches


def _build_deduper(cfg: TimesheetConfig, db: Any) -> AlertDeduper:
    if cfg.alert_dedupe_backend == "firestore":
        return FirestoreAlertDeduper(db)
    if cfg.alert_dedupe_backend == "none":
        return NullAlertDeduper()
    return InMemoryAlertDeduper()


def build_service(
    cfg: TimesheetConfig,
    *,
    resources: ResourceStore,
    tables: TabularStore,
    roster: RosterStore,
    channel: NotificationChannel,
    db: Any = None,
    clock: Callable[[], datetime] = utc_now,
    lock_wait_timeout_s: float = 60.0,
) -> TimesheetService:
    tz = ledger_tz(cfg.utc_offset_minutes)
    dispatcher = AlertDispatcher(channel, min_daily_hours=cfg.min_daily_hours)
    locator = LedgerLocator(
        resources,
        tables,
        folder_id=cfg.drive_folder_id,
        latches=_build_latches(cfg, db),
        wait_timeout_s=lock_wait_timeout_s,
    )
    writer = EntryWriter(locator, tables, dispatcher, tz=tz, clock=clock, deduper=_build_deduper(cfg, db))
    reconciler = RosterReconciler(
        roster,
        locator,
        tables,
        dispatcher,
        calendar=BusinessCalendar.of(non_business_weekdays=cfg.non_business_weekdays, holidays=cfg.holidays),
        min_hours=cfg.min_daily_hours,
        max_workers=cfg.reconcile_max_workers,
    )
    scheduler = ReconciliationScheduler(reconciler, tz=tz, clock=clock)
    return TimesheetService(config=cfg, writer=writer, scheduler=scheduler, clock=clock)


@lru_cache(maxsize=1)
def get_service() -> TimesheetService:
    return TimesheetService.from_env()


def handle_submit_request(
    method: str,
    payload: Any,
    *,
    service_factory: Callable[[], TimesheetService] = get_service,
) -> tuple[int, dict[str, Any]]:
    """HTTP-shaped submission: returns (status_code, json_body)."""
    if (method or "").upper() != "POST":
        return 405, {"error": f"Method {method} not allowed"}
    try:
        req = parse_submit_payload(payload)
        service = service_factory()
        if req.batch:
            acks = service.submit_entries(req.user_email, req.user_name, [e.model_dump() for e in req.entries])
            return 200, {"success": True, "entries": [a.to_dict() for a in acks]}
        e = req.entries[0]
        ack = service.submit_entry(e.date, e.hours, e.project, e.description, req.user_email, req.user_name)
        return 200, {"success": True, **ack.to_dict()}
    except ValidationError as e:
        log_event(logger, "entry.rejected", severity="WARNING", problems=e.problems)
        return 400, {"error": str(e), "problems": e.problems}
    except TimesheetError as e:
        log_event(
            logger,
            "entry.failed",
            severity="ERROR",
            message=f"timesheet submission failed: {e}",
            error_type=type(e).__name__,
        )
        return 500, {"error": str(e)}


def handle_monitor_request(
    method: str,
    *,
    service_factory: Callable[[], TimesheetService] = get_service,
    now: Optional[datetime] = None,
) -> tuple[int, dict[str, Any]]:
    if (method or "").upper() != "POST":
        return 405, {"error": f"Method {method} not allowed"}
    try:
        report = service_factory().run_daily_reconciliation(now)
    except TimesheetError as e:
        log_event(
            logger,
            "reconcile.failed",
            severity="ERROR",
            message=f"reconciliation failed: {e}",
            error_type=type(e).__name__,
        )
        return 500, {"error": str(e)}
    return 200, {"success": True, **report.to_dict()}
