from __future__ import annotations

import logging
from datetime import date
from typing import Any, Optional

from timesheet_backend.common.logging import log_event
from timesheet_backend.models import ReconciliationReport, ReportItem, Status, User
from timesheet_backend.stores.base import NotificationChannel

logger = logging.getLogger(__name__)

BACKDATED_HEADER = "🚨 Past Date Timesheet Submission Alert"
DAILY_REPORT_HEADER = "📊 Daily Timesheet Report"

# Slack caps a message at 50 blocks and a section text at 3000 characters.
MAX_BLOCKS = 50
MAX_SECTION_CHARS = 3000


def _fmt_hours(hours: Optional[float]) -> str:
    if hours is None:
        return "0"
    h = float(hours)
    return str(int(h)) if h.is_integer() else f"{h:g}"


def _header(text: str) -> dict[str, Any]:
    return {"type": "header", "text": {"type": "plain_text", "text": text, "emoji": True}}


def _section(text: str) -> dict[str, Any]:
    return {"type": "section", "text": {"type": "mrkdwn", "text": text}}


def _report_line(item: ReportItem, *, min_hours: float) -> str:
    who = f"*{item.user.email}*"
    if item.user.display_name:
        who = f"*{item.user.display_name}* ({item.user.email})"
    if item.status is Status.MISSING:
        return f"⚠️ {who} has not submitted timesheet for today"
    return (
        f"⚠️ {who} has logged only {_fmt_hours(item.hours_logged)} hours today "
        f"(minimum required: {_fmt_hours(min_hours)} hours)"
    )


def _pack_sections(lines: list[str], *, max_sections: int) -> list[dict[str, Any]]:
    if len(lines) <= max_sections:
        return [_section(line) for line in lines]
    sections: list[dict[str, Any]] = []
    buf = ""
    for line in lines:
        if buf and len(buf) + 1 + len(line) > MAX_SECTION_CHARS:
            sections.append(_section(buf))
            buf = ""
        buf = f"{buf}\n{line}" if buf else line
    if buf:
        sections.append(_section(buf))
    return sections


def build_backdated_alert(*, display_name: str, email: str, work_date: date, submitted_on: date) -> dict[str, Any]:
    return {
        "blocks": [
            _header(BACKDATED_HEADER),
            _section(
                f"• *Employee:* {display_name} ({email})\n"
                f"• *Submitted for Date:* {work_date.isoformat()}\n"
                f"• *Submission Date:* {submitted_on.isoformat()}"
            ),
        ],
        "text": f"Past date timesheet submission by {display_name}",
    }


def ordered_report_items(report: ReconciliationReport) -> list[ReportItem]:
    """Missing first, then incomplete; roster order within each group; one item per user."""
    seen: set[str] = set()
    out: list[ReportItem] = []
    for item in [*report.missing, *report.incomplete]:
        if item.user.email in seen:
            continue
        seen.add(item.user.email)
        out.append(item)
    return out


def build_daily_report(report: ReconciliationReport, *, min_hours: float) -> dict[str, Any]:
    items = ordered_report_items(report)
    lines = [_report_line(i, min_hours=min_hours) for i in items]
    n_missing = sum(1 for i in items if i.status is Status.MISSING)
    n_incomplete = len(items) - n_missing
    return {
        "blocks": [
            _header(DAILY_REPORT_HEADER),
            {"type": "divider"},
            *_pack_sections(lines, max_sections=MAX_BLOCKS - 2),
        ],
        "text": (
            f"Daily Timesheet Report for {report.run_date.isoformat()}: "
            f"{n_missing} missing, {n_incomplete} incomplete"
        ),
    }


class AlertDispatcher:
    """
    Best-effort alert delivery.

    Nothing raised by the channel escapes; the returned bool only says whether the
    message was delivered.
    """

    def __init__(self, channel: NotificationChannel, *, min_daily_hours: float = 8.0) -> None:
        self._channel = channel
        self._min_daily_hours = float(min_daily_hours)

    def _deliver(self, kind: str, message: dict[str, Any], **fields: Any) -> bool:
        try:
            self._channel.post(message)
        except Exception as e:
            log_event(
                logger,
                "alert.failed",
                severity="ERROR",
                message=f"{kind} alert not delivered: {e}",
                alert_kind=kind,
                error_type=type(e).__name__,
                **fields,
            )
            return False
        log_event(logger, "alert.sent", alert_kind=kind, **fields)
        return True

    def send_backdated_alert(self, user: User, display_name: Optional[str], work_date: date, submitted_on: date) -> bool:
        message = build_backdated_alert(
            display_name=(display_name or "").strip() or user.label,
            email=user.email,
            work_date=work_date,
            submitted_on=submitted_on,
        )
        return self._deliver(
            "backdated",
            message,
            user_email=user.email,
            work_date=work_date.isoformat(),
            submitted_on=submitted_on.isoformat(),
        )

    def send_daily_report(self, report: ReconciliationReport) -> bool:
        if not report:
            return False
        message = build_daily_report(report, min_hours=self._min_daily_hours)
        return self._deliver(
            "daily_report",
            message,
            run_date=report.run_date.isoformat(),
            missing_count=len(report.missing),
            incomplete_count=len(report.incomplete),
        )
