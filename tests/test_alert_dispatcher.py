from __future__ import annotations

from datetime import date

import requests

from timesheet_backend.alerts.dispatcher import (
    BACKDATED_HEADER,
    DAILY_REPORT_HEADER,
    AlertDispatcher,
    build_daily_report,
)
from timesheet_backend.errors import ConfigurationError
from timesheet_backend.models import ReconciliationReport, ReportItem, Status, User
from timesheet_backend.stores.slack import SlackWebhookChannel
from tests.fakes import RecordingChannel


def _report(*items: ReportItem) -> ReconciliationReport:
    return ReconciliationReport(run_date=date(2024, 6, 10), items=tuple(items))


def _sections(message: dict) -> list[str]:
    return [b["text"]["text"] for b in message["blocks"] if b["type"] == "section"]


def test_daily_report_lists_missing_before_incomplete_once_each() -> None:
    a = User(email="a@x.com")
    b = User(email="b@x.com")
    c = User(email="c@x.com")
    report = _report(
        ReportItem(a, Status.INCOMPLETE, 7.5),
        ReportItem(b, Status.MISSING),
        ReportItem(c, Status.INCOMPLETE, 2),
        ReportItem(b, Status.MISSING),
    )
    channel = RecordingChannel()

    assert AlertDispatcher(channel).send_daily_report(report) is True

    msg = channel.messages[0]
    assert msg["blocks"][0]["text"]["text"] == DAILY_REPORT_HEADER
    assert msg["blocks"][1] == {"type": "divider"}
    lines = _sections(msg)
    assert len(lines) == 3
    assert "b@x.com" in lines[0] and "has not submitted timesheet for today" in lines[0]
    assert "a@x.com" in lines[1] and "7.5 hours" in lines[1]
    assert "c@x.com" in lines[2] and "only 2 hours" in lines[2]
    assert msg["text"] == "Daily Timesheet Report for 2024-06-10: 1 missing, 2 incomplete"


def test_threshold_in_message_follows_configuration() -> None:
    channel = RecordingChannel()
    AlertDispatcher(channel, min_daily_hours=6).send_daily_report(_report(ReportItem(User(email="a@x.com"), Status.INCOMPLETE, 1)))
    assert "(minimum required: 6 hours)" in _sections(channel.messages[0])[0]


def test_empty_report_is_not_sent() -> None:
    channel = RecordingChannel()
    assert AlertDispatcher(channel).send_daily_report(_report()) is False
    assert channel.messages == []


def test_large_reports_stay_within_block_limit() -> None:
    items = [ReportItem(User(email=f"user{i}@x.com"), Status.MISSING) for i in range(120)]
    msg = build_daily_report(_report(*items), min_hours=8)

    assert len(msg["blocks"]) <= 50
    text = "\n".join(_sections(msg))
    assert all(f"user{i}@x.com" in text for i in range(120))
    assert all(len(s) <= 3000 for s in _sections(msg))


def test_backdated_alert_message() -> None:
    channel = RecordingChannel()
    user = User(email="a@x.com", display_name="Ann")

    assert AlertDispatcher(channel).send_backdated_alert(user, "Ann", date(2024, 6, 9), date(2024, 6, 10)) is True

    msg = channel.messages[0]
    assert msg["blocks"][0]["text"]["text"] == BACKDATED_HEADER
    assert _sections(msg) == [
        "• *Employee:* Ann (a@x.com)\n• *Submitted for Date:* 2024-06-09\n• *Submission Date:* 2024-06-10"
    ]
    assert msg["text"] == "Past date timesheet submission by Ann"


def test_backdated_alert_falls_back_to_email_without_name() -> None:
    channel = RecordingChannel()
    AlertDispatcher(channel).send_backdated_alert(User(email="a@x.com"), None, date(2024, 6, 9), date(2024, 6, 10))
    assert "a@x.com (a@x.com)" in _sections(channel.messages[0])[0]


def test_channel_errors_are_swallowed() -> None:
    for exc in (ConfigurationError("SLACK_WEBHOOK_URL is not set"), requests.ConnectionError("down"), RuntimeError("x")):
        channel = RecordingChannel(fail=exc)
        d = AlertDispatcher(channel)
        assert d.send_daily_report(_report(ReportItem(User(email="a@x.com"), Status.MISSING))) is False
        assert d.send_backdated_alert(User(email="a@x.com"), None, date(2024, 6, 9), date(2024, 6, 10)) is False


def test_unconfigured_slack_channel_is_swallowed_by_dispatcher() -> None:
    d = AlertDispatcher(SlackWebhookChannel(None))
    assert d.send_daily_report(_report(ReportItem(User(email="a@x.com"), Status.MISSING))) is False
