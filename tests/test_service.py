from __future__ import annotations

from typing import Any

import pytest

from timesheet_backend.common.config import TimesheetConfig
from timesheet_backend.errors import ConfigurationError, ValidationError
from timesheet_backend.models import HEADER_ROW
from timesheet_backend.service import (
    TimesheetService,
    build_service,
    handle_monitor_request,
    handle_submit_request,
    parse_submit_payload,
)
from tests.fakes import FOLDER_ID, FakeFirestore, FakeResourceStore, FakeRosterStore, FakeTabularStore, FixedClock, RecordingChannel, utc


def _service(
    *,
    resources: FakeResourceStore,
    tables: FakeTabularStore,
    channel: RecordingChannel,
    roster: FakeRosterStore | None = None,
    clock: Any = None,
    **cfg_overrides: Any,
) -> TimesheetService:
    cfg = TimesheetConfig(drive_folder_id=FOLDER_ID, **cfg_overrides)
    return build_service(
        cfg,
        resources=resources,
        tables=tables,
        roster=roster or FakeRosterStore([[]]),
        channel=channel,
        db=FakeFirestore(),
        clock=clock or FixedClock(utc(2024, 6, 10, 6, 0)),
    )


@pytest.fixture()
def service(resources: FakeResourceStore, tables: FakeTabularStore, channel: RecordingChannel) -> TimesheetService:
    return _service(resources=resources, tables=tables, channel=channel)


def test_submit_entry_appends_and_acks(service: TimesheetService, tables: FakeTabularStore, channel: RecordingChannel) -> None:
    ack = service.submit_entry("2024-06-10", 8, "Apollo", "Build", "a@x.com", "Ann")

    assert ack.partition == "June"
    assert ack.is_backdated is False
    assert tables.rows(ack.ledger_id, "June") == [list(HEADER_ROW), ["2024-06-10", "Apollo", "Build", 8]]
    assert channel.messages == []


def test_submit_entry_accepts_iso_timestamps_in_ledger_offset(service: TimesheetService) -> None:
    # 2024-05-31T20:00Z is June 1 in IST.
    assert service.submit_entry("2024-05-31T20:00:00Z", 2, "P", "d", "a@x.com").partition == "June"


def test_submit_entry_validation_has_no_side_effect(
    service: TimesheetService, resources: FakeResourceStore, tables: FakeTabularStore
) -> None:
    with pytest.raises(ValidationError) as ei:
        service.submit_entry("10/06/2024", 30, "P", "", "a@x.com")
    problems = ei.value.problems
    assert any(p.startswith("date:") for p in problems)
    assert any("hours" in p for p in problems)
    assert any("description" in p for p in problems)
    assert resources.lists == 0
    assert tables.calls == []

    with pytest.raises(ValidationError):
        service.submit_entry("2024-06-10", 8, "P", "d", "  ")


def test_submit_entries_sends_one_alert_per_backdated_date(
    service: TimesheetService, tables: FakeTabularStore, channel: RecordingChannel
) -> None:
    acks = service.submit_entries(
        "a@x.com",
        "Ann",
        [
            {"date": "2024-06-07", "hours": 4, "project": "P", "description": "a"},
            {"date": "2024-06-07", "hours": 4, "project": "P", "description": "b"},
            {"date": "2024-06-10", "hours": 2, "project": "P", "description": "c"},
            {"date": "2024-05-31", "hours": 1, "project": "P", "description": "d"},
        ],
    )

    assert [a.partition for a in acks] == ["June", "June", "June", "May"]
    assert [a.is_backdated for a in acks] == [True, True, False, True]
    assert [a.alert_sent for a in acks] == [True, False, False, True]
    assert len(channel.messages) == 2
    assert len(tables.rows(acks[0].ledger_id, "June")) == 4


def test_submit_entries_validates_everything_before_writing(
    service: TimesheetService, tables: FakeTabularStore
) -> None:
    with pytest.raises(ValidationError) as ei:
        service.submit_entries(
            "a@x.com",
            None,
            [
                {"date": "2024-06-10", "hours": 4, "project": "P", "description": "ok"},
                {"date": "2024-06-10", "hours": 0, "project": "P", "description": "bad"},
            ],
        )
    assert ei.value.problems[0].startswith("tasks[1].")
    assert tables.calls == []


def test_run_daily_reconciliation(resources: FakeResourceStore, tables: FakeTabularStore, channel: RecordingChannel) -> None:
    svc = _service(
        resources=resources,
        tables=tables,
        channel=channel,
        roster=FakeRosterStore([[], []]),
    )
    report = svc.run_daily_reconciliation(utc(2024, 6, 10, 13, 30))
    assert report.run_date.isoformat() == "2024-06-10"
    assert report.skipped is False
    assert len(report) == 0
    assert channel.messages == []


def test_parse_submit_payload_single_and_batch() -> None:
    single = parse_submit_payload(
        {"date": "2024-06-10", "hours": "7.5", "project": "P", "description": "d", "userEmail": "a@x.com", "userName": "Ann"}
    )
    assert single.batch is False
    assert single.entries[0].hours == 7.5
    assert single.user_name == "Ann"

    batch = parse_submit_payload(
        {"userEmail": "a@x.com", "tasks": [{"date": "2024-06-10", "hours": 1, "project": "P", "description": "d"}]}
    )
    assert batch.batch is True
    assert len(batch.entries) == 1


@pytest.mark.parametrize(
    "payload",
    [
        None,
        [],
        {"date": "2024-06-10", "hours": 8, "project": "P", "description": "d"},
        {"userEmail": "a@x.com", "hours": 8, "project": "P"},
        {"userEmail": "a@x.com", "tasks": []},
        {"userEmail": "a@x.com", "tasks": [{"date": "2024-06-10"}]},
    ],
)
def test_parse_submit_payload_rejects_incomplete_bodies(payload: Any) -> None:
    with pytest.raises(ValidationError):
        parse_submit_payload(payload)


def test_handle_submit_request_status_mapping(service: TimesheetService) -> None:
    factory = lambda: service  # noqa: E731
    body = {"date": "2024-06-10", "hours": 8, "project": "P", "description": "d", "userEmail": "a@x.com"}

    assert handle_submit_request("GET", body, service_factory=factory)[0] == 405

    status, out = handle_submit_request("POST", {"userEmail": "a@x.com"}, service_factory=factory)
    assert status == 400
    assert out["problems"]

    status, out = handle_submit_request("POST", body, service_factory=factory)
    assert status == 200
    assert out["success"] is True
    assert out["partition"] == "June"

    status, out = handle_submit_request(
        "POST", {"userEmail": "a@x.com", "tasks": [dict(body), dict(body)]}, service_factory=factory
    )
    assert status == 200
    assert len(out["entries"]) == 2


def test_handle_submit_request_maps_config_errors_to_500(resources: FakeResourceStore, tables: FakeTabularStore, channel: RecordingChannel) -> None:
    cfg = TimesheetConfig(drive_folder_id=None)
    svc = build_service(cfg, resources=resources, tables=tables, roster=FakeRosterStore([[]]), channel=channel)
    body = {"date": "2024-06-10", "hours": 8, "project": "P", "description": "d", "userEmail": "a@x.com"}

    status, out = handle_submit_request("POST", body, service_factory=lambda: svc)
    assert status == 500
    assert "GOOGLE_DRIVE_FOLDER_ID" in out["error"]

    def _broken() -> TimesheetService:
        raise ConfigurationError("missing service account")

    assert handle_submit_request("POST", body, service_factory=_broken)[0] == 500


def test_handle_monitor_request(service: TimesheetService) -> None:
    assert handle_monitor_request("GET", service_factory=lambda: service)[0] == 405

    status, out = handle_monitor_request("POST", service_factory=lambda: service, now=utc(2024, 6, 8, 13, 30))
    assert status == 200
    assert out["skipped"] is True
    assert out["reports"] == []


def test_firestore_backends_are_wired(resources: FakeResourceStore, tables: FakeTabularStore, channel: RecordingChannel) -> None:
    db = FakeFirestore()
    cfg = TimesheetConfig(drive_folder_id=FOLDER_ID, lock_backend="firestore", alert_dedupe_backend="firestore")
    svc = build_service(
        cfg,
        resources=resources,
        tables=tables,
        roster=FakeRosterStore([[]]),
        channel=channel,
        db=db,
        clock=FixedClock(utc(2024, 6, 10, 6, 0)),
    )
    svc.submit_entry("2024-06-07", 8, "P", "d", "a@x.com")
    svc.submit_entry("2024-06-07", 8, "P", "d", "a@x.com")

    assert len(channel.messages) == 1
    assert len(db.collection_docs("alert_dedupe")) == 1
    # Provisioning lease released after creation.
    assert db.collection_docs("ledger_leases") == {}
