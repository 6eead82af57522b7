from __future__ import annotations

import threading
import time
from datetime import date

import pytest

from timesheet_backend.alerts.dispatcher import AlertDispatcher
from timesheet_backend.errors import StoreError, TransientStoreError, ValidationError
from timesheet_backend.ledger.locator import LedgerLocator
from timesheet_backend.ledger.writer import EntryWriter
from timesheet_backend.models import HEADER_ROW, Entry, User
from timesheet_backend.time.ledger_time import MONTHS
from tests.conftest import IST
from tests.fakes import FOLDER_ID, FakeResourceStore, FakeTabularStore, FixedClock, RecordingChannel, utc

ALICE = User(email="alice@x.com", display_name="Alice")


def _entry(d: date, hours: float = 8) -> Entry:
    return Entry(date=d, project="Apollo", description="Build", hours=hours)


def test_entry_is_routed_to_its_month_partition(writer: EntryWriter, tables: FakeTabularStore) -> None:
    ack = writer.append(ALICE, _entry(date(2024, 3, 15), 6.5))

    assert ack.partition == "March"
    assert tables.rows(ack.ledger_id, "March") == [list(HEADER_ROW), ["2024-03-15", "Apollo", "Build", 6.5]]
    assert tables.rows(ack.ledger_id, "June") == [list(HEADER_ROW)]


def test_whole_hours_are_written_as_integers(writer: EntryWriter, tables: FakeTabularStore) -> None:
    ack = writer.append(ALICE, _entry(date(2024, 6, 10), 8.0))
    assert tables.rows(ack.ledger_id, "June")[-1] == ["2024-06-10", "Apollo", "Build", 8]


def test_appends_keep_insertion_order(writer: EntryWriter, tables: FakeTabularStore) -> None:
    writer.append(ALICE, _entry(date(2024, 6, 10), 3))
    ack = writer.append(ALICE, _entry(date(2024, 6, 10), 5))
    assert [r[3] for r in tables.rows(ack.ledger_id, "June")[1:]] == [3, 5]


@pytest.mark.parametrize(
    ("work_date", "backdated"),
    [
        (date(2024, 6, 9), True),
        (date(2024, 6, 10), False),
        (date(2024, 6, 11), False),
    ],
)
def test_backdated_classification_and_alert(
    writer: EntryWriter, channel: RecordingChannel, work_date: date, backdated: bool
) -> None:
    ack = writer.append(ALICE, _entry(work_date))

    assert ack.is_backdated is backdated
    assert ack.alert_sent is backdated
    assert len(channel.messages) == (1 if backdated else 0)
    if backdated:
        text = channel.messages[0]["blocks"][1]["text"]["text"]
        assert "Alice (alice@x.com)" in text
        assert "2024-06-09" in text
        assert "2024-06-10" in text


def test_today_is_taken_in_the_ledger_offset(
    locator: LedgerLocator, tables: FakeTabularStore, channel: RecordingChannel
) -> None:
    # 20:00 UTC on June 9 is already June 10 in IST.
    clock = FixedClock(utc(2024, 6, 9, 20, 0))
    w = EntryWriter(locator, tables, AlertDispatcher(channel), tz=IST, clock=clock)

    assert w.append(ALICE, _entry(date(2024, 6, 9))).is_backdated is True
    assert w.append(ALICE, _entry(date(2024, 6, 10))).is_backdated is False


def test_backdated_alert_is_sent_once_per_user_and_date(writer: EntryWriter, channel: RecordingChannel) -> None:
    writer.append(ALICE, _entry(date(2024, 6, 7), 4))
    second = writer.append(ALICE, _entry(date(2024, 6, 7), 4))
    writer.append(ALICE, _entry(date(2024, 6, 6), 4))

    assert second.is_backdated is True
    assert second.alert_sent is False
    assert len(channel.messages) == 2


def test_alert_failure_never_fails_the_append(
    locator: LedgerLocator, tables: FakeTabularStore, clock: FixedClock
) -> None:
    failing = RecordingChannel(fail=StoreError("webhook down", status_code=500))
    w = EntryWriter(locator, tables, AlertDispatcher(failing), tz=IST, clock=clock)

    ack = w.append(ALICE, _entry(date(2024, 6, 3)))
    assert ack.is_backdated is True
    assert ack.alert_sent is False
    assert tables.rows(ack.ledger_id, "June")[-1][0] == "2024-06-03"

    # The failed alert did not consume the dedupe slot.
    failing.fail = None
    assert w.append(ALICE, _entry(date(2024, 6, 3))).alert_sent is True


def test_notify_false_skips_alert(writer: EntryWriter, channel: RecordingChannel) -> None:
    ack = writer.append(ALICE, _entry(date(2024, 6, 3)), notify=False)
    assert ack.is_backdated is True
    assert channel.messages == []


def test_missing_partition_heals_and_append_succeeds(
    writer: EntryWriter, locator: LedgerLocator, tables: FakeTabularStore
) -> None:
    ref = locator.locate_or_create(ALICE)
    tables.drop_partition(ref.ledger_id, "September")

    ack = writer.append(ALICE, _entry(date(2024, 9, 2)))
    assert ack.partition == "September"
    assert tables.rows(ref.ledger_id, "September") == [list(HEADER_ROW), ["2024-09-02", "Apollo", "Build", 8]]


def test_invalid_entry_has_no_side_effect(resources: FakeResourceStore, tables: FakeTabularStore) -> None:
    with pytest.raises(ValidationError) as ei:
        Entry(date=date(2024, 6, 10), project=" ", description="", hours=0)
    assert len(ei.value.problems) == 3
    assert resources.creates == 0
    assert tables.calls == []


def test_writer_rejects_non_entry(writer: EntryWriter, resources: FakeResourceStore) -> None:
    with pytest.raises(ValidationError):
        writer.append(ALICE, {"date": "2024-06-10"})  # type: ignore[arg-type]
    assert resources.lists == 0


def test_store_errors_propagate_from_append(writer: EntryWriter, locator: LedgerLocator, tables: FakeTabularStore) -> None:
    locator.locate_or_create(ALICE)
    tables.fail_next("append_row", TransientStoreError("503", status_code=503))
    with pytest.raises(TransientStoreError):
        writer.append(ALICE, _entry(date(2024, 6, 10)))


def test_append_during_first_provisioning_waits_for_it(resources: FakeResourceStore) -> None:
    tables = FakeTabularStore(add_delay_s=0.02)
    loc = LedgerLocator(resources, tables, folder_id=FOLDER_ID, poll_s=0.01)
    w = EntryWriter(loc, tables, AlertDispatcher(RecordingChannel()), tz=IST, clock=FixedClock(utc(2024, 6, 10, 6, 0)))
    errors: list[Exception] = []

    def _submit(description: str) -> None:
        try:
            w.append(ALICE, Entry(date=date(2024, 6, 10), project="P", description=description, hours=4))
        except Exception as e:  # pragma: no cover - surfaced by the assertion below
            errors.append(e)

    first = threading.Thread(target=_submit, args=("A",))
    second = threading.Thread(target=_submit, args=("B",))
    first.start()
    # Starts once the ledger exists but June is not yet added.
    time.sleep(0.05)
    second.start()
    first.join(timeout=30)
    second.join(timeout=30)

    assert errors == []
    assert resources.creates == 1
    ledger_id = loc.locate(ALICE).ledger_id  # type: ignore[union-attr]
    assert tables.titles(ledger_id) == list(MONTHS)
    rows = tables.rows(ledger_id, "June")
    assert rows[0] == list(HEADER_ROW)
    assert sorted(r[2] for r in rows[1:]) == ["A", "B"]
