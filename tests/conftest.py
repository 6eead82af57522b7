from __future__ import annotations

from typing import Any

import pytest

from timesheet_backend.alerts.dispatcher import AlertDispatcher
from timesheet_backend.ledger.locator import LedgerLocator
from timesheet_backend.ledger.writer import EntryWriter
from timesheet_backend.persistence import store_retry
from timesheet_backend.time.ledger_time import ledger_tz
from tests.fakes import FOLDER_ID, FakeResourceStore, FakeTabularStore, FixedClock, RecordingChannel, utc

IST = ledger_tz(330)


@pytest.fixture(autouse=True)
def _no_retry_sleep(monkeypatch: pytest.MonkeyPatch) -> None:
    # Backoff is exercised for its control flow only.
    monkeypatch.setattr(store_retry._SLEEPER, "wait", lambda timeout=None: False)


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for k in (
        "GOOGLE_DRIVE_FOLDER_ID",
        "LEDGER_UTC_OFFSET_MINUTES",
        "RECONCILE_MIN_HOURS",
        "RECONCILE_MAX_WORKERS",
        "NON_BUSINESS_WEEKDAYS",
        "HOLIDAYS",
        "LEDGER_LOCK_BACKEND",
        "LEDGER_LOCK_TTL_S",
        "ALERT_DEDUPE_BACKEND",
        "GOOGLE_HTTP_TIMEOUT_S",
        "ALLOW_ENV_SECRET_FALLBACK",
    ):
        monkeypatch.delenv(k, raising=False)


@pytest.fixture()
def resources() -> FakeResourceStore:
    return FakeResourceStore()


@pytest.fixture()
def tables() -> FakeTabularStore:
    return FakeTabularStore()


@pytest.fixture()
def channel() -> RecordingChannel:
    return RecordingChannel()


@pytest.fixture()
def clock() -> FixedClock:
    # Monday 2024-06-10, 11:30 IST.
    return FixedClock(utc(2024, 6, 10, 6, 0))


@pytest.fixture()
def locator(resources: FakeResourceStore, tables: FakeTabularStore) -> LedgerLocator:
    return LedgerLocator(resources, tables, folder_id=FOLDER_ID, poll_s=0.01)


@pytest.fixture()
def dispatcher(channel: RecordingChannel) -> AlertDispatcher:
    return AlertDispatcher(channel)


@pytest.fixture()
def writer(locator: LedgerLocator, tables: FakeTabularStore, dispatcher: AlertDispatcher, clock: Any) -> EntryWriter:
    return EntryWriter(locator, tables, dispatcher, tz=IST, clock=clock)
