from __future__ import annotations

import logging
import os
import threading
from contextlib import ExitStack
from typing import Optional, Sequence

from timesheet_backend.common.logging import log_event
from timesheet_backend.coordination.ledger_latch import InMemoryKeyedLatch, KeyedLatch, hold_latch
from timesheet_backend.errors import (
    ConfigurationError,
    PartitionExistsError,
    ProvisioningError,
    StoreError,
    TimesheetError,
)
from timesheet_backend.models import HEADER_ROW, LedgerRef, User, ledger_name_for
from timesheet_backend.stores.base import (
    FOLDER_MIME,
    SPREADSHEET_MIME,
    PartitionInfo,
    ResourceRef,
    ResourceStore,
    TabularStore,
)
from timesheet_backend.time.ledger_time import MONTHS, parse_cell_date

logger = logging.getLogger(__name__)

HEADER_RANGE = "A1:D1"
DEFAULT_PARTITION_ID = 0


def _requester() -> str:
    return f"pid{os.getpid()}-t{threading.get_ident()}"


def _oldest(matches: Sequence[ResourceRef]) -> ResourceRef:
    # Refs without a creation time keep store order, behind dated ones.
    return sorted(matches, key=lambda r: (not r.created_time, r.created_time))[0]


class LedgerLocator:
    """
    Find-or-create of the one ledger per user.

    - `locate()` is read-only; "not found" is None.
    - `locate_or_create()` serializes creation per user through `latches`
      (process-local latch first, then any cross-instance lease) and re-checks
      under the lock, so concurrent callers end up on one ledger.
    - `ensure_partitions()` is the only provisioning routine; it adds whatever
      months are missing, in calendar order.
    - `repair()` runs it under the same lock, so a writer that raced a
      provisioning in flight waits for it instead of adding partitions alongside.
    """

    def __init__(
        self,
        resources: ResourceStore,
        tables: TabularStore,
        *,
        folder_id: Optional[str],
        latches: Optional[Sequence[KeyedLatch]] = None,
        wait_timeout_s: float = 60.0,
        poll_s: float = 0.25,
    ) -> None:
        self._resources = resources
        self._tables = tables
        self._folder_id = (folder_id or "").strip() or None
        self._latches: tuple[KeyedLatch, ...] = tuple(latches) if latches is not None else (InMemoryKeyedLatch(),)
        self._wait_timeout_s = float(wait_timeout_s)
        self._poll_s = float(poll_s)
        self._folder_checked = False
        self._mu = threading.Lock()

    def _require_folder_id(self) -> str:
        if not self._folder_id:
            raise ConfigurationError("GOOGLE_DRIVE_FOLDER_ID environment variable is not set")
        return self._folder_id

    def _validated_folder_id(self) -> str:
        folder_id = self._require_folder_id()
        with self._mu:
            if self._folder_checked:
                return folder_id
        try:
            ref = self._resources.get_resource(folder_id)
        except StoreError as e:
            if e.status_code in (403, 404):
                raise ConfigurationError(f"GOOGLE_DRIVE_FOLDER_ID {folder_id!r} is not accessible: {e}") from e
            raise
        if ref.mime_type != FOLDER_MIME:
            raise ConfigurationError(
                f"GOOGLE_DRIVE_FOLDER_ID {folder_id!r} is not a folder (mime_type={ref.mime_type!r})"
            )
        with self._mu:
            self._folder_checked = True
        return folder_id

    def locate(self, user: User) -> Optional[LedgerRef]:
        folder_id = self._require_folder_id()
        name = ledger_name_for(user.email)
        matches = self._resources.list_resources(name=name, parent_id=folder_id, mime_type=SPREADSHEET_MIME)
        if not matches:
            return None
        chosen = _oldest(matches)
        if len(matches) > 1:
            log_event(
                logger,
                "ledger.duplicates",
                severity="WARNING",
                message=f"{len(matches)} ledgers named {name!r}; using oldest",
                user_email=user.email,
                ledger_id=chosen.id,
                duplicate_ids=[m.id for m in matches if m.id != chosen.id],
            )
        return LedgerRef(ledger_id=chosen.id, name=chosen.name or name)

    def _hold(self, user: User) -> ExitStack:
        # Process-local latch first, then any cross-instance lease.
        with ExitStack() as stack:
            for latch in self._latches:
                stack.enter_context(
                    hold_latch(
                        latch,
                        user.email,
                        requester=_requester(),
                        purpose="ledger_provision",
                        wait_timeout_s=self._wait_timeout_s,
                        poll_s=self._poll_s,
                    )
                )
            return stack.pop_all()

    def locate_or_create(self, user: User) -> LedgerRef:
        existing = self.locate(user)
        if existing is not None:
            return existing

        folder_id = self._validated_folder_id()
        with self._hold(user):
            # Whoever held the lock before us may have created it.
            existing = self.locate(user)
            if existing is not None:
                return existing
            return self._create(user, folder_id)

    def _create(self, user: User, folder_id: str) -> LedgerRef:
        name = ledger_name_for(user.email)
        try:
            res = self._resources.create_resource(name=name, mime_type=SPREADSHEET_MIME, parent_id=folder_id)
        except TimesheetError as e:
            raise ProvisioningError(f"failed to create ledger {name!r}: {e}") from e

        ledger = LedgerRef(ledger_id=res.id, name=res.name or name, created=True)
        log_event(logger, "ledger.created", user_email=user.email, ledger_id=ledger.ledger_id, ledger_name=ledger.name)
        self.ensure_partitions(ledger)
        return ledger

    def ensure_partitions(self, ledger: LedgerRef, *, repair_headers: bool = False) -> list[str]:
        """
        Provision every missing month partition, strictly in calendar order.

        A new ledger's default partition (sheetId 0) becomes January instead of
        leaving a 13th partition behind. With `repair_headers`, existing month
        partitions whose header is missing get it back: written into an empty
        first row, or inserted above an entry that was appended before it.

        Returns the partitions provisioned by this call. Raises ProvisioningError
        carrying the months that are complete when a step fails; nothing is rolled back.
        """
        ledger_id = ledger.ledger_id
        try:
            partitions = self._tables.list_partitions(ledger_id)
        except TimesheetError as e:
            raise ProvisioningError(f"failed to list partitions: {e}", ledger_id=ledger_id) from e

        titles = {p.title for p in partitions}
        default: Optional[PartitionInfo] = next(
            (p for p in partitions if p.partition_id == DEFAULT_PARTITION_ID and p.title not in MONTHS),
            None,
        )
        complete = set(titles)
        provisioned: list[str] = []

        for month in MONTHS:
            try:
                if month in titles:
                    if repair_headers:
                        complete.discard(month)
                        if self._repair_header(ledger_id, month):
                            provisioned.append(month)
                        complete.add(month)
                    continue
                if default is not None and month == MONTHS[0]:
                    self._tables.rename_default_partition(ledger_id, month)
                    default = None
                else:
                    try:
                        self._tables.add_partition(ledger_id, month)
                    except PartitionExistsError:
                        # Added by another writer after our listing.
                        logger.info("partition already present ledger_id=%s partition=%s", ledger_id, month)
                        self._repair_header(ledger_id, month)
                        complete.add(month)
                        continue
                # Not complete until the header is in place.
                self._insert_header(ledger_id, month)
            except TimesheetError as e:
                done = [m for m in MONTHS if m in complete]
                log_event(
                    logger,
                    "ledger.provision_failed",
                    severity="ERROR",
                    ledger_id=ledger_id,
                    partition=month,
                    completed_partitions=done,
                    error=str(e),
                )
                raise ProvisioningError(
                    f"failed to provision partition {month!r} of ledger {ledger_id}: {e}",
                    ledger_id=ledger_id,
                    completed_partitions=done,
                ) from e
            complete.add(month)
            provisioned.append(month)

        if provisioned:
            logger.info("ledger partitions provisioned ledger_id=%s partitions=%s", ledger_id, ",".join(provisioned))
        return provisioned

    def repair(self, user: User, ledger: LedgerRef) -> list[str]:
        """`ensure_partitions(repair_headers=True)` under the user's provisioning lock."""
        with self._hold(user):
            return self.ensure_partitions(ledger, repair_headers=True)

    def _insert_header(self, ledger_id: str, partition: str) -> None:
        # An entry appended before this lands below the header, never under it.
        self._tables.insert_row(ledger_id, partition, list(HEADER_ROW), index=1)

    def _repair_header(self, ledger_id: str, partition: str) -> bool:
        rows = self._tables.read_range(ledger_id, partition, HEADER_RANGE)
        first = rows[0] if rows else []
        if not any(str(c).strip() for c in first):
            self._tables.write_range(ledger_id, partition, HEADER_RANGE, [list(HEADER_ROW)])
            return True
        if parse_cell_date(first[0]) is not None:
            log_event(
                logger,
                "ledger.header_missing",
                severity="WARNING",
                message="first row is an entry; inserting header above it",
                ledger_id=ledger_id,
                partition=partition,
            )
            self._insert_header(ledger_id, partition)
            return True
        return False
