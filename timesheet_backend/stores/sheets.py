"""
Sheets-backed tabular ledger store (one worksheet per month partition).
"""

from __future__ import annotations

import threading
from typing import Any, Callable, Optional, Sequence, TypeVar

import gspread
import requests
from gspread.exceptions import APIError, SpreadsheetNotFound, WorksheetNotFound

from timesheet_backend.errors import PartitionExistsError, PartitionNotFoundError, StoreError, TransientStoreError
from timesheet_backend.persistence.store_retry import is_transient_status, with_store_retry
from timesheet_backend.stores.base import PartitionInfo

T = TypeVar("T")

DEFAULT_PARTITION_ROWS = 1000
DEFAULT_PARTITION_COLS = 4


def _api_error_status(e: APIError) -> Optional[int]:
    code = getattr(e, "code", None)
    if isinstance(code, int):
        return code
    resp = getattr(e, "response", None)
    return getattr(resp, "status_code", None)


class SheetsTabularStore:
    def __init__(self, client: gspread.Client) -> None:
        self._client = client
        self._books: dict[str, gspread.Spreadsheet] = {}
        self._mu = threading.Lock()

    def _call(
        self,
        ledger_id: str,
        op: str,
        fn: Callable[[], T],
        *,
        partition: Optional[str] = None,
        idempotent: bool = True,
    ) -> T:
        def _once() -> T:
            try:
                return fn()
            except WorksheetNotFound as e:
                raise PartitionNotFoundError(ledger_id, partition or "") from e
            except SpreadsheetNotFound as e:
                raise StoreError(f"sheets {op}: ledger {ledger_id} not found", status_code=404) from e
            except APIError as e:
                status = _api_error_status(e)
                if status == 400 and partition and "already exists" in str(e).lower():
                    raise PartitionExistsError(ledger_id, partition) from e
                if is_transient_status(status):
                    raise TransientStoreError(f"sheets {op} failed: HTTP {status} {e}", status_code=status) from e
                raise StoreError(f"sheets {op} failed: HTTP {status} {e}", status_code=status) from e
            except (requests.ConnectionError, requests.Timeout) as e:
                raise TransientStoreError(f"sheets {op} network error: {e}") from e

        if idempotent:
            return with_store_retry(_once, op=f"sheets.{op}")
        # Only a 429 is known not to have been applied.
        return with_store_retry(_once, op=f"sheets.{op}", retry_if=lambda e: getattr(e, "status_code", None) == 429)

    def _book(self, ledger_id: str) -> gspread.Spreadsheet:
        with self._mu:
            book = self._books.get(ledger_id)
        if book is None:
            book = self._client.open_by_key(ledger_id)
            with self._mu:
                self._books[ledger_id] = book
        return book

    def list_partitions(self, ledger_id: str) -> list[PartitionInfo]:
        def _list() -> list[PartitionInfo]:
            return [
                PartitionInfo(partition_id=int(ws.id), title=str(ws.title), index=int(ws.index))
                for ws in self._book(ledger_id).worksheets()
            ]

        return self._call(ledger_id, "list_partitions", _list)

    def rename_default_partition(self, ledger_id: str, new_name: str) -> None:
        def _rename() -> None:
            book = self._book(ledger_id)
            # New spreadsheets always carry one worksheet with sheetId 0.
            ws = book.get_worksheet_by_id(0)
            ws.update_title(new_name)

        self._call(ledger_id, "rename_default_partition", _rename, partition=new_name)

    def add_partition(self, ledger_id: str, name: str) -> None:
        self._call(
            ledger_id,
            "add_partition",
            lambda: self._book(ledger_id).add_worksheet(
                title=name, rows=DEFAULT_PARTITION_ROWS, cols=DEFAULT_PARTITION_COLS
            ),
            partition=name,
            idempotent=False,
        )

    def write_range(self, ledger_id: str, partition: str, cell_range: str, rows: Sequence[Sequence[Any]]) -> None:
        values = [list(r) for r in rows]
        self._call(
            ledger_id,
            "write_range",
            lambda: self._book(ledger_id).worksheet(partition).update(range_name=cell_range, values=values),
            partition=partition,
        )

    def insert_row(self, ledger_id: str, partition: str, row: Sequence[Any], *, index: int = 1) -> None:
        # Shifts existing rows down.
        self._call(
            ledger_id,
            "insert_row",
            lambda: self._book(ledger_id)
            .worksheet(partition)
            .insert_row(list(row), index=index, value_input_option="USER_ENTERED"),
            partition=partition,
            idempotent=False,
        )

    def append_row(self, ledger_id: str, partition: str, cell_range: str, row: Sequence[Any]) -> None:
        # INSERT_ROWS: the API picks the row after the last data row; nothing is overwritten.
        self._call(
            ledger_id,
            "append_row",
            lambda: self._book(ledger_id)
            .worksheet(partition)
            .append_row(
                list(row),
                value_input_option="USER_ENTERED",
                insert_data_option="INSERT_ROWS",
                table_range=cell_range,
            ),
            partition=partition,
            idempotent=False,
        )

    def read_range(self, ledger_id: str, partition: str, cell_range: str) -> list[list[Any]]:
        return self._call(
            ledger_id,
            "read_range",
            lambda: self._book(ledger_id).worksheet(partition).get_values(cell_range),
            partition=partition,
        )
