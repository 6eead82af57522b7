"""
Collaborator interfaces consumed by the ledger core.

The concrete Google/Firebase/Slack adapters live next to this module; tests use
in-memory fakes of the same protocols.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Iterator, Optional, Protocol, Sequence

from timesheet_backend.errors import StoreError
from timesheet_backend.models import User

SPREADSHEET_MIME = "application/vnd.google-apps.spreadsheet"
FOLDER_MIME = "application/vnd.google-apps.folder"


@dataclass(frozen=True, slots=True)
class ResourceRef:
    id: str
    name: str
    mime_type: str = ""
    parents: tuple[str, ...] = ()
    created_time: str = ""


@dataclass(frozen=True, slots=True)
class PartitionInfo:
    partition_id: int
    title: str
    index: int = 0


@dataclass(frozen=True)
class RosterPage:
    users: list[User] = field(default_factory=list)
    next_page_token: Optional[str] = None


class ResourceStore(Protocol):
    def list_resources(self, *, name: str, parent_id: str, mime_type: str) -> list[ResourceRef]: ...

    def create_resource(self, *, name: str, mime_type: str, parent_id: str) -> ResourceRef: ...

    def get_resource(self, resource_id: str) -> ResourceRef: ...


class TabularStore(Protocol):
    def list_partitions(self, ledger_id: str) -> list[PartitionInfo]: ...

    def rename_default_partition(self, ledger_id: str, new_name: str) -> None: ...

    def add_partition(self, ledger_id: str, name: str) -> None: ...

    def write_range(self, ledger_id: str, partition: str, cell_range: str, rows: Sequence[Sequence[Any]]) -> None: ...

    def insert_row(self, ledger_id: str, partition: str, row: Sequence[Any], *, index: int = 1) -> None: ...

    def append_row(self, ledger_id: str, partition: str, cell_range: str, row: Sequence[Any]) -> None: ...

    def read_range(self, ledger_id: str, partition: str, cell_range: str) -> list[list[Any]]: ...


class RosterStore(Protocol):
    def list_users(self, page_token: Optional[str] = None) -> RosterPage: ...


class NotificationChannel(Protocol):
    def post(self, message: dict[str, Any]) -> None: ...


def iter_roster(store: RosterStore, *, start_token: Optional[str] = None) -> Iterator[User]:
    """
    Lazily drain every roster page.

    Restartable: pass the `next_page_token` of the last fully consumed page as
    `start_token`. Errors from the store propagate (roster failure is fatal).
    """
    token = start_token
    seen_tokens: set[str] = set()
    while True:
        page = store.list_users(page_token=token)
        yield from page.users
        token = page.next_page_token
        if not token:
            return
        if token in seen_tokens:
            # A store that hands back the same cursor would loop forever.
            raise StoreError(f"roster pagination cycle at token {token!r}")
        seen_tokens.add(token)
