from __future__ import annotations

import logging
from typing import Any, Optional

from firebase_admin import auth
from firebase_admin import exceptions as fb_exceptions

from timesheet_backend.errors import StoreError, TransientStoreError
from timesheet_backend.models import User
from timesheet_backend.persistence.store_retry import with_store_retry
from timesheet_backend.stores.base import RosterPage

logger = logging.getLogger(__name__)

_TRANSIENT_FIREBASE_ERRORS = (
    fb_exceptions.UnavailableError,
    fb_exceptions.DeadlineExceededError,
    fb_exceptions.ResourceExhaustedError,
    fb_exceptions.InternalError,
)


class FirebaseRosterStore:
    """
    Roster = Firebase Auth users (the identity store behind sign-in).

    Users without an email cannot own a ledger and are dropped here.
    """

    def __init__(self, *, app: Any = None, page_size: int = 1000) -> None:
        self._app = app
        self._page_size = max(1, min(int(page_size), 1000))

    def _fetch(self, page_token: Optional[str]) -> Any:
        try:
            return auth.list_users(page_token=page_token, max_results=self._page_size, app=self._app)
        except _TRANSIENT_FIREBASE_ERRORS as e:
            raise TransientStoreError(f"roster list_users failed: {e}") from e
        except fb_exceptions.FirebaseError as e:
            raise StoreError(f"roster list_users failed: {e}") from e

    def list_users(self, page_token: Optional[str] = None) -> RosterPage:
        page = with_store_retry(lambda: self._fetch(page_token), op="roster.list_users")
        users = []
        for record in page.users:
            email = (getattr(record, "email", None) or "").strip()
            if not email:
                logger.debug("roster: skipping user without email uid=%s", getattr(record, "uid", "?"))
                continue
            users.append(
                User(
                    email=email,
                    display_name=getattr(record, "display_name", None),
                    disabled=bool(getattr(record, "disabled", False)),
                )
            )
        return RosterPage(users=users, next_page_token=page.next_page_token or None)
