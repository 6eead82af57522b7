"""
At-most-once gate for back-dated entry alerts.

Key: (user email, work date, submission day). The first `claim()` for a key wins;
later claims return False and the alert is suppressed.
"""

from __future__ import annotations

import hashlib
import logging
import threading
from datetime import date, datetime, timezone
from typing import Any, Protocol

from google.api_core import exceptions as gexc

from timesheet_backend.persistence.store_retry import with_store_retry

logger = logging.getLogger(__name__)


def backdated_alert_key(email: str, work_date: date, submitted_on: date) -> str:
    return f"backdated|{email}|{work_date.isoformat()}|{submitted_on.isoformat()}"


class AlertDeduper(Protocol):
    def claim(self, key: str) -> bool: ...

    def release(self, key: str) -> None: ...


class NullAlertDeduper:
    """Every claim wins (ALERT_DEDUPE_BACKEND=none)."""

    def claim(self, key: str) -> bool:
        return True

    def release(self, key: str) -> None:
        return None


class InMemoryAlertDeduper:
    """
    Process-local claims. Keys end with their submission day; claims from earlier
    days are dropped once a later day shows up, so a warm instance stays small.
    """

    def __init__(self) -> None:
        self._mu = threading.Lock()
        self._claimed: set[str] = set()
        self._day = ""

    def claim(self, key: str) -> bool:
        day = key.rsplit("|", 1)[-1]
        with self._mu:
            if day > self._day:
                self._claimed = {k for k in self._claimed if k.rsplit("|", 1)[-1] >= day}
                self._day = day
            if key in self._claimed:
                return False
            self._claimed.add(key)
            return True

    def __len__(self) -> int:
        with self._mu:
            return len(self._claimed)

    def release(self, key: str) -> None:
        with self._mu:
            self._claimed.discard(key)


class FirestoreAlertDeduper:
    """
    Storage:
      {collection}/{sha256(key)}

    `create()` fails with AlreadyExists for every claimer but the first.
    """

    def __init__(self, db: Any, *, collection_name: str = "alert_dedupe") -> None:
        self._db = db
        self._collection_name = str(collection_name).strip() or "alert_dedupe"

    def _ref(self, key: str) -> Any:
        doc_id = hashlib.sha256(key.encode("utf-8")).hexdigest()[:48]
        return self._db.collection(self._collection_name).document(doc_id)

    def claim(self, key: str) -> bool:
        ref = self._ref(key)
        doc = {"key": key, "claimed_at": datetime.now(timezone.utc)}
        try:
            with_store_retry(lambda: ref.create(doc), op="alert_dedupe.create")
            return True
        except gexc.AlreadyExists:
            logger.info("alert suppressed (already sent) key=%s", key)
            return False

    def release(self, key: str) -> None:
        try:
            with_store_retry(lambda: self._ref(key).delete(), op="alert_dedupe.delete")
        except gexc.GoogleAPICallError as e:
            logger.warning("alert dedupe release failed key=%s: %s", key, e)
