from __future__ import annotations

import hashlib
import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from google.api_core import exceptions as gexc

from timesheet_backend.coordination.ledger_latch import LatchHandle
from timesheet_backend.persistence.store_retry import with_store_retry

logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _lease_doc_id(key: str) -> str:
    return hashlib.sha256(f"ledger_lease|{key}".encode("utf-8")).hexdigest()[:48]


class FirestoreLedgerLease:
    """
    Cross-instance, per-user provisioning lease.

    Storage:
      {collection}/{sha256(key)}

    Semantics:
    - `try_acquire` uses Firestore `create()`, so exactly one caller wins.
    - A lease past `expires_at` (crashed holder) is taken over by deleting it with an
      update-time precondition, then racing `create()` again.
    - `release` deletes only the caller's own lease (token match).
    """

    def __init__(self, db: Any, *, collection_name: str = "ledger_leases", ttl_s: float = 120.0) -> None:
        self._db = db
        self._collection_name = str(collection_name).strip() or "ledger_leases"
        self._ttl_s = float(ttl_s)

    def _ref(self, key: str) -> Any:
        return self._db.collection(self._collection_name).document(_lease_doc_id(key))

    def try_acquire(self, key: str, *, requester: str, purpose: str = "") -> Optional[LatchHandle]:
        ref = self._ref(key)
        token = uuid.uuid4().hex
        now = _utc_now()
        doc = {
            "key": key,
            "holder": str(requester).strip() or "unknown",
            "purpose": str(purpose).strip(),
            "token": token,
            "acquired_at": now,
            "expires_at": now + timedelta(seconds=self._ttl_s),
        }
        try:
            with_store_retry(lambda: ref.create(doc), op="lease.create")
            return LatchHandle(self, key, token)
        except gexc.AlreadyExists:
            pass

        snap = with_store_retry(lambda: ref.get(), op="lease.get")
        if not snap.exists:
            return None
        existing = snap.to_dict() or {}
        expires_at = existing.get("expires_at")
        if isinstance(expires_at, datetime) and expires_at.astimezone(timezone.utc) <= now:
            try:
                ref.delete(option=self._db.write_option(last_update_time=snap.update_time))
                logger.info("ledger lease expired; taken over key=%s prev_holder=%s", key, existing.get("holder"))
            except (gexc.FailedPrecondition, gexc.NotFound):
                # Someone else already replaced or released it.
                return None
            try:
                with_store_retry(lambda: ref.create(doc), op="lease.create")
                return LatchHandle(self, key, token)
            except gexc.AlreadyExists:
                return None
        return None

    def release(self, key: str, token: Any) -> bool:
        ref = self._ref(key)
        try:
            snap = with_store_retry(lambda: ref.get(), op="lease.get")
            if not snap.exists or (snap.to_dict() or {}).get("token") != token:
                return False
            ref.delete(option=self._db.write_option(last_update_time=snap.update_time))
            return True
        except (gexc.FailedPrecondition, gexc.NotFound):
            return False
        except gexc.GoogleAPICallError as e:
            # The TTL reclaims it; a failed release must not fail the caller.
            logger.warning("ledger lease release failed key=%s: %s", key, e)
            return False
