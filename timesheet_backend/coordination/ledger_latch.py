from __future__ import annotations

import logging
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Iterator, Optional, Protocol

from timesheet_backend.errors import TransientStoreError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class _Holder:
    # Monotonic, process-local time.
    key: str
    holder: str
    purpose: str
    expires_at_mono: float
    token: Any


class LatchHandle:
    """
    Release handle for one acquired key.

    Safe to call `release()` multiple times; only the first call releases.
    """

    __slots__ = ("_latch", "_key", "_token", "_released")

    def __init__(self, latch: "KeyedLatch", key: str, token: Any) -> None:
        self._latch = latch
        self._key = key
        self._token = token
        self._released = False

    def release(self) -> bool:
        if self._released:
            return False
        self._released = True
        return self._latch.release(self._key, self._token)

    def __enter__(self) -> "LatchHandle":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:  # type: ignore[no-untyped-def]
        self.release()


class KeyedLatch(Protocol):
    def try_acquire(self, key: str, *, requester: str, purpose: str = "") -> Optional[LatchHandle]: ...

    def release(self, key: str, token: Any) -> bool: ...


class InMemoryKeyedLatch:
    """
    Non-blocking, process-local latch per key (user email) with TTL auto-release.

    Serializes ledger provisioning between threads of one instance. Cross-instance
    exclusion needs the Firestore lease.
    """

    def __init__(self, *, name: str = "ledger_provision", ttl_s: float = 120.0) -> None:
        self._name = str(name)
        self._ttl_s = max(0.001, float(ttl_s))
        self._mu = threading.Lock()
        self._state: dict[str, _Holder] = {}
        self._token_seq = 0

    def _maybe_expire_locked(self, key: str, *, now_mono: float) -> None:
        held = self._state.get(key)
        if held is None or now_mono < held.expires_at_mono:
            return
        del self._state[key]
        logger.info(
            "Latch auto-released (expired) name=%s key=%s holder=%s purpose=%s token=%s",
            self._name,
            key,
            held.holder,
            held.purpose,
            held.token,
        )

    def try_acquire(self, key: str, *, requester: str, purpose: str = "") -> Optional[LatchHandle]:
        req = str(requester).strip() or "unknown"
        now = time.monotonic()
        with self._mu:
            self._maybe_expire_locked(key, now_mono=now)
            held = self._state.get(key)
            if held is None:
                self._token_seq += 1
                token = self._token_seq
                self._state[key] = _Holder(
                    key=key,
                    holder=req,
                    purpose=str(purpose).strip(),
                    expires_at_mono=now + self._ttl_s,
                    token=token,
                )
                return LatchHandle(self, key, token)

            logger.debug(
                "Latch blocked name=%s key=%s requester=%s holder=%s remaining_s=%.3f",
                self._name,
                key,
                req,
                held.holder,
                max(0.0, held.expires_at_mono - now),
            )
            return None

    def release(self, key: str, token: Any) -> bool:
        now = time.monotonic()
        with self._mu:
            self._maybe_expire_locked(key, now_mono=now)
            held = self._state.get(key)
            if held is None or held.token != token:
                return False
            del self._state[key]
            return True


@contextmanager
def hold_latch(
    latch: KeyedLatch,
    key: str,
    *,
    requester: str,
    purpose: str = "",
    wait_timeout_s: float = 60.0,
    poll_s: float = 0.25,
) -> Iterator[LatchHandle]:
    """
    Block until `key` is acquired on `latch` (polling), then hold it for the body.

    Raises TransientStoreError when the wait times out; the caller may retry.
    """
    deadline = time.monotonic() + float(wait_timeout_s)
    waited = False
    while True:
        handle = latch.try_acquire(key, requester=requester, purpose=purpose)
        if handle is not None:
            break
        if time.monotonic() >= deadline:
            raise TransientStoreError(f"timed out waiting for {purpose or 'latch'} on {key}")
        waited = True
        time.sleep(poll_s)
    if waited:
        logger.info("latch acquired after wait key=%s purpose=%s", key, purpose)
    with handle:
        yield handle
