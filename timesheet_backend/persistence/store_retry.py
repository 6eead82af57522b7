from __future__ import annotations

import logging
import random
import threading
from typing import Callable, Optional, TypeVar

from google.api_core import exceptions as gexc

from timesheet_backend.errors import TransientStoreError

T = TypeVar("T")
logger = logging.getLogger(__name__)
_SLEEPER = threading.Event()

_TRANSIENT_EXCEPTIONS: tuple[type[BaseException], ...] = (
    TransientStoreError,
    gexc.Aborted,
    gexc.DeadlineExceeded,
    gexc.InternalServerError,
    gexc.ResourceExhausted,
    gexc.ServiceUnavailable,
    gexc.TooManyRequests,
)


def is_transient_status(status_code: int | None) -> bool:
    if status_code is None:
        return False
    return status_code == 429 or status_code == 408 or 500 <= status_code < 600


def with_store_retry(
    fn: Callable[[], T],
    *,
    op: str = "store",
    retry_if: Optional[Callable[[BaseException], bool]] = None,
    max_attempts: int = 5,
    base_delay_s: float = 0.5,
    max_delay_s: float = 8.0,
) -> T:
    """
    Retry transient store errors (rate limits, 5xx, network) with exponential
    backoff + full jitter. Non-transient errors propagate immediately.

    `retry_if` narrows which transient errors are retried (non-idempotent writes).
    """
    attempt = 0
    while True:
        try:
            return fn()
        except _TRANSIENT_EXCEPTIONS as e:
            if attempt >= (max_attempts - 1):
                raise
            if retry_if is not None and not retry_if(e):
                raise
            sleep_s = min(max_delay_s, base_delay_s * (2**attempt))
            logger.info(
                "store_retry op=%s iteration=%d sleep_s=%.3f error=%s",
                op,
                attempt + 1,
                float(sleep_s),
                type(e).__name__,
            )
            _SLEEPER.wait(timeout=float(random.random() * float(sleep_s)))
            attempt += 1
