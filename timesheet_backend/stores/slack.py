from __future__ import annotations

from typing import Any, Optional

import requests

from timesheet_backend.errors import ConfigurationError, StoreError


class SlackWebhookChannel:
    """Slack incoming-webhook notification channel. `post()` raises on any failure."""

    def __init__(self, webhook_url: Optional[str], *, session: Optional[requests.Session] = None, timeout_s: float = 10.0) -> None:
        self._url = (webhook_url or "").strip() or None
        self._session = session or requests.Session()
        self._timeout_s = float(timeout_s)

    @property
    def configured(self) -> bool:
        return self._url is not None

    def post(self, message: dict[str, Any]) -> None:
        if self._url is None:
            raise ConfigurationError("SLACK_WEBHOOK_URL is not set")
        resp = self._session.post(self._url, json=message, timeout=self._timeout_s)
        if resp.status_code >= 400:
            raise StoreError(
                f"Failed to send Slack notification: HTTP {resp.status_code} {(resp.text or '')[:200]}",
                status_code=resp.status_code,
            )
