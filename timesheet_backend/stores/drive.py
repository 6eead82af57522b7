"""
Drive v3 resource store (ledger spreadsheets live in one parent folder).

Speaks REST through `google.auth.transport.requests.AuthorizedSession`, so
authentication/refresh is handled by google-auth and transport by requests.
"""

from __future__ import annotations

from typing import Any, Optional

import requests

from timesheet_backend.errors import StoreError, TransientStoreError
from timesheet_backend.persistence.store_retry import is_transient_status, with_store_retry
from timesheet_backend.stores.base import ResourceRef

DRIVE_FILES_URL = "https://www.googleapis.com/drive/v3/files"
_FILE_FIELDS = "id,name,mimeType,parents,createdTime"


def _escape_query_literal(value: str) -> str:
    # Drive query strings are single-quoted; backslash and quote must be escaped.
    return str(value).replace("\\", "\\\\").replace("'", "\\'")


def _to_ref(payload: dict[str, Any]) -> ResourceRef:
    return ResourceRef(
        id=str(payload.get("id") or ""),
        name=str(payload.get("name") or ""),
        mime_type=str(payload.get("mimeType") or ""),
        parents=tuple(payload.get("parents") or ()),
        created_time=str(payload.get("createdTime") or ""),
    )


class DriveResourceStore:
    def __init__(self, session: Any, *, timeout_s: float = 30.0) -> None:
        self._session = session
        self._timeout_s = float(timeout_s)

    def _request(self, method: str, url: str, *, op: str, retry: bool = True, **kwargs: Any) -> dict[str, Any]:
        def _call() -> dict[str, Any]:
            try:
                resp = self._session.request(method, url, timeout=self._timeout_s, **kwargs)
            except (requests.ConnectionError, requests.Timeout) as e:
                raise TransientStoreError(f"drive {op} network error: {e}") from e
            if resp.status_code >= 400:
                detail = (resp.text or "")[:500]
                if is_transient_status(resp.status_code):
                    raise TransientStoreError(f"drive {op} failed: HTTP {resp.status_code} {detail}", status_code=resp.status_code)
                raise StoreError(f"drive {op} failed: HTTP {resp.status_code} {detail}", status_code=resp.status_code)
            try:
                return resp.json()
            except ValueError as e:
                raise StoreError(f"drive {op} returned a non-JSON body") from e

        if not retry:
            return _call()
        return with_store_retry(_call, op=f"drive.{op}")

    def list_resources(self, *, name: str, parent_id: str, mime_type: str) -> list[ResourceRef]:
        q = (
            f"name = '{_escape_query_literal(name)}'"
            f" and '{_escape_query_literal(parent_id)}' in parents"
            f" and mimeType = '{_escape_query_literal(mime_type)}'"
            " and trashed = false"
        )
        out: list[ResourceRef] = []
        page_token: Optional[str] = None
        while True:
            params = {
                "q": q,
                "fields": f"nextPageToken,files({_FILE_FIELDS})",
                "orderBy": "createdTime",
                "pageSize": 100,
                "supportsAllDrives": "true",
                "includeItemsFromAllDrives": "true",
            }
            if page_token:
                params["pageToken"] = page_token
            payload = self._request("GET", DRIVE_FILES_URL, op="list", params=params)
            out.extend(_to_ref(f) for f in payload.get("files") or [])
            page_token = payload.get("nextPageToken")
            if not page_token:
                return out

    def create_resource(self, *, name: str, mime_type: str, parent_id: str) -> ResourceRef:
        payload = self._request(
            "POST",
            DRIVE_FILES_URL,
            op="create",
            # A retried create after an ambiguous 5xx could leave a duplicate ledger.
            retry=False,
            params={"fields": _FILE_FIELDS, "supportsAllDrives": "true"},
            json={"name": name, "mimeType": mime_type, "parents": [parent_id]},
        )
        ref = _to_ref(payload)
        if not ref.id:
            raise StoreError("drive create returned no file id")
        return ref

    def get_resource(self, resource_id: str) -> ResourceRef:
        return _to_ref(
            self._request(
                "GET",
                f"{DRIVE_FILES_URL}/{resource_id}",
                op="get",
                params={"fields": _FILE_FIELDS, "supportsAllDrives": "true"},
            )
        )
