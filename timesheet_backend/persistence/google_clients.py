"""
Process-wide Google client construction.

Each client is built once per process (lazy, lock-guarded) and then injected into
components. Nothing here runs at import time.
"""

from __future__ import annotations

import os
import sys
import threading
from typing import Any, Optional

import firebase_admin
import gspread
from firebase_admin import credentials, firestore
from google.auth.transport.requests import AuthorizedSession
from google.oauth2 import service_account

from timesheet_backend.common.secrets import get_service_account_info
from timesheet_backend.errors import ConfigurationError

LEDGER_SCOPES = (
    "https://www.googleapis.com/auth/spreadsheets",
    "https://www.googleapis.com/auth/drive",
)

_init_lock = threading.Lock()
_credentials: Optional[service_account.Credentials] = None


def is_local_execution() -> bool:
    """
    Heuristic: treat execution as "local" when either:
    - ENV=local, OR
    - we're not on a managed GCP runtime (no K_SERVICE, no FUNCTION_TARGET, no GAE_* env vars).
    """
    if (os.getenv("ENV") or "").strip().lower() == "local":
        return True
    if (os.getenv("K_SERVICE") or "").strip():
        return False
    if (os.getenv("FUNCTION_TARGET") or "").strip():
        return False
    for k in os.environ.keys():
        if str(k).startswith("GAE_"):
            return False
    return True


def require_firestore_emulator_or_allow_prod(*, caller: str) -> None:
    """
    Safety guard: fail-closed locally unless the Firestore emulator is configured.

    Local execution MUST set FIRESTORE_EMULATOR_HOST, unless explicitly overridden with:
      ALLOW_PROD_FIRESTORE=1
    """
    if not is_local_execution():
        return
    if (os.getenv("FIRESTORE_EMULATOR_HOST") or "").strip():
        return
    if (os.getenv("ALLOW_PROD_FIRESTORE") or "").strip() == "1":
        return

    sys.stderr.write(
        "\n".join(
            [
                "ERROR: Refusing to use production Firestore from local execution.",
                f"caller={caller}",
                "",
                "Fix:",
                "  - Set FIRESTORE_EMULATOR_HOST (example: '127.0.0.1:8080'), OR",
                "  - Intentionally override with ALLOW_PROD_FIRESTORE=1 (DANGEROUS).",
                "",
            ]
        )
        + "\n"
    )
    raise SystemExit(2)


def init_firebase_admin() -> None:
    """
    Initialize the Firebase Admin SDK exactly once (Application Default Credentials).

    Used for the roster (Firebase Auth) and for Firestore coordination documents.
    """
    if firebase_admin._apps:
        return
    with _init_lock:
        if firebase_admin._apps:
            return
        options: dict[str, Any] = {}
        project_id = os.getenv("FIREBASE_PROJECT_ID") or os.getenv("GOOGLE_CLOUD_PROJECT")
        if project_id:
            options["projectId"] = project_id
        try:
            firebase_admin.initialize_app(credentials.ApplicationDefault(), options or None)
        except Exception as e:
            raise ConfigurationError(
                "Failed to initialize Firebase Admin SDK with Application Default Credentials (ADC). "
                "Locally: run `gcloud auth application-default login`."
            ) from e


def get_firestore_client() -> Any:
    require_firestore_emulator_or_allow_prod(caller="timesheet_backend.persistence.google_clients.get_firestore_client")
    init_firebase_admin()
    return firestore.client()


def get_ledger_credentials() -> service_account.Credentials:
    """Service account credentials scoped for Drive + Sheets."""
    global _credentials
    if _credentials is not None:
        return _credentials
    with _init_lock:
        if _credentials is None:
            info = get_service_account_info()
            try:
                _credentials = service_account.Credentials.from_service_account_info(info, scopes=list(LEDGER_SCOPES))
            except (ValueError, KeyError) as e:
                raise ConfigurationError(f"Invalid Google service account credentials: {e}") from e
    return _credentials


def get_authorized_session() -> AuthorizedSession:
    return AuthorizedSession(get_ledger_credentials())


def get_gspread_client() -> gspread.Client:
    return gspread.authorize(get_ledger_credentials())
