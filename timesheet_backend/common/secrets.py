from __future__ import annotations

import json
import os
from functools import lru_cache
from typing import Any, Optional

from timesheet_backend.errors import ConfigurationError


class SecretError(ConfigurationError):
    pass


def _is_truthy(v: object | None) -> bool:
    if v is None:
        return False
    return str(v).strip().lower() in {"1", "true", "t", "yes", "y", "on"}


def _env_fallback_allowed() -> bool:
    """
    Controls whether secrets may be sourced from environment variables.

    Default: DISALLOW. Allow only when ALLOW_ENV_SECRET_FALLBACK=1
    (local runs, emulators, tests).
    """
    return _is_truthy(os.getenv("ALLOW_ENV_SECRET_FALLBACK"))


def _get_nonempty_env(name: str) -> Optional[str]:
    v = os.getenv(name)
    if v is None:
        return None
    s = str(v).strip()
    return s if s else None


def _resolve_project_id() -> str:
    for k in (
        "GCP_PROJECT",
        "GOOGLE_CLOUD_PROJECT",
        "GCLOUD_PROJECT",
        "PROJECT_ID",
        "FIREBASE_PROJECT_ID",
    ):
        v = _get_nonempty_env(k)
        if v:
            return v
    raise SecretError(
        "Missing GCP project id for Secret Manager. "
        "Set one of: GCP_PROJECT, GOOGLE_CLOUD_PROJECT, GCLOUD_PROJECT, PROJECT_ID."
    )


def _secret_resource_name(name: str, *, project_id: Optional[str], version: str) -> str:
    n = str(name or "").strip()
    if not n:
        raise SecretError("Secret name is empty")

    if n.startswith("projects/") and "/secrets/" in n and "/versions/" in n:
        return n
    if n.startswith("projects/") and "/secrets/" in n:
        return f"{n}/versions/{version}"

    pid = (project_id or "").strip() or _resolve_project_id()
    return f"projects/{pid}/secrets/{n}/versions/{version}"


@lru_cache(maxsize=64)
def _access_secret_version(resource_name: str) -> str:
    """Access a Secret Manager secret version (cached per process)."""
    from google.cloud import secretmanager

    client = secretmanager.SecretManagerServiceClient()
    try:
        resp = client.access_secret_version(request={"name": resource_name})
    except Exception as e:
        raise SecretError(f"Failed to access secret: {resource_name} ({type(e).__name__}: {e})") from e

    data = getattr(getattr(resp, "payload", None), "data", None)
    return (data or b"").decode("utf-8", errors="replace").strip()


def get_secret(
    name: str,
    *,
    required: bool = True,
    version: str = "latest",
    project_id: Optional[str] = None,
) -> Optional[str]:
    """
    Retrieve a secret value.

    Sources:
    - Env var of the same name (ONLY when ALLOW_ENV_SECRET_FALLBACK=1)
    - Google Secret Manager (`name` may be a bare id or a full resource name)
    """
    if _env_fallback_allowed():
        v = _get_nonempty_env(name)
        if v is not None:
            return v
        if not required:
            return None

    try:
        resource = _secret_resource_name(name, project_id=project_id, version=version)
        raw = _access_secret_version(resource)
    except SecretError:
        if required:
            raise
        return None
    if raw:
        return raw
    if required:
        raise SecretError(f"Missing required secret: {resource}")
    return None


def get_service_account_info() -> dict[str, Any]:
    """
    Service account used for Drive + Sheets.

    Accepts either GOOGLE_SERVICE_ACCOUNT_JSON (full key file) or the
    GOOGLE_CLIENT_EMAIL + GOOGLE_PRIVATE_KEY pair (private key with escaped newlines).
    """
    raw_json = get_secret("GOOGLE_SERVICE_ACCOUNT_JSON", required=False)
    if raw_json:
        try:
            info = json.loads(raw_json)
        except ValueError as e:
            raise SecretError("GOOGLE_SERVICE_ACCOUNT_JSON is not valid JSON") from e
        if not isinstance(info, dict) or not info.get("client_email"):
            raise SecretError("GOOGLE_SERVICE_ACCOUNT_JSON must be a service account key object")
        return info

    client_email = get_secret("GOOGLE_CLIENT_EMAIL", required=False)
    private_key = get_secret("GOOGLE_PRIVATE_KEY", required=False)
    if not client_email or not private_key:
        raise SecretError(
            "Missing Google service account. Set GOOGLE_SERVICE_ACCOUNT_JSON, "
            "or GOOGLE_CLIENT_EMAIL + GOOGLE_PRIVATE_KEY."
        )
    return {
        "type": "service_account",
        "client_email": client_email,
        "private_key": private_key.replace("\\n", "\n"),
        "token_uri": "https://oauth2.googleapis.com/token",
    }


def get_slack_webhook_url() -> Optional[str]:
    """Slack incoming webhook. Optional: alerts are skipped (and logged) when unset."""
    return get_secret("SLACK_WEBHOOK_URL", required=False)
