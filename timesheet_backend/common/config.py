"""
Configuration for ledger sync + reconciliation.

All settings are loaded from environment variables.
NO SECRETS ARE STORED HERE (see `timesheet_backend.common.secrets`).
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from datetime import date
from typing import List, Optional

from timesheet_backend.errors import ConfigurationError

DEFAULT_UTC_OFFSET_MINUTES = 330  # IST, UTC+05:30
DEFAULT_MIN_HOURS = 8.0
DEFAULT_MAX_WORKERS = 4
DEFAULT_LOCK_TTL_S = 120.0
DEFAULT_HTTP_TIMEOUT_S = 30.0

_LOCK_BACKENDS = {"memory", "firestore"}
_DEDUPE_BACKENDS = {"memory", "firestore", "none"}


def _get_nonempty_env(name: str) -> Optional[str]:
    v = os.getenv(name)
    if v is None:
        return None
    s = str(v).strip()
    return s if s else None


def _parse_float(name: str, default: float) -> float:
    raw = _get_nonempty_env(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError as e:
        raise ConfigurationError(f"{name} must be a number, got {raw!r}") from e


def _parse_int(name: str, default: int) -> int:
    raw = _get_nonempty_env(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError as e:
        raise ConfigurationError(f"{name} must be an integer, got {raw!r}") from e


def _parse_weekdays(raw: Optional[str]) -> frozenset[int]:
    # Python weekday numbers: Monday=0 .. Sunday=6.
    if raw is None:
        return frozenset({5, 6})
    out = set()
    for part in raw.split(","):
        part = part.strip()
        if not part:
            continue
        try:
            n = int(part)
        except ValueError as e:
            raise ConfigurationError(f"NON_BUSINESS_WEEKDAYS entries must be 0-6, got {part!r}") from e
        if not 0 <= n <= 6:
            raise ConfigurationError(f"NON_BUSINESS_WEEKDAYS entries must be 0-6, got {n}")
        out.add(n)
    return frozenset(out)


def _parse_holidays(raw: Optional[str]) -> frozenset[date]:
    if raw is None:
        return frozenset()
    out = set()
    for part in raw.split(","):
        part = part.strip()
        if not part:
            continue
        try:
            out.add(date.fromisoformat(part))
        except ValueError as e:
            raise ConfigurationError(f"HOLIDAYS entries must be YYYY-MM-DD, got {part!r}") from e
    return frozenset(out)


@dataclass(frozen=True)
class TimesheetConfig:
    drive_folder_id: Optional[str]
    utc_offset_minutes: int = DEFAULT_UTC_OFFSET_MINUTES
    min_daily_hours: float = DEFAULT_MIN_HOURS
    reconcile_max_workers: int = DEFAULT_MAX_WORKERS
    non_business_weekdays: frozenset[int] = field(default_factory=lambda: frozenset({5, 6}))
    holidays: frozenset[date] = field(default_factory=frozenset)
    lock_backend: str = "memory"
    lock_ttl_s: float = DEFAULT_LOCK_TTL_S
    alert_dedupe_backend: str = "memory"
    http_timeout_s: float = DEFAULT_HTTP_TIMEOUT_S

    @classmethod
    def from_env(cls) -> "TimesheetConfig":
        cfg = cls(
            drive_folder_id=_get_nonempty_env("GOOGLE_DRIVE_FOLDER_ID"),
            utc_offset_minutes=_parse_int("LEDGER_UTC_OFFSET_MINUTES", DEFAULT_UTC_OFFSET_MINUTES),
            min_daily_hours=_parse_float("RECONCILE_MIN_HOURS", DEFAULT_MIN_HOURS),
            reconcile_max_workers=_parse_int("RECONCILE_MAX_WORKERS", DEFAULT_MAX_WORKERS),
            non_business_weekdays=_parse_weekdays(os.getenv("NON_BUSINESS_WEEKDAYS")),
            holidays=_parse_holidays(_get_nonempty_env("HOLIDAYS")),
            lock_backend=(_get_nonempty_env("LEDGER_LOCK_BACKEND") or "memory").lower(),
            lock_ttl_s=_parse_float("LEDGER_LOCK_TTL_S", DEFAULT_LOCK_TTL_S),
            alert_dedupe_backend=(_get_nonempty_env("ALERT_DEDUPE_BACKEND") or "memory").lower(),
            http_timeout_s=_parse_float("GOOGLE_HTTP_TIMEOUT_S", DEFAULT_HTTP_TIMEOUT_S),
        )
        errors = validate_config(cfg)
        if errors:
            raise ConfigurationError("Invalid configuration: " + "; ".join(errors))
        return cfg


def validate_config(cfg: TimesheetConfig) -> List[str]:
    """
    Validate critical configuration.
    Returns list of error messages (empty if valid).

    A missing GOOGLE_DRIVE_FOLDER_ID is not reported here: it only becomes fatal
    when a ledger has to be located (ConfigurationError at call time).
    """
    errors = []

    if not -12 * 60 <= cfg.utc_offset_minutes <= 14 * 60:
        errors.append(f"LEDGER_UTC_OFFSET_MINUTES out of range: {cfg.utc_offset_minutes}")

    if cfg.min_daily_hours <= 0 or cfg.min_daily_hours > 24:
        errors.append(f"RECONCILE_MIN_HOURS must be in (0, 24], got {cfg.min_daily_hours}")

    if cfg.reconcile_max_workers < 1:
        errors.append("RECONCILE_MAX_WORKERS must be >= 1")

    if len(cfg.non_business_weekdays) >= 7:
        errors.append("NON_BUSINESS_WEEKDAYS must leave at least one business day")

    if cfg.lock_backend not in _LOCK_BACKENDS:
        errors.append(f"LEDGER_LOCK_BACKEND must be one of {sorted(_LOCK_BACKENDS)}, got {cfg.lock_backend!r}")

    if cfg.lock_ttl_s <= 0:
        errors.append("LEDGER_LOCK_TTL_S must be > 0")

    if cfg.alert_dedupe_backend not in _DEDUPE_BACKENDS:
        errors.append(
            f"ALERT_DEDUPE_BACKEND must be one of {sorted(_DEDUPE_BACKENDS)}, got {cfg.alert_dedupe_backend!r}"
        )

    if cfg.http_timeout_s <= 0:
        errors.append("GOOGLE_HTTP_TIMEOUT_S must be > 0")

    return errors
