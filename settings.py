"""Application configuration helpers for InvoiceApp backup synchronisation."""
from __future__ import annotations

import json
import logging
import os
from dataclasses import asdict, dataclass
from typing import Dict, Mapping, Optional, Tuple

from core import app_paths


logger = logging.getLogger(__name__)


SYNC_CONFIG_PATH = str(app_paths.data_path("sync_config.json"))

CLIENT_ID_ENV = "INVOICEAPP_GOOGLE_CLIENT_ID"
CLIENT_SECRET_ENV = "INVOICEAPP_GOOGLE_CLIENT_SECRET"
ENVIRONMENT_ENV = "INVOICEAPP_ENVIRONMENT"

# Settings-collection key for the manually entered OAuth client id.
MANUAL_CLIENT_ID_KEY = "googleOAuthClientId"
RETENTION_SETTING_KEY = "maxBackups"

CONFIG_SOURCE_ENVIRONMENT = "environment"
CONFIG_SOURCE_MANUAL = "manual"

DEFAULT_DEBOUNCE_MS = 2000
DEFAULT_RETENTION_COUNT = 10
DEFAULT_RENEWAL_LOOKAHEAD_MS = 5 * 60 * 1000

_ENV_OVERRIDES: Dict[str, str] = {
    "debounce_ms": "INVOICEAPP_DEBOUNCE_MS",
    "retention_count": "INVOICEAPP_RETENTION_COUNT",
    "renewal_lookahead_ms": "INVOICEAPP_RENEWAL_LOOKAHEAD_MS",
}

# (minimum, maximum) accepted for each numeric option.
_LIMITS: Dict[str, Tuple[int, int]] = {
    "debounce_ms": (0, 10 * 60 * 1000),
    "retention_count": (0, 1000),
    "renewal_lookahead_ms": (0, 60 * 60 * 1000),
}


@dataclass
class SyncConfig:
    """Tunable timings of the backup engine.

    ``debounce_ms`` is the quiet period after the last local write before an
    automatic backup is pushed. ``retention_count`` is the default number of
    remote backups kept (0 keeps everything) when the user has not stored a
    ``maxBackups`` setting. ``renewal_lookahead_ms`` is how long before expiry
    the access token is silently renewed.
    """

    debounce_ms: int = DEFAULT_DEBOUNCE_MS
    retention_count: int = DEFAULT_RETENTION_COUNT
    renewal_lookahead_ms: int = DEFAULT_RENEWAL_LOOKAHEAD_MS

    @property
    def debounce_seconds(self) -> float:
        return self.debounce_ms / 1000.0

    @property
    def renewal_lookahead_seconds(self) -> float:
        return self.renewal_lookahead_ms / 1000.0

    def to_json(self) -> Dict[str, int]:
        return asdict(self)


def _coerce_option(key: str, value: object, default: int) -> int:
    low, high = _LIMITS[key]
    try:
        number = int(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        logger.warning("Invalid value for %s: %r; using %s", key, value, default)
        return default
    return max(low, min(high, number))


def _ensure_sync_config(path: str) -> Dict[str, object]:
    defaults = SyncConfig().to_json()
    if not os.path.exists(path):
        directory = os.path.dirname(path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        with open(path, "w", encoding="utf-8") as handle:
            json.dump(defaults, handle, indent=2)
        return dict(defaults)

    try:
        with open(path, "r", encoding="utf-8") as handle:
            data = json.load(handle)
    except (OSError, json.JSONDecodeError) as exc:
        logger.warning("Sync configuration %s could not be read: %s", path, exc)
        return dict(defaults)
    if not isinstance(data, Mapping):
        return dict(defaults)
    merged: Dict[str, object] = dict(defaults)
    merged.update({key: value for key, value in data.items() if key in defaults})
    return merged


def load_sync_config(path: str = SYNC_CONFIG_PATH) -> SyncConfig:
    """Load :class:`SyncConfig` from ``path`` applying environment overrides."""

    data = _ensure_sync_config(path)
    defaults = SyncConfig().to_json()
    values: Dict[str, int] = {}
    for key, default in defaults.items():
        raw = os.getenv(_ENV_OVERRIDES[key])
        if raw in (None, ""):
            raw = data.get(key, default)
        values[key] = _coerce_option(key, raw, default)
    return SyncConfig(**values)


def save_sync_config(config: SyncConfig, path: str = SYNC_CONFIG_PATH) -> None:
    directory = os.path.dirname(path)
    if directory:
        os.makedirs(directory, exist_ok=True)
    with open(path, "w", encoding="utf-8") as handle:
        json.dump(config.to_json(), handle, indent=2)


def resolve_client_id(manual_client_id: Optional[str]) -> Tuple[Optional[str], Optional[str]]:
    """Return ``(client_id, source)`` for the Google OAuth client.

    The build-time/environment value always wins over the id the user typed
    into the settings screen.
    """

    env_value = (os.getenv(CLIENT_ID_ENV) or "").strip()
    if env_value:
        return env_value, CONFIG_SOURCE_ENVIRONMENT
    manual = (manual_client_id or "").strip()
    if manual:
        return manual, CONFIG_SOURCE_MANUAL
    return None, None


def client_secret() -> Optional[str]:
    value = (os.getenv(CLIENT_SECRET_ENV) or "").strip()
    return value or None


def detect_environment() -> str:
    value = (os.getenv(ENVIRONMENT_ENV) or "").strip().lower()
    if value in {"dev", "development", "local"}:
        return "dev"
    return "prod"


__all__ = [
    "SyncConfig",
    "SYNC_CONFIG_PATH",
    "CLIENT_ID_ENV",
    "CLIENT_SECRET_ENV",
    "ENVIRONMENT_ENV",
    "MANUAL_CLIENT_ID_KEY",
    "RETENTION_SETTING_KEY",
    "CONFIG_SOURCE_ENVIRONMENT",
    "CONFIG_SOURCE_MANUAL",
    "load_sync_config",
    "save_sync_config",
    "resolve_client_id",
    "client_secret",
    "detect_environment",
]
