"""Configuration for the imgopt worker."""

from __future__ import annotations

import dataclasses
import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping

from imgopt_shared.models import ConversionSettings
from imgopt_store.db import DEFAULT_DATABASE_URL

logger = logging.getLogger(__name__)

ENV_PREFIX = "IMGOPT_"
SETTINGS_FILE_ENV = "IMGOPT_SETTINGS_FILE"


@dataclass(frozen=True)
class WorkerConfig:
    """Worker configuration."""

    database_url: str = DEFAULT_DATABASE_URL
    max_attempts: int = 3
    stale_after: float = 600.0
    poll_interval: float = 30.0
    log_retention_days: int = 30
    completed_retention_days: int = 7
    upload_root: Path | None = None
    settings_file: Path | None = None

    @classmethod
    def load(cls) -> WorkerConfig:
        """Load from environment variables."""
        upload_root = os.getenv("IMGOPT_UPLOAD_ROOT")
        settings_file = os.getenv(SETTINGS_FILE_ENV)
        return cls(
            database_url=os.getenv("IMGOPT_DATABASE_URL", DEFAULT_DATABASE_URL),
            max_attempts=int(os.getenv("IMGOPT_MAX_ATTEMPTS", "3")),
            stale_after=float(os.getenv("IMGOPT_STALE_AFTER", "600")),
            poll_interval=float(os.getenv("IMGOPT_POLL_INTERVAL", "30")),
            log_retention_days=int(os.getenv("IMGOPT_LOG_RETENTION_DAYS", "30")),
            completed_retention_days=int(os.getenv("IMGOPT_COMPLETED_RETENTION_DAYS", "7")),
            upload_root=Path(upload_root).expanduser() if upload_root else None,
            settings_file=Path(settings_file).expanduser() if settings_file else None,
        )


def read_settings_file(path: Path) -> dict[str, Any]:
    """
    Read conversion settings from a JSON file.

    Accepts either {"settings": {...}} or a flat object. A missing or
    unreadable file yields no settings.
    """
    if not path.is_file():
        logger.warning("Settings file not found: %s", path)
        return {}

    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        logger.warning("Cannot read settings file %s: %s", path, e)
        return {}

    if not isinstance(payload, dict):
        logger.warning("Settings file %s does not contain an object", path)
        return {}

    raw_settings = payload.get("settings")
    if isinstance(raw_settings, dict):
        return dict(raw_settings)
    return {k: v for k, v in payload.items() if k not in {"version", "updated_at"}}


def settings_from_env(environ: Mapping[str, str] | None = None) -> dict[str, str]:
    """Collect IMGOPT_<FIELD> overrides for ConversionSettings fields."""
    environ = os.environ if environ is None else environ
    values = {}
    for f in dataclasses.fields(ConversionSettings):
        key = ENV_PREFIX + f.name.upper()
        if key in environ:
            values[f.name] = environ[key]
    return values


def load_settings(
    settings_file: Path | None = None,
    overrides: Mapping[str, Any] | None = None,
    environ: Mapping[str, str] | None = None,
) -> ConversionSettings:
    """
    Resolve conversion settings.

    Precedence, lowest first: built-in defaults, the JSON settings file,
    IMGOPT_* environment variables, then explicit overrides (CLI flags).
    """
    data: dict[str, Any] = {}
    if settings_file is not None:
        data.update(read_settings_file(settings_file))
    data.update(settings_from_env(environ))
    if overrides:
        data.update({k: v for k, v in overrides.items() if v is not None})

    try:
        return ConversionSettings.from_mapping(data)
    except (TypeError, ValueError) as e:
        raise ValueError(f"Invalid conversion settings: {e}") from e
