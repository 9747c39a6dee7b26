from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Optional


logger = logging.getLogger(__name__)

_TRUTHY = {"1", "true", "yes", "on"}


def get_env(name: str) -> Optional[str]:
    value = os.getenv(name)
    return value.strip() if value and value.strip() else None


def env_flag(name: str) -> bool:
    return (get_env(name) or "").lower() in _TRUTHY


def env_int(name: str, default: int) -> int:
    raw = get_env(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning("Invalid %s value: %s", name, raw)
        return default


def firestore_enabled() -> bool:
    return env_flag("FIRESTORE_ENABLED")


def poll_max_workers() -> int:
    return max(env_int("POLL_MAX_WORKERS", 8), 1)


@dataclass(frozen=True)
class DriveSettings:
    client_id: str
    client_secret: str
    refresh_token: Optional[str]
    refresh_secret_name: Optional[str]
    watch_folder_id: str
    processed_folder_id: Optional[str] = None
    pending_folder_id: Optional[str] = None


def drive_settings() -> DriveSettings:
    client_id = get_env("GOOGLE_CLIENT_ID")
    client_secret = get_env("GOOGLE_CLIENT_SECRET")
    refresh_token = get_env("GOOGLE_REFRESH_TOKEN")
    refresh_secret_name = get_env("GOOGLE_REFRESH_SECRET_NAME")
    watch_folder_id = get_env("GOOGLE_DRIVE_WATCH_FOLDER_ID")

    missing = [
        name
        for name, value in (
            ("GOOGLE_CLIENT_ID", client_id),
            ("GOOGLE_CLIENT_SECRET", client_secret),
            ("GOOGLE_REFRESH_TOKEN or GOOGLE_REFRESH_SECRET_NAME", refresh_token or refresh_secret_name),
            ("GOOGLE_DRIVE_WATCH_FOLDER_ID", watch_folder_id),
        )
        if not value
    ]
    if missing:
        raise RuntimeError(f"Missing Google Drive env vars: {', '.join(missing)}")

    return DriveSettings(
        client_id=client_id,
        client_secret=client_secret,
        refresh_token=refresh_token,
        refresh_secret_name=refresh_secret_name,
        watch_folder_id=watch_folder_id,
        processed_folder_id=get_env("GOOGLE_DRIVE_PROCESSED_FOLDER_ID"),
        pending_folder_id=get_env("GOOGLE_DRIVE_PENDING_FOLDER_ID"),
    )
