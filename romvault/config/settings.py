"""Settings storage for romvault configuration."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any


SETTINGS_PATH = Path(
    os.environ.get(
        "ROMVAULT_SETTINGS_PATH",
        Path.home() / ".config" / "romvault" / "settings.json",
    )
)

# Default values - use these constants instead of hardcoding values elsewhere
DEFAULT_RAW_ROOT = "/raw"
DEFAULT_MULTIBOOT_DIR = "/raw/data/media/0/MultiBoot"
DEFAULT_MOUNT_POINT = "/mb_mnt"
DEFAULT_IMAGE_SIZE = 1024 * 1024 * 1024

# Max file size for FAT32
DEFAULT_ARCHIVE_SPLIT_SIZE = 2**32 - 2

DEFAULT_SETTINGS: dict[str, Any] = {
    "raw_root": DEFAULT_RAW_ROOT,
    "multiboot_dir": DEFAULT_MULTIBOOT_DIR,
    "backup_dir": None,
    "mount_point": DEFAULT_MOUNT_POINT,
    "default_image_size": DEFAULT_IMAGE_SIZE,
    "fsck_timeout_seconds": None,
}


@dataclass
class SettingsStore:
    values: dict[str, Any] = field(default_factory=dict)


settings_store = SettingsStore(values=dict(DEFAULT_SETTINGS))


def load_settings(path: Path | None = None) -> None:
    path = path or SETTINGS_PATH
    settings_store.values = dict(DEFAULT_SETTINGS)
    if not path.exists():
        return
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError):
        return
    if isinstance(data, dict):
        settings_store.values.update(data)


def get_setting(key: str, default: Any | None = None) -> Any:
    value = settings_store.values.get(key)
    return default if value is None else value


def set_setting(key: str, value: Any) -> None:
    settings_store.values[key] = value


def get_int(key: str, default: int = 0) -> int:
    try:
        return int(get_setting(key, default))
    except (TypeError, ValueError):
        return default


def get_path(key: str, default: str) -> Path:
    return Path(get_setting(key, default))


def get_backup_dir() -> Path:
    """Directory holding named backups (defaults under the multiboot dir)."""
    configured = get_setting("backup_dir")
    if configured:
        return Path(configured)
    return get_path("multiboot_dir", DEFAULT_MULTIBOOT_DIR) / "backups"
