"""Settings storage for backup configuration."""

from __future__ import annotations

import copy
import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any


SETTINGS_PATH = Path(
    os.environ.get(
        "RPI_IMAGE_BACKUP_SETTINGS_PATH",
        Path.home() / ".config" / "rpi-image-backup" / "settings.json",
    )
)

# Default values - use these constants instead of hardcoding values elsewhere
DEFAULT_SOURCE_DEVICE = "/dev/mmcblk0"
DEFAULT_SIZE_MARGIN_BYTES = 500 * 1000 * 1000
DEFAULT_MOUNT_BASE = "/mnt"
DEFAULT_SWAP_FILE = "/var/swap"

SIZE_MODES = ("device", "usage")
IDENTITY_POLICIES = ("fresh", "source")

DEFAULT_SETTINGS: dict[str, Any] = {
    "source_device": DEFAULT_SOURCE_DEVICE,
    "size_mode": "device",
    "size_margin_bytes": DEFAULT_SIZE_MARGIN_BYTES,
    "identity_policy": "fresh",
    "mount_base": DEFAULT_MOUNT_BASE,
    "swap_file": DEFAULT_SWAP_FILE,
    "extra_excludes": [],
    "rsync_extra_args": [],
    "clone_partition_table": True,
}


@dataclass
class SettingsStore:
    values: dict[str, Any] = field(default_factory=dict)


settings_store = SettingsStore()


def load_settings(path: Path | None = None) -> None:
    settings_store.values = copy.deepcopy(DEFAULT_SETTINGS)
    path = path or SETTINGS_PATH
    if not path.exists():
        return
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError):
        return
    if isinstance(data, dict):
        settings_store.values.update(data)


def save_settings(path: Path | None = None) -> None:
    path = path or SETTINGS_PATH
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(
        json.dumps(settings_store.values, indent=2, sort_keys=True),
        encoding="utf-8",
    )


def get_setting(key: str, default: Any | None = None) -> Any:
    return settings_store.values.get(key, default)


def set_setting(key: str, value: Any) -> None:
    settings_store.values[key] = value
    save_settings()


def get_bool(key: str, default: bool = False) -> bool:
    return bool(get_setting(key, default))


def get_list(key: str) -> list[str]:
    """Return a list setting, tolerating a single string in the JSON file."""
    value = get_setting(key) or []
    if isinstance(value, str):
        return [value]
    return [str(item) for item in value]


def get_choice(key: str, choices: tuple[str, ...]) -> str:
    """Return a string setting restricted to ``choices``, else its default."""
    value = str(get_setting(key, DEFAULT_SETTINGS[key])).lower()
    if value not in choices:
        return DEFAULT_SETTINGS[key]
    return value


load_settings()
