"""
Pytest configuration and shared fixtures for rpi-image-backup tests.

No test touches a real block device: every external command goes through a
patched ``run_command`` or ``subprocess.Popen``, and the mount table is
replaced by an in-memory fake.
"""

from pathlib import Path
from typing import List, Tuple
from unittest.mock import Mock

import pytest

from rpi_image_backup.config import settings
from rpi_image_backup.domain.models import (
    Identifiers,
    ImageFile,
    LoopBinding,
    MountSession,
    SourceDevice,
)


# ==============================================================================
# Settings
# ==============================================================================


@pytest.fixture(autouse=True)
def default_settings(tmp_path, monkeypatch):
    """Every test starts from the built-in defaults, never the user's file."""
    settings_file = tmp_path / "config" / "settings.json"
    monkeypatch.setattr("rpi_image_backup.config.settings.SETTINGS_PATH", settings_file)
    settings.load_settings()
    yield settings_file
    settings.load_settings(settings_file)


@pytest.fixture
def temp_settings_file(tmp_path) -> Path:
    """
    Fixture providing a temporary settings file path.

    Args:
        tmp_path: pytest's built-in temporary directory fixture.

    Returns:
        Path to a settings.json inside a fresh directory.
    """
    settings_dir = tmp_path / "settings"
    settings_dir.mkdir()
    return settings_dir / "settings.json"


# ==============================================================================
# Devices and identifiers
# ==============================================================================


@pytest.fixture
def source_device() -> SourceDevice:
    return SourceDevice("/dev/mmcblk0")


@pytest.fixture
def source_ids() -> Identifiers:
    """Identifiers of a typical Raspberry Pi OS card."""
    return Identifiers(
        root_uuid="2ab3f8e1-9c0d-4b7e-a6f2-1d5c8e9b0a47",
        boot_uuid="5DE4-665C",
        ptuuid="3e247b30",
    )


@pytest.fixture
def image_ids() -> Identifiers:
    return Identifiers(
        root_uuid="7f1c2d3e-4a5b-4c6d-8e9f-0a1b2c3d4e5f",
        boot_uuid="A1B2-C3D4",
        ptuuid="c0ffee42",
    )


@pytest.fixture
def sample_sfdisk_dump() -> str:
    """``sfdisk --dump /dev/mmcblk0`` of a 32 GB card."""
    return (
        "label: dos\n"
        "label-id: 0x3e247b30\n"
        "device: /dev/mmcblk0\n"
        "unit: sectors\n"
        "sector-size: 512\n"
        "\n"
        "/dev/mmcblk0p1 : start=        8192, size=     1048576, type=c\n"
        "/dev/mmcblk0p2 : start=     1056768, size=    61277184, type=83\n"
    )


# ==============================================================================
# Mount table
# ==============================================================================


class FakeMountTable:
    """In-memory /proc/mounts driven by fake ``mount``/``umount`` commands."""

    def __init__(self) -> None:
        self.entries: List[Tuple[str, str]] = []
        self.commands: List[List[str]] = []
        self.fail_on: dict = {}
        self.fail_once: dict = {}

    def read(self) -> List[Tuple[str, str]]:
        return list(self.entries)

    def run(self, command, check=True, **kwargs):
        command = [str(part) for part in command]
        self.commands.append(command)
        key = tuple(command)
        if key in self.fail_on:
            return Mock(returncode=32, stdout="", stderr=self.fail_on[key])
        if key in self.fail_once:
            return Mock(returncode=32, stdout="", stderr=self.fail_once.pop(key))
        if command[0] == "mount":
            self.entries.append((command[1], command[2]))
        elif command[0] == "umount":
            self.entries = [entry for entry in self.entries if entry[1] != command[1]]
        return Mock(returncode=0, stdout="", stderr="")


@pytest.fixture
def fake_mounts(mocker) -> FakeMountTable:
    """Patch the mount module onto a FakeMountTable."""
    table = FakeMountTable()
    mocker.patch("rpi_image_backup.storage.mount.read_mounts", side_effect=table.read)
    mocker.patch("rpi_image_backup.storage.mount.run_command", side_effect=table.run)
    mocker.patch("rpi_image_backup.storage.mount.flush_buffers")
    mocker.patch("rpi_image_backup.storage.mount.time.sleep")
    return table


# ==============================================================================
# Images and sessions
# ==============================================================================


@pytest.fixture
def image_path(tmp_path) -> Path:
    backup_dir = tmp_path / "backup"
    backup_dir.mkdir()
    return backup_dir / "pi.img"


@pytest.fixture
def existing_image(image_path) -> Path:
    """A 64 MiB sparse image file with a written boot sector."""
    with open(image_path, "wb") as handle:
        handle.truncate(64 * 1024 * 1024)
        handle.write(b"\x00" * 510 + b"\x55\xaa")
    return image_path


@pytest.fixture
def blank_image(image_path) -> Path:
    """A 64 MiB sparse image file with no blocks written."""
    with open(image_path, "wb") as handle:
        handle.truncate(64 * 1024 * 1024)
    return image_path


@pytest.fixture
def loop_binding(image_path) -> LoopBinding:
    return LoopBinding(device="/dev/loop0", image=image_path)


@pytest.fixture
def mount_session(tmp_path) -> MountSession:
    return MountSession(mount_dir=tmp_path / "mnt" / "pi.img")


@pytest.fixture
def image_file(existing_image) -> ImageFile:
    return ImageFile(path=existing_image)
