"""Process execution helpers for external storage tools.

Every external tool is invoked with an argument list, never through a shell.
Path arguments that come from the user (image path, mount directory) are
validated before they are placed in a command.
"""

from __future__ import annotations

import os
import shutil
import subprocess
from pathlib import Path
from typing import Iterable, Optional, Sequence, Union

from rpi_image_backup.logging import LoggerFactory

from .exceptions import CommandFailedError, PrivilegeError, ResourceUnavailableError


log = LoggerFactory.for_system()

# Characters that never appear in a sane device node, image or mount path.
_FORBIDDEN_PATH_CHARS = ("\n", "\r", "\x00")
_FORBIDDEN_DEVICE_CHARS = (";", "&", "|", "$", "`", " ", "\n", "\r", "\x00")

REQUIRED_TOOLS = (
    "losetup",
    "parted",
    "sfdisk",
    "partx",
    "blkid",
    "mkfs.vfat",
    "mkfs.ext4",
    "e2fsck",
    "tune2fs",
    "mount",
    "umount",
    "rsync",
    "df",
)
COMPRESSION_TOOLS = ("gzip",)


def validate_path_argument(path: Union[str, Path], what: str = "path") -> str:
    """Validate a user-supplied filesystem path and return it as a string.

    Raises:
        ValueError: If the path is empty, starts with ``-`` (would be read as
            an option) or contains control characters.
    """
    value = os.fspath(path)
    if not value:
        raise ValueError(f"Empty {what}")
    if value.startswith("-"):
        raise ValueError(f"Invalid {what} (looks like an option): {value}")
    if any(char in value for char in _FORBIDDEN_PATH_CHARS):
        raise ValueError(f"{what.capitalize()} contains invalid characters: {value!r}")
    return value


def validate_device_path(device: str) -> str:
    """Validate a block device node path (must live under /dev/)."""
    if not isinstance(device, str) or not device.startswith("/dev/"):
        raise ValueError(f"Invalid device path: {device}")
    if any(char in device for char in _FORBIDDEN_DEVICE_CHARS):
        raise ValueError(f"Device path contains invalid characters: {device}")
    return device


def run_command(
    command: Sequence[str],
    check: bool = True,
    input_text: Optional[str] = None,
    log_output: bool = True,
    log_command: bool = True,
) -> subprocess.CompletedProcess:
    """Run a command, capturing text output.

    With ``check=True`` a non-zero exit raises :class:`CommandFailedError`.
    """
    command = [str(part) for part in command]
    if log_command:
        log.debug(f"Running command: {' '.join(command)}")
    try:
        result = subprocess.run(
            command,
            input=input_text,
            text=True,
            capture_output=True,
        )
    except FileNotFoundError as error:
        raise ResourceUnavailableError(command[0], "program not installed") from error
    if result.stdout and (log_output or result.returncode != 0):
        log.debug(f"stdout: {result.stdout.strip()}")
    if result.stderr and (log_output or result.returncode != 0):
        log.debug(f"stderr: {result.stderr.strip()}")
    if log_command:
        log.debug(f"Command completed with return code {result.returncode}")
    if check and result.returncode != 0:
        raise CommandFailedError(command, result.returncode, _error_text(result))
    return result


def _error_text(result: subprocess.CompletedProcess) -> str:
    stderr = (result.stderr or "").strip()
    stdout = (result.stdout or "").strip()
    return stderr or stdout or "Command failed"


def flush_buffers() -> None:
    """Flush filesystem buffers to disk."""
    run_command(["sync"], check=False, log_output=False)


def missing_tools(tools: Iterable[str]) -> list[str]:
    return [tool for tool in tools if shutil.which(tool) is None]


def require_tools(tools: Iterable[str]) -> None:
    """Raise if any required program is not installed."""
    missing = missing_tools(tools)
    if missing:
        raise ResourceUnavailableError(
            ", ".join(missing), "required program is not installed"
        )


def require_root() -> None:
    """Refuse to run without root privileges."""
    if os.geteuid() != 0:
        raise PrivilegeError()
