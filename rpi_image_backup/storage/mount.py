"""Mounting of the image's root and boot partitions.

Root is mounted at the session's mount directory and boot beneath it, so
the order is fixed: root before boot on the way in, boot before root on the
way out. Unmount treats targets that are not mounted as done, and only
removes a mount directory this tool created.
"""

from __future__ import annotations

import os
import time
from pathlib import Path
from typing import Optional, Union

from rpi_image_backup.domain.models import MountSession, Partition, PartitionLayout
from rpi_image_backup.logging import LoggerFactory

from .commands import flush_buffers, run_command, validate_path_argument
from .exceptions import AlreadyMountedError, MountFailedError, MountOrderError


log = LoggerFactory.for_mount()

PROC_MOUNTS = "/proc/mounts"

# A second Ctrl-C also reaches a running umount; it gets one more try.
UNMOUNT_ATTEMPTS = 2
UNMOUNT_RETRY_DELAY_SECONDS = 1.0


def _unescape(field: str) -> str:
    # /proc/mounts octal-escapes blanks, tabs, newlines and backslashes
    for escaped, char in (("\\040", " "), ("\\011", "\t"), ("\\012", "\n"), ("\\134", "\\")):
        field = field.replace(escaped, char)
    return field


def _normalize(path: Union[str, Path]) -> str:
    return os.path.normpath(os.fspath(path))


def read_mounts() -> list[tuple[str, str]]:
    """Return ``(source, target)`` pairs of the current mount table."""
    mounts = []
    try:
        with open(PROC_MOUNTS, encoding="utf-8") as mounts_file:
            for line in mounts_file:
                parts = line.split()
                if len(parts) > 1:
                    mounts.append((_unescape(parts[0]), _unescape(parts[1])))
    except FileNotFoundError:
        return []
    return mounts


def find_mountpoint(node: str) -> Optional[str]:
    """Return where device ``node`` is mounted, if anywhere."""
    for source, target in read_mounts():
        if source == node:
            return target
    return None


def is_mountpoint(path: Union[str, Path]) -> bool:
    target = _normalize(path)
    return any(_normalize(mounted) == target for _, mounted in read_mounts())


def mounted_beneath(path: Union[str, Path]) -> list[str]:
    """Return active mount targets strictly below ``path``."""
    prefix = _normalize(path).rstrip(os.sep) + os.sep
    return [target for _, target in read_mounts() if _normalize(target).startswith(prefix)]


def _mount_partition(partition: Partition, target: Path) -> None:
    target_arg = validate_path_argument(target, "mount point")
    result = run_command(["mount", partition.node, target_arg], check=False)
    if result.returncode != 0:
        raise MountFailedError(partition.node, target_arg, result.stderr.strip())
    log.debug(f"Mounted {partition.node} on {target_arg}")


def _unmount_target(target: Path) -> None:
    """Unmount ``target``; a target that is not mounted is left alone."""
    target_arg = validate_path_argument(target, "mount point")
    if not is_mountpoint(target_arg):
        log.debug(f"{target_arg} is not mounted")
        return
    nested = mounted_beneath(target_arg)
    if nested:
        raise MountOrderError(target_arg, nested)
    for attempt in range(1, UNMOUNT_ATTEMPTS + 1):
        result = run_command(["umount", target_arg], check=False)
        if result.returncode == 0:
            log.debug(f"Unmounted {target_arg}")
            return
        stderr = result.stderr.strip()
        if "not mounted" in stderr.lower():
            log.debug(f"{target_arg} was already unmounted")
            return
        if attempt < UNMOUNT_ATTEMPTS:
            log.warning(f"Unmounting {target_arg} failed ({stderr}); retrying")
            time.sleep(UNMOUNT_RETRY_DELAY_SECONDS)
    raise MountFailedError(target_arg, target_arg, stderr, action="unmount")


def mount(layout: PartitionLayout, session: MountSession) -> MountSession:
    """Mount root at ``session.mount_dir`` and boot beneath it.

    Raises:
        AlreadyMountedError: If the mount directory is already a mount point
        MountFailedError: If either mount fails; a failed root mount never
            attempts the boot mount, a failed boot mount unmounts root again
    """
    mount_dir = session.mount_dir
    validate_path_argument(mount_dir, "mount directory")
    if is_mountpoint(mount_dir):
        raise AlreadyMountedError(str(mount_dir), "something is already mounted there")

    if not mount_dir.exists():
        mount_dir.mkdir(parents=True)
        session.created_dir = True

    log.info(f"Mounting {layout.root.node} and {layout.boot.node} to {mount_dir}")
    try:
        _mount_partition(layout.root, session.root_target)
        session.root_mounted = True

        session.boot_target.mkdir(parents=True, exist_ok=True)
        _mount_partition(layout.boot, session.boot_target)
        session.boot_mounted = True
    except (MountFailedError, OSError):
        unmount(session)
        raise
    return session


def unmount(session: MountSession) -> None:
    """Unmount boot, then root, then remove the directory if we created it."""
    log.info(f"Unmounting image partitions from {session.mount_dir}")
    flush_buffers()

    _unmount_target(session.boot_target)
    session.boot_mounted = False
    _unmount_target(session.root_target)
    session.root_mounted = False

    if session.created_dir and session.mount_dir.is_dir() and not is_mountpoint(session.mount_dir):
        try:
            session.mount_dir.rmdir()
        except OSError as error:
            log.warning(f"Could not remove {session.mount_dir}: {error}")
        else:
            log.debug(f"Removed mount directory {session.mount_dir}")
            session.created_dir = False
