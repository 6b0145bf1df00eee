"""Custom exceptions for image backup operations.

This module defines a hierarchy of exceptions so each failed stage of a
backup run can be reported with the resource that caused it.

Exception Hierarchy:
    StorageError (base)
        ├── CommandFailedError
        ├── PrivilegeError
        ├── ImageNotFoundError
        ├── ResourceUnavailableError
        ├── SizeEstimationError
        ├── AlreadyAttachedError
        ├── AlreadyMountedError
        ├── MountError
        │   ├── MountFailedError
        │   └── MountOrderError
        ├── PartitionFailedError
        ├── FormatFailedError
        ├── IdentityMismatchError
        ├── SyncError
        ├── CompressionError
        └── BackupInterruptedError

Usage:
    from rpi_image_backup.storage.exceptions import AlreadyAttachedError

    binding = find_attached(image)
    if binding is not None:
        raise AlreadyAttachedError(image, binding.device, mountpoint)
"""

from __future__ import annotations

from typing import Optional, Sequence


class StorageError(Exception):
    """Base exception for all backup operations."""


class CommandFailedError(StorageError):
    """An external command exited with a non-zero status."""

    def __init__(self, command: Sequence[str], returncode: int, stderr: str = ""):
        self.command = list(command)
        self.returncode = returncode
        self.stderr = stderr
        message = f"Command failed ({' '.join(self.command)}): rc={returncode}"
        if stderr:
            message += f": {stderr}"
        super().__init__(message)


class PrivilegeError(StorageError):
    """The process is not running with root privileges."""

    def __init__(self, message: str = "Please run as root. Try sudo."):
        super().__init__(message)


class ResourceUnavailableError(StorageError):
    """A required OS resource (loop device, disk space, tool) is unavailable."""

    def __init__(self, resource: str, reason: str = ""):
        self.resource = resource
        self.reason = reason
        msg = f"Resource unavailable: {resource}"
        if reason:
            msg += f" ({reason})"
        super().__init__(msg)


class SizeEstimationError(StorageError):
    """Used space of a source filesystem could not be measured."""

    def __init__(self, target: str, reason: str = ""):
        self.target = target
        self.reason = reason
        msg = f"Cannot determine size of {target}"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)


class AlreadyAttachedError(StorageError):
    """The image is already bound to a loop device."""

    def __init__(self, image: str, device: str, mountpoint: Optional[str] = None):
        self.image = image
        self.device = device
        self.mountpoint = mountpoint
        msg = f"{image} already attached to {device}"
        if mountpoint:
            msg += f" mounted on {mountpoint}"
        super().__init__(msg)


class AlreadyMountedError(StorageError):
    """The mount directory is already in use."""

    def __init__(self, mountpoint: str, reason: str = ""):
        self.mountpoint = mountpoint
        self.reason = reason
        msg = f"Mount point {mountpoint} is already in use"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)


class MountError(StorageError):
    """Base exception for mount-related errors."""


class MountFailedError(MountError):
    """Mounting or unmounting an image partition failed."""

    def __init__(self, partition: str, target: str, reason: str = "", action: str = "mount"):
        self.partition = partition
        self.target = target
        self.reason = reason
        self.action = action
        if action == "unmount":
            msg = f"Failed to unmount {target}"
        else:
            msg = f"Failed to mount {partition} on {target}"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)


class MountOrderError(MountError):
    """A mount was torn down while mounts beneath it were still active."""

    def __init__(self, target: str, nested: Sequence[str]):
        self.target = target
        self.nested = list(nested)
        super().__init__(
            f"Refusing to unmount {target}: still mounted beneath it: "
            f"{', '.join(self.nested)}"
        )


class PartitionFailedError(StorageError):
    """Writing the partition table to the image failed."""

    def __init__(self, device: str, reason: str = ""):
        self.device = device
        self.reason = reason
        msg = f"Partitioning {device} failed"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)


class FormatFailedError(StorageError):
    """Creating a filesystem on an image partition failed."""

    def __init__(self, partition: str, fstype: str, reason: str = ""):
        self.partition = partition
        self.fstype = fstype
        self.reason = reason
        msg = f"Creating {fstype} on {partition} failed"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)


class IdentityMismatchError(StorageError):
    """An identifier could not be read, written or rewritten."""

    def __init__(self, target: str, reason: str = ""):
        self.target = target
        self.reason = reason
        msg = f"Identity update failed for {target}"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)


class SyncError(StorageError):
    """A synchronization pass could not run or failed fatally."""

    def __init__(self, source: str, destination: str, reason: str = "", returncode: Optional[int] = None):
        self.source = source
        self.destination = destination
        self.reason = reason
        self.returncode = returncode
        msg = f"Sync {source} -> {destination} failed"
        if returncode is not None:
            msg += f" (rc={returncode})"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)


class CompressionError(StorageError):
    """Compressing the image failed."""

    def __init__(self, image: str, reason: str = ""):
        self.image = image
        self.reason = reason
        msg = f"Compressing {image} failed"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)


class BackupInterruptedError(StorageError):
    """The run was cancelled by a signal."""

    def __init__(self, stage: str = "", signal_name: Optional[str] = None):
        self.stage = stage
        self.signal_name = signal_name
        msg = "SD Image backup process interrupted"
        if signal_name:
            msg += f" by {signal_name}"
        if stage:
            msg += f" during {stage}"
        super().__init__(msg)


class ImageNotFoundError(StorageError):
    """The image file does not exist and creation was not requested."""

    def __init__(self, image: str, hint: str = ""):
        self.image = image
        msg = f"{image} does not exist"
        if hint:
            msg += f". {hint}"
        super().__init__(msg)
