"""Domain model for image backup runs.

Type-safe objects for the resources a backup run acquires, so that the
current image, loop binding and mount session travel through the code as an
explicit session value instead of shared module state.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Optional

MIB = 1024 * 1024


# ==============================================================================
# Partitions
# ==============================================================================


class PartitionRole(Enum):
    """Role of a partition in the two-partition Raspberry Pi layout."""

    BOOT = "boot"
    ROOT = "root"


@dataclass(frozen=True)
class Partition:
    """A typed handle to one partition of a block device."""

    device: str  # e.g., "/dev/loop0"
    number: int  # 1-based partition index
    role: PartitionRole
    fstype: str  # e.g., "vfat", "ext4"

    @property
    def node(self) -> str:
        """Partition device node (e.g., /dev/loop0p1, /dev/sda1)."""
        return partition_node(self.device, self.number)


def partition_node(device: str, number: int) -> str:
    """Build a partition node path.

    Devices whose name ends in a digit (loop0, mmcblk0, nvme0n1) use a ``p``
    separator before the partition number; others (sda) do not.
    """
    separator = "p" if re.search(r"\d$", device) else ""
    return f"{device}{separator}{number}"


@dataclass(frozen=True)
class PartitionLayout:
    """The boot (FAT) + root (ext4) layout of a device."""

    device: str
    boot: Partition
    root: Partition

    @classmethod
    def for_device(cls, device: str) -> PartitionLayout:
        return cls(
            device=device,
            boot=Partition(device, 1, PartitionRole.BOOT, "vfat"),
            root=Partition(device, 2, PartitionRole.ROOT, "ext4"),
        )

    @property
    def partitions(self) -> tuple[Partition, Partition]:
        return (self.boot, self.root)


# ==============================================================================
# Devices and images
# ==============================================================================


@dataclass(frozen=True)
class Identifiers:
    """Filesystem and partition-table identifiers of a device."""

    root_uuid: str
    boot_uuid: str
    ptuuid: str

    def partuuid(self, number: int) -> str:
        """PARTUUID of an MBR partition (``<ptuuid>-0N``)."""
        return f"{self.ptuuid}-{number:02d}"


@dataclass(frozen=True)
class SourceDevice:
    """The live block device backing the running system. Never written."""

    path: str  # e.g., "/dev/mmcblk0"

    @property
    def layout(self) -> PartitionLayout:
        return PartitionLayout.for_device(self.path)


class ImageState(Enum):
    ABSENT = "absent"
    CREATED = "created"
    POPULATED = "populated"


@dataclass(frozen=True)
class ImageSize:
    """Image capacity expressed as ``count`` blocks of ``block_size`` bytes."""

    count: int
    block_size: int

    @property
    def total_bytes(self) -> int:
        return self.count * self.block_size

    @property
    def total_mib(self) -> int:
        return self.total_bytes // MIB


@dataclass
class ImageFile:
    """A sparse file holding the target disk."""

    path: Path
    capacity_bytes: Optional[int] = None

    @property
    def exists(self) -> bool:
        return self.path.is_file()

    @property
    def state(self) -> ImageState:
        if not self.exists:
            return ImageState.ABSENT
        # A fresh sparse image has no allocated blocks yet.
        if self.path.stat().st_blocks == 0:
            return ImageState.CREATED
        return ImageState.POPULATED


@dataclass(frozen=True)
class LoopBinding:
    """Association between an image file and its loop device node."""

    device: str  # e.g., "/dev/loop0"
    image: Path

    @property
    def layout(self) -> PartitionLayout:
        return PartitionLayout.for_device(self.device)


# ==============================================================================
# Mount session
# ==============================================================================


@dataclass
class MountSession:
    """Mount points of the image's root and boot partitions.

    Root is mounted at ``mount_dir``; boot is mounted beneath it at
    ``mount_dir / boot_subdir``. ``created_dir`` records whether this run
    created ``mount_dir`` (and may therefore remove it).
    """

    mount_dir: Path
    boot_subdir: str = "boot"
    created_dir: bool = False
    root_mounted: bool = False
    boot_mounted: bool = False

    @property
    def root_target(self) -> Path:
        return self.mount_dir

    @property
    def boot_target(self) -> Path:
        return self.mount_dir / self.boot_subdir.strip(os.sep)


# ==============================================================================
# Sync results
# ==============================================================================


@dataclass(frozen=True)
class SyncWarning:
    """A non-fatal per-entry problem reported by a sync pass."""

    message: str
    path: Optional[str] = None


@dataclass
class SyncReport:
    """Outcome of one or more sync passes."""

    bytes_transferred: int = 0
    files_transferred: int = 0
    warnings: list[SyncWarning] = field(default_factory=list)
    elapsed_seconds: float = 0.0

    def merge(self, other: SyncReport) -> SyncReport:
        return SyncReport(
            bytes_transferred=self.bytes_transferred + other.bytes_transferred,
            files_transferred=self.files_transferred + other.files_transferred,
            warnings=self.warnings + other.warnings,
            elapsed_seconds=self.elapsed_seconds + other.elapsed_seconds,
        )
