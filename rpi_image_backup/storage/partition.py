"""Partition table and filesystem creation on an attached image.

Partitioning:
    - Always writes a fresh MBR (msdos) label first
    - clone mode replays ``sfdisk --dump`` of the source device so partition
      start offsets and types match exactly; the last partition is allowed
      to grow or shrink to the end of the image
    - fresh mode writes a 512 MiB FAT32 (LBA) boot partition followed by a
      Linux root partition filling the rest
    - the root partition must hold the measured root usage (plus margin);
      the space before it is reported by :func:`boot_partition_end`

Formatting:
    - partition 1: ``mkfs.vfat -I``
    - partition 2: ``mkfs.ext4 -F``

The kernel is told to re-read the partition table between the two steps;
formatting never starts before the partition nodes exist.
"""

from __future__ import annotations

import contextlib
import re
import shutil
import time
from pathlib import Path

from rpi_image_backup.domain.models import MIB, LoopBinding, PartitionLayout, SourceDevice
from rpi_image_backup.logging import LoggerFactory

from .commands import run_command, validate_device_path
from .exceptions import (
    CommandFailedError,
    FormatFailedError,
    PartitionFailedError,
    SizeEstimationError,
    StorageError,
)
from .loop import reread_partitions


log = LoggerFactory.for_partition()

FRESH_BOOT_SIZE_MIB = 512
FRESH_FIRST_SECTOR = 8192
SECTOR_SIZE = 512

PARTITION_NODE_WAIT_SECONDS = 5.0
PARTITION_NODE_POLL_SECONDS = 0.5

MKFS_COMMANDS = {
    "vfat": ["mkfs.vfat", "-I"],
    "ext4": ["mkfs.ext4", "-F", "-q"],
}


def fresh_layout_script() -> str:
    """sfdisk script for a new boot + root layout."""
    return (
        "label: dos\n"
        f"start={FRESH_FIRST_SECTOR}, size={FRESH_BOOT_SIZE_MIB}MiB, type=c\n"
        "type=83\n"
    )


def fit_dump_to_device(dump: str) -> str:
    """Adapt an ``sfdisk --dump`` of the source to the target device.

    Drops the ``device:`` header and the size of the last partition so that
    partition extends to the end of the image, which may be smaller or
    larger than the source card.
    """
    lines = dump.splitlines()
    partition_indexes = [index for index, line in enumerate(lines) if "start=" in line]
    if not partition_indexes:
        raise ValueError("sfdisk dump contains no partitions")
    label = None
    for line in lines:
        if line.startswith("label:"):
            label = line.split(":", 1)[1].strip().lower()
    if label not in ("dos", "mbr", "msdos"):
        raise ValueError(f"Unsupported partition table label: {label}")

    last = partition_indexes[-1]
    lines[last] = re.sub(r",?\s*size=\s*\d+", "", lines[last])
    kept = [line for line in lines if not line.startswith(("device:", "last-lba:"))]
    return "\n".join(kept) + "\n"


def dump_boot_end(dump: str) -> int:
    """Return the byte offset where the first partition of a dump ends."""
    sector_size = SECTOR_SIZE
    for line in dump.splitlines():
        if line.startswith("sector-size:"):
            sector_size = int(line.split(":", 1)[1])
    for line in dump.splitlines():
        if "start=" not in line:
            continue
        start = re.search(r"start=\s*(\d+)", line)
        size = re.search(r"size=\s*(\d+)", line)
        if not start or not size:
            raise ValueError(f"Unparsable partition line: {line.strip()}")
        return (int(start.group(1)) + int(size.group(1))) * sector_size
    raise ValueError("sfdisk dump contains no partitions")


def boot_partition_end(source: SourceDevice, clone: bool = True) -> int:
    """Bytes of the image used before the root partition starts.

    Raises:
        SizeEstimationError: If the source partition table cannot be read
    """
    if not clone:
        return FRESH_FIRST_SECTOR * SECTOR_SIZE + FRESH_BOOT_SIZE_MIB * MIB
    source_node = validate_device_path(source.path)
    try:
        dump = run_command(["sfdisk", "--dump", source_node], log_output=False).stdout
        return dump_boot_end(dump)
    except (CommandFailedError, ValueError) as error:
        raise SizeEstimationError(source_node, str(error)) from error


def partition_bytes(node: str) -> int:
    node = validate_device_path(node)
    try:
        return int(run_command(["blockdev", "--getsize64", node], log_output=False).stdout.strip())
    except (CommandFailedError, ValueError) as error:
        raise PartitionFailedError(node, f"cannot read partition size: {error}") from error


def _settle(device: str) -> None:
    for cmd in (["sync"], ["udevadm", "settle", "--timeout=10"]):
        if shutil.which(cmd[0]):
            with contextlib.suppress(StorageError, OSError):
                run_command(cmd, check=False, log_command=False)


def _wait_for_nodes(layout: PartitionLayout) -> bool:
    deadline = time.monotonic() + PARTITION_NODE_WAIT_SECONDS
    while True:
        if all(Path(partition.node).exists() for partition in layout.partitions):
            return True
        if time.monotonic() >= deadline:
            return False
        time.sleep(PARTITION_NODE_POLL_SECONDS)


def partition(
    binding: LoopBinding,
    source: SourceDevice,
    clone: bool = True,
    min_root_bytes: int = 0,
) -> PartitionLayout:
    """Write an MBR partition table for the boot + root layout.

    ``min_root_bytes`` is the least the root partition must hold; a table
    leaving less room is rejected before any filesystem is created.

    Raises:
        PartitionFailedError: If any step fails or the root partition is too
            small; the image is unusable and must not be formatted or mounted
    """
    device = validate_device_path(binding.device)
    try:
        run_command(["parted", "-s", device, "mklabel", "msdos"])
        if clone:
            source_node = validate_device_path(source.path)
            log.info(f"Copying partition table from {source_node} to {device}")
            dump = run_command(["sfdisk", "--dump", source_node], log_output=False).stdout
            script = fit_dump_to_device(dump)
        else:
            log.info(f"Creating boot + root partition table on {device}")
            script = fresh_layout_script()
        run_command(["sfdisk", "--force", "--no-reread", device], input_text=script)
    except (CommandFailedError, ValueError) as error:
        raise PartitionFailedError(device, str(error)) from error

    reread_partitions(binding)
    _settle(device)
    layout = binding.layout
    if not _wait_for_nodes(layout):
        raise PartitionFailedError(
            device, f"partition nodes {layout.boot.node}, {layout.root.node} did not appear"
        )
    if min_root_bytes:
        root_bytes = partition_bytes(layout.root.node)
        if root_bytes < min_root_bytes:
            raise PartitionFailedError(
                device,
                f"root partition {layout.root.node} holds {root_bytes // MIB} MiB, "
                f"{min_root_bytes // MIB} MiB needed",
            )
    return layout


def format_partitions(layout: PartitionLayout) -> None:
    """Create FAT on the boot partition and ext4 on the root partition.

    Raises:
        FormatFailedError: If mkfs fails on either partition
    """
    log.info("Formatting partitions")
    for part in layout.partitions:
        command = MKFS_COMMANDS[part.fstype] + [part.node]
        try:
            run_command(command, log_output=False)
        except CommandFailedError as error:
            raise FormatFailedError(part.node, part.fstype, error.stderr) from error
        log.debug(f"Created {part.fstype} on {part.node}")
