"""Image capacity estimation.

Three ways of sizing a new image:

    explicit:  caller supplies a size in MB; used verbatim in 1 MiB blocks
    device:    same sector count and sector size as the source device
    usage:     used bytes of the live root filesystem, the boot usage or the
               space reserved before the root partition (whichever is
               larger) and a safety margin, rounded up to whole MiB
"""

from __future__ import annotations

import math
from typing import Optional

from rpi_image_backup.domain.models import MIB, ImageSize, SourceDevice
from rpi_image_backup.logging import LoggerFactory

from .commands import run_command, validate_device_path, validate_path_argument
from .exceptions import CommandFailedError, SizeEstimationError


log = LoggerFactory.for_image()


def estimate_capacity(root_used: int, boot_used: int, margin: int) -> int:
    """Return the image capacity in bytes for the given usage.

    The sum of both filesystems' used bytes and the margin is rounded up to
    a whole number of MiB, so the result is never smaller than the sum.
    """
    for name, value in (("root_used", root_used), ("boot_used", boot_used), ("margin", margin)):
        if value < 0:
            raise ValueError(f"{name} must not be negative: {value}")
    total = root_used + boot_used + margin
    return math.ceil(total / MIB) * MIB


def measure_used_bytes(mountpoint: str) -> int:
    """Return used bytes of the filesystem mounted at ``mountpoint``."""
    target = validate_path_argument(mountpoint, "mount point")
    try:
        result = run_command(["df", "--output=used", "-B1", target], log_output=False)
    except CommandFailedError as error:
        raise SizeEstimationError(target, error.stderr) from error
    lines = result.stdout.strip().splitlines()
    if len(lines) < 2:
        raise SizeEstimationError(target, "unexpected df output")
    try:
        return int(lines[1].strip())
    except ValueError as error:
        raise SizeEstimationError(target, f"unparsable df value {lines[1]!r}") from error


def device_geometry(source: SourceDevice) -> ImageSize:
    """Return the source device size as sectors of its logical sector size."""
    device = validate_device_path(source.path)
    try:
        total = int(run_command(["blockdev", "--getsize64", device]).stdout.strip())
        sector = int(run_command(["blockdev", "--getss", device]).stdout.strip())
    except (CommandFailedError, ValueError) as error:
        raise SizeEstimationError(device, str(error)) from error
    if sector <= 0 or total <= 0:
        raise SizeEstimationError(device, f"invalid geometry {total}/{sector}")
    return ImageSize(count=total // sector, block_size=sector)


def explicit_size(size_mb: int) -> ImageSize:
    if size_mb <= 0:
        raise ValueError(f"Image size must be positive, got {size_mb} MB")
    return ImageSize(count=size_mb, block_size=MIB)


def resolve_image_size(
    source: SourceDevice,
    *,
    size_mb: Optional[int] = None,
    mode: str = "device",
    margin: int = 0,
    root_mount: str = "/",
    boot_mount: str = "/boot",
    root_used: Optional[int] = None,
    boot_used: Optional[int] = None,
    boot_reserved: int = 0,
) -> ImageSize:
    """Decide the size of a new image.

    An explicit ``size_mb`` always wins. Otherwise ``mode`` selects between
    the source device geometry and the measured usage of the live system.

    In usage mode ``boot_reserved`` is the offset at which the root
    partition will start; the boot share of the estimate is never smaller,
    so root used + margin fits behind the boot partition. Usage already
    measured by the caller is passed as ``root_used``/``boot_used``.
    """
    if size_mb is not None:
        size = explicit_size(size_mb)
        log.debug(f"Using explicit image size {size_mb} MB")
        return size
    if mode == "usage":
        if root_used is None:
            root_used = measure_used_bytes(root_mount)
        if boot_used is None:
            boot_used = measure_used_bytes(boot_mount)
        capacity = estimate_capacity(root_used, max(boot_used, boot_reserved), margin)
        log.debug(
            f"Estimated image size from usage: root={root_used} boot={boot_used} "
            f"reserved={boot_reserved} margin={margin} -> {capacity // MIB} MiB"
        )
        return ImageSize(count=capacity // MIB, block_size=MIB)
    if mode == "device":
        size = device_geometry(source)
        log.debug(f"Using geometry of {source.path}: {size.count} x {size.block_size}")
        return size
    raise ValueError(f"Unknown size mode: {mode}")
