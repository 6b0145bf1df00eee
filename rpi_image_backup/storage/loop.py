"""Loop device attach/detach for image files.

An image is bound to at most one loop device at a time. ``attach`` refuses
to create a second binding; ``detach`` treats an already released binding as
success so crash-recovery and interrupt paths can call it unconditionally.

Example:
    >>> binding = attach(Path("/backup/pi.img"))
    >>> binding.layout.root.node
    '/dev/loop0p2'
    >>> detach(binding)
"""

from __future__ import annotations

from pathlib import Path
from typing import Optional

from rpi_image_backup.domain.models import LoopBinding
from rpi_image_backup.logging import LoggerFactory

from .commands import run_command, validate_device_path, validate_path_argument
from .exceptions import AlreadyAttachedError, CommandFailedError, ResourceUnavailableError
from .mount import find_mountpoint


log = LoggerFactory.for_loop()

_DETACHED_MARKERS = ("no such device", "no such file", "not a block device")


def find_attached(image: Path) -> Optional[LoopBinding]:
    """Return the current loop binding of ``image``, if any."""
    image_arg = validate_path_argument(image.resolve(), "image path")
    result = run_command(["losetup", "-j", image_arg], check=False, log_output=False)
    if result.returncode != 0:
        return None
    for line in result.stdout.splitlines():
        device = line.split(":", 1)[0].strip()
        if device.startswith("/dev/"):
            return LoopBinding(device=device, image=image)
    return None


def ensure_not_attached(image: Path) -> None:
    """Raise :class:`AlreadyAttachedError` if ``image`` is already bound."""
    binding = find_attached(image)
    if binding is not None:
        mountpoint = find_mountpoint(binding.layout.root.node)
        raise AlreadyAttachedError(str(image), binding.device, mountpoint)


def attach(image: Path) -> LoopBinding:
    """Bind ``image`` to the first free loop device and scan its partitions.

    Raises:
        AlreadyAttachedError: If the image is already bound to a loop device
        ResourceUnavailableError: If no loop device is free or the kernel
            rejects the binding
    """
    ensure_not_attached(image)
    image_arg = validate_path_argument(image.resolve(), "image path")
    try:
        output = run_command(["losetup", "--find", "--show", image_arg]).stdout
    except CommandFailedError as error:
        raise ResourceUnavailableError("loop device", error.stderr) from error
    device = output.strip().splitlines()[-1].strip() if output.strip() else ""
    if not device.startswith("/dev/"):
        raise ResourceUnavailableError("loop device", f"losetup returned {device!r}")

    binding = LoopBinding(device=device, image=image)
    log.info(f"Attached {image} to {device}")
    reread_partitions(binding)
    return binding


def reread_partitions(binding: LoopBinding) -> None:
    """Make the kernel create partition nodes for the binding.

    A freshly created image has no partition table yet; that is not an
    error here.
    """
    device = validate_device_path(binding.device)
    result = run_command(["partx", "--add", device], check=False)
    if result.returncode != 0:
        # partx --add fails when the partitions are already known.
        update = run_command(["partx", "--update", device], check=False)
        if update.returncode != 0:
            log.debug(f"No partitions registered for {device}: {result.stderr.strip()}")


def detach(binding: LoopBinding) -> None:
    """Release the loop binding.

    Detaching an already released device logs and returns.
    """
    device = validate_device_path(binding.device)
    run_command(["partx", "--delete", device], check=False, log_output=False)
    result = run_command(["losetup", "-d", device], check=False)
    if result.returncode == 0:
        log.info(f"Detached {binding.image} from {device}")
        return

    stderr = (result.stderr or "").strip()
    current = find_attached(binding.image)
    if current is None or current.device != device or any(
        marker in stderr.lower() for marker in _DETACHED_MARKERS
    ):
        log.warning(f"{device} was already detached from {binding.image}")
        return
    raise CommandFailedError(["losetup", "-d", device], result.returncode, stderr)
