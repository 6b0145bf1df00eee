"""Compression of a finished image to ``<image>.gz``.

Output goes to ``<image>.gz.tmp`` first and is renamed only when the
compressor succeeded, so an interrupted run never leaves a truncated
``.gz`` behind.
"""

from __future__ import annotations

import os
import shutil
import subprocess
from pathlib import Path
from typing import Optional

from rpi_image_backup.logging import LoggerFactory, ThrottledLogger

from .cancellation import CancellationToken
from .commands import validate_path_argument
from .exceptions import BackupInterruptedError, CompressionError


log = LoggerFactory.for_image()
progress_log = ThrottledLogger(log, interval_seconds=30.0)

POLL_INTERVAL_SECONDS = 0.5


def compressed_path(image: Path) -> Path:
    return image.with_name(image.name + ".gz")


def temporary_path(image: Path) -> Path:
    return image.with_name(image.name + ".gz.tmp")


def get_compression_tool() -> Optional[str]:
    """Prefer parallel gzip when installed."""
    return shutil.which("pigz") or shutil.which("gzip")


def ensure_can_write(image: Path, force: bool = False) -> None:
    """Refuse to overwrite an existing non-empty ``.gz`` unless forced."""
    target = compressed_path(image)
    if target.exists() and target.stat().st_size > 0 and not force:
        raise CompressionError(str(image), f"{target} already exists, use -f to force overwriting")


def remove_partial_output(image: Path) -> bool:
    """Delete a leftover ``.gz.tmp``; returns True if one was removed."""
    tmp = temporary_path(image)
    if tmp.exists():
        tmp.unlink()
        log.info(f"Removed partial output {tmp}")
        return True
    return False


def compress_image(
    image: Path,
    *,
    delete_after: bool = False,
    force: bool = False,
    cancel: Optional[CancellationToken] = None,
) -> Path:
    """Compress ``image`` and return the path of the ``.gz`` file.

    Raises:
        CompressionError: If the output exists (without ``force``), no
            compressor is installed or compression fails
        BackupInterruptedError: If ``cancel`` is set while compressing
    """
    validate_path_argument(image, "image path")
    if not image.is_file():
        raise CompressionError(str(image), "image does not exist")
    ensure_can_write(image, force)
    tool = get_compression_tool()
    if tool is None:
        raise CompressionError(str(image), "gzip is not installed")

    target = compressed_path(image)
    tmp = temporary_path(image)
    total = image.stat().st_blocks * 512
    log.info(f"Compressing {image} to {target}")

    with open(tmp, "wb") as output:
        process = subprocess.Popen(
            [tool, "-c", os.fspath(image)],
            stdout=output,
            stderr=subprocess.PIPE,
            text=True,
        )
        while True:
            try:
                process.wait(timeout=POLL_INTERVAL_SECONDS)
                break
            except subprocess.TimeoutExpired:
                if cancel is not None and cancel.cancelled:
                    process.terminate()
                    process.wait()
                    break
                progress_log.info(
                    "gzip", f"Compressed output so far: {tmp.stat().st_size} bytes of ~{total}"
                )
        stderr = process.stderr.read() if process.stderr else ""

    if cancel is not None and cancel.cancelled:
        remove_partial_output(image)
        raise BackupInterruptedError("compress", cancel.signal_name)
    if process.returncode != 0 or tmp.stat().st_size == 0:
        remove_partial_output(image)
        raise CompressionError(str(image), stderr.strip() or f"rc={process.returncode}")

    os.replace(tmp, target)
    log.info(f"Created {target}")
    if delete_after:
        image.unlink()
        log.info(f"Deleted {image}")
    return target
