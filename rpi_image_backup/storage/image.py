"""Sparse image file creation."""

from __future__ import annotations

import shutil
from pathlib import Path

from rpi_image_backup.domain.models import MIB, ImageFile, ImageSize
from rpi_image_backup.logging import LoggerFactory

from .commands import validate_path_argument
from .exceptions import ResourceUnavailableError


log = LoggerFactory.for_image()


def create_sparse_image(path: Path, size: ImageSize, required_free: int = 0) -> ImageFile:
    """Create a sparse file of ``size`` at ``path``.

    The file's logical size is fixed here; blocks are only allocated as data
    is written. ``required_free`` is the number of bytes the backup is
    expected to write, checked against free space on the target filesystem.

    Raises:
        FileExistsError: If ``path`` already exists
        ResourceUnavailableError: If there is not enough free space or the
            file could not be created
    """
    validate_path_argument(path, "image path")
    if path.exists():
        raise FileExistsError(f"{path} already exists")

    free = shutil.disk_usage(path.parent).free
    if required_free and free < required_free:
        raise ResourceUnavailableError(
            str(path.parent),
            f"{free // MIB} MiB free, about {required_free // MIB} MiB needed",
        )

    log.info(f"Creating sparse image {path} (~{size.total_mib} MB)")
    try:
        with open(path, "xb") as handle:
            handle.truncate(size.total_bytes)
    except OSError as error:
        raise ResourceUnavailableError(str(path), str(error)) from error

    if path.stat().st_size != size.total_bytes:
        path.unlink(missing_ok=True)
        raise ResourceUnavailableError(str(path), "was not created or has zero size")
    return ImageFile(path=path, capacity_bytes=size.total_bytes)
