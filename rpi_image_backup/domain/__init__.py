"""Domain models for image backup runs.

This package contains type-safe domain objects for the resources a backup
run acquires: image file, loop binding, partition layout and mount session.
"""

from __future__ import annotations

from .models import (
    Identifiers,
    ImageFile,
    ImageSize,
    ImageState,
    LoopBinding,
    MountSession,
    Partition,
    PartitionLayout,
    PartitionRole,
    SourceDevice,
    SyncReport,
    SyncWarning,
    partition_node,
)


__all__ = [
    "Identifiers",
    "ImageFile",
    "ImageSize",
    "ImageState",
    "LoopBinding",
    "MountSession",
    "Partition",
    "PartitionLayout",
    "PartitionRole",
    "SourceDevice",
    "SyncReport",
    "SyncWarning",
    "partition_node",
]
