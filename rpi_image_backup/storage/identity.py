"""Filesystem and partition-table identity of the image.

Raspberry Pi OS locates its partitions by ``PARTUUID=<ptuuid>-0N`` (and on
some releases ``UUID=``) in ``/etc/fstab`` and the kernel command line. The
image therefore needs identifiers that its own boot configuration points at.

Policies:
    fresh:   new root UUID and PTUUID are generated, so the image can be
             attached next to the live card without duplicate identifiers
    source:  the live card's root UUID and PTUUID are copied verbatim, so a
             restored card is indistinguishable from the original

Either way, every sync copies the live fstab into the image, so the boot
references are rewritten after each sync, before unmounting.
"""

from __future__ import annotations

import re
import secrets
import uuid
from pathlib import Path
from typing import Optional, Sequence, Union

from rpi_image_backup.domain.models import Identifiers, MountSession, PartitionLayout, SourceDevice
from rpi_image_backup.logging import LoggerFactory

from .commands import flush_buffers, run_command, validate_device_path
from .exceptions import CommandFailedError, IdentityMismatchError


log = LoggerFactory.for_identity()

POLICY_FRESH = "fresh"
POLICY_SOURCE = "source"

CMDLINE_FILE = "cmdline.txt"
FSTAB_FILE = Path("etc") / "fstab"

# e2fsck exit codes 0 (clean) and 1 (errors corrected) leave a usable fs.
_E2FSCK_OK = (0, 1)

_REFERENCE_RE = re.compile(r"\b(PARTUUID|UUID)=([0-9A-Fa-f-]+)")


def _blkid_value(tag: str, node: str) -> str:
    node = validate_device_path(node)
    result = run_command(
        ["blkid", "-c", "/dev/null", "-s", tag, "-o", "value", node],
        check=False,
        log_output=False,
    )
    return result.stdout.strip() if result.returncode == 0 else ""


def read_identifiers(layout: PartitionLayout) -> Identifiers:
    """Read root UUID, boot UUID and PTUUID of a device.

    Raises:
        IdentityMismatchError: If the root UUID or PTUUID cannot be read
    """
    root_uuid = _blkid_value("UUID", layout.root.node)
    boot_uuid = _blkid_value("UUID", layout.boot.node)
    ptuuid = _blkid_value("PTUUID", layout.device)
    if not root_uuid:
        raise IdentityMismatchError(layout.root.node, "no filesystem UUID")
    if not ptuuid:
        raise IdentityMismatchError(layout.device, "no partition table id")
    return Identifiers(root_uuid=root_uuid, boot_uuid=boot_uuid, ptuuid=ptuuid.lower())


def generate_ptuuid(avoid: Optional[str] = None) -> str:
    """Return a random 32-bit MBR disk identifier as 8 hex digits."""
    while True:
        value = secrets.token_hex(4)
        if value != "00000000" and value != (avoid or "").lower():
            return value


def check_filesystem(node: str) -> None:
    """Run a forced e2fsck; tune2fs refuses to change UUIDs without one."""
    node = validate_device_path(node)
    result = run_command(["e2fsck", "-f", "-y", node], check=False, log_output=False)
    if result.returncode not in _E2FSCK_OK:
        raise IdentityMismatchError(
            node, f"e2fsck returned {result.returncode}: {result.stderr.strip()}"
        )


def clone_partition_identity(
    source: SourceDevice,
    target: PartitionLayout,
    policy: str = POLICY_FRESH,
) -> Identifiers:
    """Assign the image's root UUID and PTUUID according to ``policy``.

    Returns:
        The identifiers read back from the image after the change

    Raises:
        IdentityMismatchError: If identifiers cannot be read, written or the
            value read back differs from the one written
    """
    if policy not in (POLICY_FRESH, POLICY_SOURCE):
        raise ValueError(f"Unknown identity policy: {policy}")

    source_ids = read_identifiers(source.layout)
    if policy == POLICY_SOURCE:
        root_uuid = source_ids.root_uuid
        ptuuid = source_ids.ptuuid
    else:
        root_uuid = str(uuid.uuid4())
        ptuuid = generate_ptuuid(avoid=source_ids.ptuuid)

    check_filesystem(target.root.node)
    log.info(f"Setting {target.root.node} UUID to {root_uuid} and PTUUID to {ptuuid}")
    try:
        # tune2fs may ask for confirmation when the fs was mounted recently
        run_command(["tune2fs", "-U", root_uuid, target.root.node], input_text="y\n")
        run_command(["sfdisk", "--disk-id", target.device, f"0x{ptuuid}"])
    except CommandFailedError as error:
        raise IdentityMismatchError(target.device, error.stderr) from error
    flush_buffers()

    written = read_identifiers(target)
    if written.root_uuid != root_uuid:
        raise IdentityMismatchError(
            target.root.node, f"UUID reads back as {written.root_uuid}, expected {root_uuid}"
        )
    if written.ptuuid != ptuuid:
        raise IdentityMismatchError(
            target.device, f"PTUUID reads back as {written.ptuuid}, expected {ptuuid}"
        )
    return written


def referenced_ids(text: str) -> set[str]:
    """Return every ``UUID=``/``PARTUUID=`` value referenced in ``text``."""
    return {match.group(2) for match in _REFERENCE_RE.finditer(text)}


def _replacements(old: Identifiers, new: Identifiers) -> list[tuple[str, str]]:
    pairs = [
        (old.root_uuid, new.root_uuid),
        (old.boot_uuid, new.boot_uuid),
        (old.partuuid(1), new.partuuid(1)),
        (old.partuuid(2), new.partuuid(2)),
    ]
    return [(before, after) for before, after in pairs if before and after and before != after]


def _rewrite_file(path: Path, replacements: list[tuple[str, str]]) -> bool:
    text = path.read_text(encoding="utf-8")
    updated = text
    for before, after in replacements:
        pattern = re.compile(rf"(?<=UUID=){re.escape(before)}\b", re.IGNORECASE)
        updated = pattern.sub(after, updated)
    if updated == text:
        return False
    path.write_text(updated, encoding="utf-8")
    return True


def rewrite_boot_references(
    session: MountSession,
    old: Union[Identifiers, Sequence[Identifiers]],
    new: Identifiers,
) -> list[Path]:
    """Point the mounted image's fstab and cmdline.txt at its own partitions.

    Must run against the mounted image after the sync pass. ``old`` is the
    identifier set (or sets) the files may currently reference: the live
    card's after a sync, the image's previous ones after an identity change.

    Returns:
        Files that were changed

    Raises:
        IdentityMismatchError: If the image has no readable /etc/fstab
    """
    fstab = session.root_target / FSTAB_FILE
    if not fstab.is_file():
        raise IdentityMismatchError(str(fstab), "file not found in image")

    olds = [old] if isinstance(old, Identifiers) else list(old)
    replacements = []
    for previous in olds:
        for pair in _replacements(previous, new):
            if pair not in replacements:
                replacements.append(pair)
    if not replacements:
        log.debug("Image identifiers match the source; no boot references to rewrite")
        return []

    targets = [fstab]
    cmdline = session.boot_target / CMDLINE_FILE
    if cmdline.is_file():
        targets.append(cmdline)

    changed = []
    for path in targets:
        try:
            if _rewrite_file(path, replacements):
                changed.append(path)
        except OSError as error:
            raise IdentityMismatchError(str(path), str(error)) from error

    stale = {before.lower() for before, _ in replacements}
    for path in targets:
        remaining = {value.lower() for value in referenced_ids(path.read_text(encoding="utf-8"))}
        if remaining & stale:
            raise IdentityMismatchError(str(path), "stale source identifiers remain")

    for path in changed:
        log.info(f"Rewrote identifiers in {path}")
    return changed
