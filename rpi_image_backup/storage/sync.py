"""File-level synchronization of the live system into the mounted image.

Two rsync passes are run against the mounted image: the boot tree first,
then the root tree. rsync is invoked with ``-aHAXx --delete --numeric-ids``
so permissions, ownership, hard links, ACLs, extended attributes and
symlinks (as links) are mirrored and entries removed from the live system
are removed from the image.

Error handling:
    - per-entry problems that come from the FAT boot partition or other
      filesystem feature gaps ("Operation not permitted", "Operation not
      supported", vanished files) are collected as SyncWarning values
    - rsync exit codes 23/24 with nothing but such problems count as success
    - a missing source or destination root, or any other failure, raises
      SyncError
"""

from __future__ import annotations

import os
import re
import subprocess
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterable, Optional, Sequence

from rpi_image_backup.domain.models import MountSession, SyncReport, SyncWarning
from rpi_image_backup.logging import LoggerFactory, ThrottledLogger

from .cancellation import CancellationToken
from .exceptions import BackupInterruptedError, SyncError


log = LoggerFactory.for_sync()
progress_log = ThrottledLogger(log, interval_seconds=30.0)

RSYNC_OPTIONS = ("-aHAXx", "--delete", "--numeric-ids", "--info=progress2", "--stats")

# Pseudo filesystems, transient trees and mount areas of the live system.
ALWAYS_EXCLUDED = (
    "/dev/*",
    "/proc/*",
    "/sys/*",
    "/run/*",
    "/tmp/*",
    "/mnt/*",
    "/media/*",
    "/lost+found",
)

PARTIAL_TRANSFER_CODES = (23, 24)
INTERRUPTED_CODES = (20,)
POLL_INTERVAL_SECONDS = 0.5
TERMINATE_TIMEOUT_SECONDS = 10.0

_WARNING_MARKERS = (
    "operation not permitted",
    "operation not supported",
    "failed to set",
    "file has vanished",
    "symlink has no referent",
    "some files vanished",
)
_SUMMARY_PREFIXES = ("rsync error:", "rsync warning:")
_PATH_RE = re.compile(r'"([^"]+)"')
_PROGRESS_RE = re.compile(r"^\s*([\d,.]+)\s+(\d+)%\s+(\S+/s)")
_TRANSFERRED_BYTES_RE = re.compile(r"Total transferred file size:\s*([\d,.]+)")
_TRANSFERRED_FILES_RE = re.compile(r"Number of regular files transferred:\s*([\d,.]+)")


@dataclass(frozen=True)
class SyncProgress:
    """One rsync --info=progress2 sample."""

    bytes_done: int
    percent: int
    rate: str


ProgressCallback = Callable[[SyncProgress], None]


def _to_int(value: str) -> int:
    return int(re.sub(r"[,.]", "", value))


def anchored(path: str, root: str = "/") -> Optional[str]:
    """Return ``path`` as an rsync pattern anchored at transfer ``root``.

    Returns None when ``path`` is outside ``root``.
    """
    root = os.path.normpath(root)
    path = os.path.normpath(path)
    try:
        relative = os.path.relpath(path, root)
    except ValueError:
        return None
    if relative == "." or relative.startswith(".."):
        return None
    return "/" + relative


def build_root_excludes(
    boot_mount: str,
    destination: Path,
    swap_file: Optional[str] = None,
    extra: Iterable[str] = (),
    source_root: str = "/",
    image: Optional[Path] = None,
) -> list[str]:
    """Exclude patterns for the root pass.

    Always covers the pseudo filesystems, the boot tree (synced in its own
    pass), the swap file, the destination mount root, the image file being
    written and configured extras.
    """
    excludes = list(ALWAYS_EXCLUDED)
    boot_pattern = anchored(boot_mount, source_root)
    if boot_pattern:
        excludes.append(f"{boot_pattern}/*")
    if swap_file:
        swap_pattern = anchored(swap_file, source_root)
        if swap_pattern:
            excludes.append(swap_pattern)
    for target in (destination, image):
        if target is None:
            continue
        pattern = anchored(str(target), source_root)
        if pattern and pattern not in excludes:
            excludes.append(pattern)
    for pattern in extra:
        if pattern and pattern not in excludes:
            excludes.append(pattern)
    return excludes


def build_rsync_command(
    source: str,
    destination: str,
    excludes: Sequence[str] = (),
    log_file: Optional[Path] = None,
    extra_args: Sequence[str] = (),
) -> list[str]:
    command = ["rsync", *RSYNC_OPTIONS]
    if log_file is not None:
        command.append(f"--log-file={log_file}")
    command.extend(extra_args)
    command.extend(f"--exclude={pattern}" for pattern in excludes)
    # Trailing slashes: copy the contents of source into destination.
    command.append(source.rstrip("/") + "/")
    command.append(destination.rstrip("/") + "/")
    return command


def classify_stderr_line(line: str) -> Optional[SyncWarning]:
    """Return a SyncWarning for a non-fatal per-entry message.

    Returns None for lines that are fatal errors or rsync's closing summary
    (see :func:`is_summary_line`).
    """
    text = line.strip()
    lowered = text.lower()
    if not text or lowered.startswith(_SUMMARY_PREFIXES):
        return None
    if any(marker in lowered for marker in _WARNING_MARKERS):
        match = _PATH_RE.search(text)
        return SyncWarning(message=text, path=match.group(1) if match else None)
    return None


def is_summary_line(line: str) -> bool:
    return line.strip().lower().startswith(_SUMMARY_PREFIXES)


def parse_progress(line: str) -> Optional[SyncProgress]:
    match = _PROGRESS_RE.match(line)
    if not match:
        return None
    return SyncProgress(
        bytes_done=_to_int(match.group(1)),
        percent=int(match.group(2)),
        rate=match.group(3),
    )


def parse_stats(lines: Iterable[str]) -> tuple[int, int]:
    """Return ``(bytes, files)`` transferred from rsync --stats output."""
    transferred_bytes = 0
    transferred_files = 0
    for line in lines:
        bytes_match = _TRANSFERRED_BYTES_RE.search(line)
        if bytes_match:
            transferred_bytes = _to_int(bytes_match.group(1))
        files_match = _TRANSFERRED_FILES_RE.search(line)
        if files_match:
            transferred_files = _to_int(files_match.group(1))
    return transferred_bytes, transferred_files


def _log_progress(progress: SyncProgress) -> None:
    progress_log.info(
        "progress",
        f"Sync progress: {progress.percent}% ({progress.bytes_done} bytes, {progress.rate})",
    )


def _drain(stream, sink: list[str], on_line: Optional[Callable[[str], None]] = None) -> None:
    for line in stream:
        sink.append(line)
        if on_line is not None:
            on_line(line)


def _terminate(process: subprocess.Popen) -> None:
    process.terminate()
    try:
        process.wait(timeout=TERMINATE_TIMEOUT_SECONDS)
    except subprocess.TimeoutExpired:
        process.kill()
        process.wait()


def sync_tree(
    source: str,
    destination: str,
    excludes: Sequence[str] = (),
    *,
    progress_callback: Optional[ProgressCallback] = None,
    cancel: Optional[CancellationToken] = None,
    log_file: Optional[Path] = None,
    extra_args: Sequence[str] = (),
) -> SyncReport:
    """Mirror ``source`` into ``destination`` with rsync.

    Raises:
        SyncError: If either root cannot be used or rsync fails fatally
        BackupInterruptedError: If ``cancel`` is set while rsync runs
    """
    if not os.path.isdir(source):
        raise SyncError(source, destination, "source directory does not exist")
    if not os.path.isdir(destination):
        raise SyncError(source, destination, "destination directory does not exist")

    command = build_rsync_command(source, destination, excludes, log_file, extra_args)
    log.info(f"Starting rsync of {source} to {destination}")
    log.debug(f"Running command: {' '.join(command)}")
    callback = progress_callback or _log_progress

    def on_stdout(line: str) -> None:
        log.bind(tags=["sync", "progress"]).trace(line.rstrip())
        progress = parse_progress(line)
        if progress is not None:
            callback(progress)

    start = time.monotonic()
    try:
        # Text mode turns rsync's carriage-return progress updates into lines.
        process = subprocess.Popen(
            command,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            encoding="utf-8",
            errors="replace",
        )
    except OSError as error:
        raise SyncError(source, destination, str(error)) from error

    stdout_lines: list[str] = []
    stderr_lines: list[str] = []
    readers = [
        threading.Thread(target=_drain, args=(process.stdout, stdout_lines, on_stdout), daemon=True),
        threading.Thread(target=_drain, args=(process.stderr, stderr_lines), daemon=True),
    ]
    for reader in readers:
        reader.start()

    while True:
        try:
            process.wait(timeout=POLL_INTERVAL_SECONDS)
            break
        except subprocess.TimeoutExpired:
            if cancel is not None and cancel.cancelled:
                log.warning("Cancellation requested, stopping rsync")
                _terminate(process)
                break

    for reader in readers:
        reader.join(timeout=TERMINATE_TIMEOUT_SECONDS)
    if cancel is not None and cancel.cancelled:
        raise BackupInterruptedError("sync", cancel.signal_name)

    warnings: list[SyncWarning] = []
    errors: list[str] = []
    for line in stderr_lines:
        warning = classify_stderr_line(line)
        if warning is not None:
            warnings.append(warning)
        elif line.strip() and not is_summary_line(line):
            errors.append(line.strip())

    returncode = process.returncode
    if returncode in INTERRUPTED_CODES:
        raise BackupInterruptedError("sync")
    if returncode != 0 and not (returncode in PARTIAL_TRANSFER_CODES and not errors):
        summary = next((line.strip() for line in reversed(stderr_lines) if line.strip()), "")
        reason = errors[-1] if errors else summary
        raise SyncError(source, destination, reason, returncode=returncode)

    transferred_bytes, transferred_files = parse_stats(stdout_lines)
    for warning in warnings:
        log.debug(f"Sync warning: {warning.message}")
    report = SyncReport(
        bytes_transferred=transferred_bytes,
        files_transferred=transferred_files,
        warnings=warnings,
        elapsed_seconds=time.monotonic() - start,
    )
    log.info(
        f"Finished rsync of {source}: {transferred_files} files, "
        f"{transferred_bytes} bytes, {len(warnings)} warnings"
    )
    return report


def sync_system(
    session: MountSession,
    boot_mount: str,
    *,
    source_root: str = "/",
    swap_file: Optional[str] = None,
    extra_excludes: Iterable[str] = (),
    cancel: Optional[CancellationToken] = None,
    progress_callback: Optional[ProgressCallback] = None,
    log_file: Optional[Path] = None,
    extra_args: Sequence[str] = (),
    image: Optional[Path] = None,
) -> SyncReport:
    """Run the boot pass, then the root pass, into the mounted image.

    ``image`` is the file backing the mount; it is excluded so a backup
    stored on the root filesystem is not copied into itself.
    """
    extra_excludes = list(extra_excludes)
    boot_report = sync_tree(
        boot_mount,
        str(session.boot_target),
        progress_callback=progress_callback,
        cancel=cancel,
        log_file=log_file,
        extra_args=extra_args,
    )
    if cancel is not None:
        cancel.raise_if_cancelled("sync")
    root_excludes = build_root_excludes(
        boot_mount,
        session.root_target,
        swap_file=swap_file,
        extra=extra_excludes,
        source_root=source_root,
        image=image,
    )
    root_report = sync_tree(
        source_root,
        str(session.root_target),
        root_excludes,
        progress_callback=progress_callback,
        cancel=cancel,
        log_file=log_file,
        extra_args=extra_args,
    )
    return boot_report.merge(root_report)
