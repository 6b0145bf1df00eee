"""Backup workflows over an explicit session.

Every workflow (``start``, ``mount``, ``umount``, ``cloneid``, ``showdf``,
``gzip``) runs against a :class:`BackupSession` that owns the image, the
loop binding and the mount session of this invocation. The attach/detach
and mount/unmount pairs are registered as callbacks on an ExitStack,
so the same teardown runs after success, failure and interruption.

``start`` walks these stages:

    ABSENT -> CREATED -> ATTACHED -> PARTITIONED -> FORMATTED
        -> IDENTITY_CLONED -> MOUNTED -> SYNCED -> IDENTITY_FIXED
        -> UNMOUNTED -> DETACHED -> COMPRESSED -> DONE

(CREATED..IDENTITY_CLONED only when the image is created by this run, or was
left blank by an earlier run that never partitioned it.)
SIGINT/SIGTERM set a cancellation flag that is checked between stages and
while rsync or gzip run.
"""

from __future__ import annotations

import os
import time
from contextlib import ExitStack
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Optional

from rpi_image_backup.config import settings
from rpi_image_backup.domain.models import (
    ImageFile,
    ImageState,
    LoopBinding,
    MountSession,
    SourceDevice,
    SyncReport,
)
from rpi_image_backup.logging import LoggerFactory, operation_context
from rpi_image_backup.storage import compression, identity, loop, mount, partition, sizing, sync
from rpi_image_backup.storage.cancellation import CancellationToken, handle_signals
from rpi_image_backup.storage.commands import run_command, validate_path_argument
from rpi_image_backup.storage.exceptions import (
    AlreadyMountedError,
    BackupInterruptedError,
    ImageNotFoundError,
    ResourceUnavailableError,
    StorageError,
)
from rpi_image_backup.storage.image import create_sparse_image


log = LoggerFactory.for_system()

BOOT_MOUNT_CANDIDATES = ("/boot/firmware", "/boot")


class Stage(Enum):
    ABSENT = 0
    CREATED = 1
    ATTACHED = 2
    PARTITIONED = 3
    FORMATTED = 4
    IDENTITY_CLONED = 5
    MOUNTED = 6
    SYNCED = 7
    IDENTITY_FIXED = 8
    UNMOUNTED = 9
    DETACHED = 10
    COMPRESSED = 11
    DONE = 12


class RunOutcome(Enum):
    SUCCESS = "success"
    FAILED = "failed"
    INTERRUPTED = "interrupted"


@dataclass
class BackupOptions:
    """Per-invocation options (the command line's flags)."""

    create: bool = False
    compress: bool = False
    delete_after_compress: bool = False
    force: bool = False
    size_mb: Optional[int] = None
    log_file: Optional[Path] = None
    mount_dir: Optional[Path] = None


@dataclass
class BackupSession:
    """Everything one invocation has acquired, threaded through each step."""

    image: ImageFile
    source: SourceDevice
    options: BackupOptions = field(default_factory=BackupOptions)
    cancel: CancellationToken = field(default_factory=CancellationToken)
    boot_mount: str = "/boot"
    mount: Optional[MountSession] = None
    binding: Optional[LoopBinding] = None
    stage: Stage = Stage.ABSENT
    created_image: bool = False
    prepared: bool = False
    min_root_bytes: int = 0
    report: SyncReport = field(default_factory=SyncReport)
    df_output: str = ""

    def advance(self, stage: Stage) -> None:
        log.debug(f"Stage {self.stage.name} -> {stage.name}")
        self.stage = stage

    def checkpoint(self, next_stage: str) -> None:
        self.cancel.raise_if_cancelled(next_stage)

    @property
    def layout(self):
        if self.binding is None:
            raise ResourceUnavailableError("loop device", f"{self.image.path} is not attached")
        return self.binding.layout


@dataclass
class RunResult:
    command: str
    outcome: RunOutcome
    stage: Stage
    report: Optional[SyncReport] = None
    error: Optional[BaseException] = None
    elapsed_seconds: float = 0.0

    @property
    def exit_code(self) -> int:
        return 0 if self.outcome is RunOutcome.SUCCESS else 1


# ==============================================================================
# Session construction and checks
# ==============================================================================


def detect_boot_mount() -> str:
    """Where the live system mounts its boot partition."""
    for candidate in BOOT_MOUNT_CANDIDATES:
        if mount.is_mountpoint(candidate):
            return candidate
    return "/boot"


def default_mount_dir(image: Path) -> Path:
    base = Path(settings.get_setting("mount_base", settings.DEFAULT_MOUNT_BASE))
    return base / image.name


def new_session(
    image: Path,
    options: Optional[BackupOptions] = None,
    source_device: Optional[str] = None,
    cancel: Optional[CancellationToken] = None,
) -> BackupSession:
    """Build the session for one invocation."""
    validate_path_argument(image, "image path")
    options = options or BackupOptions()
    source = SourceDevice(source_device or settings.get_setting("source_device"))
    boot_mount = detect_boot_mount()
    if options.mount_dir is not None:
        validate_path_argument(options.mount_dir, "mount directory")
        mount_dir = options.mount_dir
    else:
        mount_dir = default_mount_dir(image)
    return BackupSession(
        image=ImageFile(path=image),
        source=source,
        options=options,
        cancel=cancel or CancellationToken(),
        boot_mount=boot_mount,
        mount=MountSession(mount_dir=mount_dir, boot_subdir=boot_mount.lstrip("/")),
    )


def preflight(command: str, session: BackupSession) -> None:
    """Refuse to start when the invocation cannot succeed.

    Raises:
        ImageNotFoundError: The image is missing (and may not be created)
        CompressionError: The ``.gz`` exists and overwriting was not forced
        AlreadyMountedError: The default mount directory already exists
        ResourceUnavailableError: A caller supplied mount directory is missing
    """
    image = session.image.path
    options = session.options
    if command in ("umount", "gzip", "cloneid", "showdf"):
        if not image.is_file():
            raise ImageNotFoundError(str(image))
    elif not image.is_file() and not options.create:
        raise ImageNotFoundError(str(image), "Use -c to allow creation")

    if options.compress or command == "gzip":
        compression.ensure_can_write(image, options.force)

    if command == "gzip":
        return
    mount_dir = session.mount.mount_dir
    if options.mount_dir is not None:
        if not mount_dir.is_dir():
            raise ResourceUnavailableError(str(mount_dir), "mount point does not exist")
    elif command == "umount":
        if not mount_dir.is_dir():
            raise ResourceUnavailableError(str(mount_dir), "default mount point does not exist")
    elif mount_dir.exists():
        raise AlreadyMountedError(str(mount_dir), "default mount point already exists")


# ==============================================================================
# Scoped resources
# ==============================================================================


# Release callbacks live on the caller's ExitStack; ``mount`` keeps them
# registered past the workflow with ``pop_all()``.


def _release_binding(session: BackupSession) -> None:
    if session.binding is not None:
        loop.detach(session.binding)
        session.binding = None
    session.advance(Stage.DETACHED)


def _release_mount(session: BackupSession) -> None:
    mount.unmount(session.mount)
    session.advance(Stage.UNMOUNTED)


def acquire_binding(session: BackupSession, stack: ExitStack) -> LoopBinding:
    """Attach the image; detach is registered on ``stack``."""
    session.binding = loop.attach(session.image.path)
    stack.callback(_release_binding, session)
    session.advance(Stage.ATTACHED)
    return session.binding


def acquire_mount(session: BackupSession, stack: ExitStack) -> MountSession:
    """Mount the image; unmount is registered on ``stack``.

    Caller supplied directories are never removed; ones created here are.
    """
    mount.mount(session.layout, session.mount)
    stack.callback(_release_mount, session)
    session.advance(Stage.MOUNTED)
    return session.mount


def _discard_unprepared_image(session: BackupSession) -> None:
    """Remove an image this run created but never finished preparing."""
    if session.created_image and not session.prepared:
        log.warning(f"Removing incomplete image {session.image.path}")
        session.image.path.unlink(missing_ok=True)


# ==============================================================================
# Steps
# ==============================================================================


def create_image(session: BackupSession) -> None:
    """Size and create the sparse image file.

    The live usage decides both the free space needed next to the image and
    the least the image's root partition must hold.
    """
    mode = settings.get_choice("size_mode", settings.SIZE_MODES)
    margin = int(settings.get_setting("size_margin_bytes", settings.DEFAULT_SIZE_MARGIN_BYTES))
    root_used = sizing.measure_used_bytes("/")
    boot_used = sizing.measure_used_bytes(session.boot_mount)
    boot_reserved = 0
    if mode == "usage" and session.options.size_mb is None:
        boot_reserved = partition.boot_partition_end(
            session.source, clone=settings.get_bool("clone_partition_table", True)
        )
    size = sizing.resolve_image_size(
        session.source,
        size_mb=session.options.size_mb,
        mode=mode,
        margin=margin,
        boot_mount=session.boot_mount,
        root_used=root_used,
        boot_used=boot_used,
        boot_reserved=boot_reserved,
    )
    session.min_root_bytes = root_used + margin if boot_reserved else root_used
    session.image = create_sparse_image(
        session.image.path, size, required_free=root_used + boot_used
    )
    session.created_image = True
    session.advance(Stage.CREATED)


def prepare_image(session: BackupSession) -> None:
    """Partition, format and assign identifiers to a freshly attached image."""
    layout = partition.partition(
        session.binding,
        session.source,
        clone=settings.get_bool("clone_partition_table", True),
        min_root_bytes=session.min_root_bytes,
    )
    session.advance(Stage.PARTITIONED)
    session.checkpoint("format")
    partition.format_partitions(layout)
    session.advance(Stage.FORMATTED)
    session.checkpoint("identity")
    identity.clone_partition_identity(
        session.source,
        layout,
        policy=settings.get_choice("identity_policy", settings.IDENTITY_POLICIES),
    )
    session.prepared = True
    session.advance(Stage.IDENTITY_CLONED)


def synchronize(session: BackupSession) -> SyncReport:
    if not mount.is_mountpoint(session.mount.root_target):
        raise AlreadyMountedError(str(session.mount.root_target), "image root is not mounted")
    report = sync.sync_system(
        session.mount,
        session.boot_mount,
        swap_file=settings.get_setting("swap_file", settings.DEFAULT_SWAP_FILE),
        extra_excludes=settings.get_list("extra_excludes"),
        cancel=session.cancel,
        log_file=session.options.log_file,
        extra_args=settings.get_list("rsync_extra_args"),
        image=session.image.path,
    )
    session.report = report
    session.advance(Stage.SYNCED)
    return report


def fix_boot_references(session: BackupSession, *previous) -> list[Path]:
    """Make the mounted image's fstab/cmdline.txt reference its own ids."""
    source_ids = identity.read_identifiers(session.source.layout)
    image_ids = identity.read_identifiers(session.layout)
    changed = identity.rewrite_boot_references(session.mount, [source_ids, *previous], image_ids)
    session.advance(Stage.IDENTITY_FIXED)
    return changed


def show_df(session: BackupSession) -> str:
    """Allocation of both image partitions in MB."""
    layout = session.layout
    result = run_command(["df", "-m", layout.boot.node, layout.root.node], check=False)
    session.df_output = result.stdout.rstrip()
    if session.df_output:
        log.info(f"Image allocation:\n{session.df_output}")
    return session.df_output


def _attach_and_prepare(session: BackupSession, stack: ExitStack) -> None:
    """Create (if requested), attach and (if blank) prepare the image."""
    state = session.image.state
    if state is ImageState.ABSENT:
        if not session.options.create:
            raise ImageNotFoundError(str(session.image.path), "Use -c to allow creation")
        create_image(session)
        stack.callback(_discard_unprepared_image, session)
    elif state is ImageState.CREATED:
        log.warning(f"{session.image.path} was never partitioned; preparing it now")
    session.checkpoint("attach")
    acquire_binding(session, stack)
    if state is not ImageState.POPULATED:
        prepare_image(session)


# ==============================================================================
# Workflows
# ==============================================================================


def _start(session: BackupSession) -> None:
    with ExitStack() as stack:
        _attach_and_prepare(session, stack)
        session.checkpoint("mount")
        acquire_mount(session, stack)
        session.checkpoint("sync")
        synchronize(session)
        session.checkpoint("identity")
        fix_boot_references(session)
        show_df(session)
    if session.options.compress:
        session.checkpoint("compress")
        compression.compress_image(
            session.image.path,
            delete_after=session.options.delete_after_compress,
            force=session.options.force,
            cancel=session.cancel,
        )
        session.advance(Stage.COMPRESSED)
    session.advance(Stage.DONE)


def _mount(session: BackupSession) -> None:
    with ExitStack() as stack:
        _attach_and_prepare(session, stack)
        session.checkpoint("mount")
        acquire_mount(session, stack)
        session.checkpoint("mount")
        # Success: keep the image attached and mounted.
        stack.pop_all()
    log.info(f"SD Image has been mounted and can be accessed at: {session.mount.mount_dir}")


def _umount(session: BackupSession) -> None:
    binding = loop.find_attached(session.image.path)
    if binding is None:
        raise ResourceUnavailableError("loop device", f"No /dev/loop<X> attached to {session.image.path}")
    session.binding = binding
    session.advance(Stage.MOUNTED)
    # The default directory was created by a previous ``mount``.
    session.mount.created_dir = session.options.mount_dir is None
    mount.unmount(session.mount)
    session.advance(Stage.UNMOUNTED)
    loop.detach(binding)
    session.binding = None
    session.advance(Stage.DETACHED)


def _cloneid(session: BackupSession) -> None:
    with ExitStack() as stack:
        acquire_binding(session, stack)
        previous = identity.read_identifiers(session.layout)
        session.checkpoint("identity")
        identity.clone_partition_identity(
            session.source,
            session.layout,
            policy=settings.get_choice("identity_policy", settings.IDENTITY_POLICIES),
        )
        session.advance(Stage.IDENTITY_CLONED)
        session.checkpoint("mount")
        acquire_mount(session, stack)
        fix_boot_references(session, previous)


def _showdf(session: BackupSession) -> None:
    with ExitStack() as stack:
        acquire_binding(session, stack)
        acquire_mount(session, stack)
        show_df(session)


def _gzip(session: BackupSession) -> None:
    compression.compress_image(
        session.image.path,
        delete_after=session.options.delete_after_compress,
        force=session.options.force,
        cancel=session.cancel,
    )
    session.advance(Stage.COMPRESSED)


WORKFLOWS: dict[str, Callable[[BackupSession], None]] = {
    "start": _start,
    "mount": _mount,
    "umount": _umount,
    "cloneid": _cloneid,
    "showdf": _showdf,
    "gzip": _gzip,
}


def run(command: str, session: BackupSession) -> RunResult:
    """Run one workflow with signal handling and guaranteed teardown.

    Never raises for storage failures; the outcome is reported in the
    returned :class:`RunResult`.
    """
    workflow = WORKFLOWS[command]
    start = time.monotonic()
    outcome = RunOutcome.SUCCESS
    error: Optional[BaseException] = None

    with handle_signals(session.cancel):
        try:
            with operation_context(command, image=os.fspath(session.image.path)):
                workflow(session)
                session.checkpoint("finish")
        except BackupInterruptedError as exc:
            outcome, error = RunOutcome.INTERRUPTED, exc
        except (StorageError, OSError, ValueError) as exc:
            # A child killed by the same Ctrl-C fails before we see the flag.
            outcome = RunOutcome.INTERRUPTED if session.cancel.cancelled else RunOutcome.FAILED
            error = exc

    result = RunResult(
        command=command,
        outcome=outcome,
        stage=session.stage,
        report=session.report,
        error=error,
        elapsed_seconds=time.monotonic() - start,
    )
    _log_summary(session, result)
    return result


def _log_summary(session: BackupSession, result: RunResult) -> None:
    minutes, seconds = divmod(int(result.elapsed_seconds), 60)
    if result.outcome is RunOutcome.INTERRUPTED:
        if session.options.log_file:
            log.info(f"See rsync log in {session.options.log_file}")
        log.error(f"SD Image backup process interrupted (last stage: {result.stage.name})")
        return
    if result.outcome is RunOutcome.FAILED:
        log.error(f"{result.command} failed at stage {result.stage.name}: {result.error}")
        return
    if result.report and result.report.warnings:
        log.warning(f"Sync finished with {len(result.report.warnings)} warnings (not fatal)")
    if result.command == "start":
        log.success(f"Backup completed: {session.image.path}")
        log.info(f"Backup took {minutes} minutes and {seconds} seconds")
        if session.options.log_file:
            log.info(f"See rsync log in {session.options.log_file}")
