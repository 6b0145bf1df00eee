import argparse
import sys
from datetime import date
from pathlib import Path

from rpi_image_backup.__version__ import __version__
from rpi_image_backup.logging import LoggerFactory, setup_logging
from rpi_image_backup.services import lifecycle
from rpi_image_backup.storage import commands
from rpi_image_backup.storage.exceptions import StorageError


PROG = "rpi-image-backup"

EPILOG = f"""examples:
  {PROG} start -c /path/to/rpi_backup.img
      back up to rpi_backup.img, creating it if it does not exist
  {PROG} start -c -s 8000 /path/to/rpi_backup.img
      create an 8000 MB image if it does not exist, then back up
  {PROG} start -cz /path/to/$(uname -n)-$(date +%Y-%m-%d).img
      back up and compress the result to .img.gz
  {PROG} mount /path/to/$(uname -n).img /mnt/rpi_image
      mount the image's root (and boot beneath it) on /mnt/rpi_image
"""


def _size_mb(value):
    try:
        size = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid size: {value}") from None
    if size <= 0:
        raise argparse.ArgumentTypeError("size must be a positive number of MB")
    return size


def build_parser():
    parser = argparse.ArgumentParser(
        prog=PROG,
        description="Live backup of a Raspberry Pi SD card into a sparse, bootable image",
        epilog=EPILOG,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--version", action="version", version=f"{PROG} {__version__}")
    parser.add_argument("--debug", action="store_true", help="Enable verbose debug output")
    parser.add_argument(
        "--trace", action="store_true", help="Also print rsync progress lines (implies --debug)"
    )
    subparsers = parser.add_subparsers(dest="command", metavar="command")
    subparsers.required = True

    start = subparsers.add_parser("start", help="back up the running system to the image")
    start.add_argument("-c", dest="create", action="store_true", help="create the image if it does not exist")
    start.add_argument("-z", dest="compress", action="store_true", help="compress the image to IMAGE.gz after backup")
    start.add_argument("-d", dest="delete", action="store_true", help="delete the image after successful compression")
    start.add_argument("-f", dest="force", action="store_true", help="overwrite IMAGE.gz if it exists")
    log_group = start.add_mutually_exclusive_group()
    log_group.add_argument(
        "-l", dest="default_log", action="store_true", help="write the rsync log to IMAGE-YYYY-MM-DD.log"
    )
    log_group.add_argument("-L", dest="log_file", metavar="logfile", help="write the rsync log to logfile")
    start.add_argument("-i", dest="source", metavar="sdcard", help="source device (default: setting source_device)")
    start.add_argument("-s", dest="size_mb", metavar="MB", type=_size_mb, help="image size in MB when creating it")
    start.add_argument("image", help="path of the SD image")

    mount = subparsers.add_parser("mount", help="attach and mount the image")
    mount.add_argument("-c", dest="create", action="store_true", help="create the image if it does not exist")
    mount.add_argument("-i", dest="source", metavar="sdcard", help="source device used when creating")
    mount.add_argument("-s", dest="size_mb", metavar="MB", type=_size_mb, help="image size in MB when creating it")
    mount.add_argument("image", help="path of the SD image")
    mount.add_argument("mountdir", nargs="?", help="mount point (default: /mnt/<image name>)")

    umount = subparsers.add_parser("umount", help="unmount and detach the image")
    umount.add_argument("image", help="path of the SD image")
    umount.add_argument("mountdir", nargs="?", help="mount point (default: /mnt/<image name>)")

    gzip = subparsers.add_parser("gzip", help="compress the image to IMAGE.gz")
    gzip.add_argument("-d", dest="delete", action="store_true", help="delete the image after successful compression")
    gzip.add_argument("-f", dest="force", action="store_true", help="overwrite IMAGE.gz if it exists")
    gzip.add_argument("image", help="path of the SD image")

    cloneid = subparsers.add_parser("cloneid", help="assign identifiers to the image and fix its boot references")
    cloneid.add_argument("-i", dest="source", metavar="sdcard", help="source device")
    cloneid.add_argument("image", help="path of the SD image")

    showdf = subparsers.add_parser("showdf", help="show allocation of the image partitions")
    showdf.add_argument("image", help="path of the SD image")
    return parser


def default_log_file(image: Path, today=None) -> Path:
    today = today or date.today()
    return image.with_name(f"{image.name}-{today.isoformat()}.log")


def options_from_args(args) -> lifecycle.BackupOptions:
    image = Path(args.image)
    log_file = None
    if getattr(args, "log_file", None):
        log_file = Path(args.log_file)
    elif getattr(args, "default_log", False):
        log_file = default_log_file(image)
    mountdir = getattr(args, "mountdir", None)
    return lifecycle.BackupOptions(
        create=getattr(args, "create", False),
        compress=getattr(args, "compress", False),
        delete_after_compress=getattr(args, "delete", False),
        force=getattr(args, "force", False),
        size_mb=getattr(args, "size_mb", None),
        log_file=log_file,
        mount_dir=Path(mountdir) if mountdir else None,
    )


def required_tools(command: str, options: lifecycle.BackupOptions) -> list:
    tools = list(commands.REQUIRED_TOOLS)
    if options.compress or command == "gzip":
        tools.extend(commands.COMPRESSION_TOOLS)
    return tools


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_logging(debug=args.debug or args.trace, trace=args.trace)
    log = LoggerFactory.for_system()

    try:
        commands.require_root()
        options = options_from_args(args)
        commands.require_tools(required_tools(args.command, options))
        session = lifecycle.new_session(
            Path(args.image),
            options,
            source_device=getattr(args, "source", None),
        )
        lifecycle.preflight(args.command, session)
    except (StorageError, ValueError) as error:
        log.error(str(error))
        return 1

    if args.command == "start":
        log.info("Starting SD Image backup process")
    result = lifecycle.run(args.command, session)
    return result.exit_code


if __name__ == "__main__":
    sys.exit(main())
