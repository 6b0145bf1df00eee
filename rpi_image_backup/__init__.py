"""Live Raspberry Pi backup into a bootable sparse disk image."""

from rpi_image_backup.__version__ import __version__

__all__ = ["__version__"]
