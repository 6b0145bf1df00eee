"""Tests for storage/loop.py - loop device attach/detach.

Covers:
- Looking up an existing binding with ``losetup -j``
- Refusing to attach an image twice
- Partition re-read fallbacks
- Idempotent detach
"""

from unittest.mock import Mock, call, patch

import pytest

from rpi_image_backup.domain.models import LoopBinding
from rpi_image_backup.storage import loop
from rpi_image_backup.storage.exceptions import (
    AlreadyAttachedError,
    CommandFailedError,
    ResourceUnavailableError,
)


def ok(stdout="", stderr=""):
    return Mock(returncode=0, stdout=stdout, stderr=stderr)


def failed(stderr="", returncode=1):
    return Mock(returncode=returncode, stdout="", stderr=stderr)


class TestFindAttached:
    """Tests for find_attached()."""

    @patch("rpi_image_backup.storage.loop.run_command")
    def test_returns_binding_from_losetup(self, mock_run, image_path):
        mock_run.return_value = ok(f"/dev/loop3: [66306]:1234 ({image_path})\n")

        binding = loop.find_attached(image_path)

        assert binding == LoopBinding(device="/dev/loop3", image=image_path)
        assert mock_run.call_args[0][0][:2] == ["losetup", "-j"]

    @patch("rpi_image_backup.storage.loop.run_command")
    def test_no_binding(self, mock_run, image_path):
        mock_run.return_value = ok("")

        assert loop.find_attached(image_path) is None

    @patch("rpi_image_backup.storage.loop.run_command")
    def test_losetup_error_means_no_binding(self, mock_run, image_path):
        mock_run.return_value = failed("losetup: cannot get loop device")

        assert loop.find_attached(image_path) is None


class TestAttach:
    """Tests for attach()."""

    @patch("rpi_image_backup.storage.loop.run_command")
    def test_attach_free_image(self, mock_run, existing_image):
        mock_run.side_effect = [
            ok(""),  # losetup -j
            ok("/dev/loop0\n"),  # losetup --find --show
            ok(),  # partx --add
        ]

        binding = loop.attach(existing_image)

        assert binding.device == "/dev/loop0"
        assert binding.layout.root.node == "/dev/loop0p2"
        commands = [c[0][0] for c in mock_run.call_args_list]
        assert commands[1] == ["losetup", "--find", "--show", str(existing_image.resolve())]
        assert commands[2] == ["partx", "--add", "/dev/loop0"]

    @patch("rpi_image_backup.storage.loop.find_mountpoint", return_value="/mnt/pi.img")
    @patch("rpi_image_backup.storage.loop.run_command")
    def test_already_attached_refused(self, mock_run, mock_mountpoint, existing_image):
        mock_run.return_value = ok(f"/dev/loop1: []: ({existing_image})\n")

        with pytest.raises(AlreadyAttachedError) as exc_info:
            loop.attach(existing_image)

        assert exc_info.value.device == "/dev/loop1"
        assert exc_info.value.mountpoint == "/mnt/pi.img"
        assert "mounted on /mnt/pi.img" in str(exc_info.value)
        mock_mountpoint.assert_called_once_with("/dev/loop1p2")
        assert mock_run.call_count == 1

    @patch("rpi_image_backup.storage.loop.run_command")
    def test_no_free_loop_device(self, mock_run, existing_image):
        mock_run.side_effect = [
            ok(""),
            CommandFailedError(["losetup"], 1, "losetup: cannot find an unused loop device"),
        ]

        with pytest.raises(ResourceUnavailableError) as exc_info:
            loop.attach(existing_image)

        assert exc_info.value.resource == "loop device"
        assert "unused loop device" in exc_info.value.reason

    @patch("rpi_image_backup.storage.loop.run_command")
    def test_unexpected_losetup_output(self, mock_run, existing_image):
        mock_run.side_effect = [ok(""), ok("\n")]

        with pytest.raises(ResourceUnavailableError):
            loop.attach(existing_image)


class TestRereadPartitions:
    """Tests for reread_partitions()."""

    @patch("rpi_image_backup.storage.loop.run_command")
    def test_falls_back_to_update(self, mock_run, loop_binding):
        mock_run.side_effect = [failed("partx: /dev/loop0: error adding partitions 1-2"), ok()]

        loop.reread_partitions(loop_binding)

        assert mock_run.call_args_list[1] == call(["partx", "--update", "/dev/loop0"], check=False)

    @patch("rpi_image_backup.storage.loop.run_command")
    def test_empty_image_is_not_an_error(self, mock_run, loop_binding):
        mock_run.side_effect = [failed("failed to read partition table"), failed("no partitions")]

        loop.reread_partitions(loop_binding)

        assert mock_run.call_count == 2


class TestDetach:
    """Tests for detach()."""

    @patch("rpi_image_backup.storage.loop.run_command")
    def test_detach(self, mock_run, loop_binding):
        mock_run.side_effect = [ok(), ok()]

        loop.detach(loop_binding)

        assert mock_run.call_args_list[0][0][0] == ["partx", "--delete", "/dev/loop0"]
        assert mock_run.call_args_list[1][0][0] == ["losetup", "-d", "/dev/loop0"]

    @patch("rpi_image_backup.storage.loop.run_command")
    def test_already_detached_is_success(self, mock_run, loop_binding):
        mock_run.side_effect = [
            failed("partx: /dev/loop0: no such device"),
            failed("losetup: /dev/loop0: detach failed: No such device or address"),
            ok(""),  # losetup -j: nothing bound
        ]

        loop.detach(loop_binding)

    @patch("rpi_image_backup.storage.loop.run_command")
    def test_device_reused_by_another_image(self, mock_run, loop_binding):
        mock_run.side_effect = [
            ok(),
            failed("losetup: /dev/loop0: detach failed: Device or resource busy"),
            ok(""),  # our image is no longer bound anywhere
        ]

        loop.detach(loop_binding)

    @patch("rpi_image_backup.storage.loop.run_command")
    def test_busy_device_still_bound_raises(self, mock_run, loop_binding):
        mock_run.side_effect = [
            ok(),
            failed("losetup: /dev/loop0: detach failed: Device or resource busy"),
            ok(f"/dev/loop0: []: ({loop_binding.image})\n"),
        ]

        with pytest.raises(CommandFailedError) as exc_info:
            loop.detach(loop_binding)

        assert "busy" in exc_info.value.stderr

    @patch("rpi_image_backup.storage.loop.run_command")
    def test_detach_twice(self, mock_run, loop_binding):
        mock_run.side_effect = [
            ok(),
            ok(),
            failed(),
            failed("losetup: /dev/loop0: detach failed: No such device or address"),
            ok(""),
        ]

        loop.detach(loop_binding)
        loop.detach(loop_binding)
