"""Tests for storage/sizing.py - image capacity estimation.

Covers:
- estimate_capacity() rounding and the capacity >= usage guarantee
- df based usage measurement and its failure modes
- blockdev based device geometry
- resolve_image_size() precedence (explicit size, usage, device)
"""

from unittest.mock import Mock, patch

import pytest

from rpi_image_backup.domain.models import MIB, ImageSize, SourceDevice
from rpi_image_backup.storage import sizing
from rpi_image_backup.storage.exceptions import CommandFailedError, SizeEstimationError


class TestEstimateCapacity:
    """Tests for estimate_capacity()."""

    def test_typical_pi_usage_rounds_up_to_whole_mib(self):
        """2 GB root + 50 MB boot + 500 MB margin needs 2432 MiB."""
        capacity = sizing.estimate_capacity(2_000_000_000, 50_000_000, 500_000_000)

        assert capacity == 2432 * MIB
        assert capacity >= 2_550_000_000

    def test_exact_mib_multiple_is_not_padded(self):
        assert sizing.estimate_capacity(3 * MIB, 0, 0) == 3 * MIB

    def test_one_byte_over_adds_a_mib(self):
        assert sizing.estimate_capacity(3 * MIB, 1, 0) == 4 * MIB

    @pytest.mark.parametrize(
        "root_used,boot_used,margin",
        [
            (0, 0, 0),
            (1, 1, 1),
            (7_340_032_123, 61_234_567, 500_000_000),
            (15_000_000_000, 268_435_456, 0),
        ],
    )
    def test_capacity_never_smaller_than_usage(self, root_used, boot_used, margin):
        capacity = sizing.estimate_capacity(root_used, boot_used, margin)

        assert capacity >= root_used + boot_used + margin
        assert capacity % MIB == 0
        assert capacity - (root_used + boot_used + margin) < MIB

    def test_negative_input_rejected(self):
        with pytest.raises(ValueError, match="margin"):
            sizing.estimate_capacity(10, 10, -1)


class TestMeasureUsedBytes:
    """Tests for measure_used_bytes()."""

    @patch("rpi_image_backup.storage.sizing.run_command")
    def test_parses_df_output(self, mock_run):
        mock_run.return_value = Mock(returncode=0, stdout="      Used\n3221225472\n")

        assert sizing.measure_used_bytes("/") == 3221225472
        mock_run.assert_called_once_with(
            ["df", "--output=used", "-B1", "/"], log_output=False
        )

    @patch("rpi_image_backup.storage.sizing.run_command")
    def test_df_failure_raises_size_estimation_error(self, mock_run):
        mock_run.side_effect = CommandFailedError(["df"], 1, "df: /nope: No such file or directory")

        with pytest.raises(SizeEstimationError) as exc_info:
            sizing.measure_used_bytes("/nope")

        assert exc_info.value.target == "/nope"

    @patch("rpi_image_backup.storage.sizing.run_command")
    def test_garbage_output_raises(self, mock_run):
        mock_run.return_value = Mock(returncode=0, stdout="Used\nlots\n")

        with pytest.raises(SizeEstimationError, match="unparsable"):
            sizing.measure_used_bytes("/")

    @patch("rpi_image_backup.storage.sizing.run_command")
    def test_missing_value_line_raises(self, mock_run):
        mock_run.return_value = Mock(returncode=0, stdout="Used\n")

        with pytest.raises(SizeEstimationError, match="unexpected df output"):
            sizing.measure_used_bytes("/")


class TestDeviceGeometry:
    """Tests for device_geometry()."""

    @patch("rpi_image_backup.storage.sizing.run_command")
    def test_returns_sector_count_and_size(self, mock_run):
        mock_run.side_effect = [
            Mock(returncode=0, stdout="31914983424\n"),
            Mock(returncode=0, stdout="512\n"),
        ]

        size = sizing.device_geometry(SourceDevice("/dev/mmcblk0"))

        assert size == ImageSize(count=62333952, block_size=512)
        assert size.total_bytes == 31914983424

    @patch("rpi_image_backup.storage.sizing.run_command")
    def test_blockdev_failure_raises(self, mock_run):
        mock_run.side_effect = CommandFailedError(["blockdev"], 1, "cannot open /dev/sdz")

        with pytest.raises(SizeEstimationError):
            sizing.device_geometry(SourceDevice("/dev/sdz"))

    def test_rejects_non_device_path(self):
        with pytest.raises(ValueError, match="Invalid device path"):
            sizing.device_geometry(SourceDevice("mmcblk0"))


class TestResolveImageSize:
    """Tests for resolve_image_size()."""

    def test_explicit_size_wins(self, source_device):
        with patch("rpi_image_backup.storage.sizing.device_geometry") as mock_geometry:
            size = sizing.resolve_image_size(source_device, size_mb=8000, mode="usage")

        assert size == ImageSize(count=8000, block_size=MIB)
        mock_geometry.assert_not_called()

    def test_explicit_size_must_be_positive(self, source_device):
        with pytest.raises(ValueError):
            sizing.resolve_image_size(source_device, size_mb=0)

    def test_usage_mode_measures_root_and_boot(self, source_device):
        used = {"/": 2_000_000_000, "/boot/firmware": 50_000_000}
        with patch(
            "rpi_image_backup.storage.sizing.measure_used_bytes", side_effect=used.__getitem__
        ):
            size = sizing.resolve_image_size(
                source_device,
                mode="usage",
                margin=500_000_000,
                boot_mount="/boot/firmware",
            )

        assert size == ImageSize(count=2432, block_size=MIB)

    def test_usage_mode_leaves_root_room_behind_boot_partition(self, source_device):
        """Root used + margin must fit after the 4 MiB offset and 512 MiB boot."""
        root_used, margin = 2_000_000_000, 500_000_000
        boot_end = (4 + 512) * MIB
        with patch("rpi_image_backup.storage.sizing.measure_used_bytes") as mock_measure:
            size = sizing.resolve_image_size(
                source_device,
                mode="usage",
                margin=margin,
                root_used=root_used,
                boot_used=50_000_000,
                boot_reserved=boot_end,
            )

        mock_measure.assert_not_called()
        assert size.total_bytes - boot_end >= root_used + margin
        assert size == ImageSize(count=2901, block_size=MIB)

    def test_device_mode_uses_geometry(self, source_device):
        geometry = ImageSize(count=62333952, block_size=512)
        with patch("rpi_image_backup.storage.sizing.device_geometry", return_value=geometry):
            assert sizing.resolve_image_size(source_device, mode="device") == geometry

    def test_unknown_mode_rejected(self, source_device):
        with pytest.raises(ValueError, match="Unknown size mode"):
            sizing.resolve_image_size(source_device, mode="guess")
