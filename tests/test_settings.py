"""
Tests for rpi_image_backup.config.settings module.

This test suite covers:
- Settings loading and saving
- Default settings initialization
- Merging a partial settings file over the defaults
- Typed accessors (get_bool, get_list, get_choice)
- Error handling for corrupted settings files
"""

import json

from rpi_image_backup.config import settings


class TestLoadSettings:
    """Tests for load_settings() function."""

    def test_load_defaults_when_no_file(self, tmp_path):
        settings.settings_store.values = {}
        settings.load_settings(tmp_path / "nonexistent" / "settings.json")

        assert settings.settings_store.values == settings.DEFAULT_SETTINGS
        assert settings.get_setting("source_device") == "/dev/mmcblk0"

    def test_load_merges_with_defaults(self, temp_settings_file):
        temp_settings_file.write_text(json.dumps({"identity_policy": "source"}))

        settings.load_settings(temp_settings_file)

        assert settings.get_setting("identity_policy") == "source"
        assert settings.get_setting("size_mode") == "device"

    def test_corrupted_file_falls_back_to_defaults(self, temp_settings_file):
        temp_settings_file.write_text("{not json")

        settings.load_settings(temp_settings_file)

        assert settings.settings_store.values == settings.DEFAULT_SETTINGS

    def test_non_object_json_ignored(self, temp_settings_file):
        temp_settings_file.write_text(json.dumps(["size_mode"]))

        settings.load_settings(temp_settings_file)

        assert settings.get_setting("size_mode") == "device"

    def test_defaults_not_mutated_by_store(self):
        settings.load_settings()
        settings.get_setting("extra_excludes").append("/opt/*")

        assert settings.DEFAULT_SETTINGS["extra_excludes"] == []


class TestSaveSettings:
    def test_set_setting_persists(self, default_settings):
        settings.set_setting("size_mode", "usage")

        saved = json.loads(default_settings.read_text())
        assert saved["size_mode"] == "usage"

        settings.load_settings()
        assert settings.get_setting("size_mode") == "usage"


class TestAccessors:
    def test_get_bool(self):
        assert settings.get_bool("clone_partition_table") is True
        assert settings.get_bool("missing_key") is False
        assert settings.get_bool("missing_key", True) is True

    def test_get_list_accepts_single_string(self):
        settings.settings_store.values["extra_excludes"] = "/home/pi/.cache/*"

        assert settings.get_list("extra_excludes") == ["/home/pi/.cache/*"]

    def test_get_list_empty(self):
        settings.settings_store.values["rsync_extra_args"] = None

        assert settings.get_list("rsync_extra_args") == []

    def test_get_choice_normalizes_case(self):
        settings.settings_store.values["identity_policy"] = "SOURCE"

        assert settings.get_choice("identity_policy", settings.IDENTITY_POLICIES) == "source"

    def test_get_choice_falls_back_to_default(self):
        settings.settings_store.values["size_mode"] = "magic"

        assert settings.get_choice("size_mode", settings.SIZE_MODES) == "device"
