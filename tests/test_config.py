#!/usr/bin/env python3
"""
Unit tests for the config and localization modules.
"""

import unittest
import json
import shutil
import sys
import tempfile
from pathlib import Path

project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from isoforge.config import (
    BuildSettings, FeatureGroup, RegistrySetting, catalog_from_dict,
    configuration_from_dict, load_configuration, load_settings_catalog
)
from isoforge.localization import TextProvider

CONFIGURATION = {
    "windows_apps": [
        {"id": "windows-app-xbox", "name": "Xbox", "appx_package_name": "Microsoft.GamingApp",
         "sub_packages": ["Microsoft.XboxGamingOverlay"]},
    ],
    "optimize": {
        "privacy": [{"id": "disable-telemetry", "is_selected": True}],
    },
    "customize": {
        "theme": [{"id": "windows-theme", "selected_index": 1}],
    },
}

CATALOG = {
    "features": {
        "privacy": [{
            "id": "disable-telemetry",
            "description": "Disable telemetry",
            "registry_settings": [{
                "key_path": "HKEY_LOCAL_MACHINE\\SOFTWARE\\Policies\\Microsoft\\Windows\\DataCollection",
                "value_name": "AllowTelemetry",
                "value_type": "DWord",
                "enabled_value": 0,
                "disabled_value": 1,
            }],
        }],
        "theme": [{
            "id": "windows-theme",
            "input_type": "selection",
            "options": [{"label": "Light", "values": {"AppsUseLightTheme": 1}},
                        {"label": "Dark", "values": {"AppsUseLightTheme": 0}}],
        }],
    },
    "power_settings": [{
        "subgroup_guid": "238c9fa8-0aad-41ed-83f4-97be242c8f20",
        "setting_guid": "29f6c1db-86da-48c5-9fdb-f2b67b1f44da",
        "ac_value": 0,
        "dc_value": 900,
    }],
}


class TestConfiguration(unittest.TestCase):
    """Test cases for configuration parsing."""

    def setUp(self):
        self.temp_dir = Path(tempfile.mkdtemp())

    def tearDown(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_configuration_from_dict(self):
        config = configuration_from_dict(CONFIGURATION)

        self.assertEqual(config.windows_apps[0].sub_packages, ["Microsoft.XboxGamingOverlay"])
        self.assertTrue(config.optimize.features["privacy"][0].is_selected)
        self.assertEqual(config.customize.name, "Customize")
        self.assertEqual(config.customize.features["theme"][0].selected_index, 1)

    def test_configuration_rejects_unknown_fields(self):
        with self.assertRaises(ValueError):
            configuration_from_dict({"windows_apps": [{"id": "x", "colour": "blue"}]})

    def test_catalog_from_dict(self):
        catalog = catalog_from_dict(CATALOG)

        telemetry = catalog.find("privacy", "disable-telemetry")
        self.assertEqual(telemetry.registry_settings[0].value_name, "AllowTelemetry")
        self.assertEqual(catalog.find("theme", "windows-theme").options[1].label, "Dark")
        self.assertIsNone(catalog.find("privacy", "missing"))
        self.assertEqual(catalog.power_settings[0].dc_value, 900)

    def test_load_from_files(self):
        config_path = self.temp_dir / "config.json"
        catalog_path = self.temp_dir / "catalog.json"
        config_path.write_text(json.dumps(CONFIGURATION), encoding="utf-8")
        catalog_path.write_text(json.dumps(CATALOG), encoding="utf-8")

        self.assertEqual(len(load_configuration(config_path).windows_apps), 1)
        self.assertIn("privacy", load_settings_catalog(catalog_path).features)

    def test_load_invalid_json(self):
        bad = self.temp_dir / "bad.json"
        bad.write_text("{not json", encoding="utf-8")
        with self.assertRaises(ValueError):
            load_configuration(bad)

        listing = self.temp_dir / "list.json"
        listing.write_text("[]", encoding="utf-8")
        with self.assertRaises(ValueError):
            load_settings_catalog(listing)

    def test_load_missing_file(self):
        with self.assertRaises(FileNotFoundError):
            load_configuration(self.temp_dir / "missing.json")

    def test_hive_detection(self):
        self.assertTrue(RegistrySetting("HKEY_CURRENT_USER\\Control Panel\\Desktop").is_hkcu)
        self.assertFalse(RegistrySetting("HKEY_LOCAL_MACHINE\\SOFTWARE").is_hkcu)

    def test_empty_group(self):
        self.assertTrue(FeatureGroup("Optimize").is_empty())
        self.assertTrue(FeatureGroup("Optimize", {"privacy": []}).is_empty())

    def test_build_settings_defaults(self):
        settings = BuildSettings()
        self.assertEqual(settings.script_file_name, "Winhancements.ps1")
        self.assertEqual(settings.answer_file_name, "autounattend.xml")
        self.assertEqual(settings.user_poll_attempts, 12)


class TestTextProvider(unittest.TestCase):
    """Test cases for TextProvider."""

    def test_known_key(self):
        self.assertEqual(TextProvider().get("progress_creating_iso"), "Creating bootable ISO...")

    def test_formatting(self):
        self.assertEqual(TextProvider().get("progress_converting_image", 2, 6), "Converting image 2 of 6...")

    def test_unknown_key_echoes(self):
        self.assertEqual(TextProvider().get("no_such_key"), "no_such_key")

    def test_custom_strings(self):
        text = TextProvider({"progress_creating_iso": "ISO wird erstellt..."})
        self.assertEqual(text.get("progress_creating_iso"), "ISO wird erstellt...")


def main():
    """Run the configuration tests."""
    unittest.main(verbosity=2)


if __name__ == '__main__':
    main()
