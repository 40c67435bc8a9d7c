#!/usr/bin/env python3
"""
Unit tests for the script_builder and script_sections modules.

The generated Winhancements.ps1 is inspected as text; PowerShell itself is
never started (the syntax validator is replaced with a fake).
"""

import unittest
import re
import shutil
import sys
import tempfile
from pathlib import Path

project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))
sys.path.insert(0, str(Path(__file__).parent))

from isoforge import script_sections as sections
from isoforge.config import (
    EDGE_APP_ID, POWER_PLAN_SETTING_ID, AppItem, BuildSettings, ConfigurationItem,
    FeatureGroup, PowerSettingData, RegistrySetting, SettingDefinition,
    SettingsCatalog, UnifiedConfiguration
)
from isoforge.errors import ScriptValidationError
from isoforge.logger import MediaLogger
from isoforge.process_runner import ProcessResult
from isoforge.script_builder import PowerShellSyntaxValidator, ScriptBuilder, find_power_plan
from fakes import FakeRunner, FakeValidator

PLAN_GUID = "57696e68-616e-6365-506f-776572000000"


def sample_catalog() -> SettingsCatalog:
    return SettingsCatalog(
        features={
            "privacy": [SettingDefinition("disable-telemetry", "Disable telemetry", registry_settings=[
                RegistrySetting(r"HKEY_LOCAL_MACHINE\SOFTWARE\Policies\Microsoft\Windows\DataCollection",
                                "AllowTelemetry", "DWord", 0, 1),
            ])],
            "explorer": [SettingDefinition("show-file-extensions", "Show file extensions", registry_settings=[
                RegistrySetting(r"HKEY_CURRENT_USER\Software\Microsoft\Windows\CurrentVersion\Explorer\Advanced",
                                "HideFileExt", "DWord", 0, 1),
            ])],
            "power": [SettingDefinition(POWER_PLAN_SETTING_ID, "Power plan", input_type="selection")],
        },
        power_settings=[PowerSettingData("238c9fa8-0aad-41ed-83f4-97be242c8f20",
                                         "29f6c1db-86da-48c5-9fdb-f2b67b1f44da", 0, 900, "Sleep after")],
    )


def sample_configuration() -> UnifiedConfiguration:
    return UnifiedConfiguration(
        windows_apps=[
            AppItem("windows-app-xbox", "Xbox", appx_package_name="Microsoft.GamingApp",
                    sub_packages=["Microsoft.XboxGamingOverlay"]),
            AppItem(EDGE_APP_ID, "Microsoft Edge"),
            AppItem("windows-capability-ie", "Internet Explorer", capability_name="Browser.InternetExplorer"),
        ],
        optimize=FeatureGroup("Optimize", {
            "privacy": [ConfigurationItem("disable-telemetry", True)],
            "power": [ConfigurationItem(POWER_PLAN_SETTING_ID, selected_index=0,
                                        power_plan_guid=PLAN_GUID, power_plan_name="Winhance Power Plan")],
        }),
        customize=FeatureGroup("Customize", {
            "explorer": [ConfigurationItem("show-file-extensions", True)],
        }),
    )


class TestScriptSections(unittest.TestCase):
    """Test cases for individual sections."""

    def test_indent_block_leaves_here_strings_alone(self):
        text = "$x = @'\nline one\n'@\nWrite-Log 'done'"
        indented = sections.indent_block(text, "    ")
        self.assertEqual(indented.split("\n"), ["    $x = @'", "line one", "'@", "    Write-Log 'done'"])

    def test_power_section_empty_without_plan_or_values(self):
        self.assertEqual(sections.power_section(None, []), "")

    def test_power_section_targets_current_scheme_without_plan(self):
        values = sample_catalog().power_settings
        text = sections.power_section(None, values)
        self.assertIn("SCHEME_CURRENT", text)
        self.assertNotIn("/setactive", text)

    def test_handoff_uses_settings(self):
        settings = BuildSettings(user_poll_attempts=4, user_poll_interval_seconds=5, restart_delay_seconds=30)
        text = sections.system_account_handoff(settings)
        self.assertIn("$attempt -le 4", text)
        self.assertIn("Start-Sleep -Seconds 5", text)
        self.assertIn("shutdown.exe /r /t 30", text)
        self.assertIn("-UserCustomizations", text)

    def test_handoff_does_not_sleep_after_last_attempt(self):
        settings = BuildSettings(user_poll_attempts=4, user_poll_interval_seconds=5)
        text = sections.system_account_handoff(settings)

        guard = text.index("if ($attempt -lt 4)")
        self.assertLess(text.index("Write-Log \"No logged-in user yet"), guard)
        self.assertLess(guard, text.index("Start-Sleep -Seconds 5"))
        self.assertEqual(text.count("Start-Sleep -Seconds 5"), 1)

    def test_app_removal_routes_special_apps(self):
        text = sections.app_removal(sample_configuration().windows_apps, EDGE_APP_ID, "windows-app-onedrive")
        self.assertIn("BloatRemoval.ps1", text)
        self.assertIn("EdgeRemoval.ps1", text)
        self.assertNotIn("OneDriveRemoval.ps1", text)
        self.assertIn("Microsoft.XboxGamingOverlay", text)
        self.assertIn("Browser.InternetExplorer", text)
        self.assertIn("GameDVR", text)

    def test_app_removal_without_apps_keeps_section(self):
        text = sections.app_removal([], EDGE_APP_ID, "windows-app-onedrive")
        self.assertIn("WINDOWS APPS REMOVAL", text)
        self.assertIn("$scriptsToExecute = @()", text)
        self.assertNotIn("BloatRemoval.ps1", text)


class TestScriptBuilder(unittest.TestCase):
    """Test cases for ScriptBuilder."""

    def setUp(self):
        self.temp_dir = tempfile.mkdtemp()
        self.logger = MediaLogger(Path(self.temp_dir), console=False)
        self.validator = FakeValidator()
        self.builder = ScriptBuilder(self.validator, self.logger, sample_catalog())

    def tearDown(self):
        self.logger.close()
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_empty_configuration_still_has_fixed_sections(self):
        content = self.builder.build(UnifiedConfiguration(), SettingsCatalog()).content

        self.assertIn("param(", content)
        self.assertIn("WINDOWS APPS REMOVAL", content)
        self.assertIn("START MENU LAYOUT", content)
        self.assertIn(sections.REENTRY_TASK_NAME, content)
        self.assertIn("ADD YOUR SYSTEM WIDE POWERSHELL SCRIPT CONTENTS BELOW", content)
        self.assertIn("ADD YOUR USER SPECIFIC POWERSHELL SCRIPT CONTENTS BELOW", content)
        self.assertIn("OPTIMIZE MACHINE SETTINGS", content)
        self.assertNotIn("POWER PLAN & POWERCFG SETTINGS", content)

    def test_validator_called_once_with_content(self):
        artifact = self.builder.build(sample_configuration())

        self.assertTrue(artifact.validated)
        self.assertEqual(self.validator.calls, [artifact.content])

    def test_validation_failure_raises(self):
        builder = ScriptBuilder(FakeValidator(False, ["Line 12: Missing closing '}'"]), self.logger, sample_catalog())

        with self.assertRaises(ScriptValidationError) as ctx:
            builder.build(sample_configuration())
        self.assertEqual(ctx.exception.errors, ["Line 12: Missing closing '}'"])

    def test_machine_and_user_branches(self):
        content = self.builder.render(sample_configuration(), sample_catalog())
        user_start = content.index("if ($UserCustomizations) {")
        machine, user = content[:user_start], content[user_start:]

        self.assertIn("AllowTelemetry", machine)
        self.assertNotIn("HideFileExt", machine)
        self.assertIn("HideFileExt", user)
        self.assertNotIn("AllowTelemetry", user)
        self.assertIn(sections.REENTRY_TASK_NAME, machine)

    def test_user_branch_protocol_order(self):
        content = self.builder.render(UnifiedConfiguration(), sample_catalog())
        user = content[content.index("if ($UserCustomizations) {"):]

        detect = user.index("$runningAsSystem =")
        handoff = user.index("Start-ProcessAsUser -CommandLine")
        check = user.index("$alreadyApplied = $false")
        apply = user.index("CUSTOMIZE USER SETTINGS")
        mark = user.index("Set-ItemProperty -Path $markerPath -Name $markerName -Value 1")

        self.assertLess(detect, handoff)
        self.assertLess(handoff, check)
        self.assertLess(check, apply)
        self.assertLess(apply, mark)

    def test_power_plan_is_activated(self):
        content = self.builder.render(sample_configuration(), sample_catalog())

        self.assertIn("POWER PLAN & POWERCFG SETTINGS", content)
        self.assertIn(f"powercfg /setactive {PLAN_GUID}", content)
        self.assertIn("Winhance Power Plan", content)
        self.assertIn("29f6c1db-86da-48c5-9fdb-f2b67b1f44da", content)

    def test_here_string_terminators_start_lines(self):
        content = self.builder.render(sample_configuration(), sample_catalog())
        for line in content.split("\n"):
            if line.strip() in ("'@", '"@'):
                self.assertEqual(line, line.strip())

    def test_find_power_plan(self):
        self.assertEqual(find_power_plan(sample_configuration()).power_plan_guid, PLAN_GUID)
        self.assertIsNone(find_power_plan(UnifiedConfiguration()))


class TestPowerShellSyntaxValidator(unittest.TestCase):
    """Test cases for PowerShellSyntaxValidator."""

    def setUp(self):
        self.runner = FakeRunner()
        self.validator = PowerShellSyntaxValidator(self.runner)

    def _temp_path(self) -> Path:
        return Path(re.search(r"ParseFile\('([^']+)'", self.runner.powershell_scripts[0]).group(1))

    def test_valid_script(self):
        self.assertEqual(self.validator.validate("Write-Host 'hi'"), (True, []))
        self.assertFalse(self._temp_path().exists())

    def test_parser_errors_are_returned(self):
        self.runner.powershell_results = [
            ("ParseFile", ProcessResult(1, "Line 3: Missing closing '}' in statement block\n"))]

        ok, errors = self.validator.validate("if ($true) {")

        self.assertFalse(ok)
        self.assertEqual(errors, ["Line 3: Missing closing '}' in statement block"])
        self.assertFalse(self._temp_path().exists())

    def test_failure_without_output(self):
        self.runner.powershell_results = [("ParseFile", ProcessResult(-1, "", ""))]
        ok, errors = self.validator.validate("x")
        self.assertFalse(ok)
        self.assertIn("-1", errors[0])


def main():
    """Run the script builder tests."""
    unittest.main(verbosity=2)


if __name__ == '__main__':
    main()
