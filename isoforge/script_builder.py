#!/usr/bin/env python3
"""
Provisioning Script Builder for isoforge

Assembles Winhancements.ps1, the script Windows Setup runs on the target
machine. The script has two branches chosen on the target machine by the
-UserCustomizations switch:

- machine branch: runs once during setup as SYSTEM, applies machine-wide
  settings and registers a logon task that re-runs the script with the
  switch set
- user branch: applies per-user settings exactly once per user, guarded by
  the UserCustomizationsApplied marker in that user's registry hive

The assembled text is syntax-checked before it is handed out.
"""

import os
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Tuple

from isoforge import script_sections as sections
from isoforge.config import (
    EDGE_APP_ID, ONEDRIVE_APP_ID, POWER_PLAN_SETTING_ID, BuildSettings,
    ConfigurationItem, FeatureGroup, SettingsCatalog, UnifiedConfiguration
)
from isoforge.errors import ScriptValidationError
from isoforge.logger import LogCategory, MediaLogger
from isoforge.process_runner import ProcessRunner, ps_quote
from isoforge.registry_emitter import RegistryEmitter

MACHINE_INDENT = "    "

PARSE_SCRIPT = (
    "$errors = $null; "
    "$null = [System.Management.Automation.Language.Parser]::ParseFile({path}, [ref]$null, [ref]$errors); "
    "foreach ($e in $errors) {{ Write-Output ('Line {{0}}: {{1}}' -f $e.Extent.StartLineNumber, $e.Message) }}; "
    "if ($errors.Count -gt 0) {{ exit 1 }}"
)


@dataclass
class ScriptArtifact:
    """Generated script text; only ever handed out once validated."""
    content: str
    validated: bool = False


class PowerShellSyntaxValidator:
    """Checks script text with the PowerShell language parser."""

    def __init__(self, runner: ProcessRunner, timeout: float = 120):
        self.runner = runner
        self.timeout = timeout

    def validate(self, content: str) -> Tuple[bool, List[str]]:
        """
        Parse content without running it.

        Returns:
            (True, []) when the parser reports no errors, else (False, messages)
        """
        fd, temp_path = tempfile.mkstemp(prefix="isoforge_validate_", suffix=".ps1")
        try:
            with os.fdopen(fd, 'w', encoding="utf-8-sig") as f:
                f.write(content)
            result = self.runner.run_powershell(PARSE_SCRIPT.format(path=ps_quote(temp_path)),
                                                timeout=self.timeout, category=LogCategory.SCRIPT)
        finally:
            Path(temp_path).unlink(missing_ok=True)

        if result.success:
            return True, []
        errors = [line.strip() for line in result.stdout.splitlines() if line.strip()]
        if not errors:
            errors = [result.stderr.strip() or f"PowerShell parser exited with code {result.exit_code}"]
        return False, errors


def find_power_plan(config: UnifiedConfiguration) -> Optional[ConfigurationItem]:
    """The power-plan-selection item carrying a plan GUID, if configured."""
    for items in config.optimize.features.values():
        for item in items:
            if item.id == POWER_PLAN_SETTING_ID and item.power_plan_guid:
                return item
    return None


class ScriptBuilder:
    """Builds and validates the provisioning script."""

    def __init__(self, validator, logger: MediaLogger,
                 catalog: Optional[SettingsCatalog] = None,
                 settings: Optional[BuildSettings] = None):
        self.validator = validator
        self.logger = logger
        self.catalog = catalog or SettingsCatalog()
        self.settings = settings or BuildSettings()
        self.emitter = RegistryEmitter(logger)

    def build(self, config: UnifiedConfiguration,
              catalog: Optional[SettingsCatalog] = None) -> ScriptArtifact:
        """
        Assemble the script and validate it.

        Raises:
            ScriptValidationError: the PowerShell parser rejected the script
        """
        catalog = catalog or self.catalog
        self.logger.start_operation(LogCategory.SCRIPT, "build_script",
                                    f"Building {self.settings.script_file_name}")
        content = self.render(config, catalog)

        ok, errors = self.validator.validate(content)
        if not ok:
            for error in errors:
                self.logger.log_error(LogCategory.SCRIPT, "validate_script", error)
            self.logger.end_operation(False, "Generated script failed PowerShell syntax validation",
                                      details={"errors": errors})
            raise ScriptValidationError(errors)

        self.logger.end_operation(True, "Script passed PowerShell syntax validation",
                                  details={"length": len(content)})
        return ScriptArtifact(content, validated=True)

    def render(self, config: UnifiedConfiguration, catalog: SettingsCatalog) -> str:
        """Script text without validation."""
        parts = [
            sections.header(),
            sections.logging_setup(self.settings),
            sections.helper_functions(self.settings),
            "if (-not $UserCustomizations) {",
            sections.indent_block(self._machine_branch(config, catalog), MACHINE_INDENT),
            "}",
            "",
            "if ($UserCustomizations) {",
            sections.indent_block(self._user_branch(config, catalog), MACHINE_INDENT),
            "}",
            sections.completion(),
        ]
        return "\n".join(parts)

    def _group_block(self, group: FeatureGroup, catalog: SettingsCatalog, is_hkcu: bool) -> str:
        scope = "USER" if is_hkcu else "MACHINE"
        lines = [sections.banner(f"{group.name.upper()} {scope} SETTINGS")]
        lines.extend(self.emitter.feature_group_lines(group, catalog, is_hkcu))
        return "\n".join(lines) + "\n"

    def _machine_branch(self, config: UnifiedConfiguration, catalog: SettingsCatalog) -> str:
        parts = [
            sections.scripts_directory_setup(self.settings),
            sections.app_removal(config.windows_apps, EDGE_APP_ID, ONEDRIVE_APP_ID),
            sections.installer_bootstrap(),
            sections.power_section(find_power_plan(config), catalog.power_settings),
            self._group_block(config.optimize, catalog, is_hkcu=False),
            self._group_block(config.customize, catalog, is_hkcu=False),
            sections.start_menu_layout(),
            sections.reentry_task(self.settings),
            sections.placeholder("SYSTEM WIDE"),
        ]
        return "\n".join(part for part in parts if part)

    def _user_branch(self, config: UnifiedConfiguration, catalog: SettingsCatalog) -> str:
        apply_once = "\n".join([
            'Write-Log "Applying user customizations for the first time..." "INFO"',
            self._group_block(config.optimize, catalog, is_hkcu=True),
            self._group_block(config.customize, catalog, is_hkcu=True),
            sections.placeholder("USER SPECIFIC"),
            sections.user_marker_set(),
        ])
        return "\n".join([
            sections.execution_context_detection(),
            "if ($runningAsSystem) {",
            sections.indent_block(sections.system_account_handoff(self.settings), MACHINE_INDENT),
            "}",
            "",
            sections.user_marker_check(),
            "if ($alreadyApplied) {",
            MACHINE_INDENT + 'Write-Log "User customizations have already been applied for this user" "INFO"',
            MACHINE_INDENT + 'Write-Log "To re-apply these settings, delete $markerPath\\$markerName" "INFO"',
            "} else {",
            sections.indent_block(apply_once, MACHINE_INDENT),
            "}",
        ])
