#!/usr/bin/env python3
"""
Registry Emitter for isoforge

Turns configured settings into PowerShell calls against the helper functions
defined in the provisioning script (Set-RegistryValue, Remove-RegistryValue,
New-RegistryKey, Remove-RegistryKey, Set-BinaryBit, Set-BinaryByte).

Every emitted line is filtered by hive: the machine pass only emits
HKEY_LOCAL_MACHINE style keys, the user pass only HKEY_CURRENT_USER keys.
"""

from typing import Any, Dict, List, Optional

from isoforge.config import (
    POWER_PLAN_SETTING_ID, ConfigurationItem, FeatureGroup, RegistrySetting,
    SettingDefinition, SettingsCatalog
)
from isoforge.logger import LogCategory, MediaLogger

HIVE_PREFIXES = [
    ("HKEY_LOCAL_MACHINE\\", "HKLM:\\"),
    ("HKEY_CURRENT_USER\\", "HKCU:\\"),
    ("HKEY_CLASSES_ROOT\\", "Registry::HKEY_CLASSES_ROOT\\"),
    ("HKEY_USERS\\", "Registry::HKEY_USERS\\"),
]

REGISTRY_TYPES = {
    "dword": "DWord",
    "qword": "QWord",
    "string": "String",
    "expandstring": "ExpandString",
    "binary": "Binary",
    "multistring": "MultiString",
}

KEY_EXISTS = "KeyExists"


def escape_ps(value: Optional[str]) -> str:
    """Escape text for a single-quoted PowerShell string."""
    if value is None:
        return ""
    return str(value).replace("'", "''")


def convert_registry_path(key_path: str) -> str:
    """Rewrite a HKEY_* path into a PowerShell provider path."""
    for prefix, replacement in HIVE_PREFIXES:
        if key_path.upper().startswith(prefix):
            return replacement + key_path[len(prefix):]
    return key_path


def registry_type(value_type: str) -> str:
    return REGISTRY_TYPES.get((value_type or "").replace("_", "").lower(), "String")


def _as_int(value: Any) -> int:
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, str):
        return int(value, 0)
    return int(value)


def _hex_byte(value: Any) -> str:
    return f"0x{_as_int(value) & 0xFF:02X}"


def format_value(value: Any, value_type: str) -> str:
    """Render a registry value as a PowerShell literal."""
    if value is None:
        return "$null"
    kind = registry_type(value_type)
    if kind in ("DWord", "QWord"):
        return str(_as_int(value))
    if kind == "Binary":
        items = value if isinstance(value, (list, tuple)) else [value]
        return "([byte[]](" + ",".join(_hex_byte(b) for b in items) + "))"
    if kind == "MultiString":
        items = value if isinstance(value, (list, tuple)) else [value]
        return "@(" + ",".join(f"'{escape_ps(v)}'" for v in items) + ")"
    return f"'{escape_ps(value)}'"


def _is_truthy(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes")
    return bool(value)


class RegistryEmitter:
    """Emits the registry lines for one hive at a time."""

    def __init__(self, logger: Optional[MediaLogger] = None):
        self.logger = logger

    def _warn(self, message: str):
        if self.logger is not None:
            self.logger.log_warning(LogCategory.SCRIPT, "registry_emit", message)

    def value_lines(self, reg: RegistrySetting, value: Any, description: str,
                    set_bit: Optional[bool] = None) -> List[str]:
        """Lines writing value to reg, honouring binary bit and byte edits."""
        path = escape_ps(convert_registry_path(reg.key_path))
        name = escape_ps(reg.value_name)
        desc = escape_ps(description)
        kind = registry_type(reg.value_type)

        if kind == "Binary" and reg.binary_byte_index is not None:
            if reg.bit_mask is not None:
                bit = _is_truthy(value) if set_bit is None else set_bit
                return [f"Set-BinaryBit -Path '{path}' -Name '{name}' -ByteIndex {reg.binary_byte_index} "
                        f"-BitMask 0x{reg.bit_mask:02X} -SetBit ${str(bit).lower()} -Description '{desc}'"]
            if reg.modify_byte_only:
                return [f"Set-BinaryByte -Path '{path}' -Name '{name}' -ByteIndex {reg.binary_byte_index} "
                        f"-ByteValue {_hex_byte(value)} -Description '{desc}'"]

        return [f"Set-RegistryValue -Path '{path}' -Name '{name}' -Type '{kind}' "
                f"-Value {format_value(value, reg.value_type)} -Description '{desc}'"]

    def toggle_lines(self, definition: SettingDefinition, item: ConfigurationItem,
                     is_hkcu: bool) -> List[str]:
        """Lines for an on/off setting."""
        lines = []
        enabled = item.is_selected is True
        desc = escape_ps(definition.description)

        for reg in definition.registry_settings:
            if reg.is_hkcu != is_hkcu:
                continue
            path = escape_ps(convert_registry_path(reg.key_path))

            # No value name: the setting controls whether the key itself exists.
            if not reg.value_name:
                key_value = reg.enabled_value if enabled else reg.disabled_value
                if key_value is None:
                    lines.append(f"Remove-RegistryKey -Path '{path}' -Description '{desc}'")
                else:
                    lines.append(f"New-RegistryKey -Path '{path}' -Description '{desc}'")
                    if key_value == "":
                        lines.append(f"Set-RegistryValue -Path '{path}' -Name '(Default)' -Type 'String' "
                                     f"-Value '' -Description '{desc}'")
                continue

            if reg.value_name in item.custom_state_values:
                custom = item.custom_state_values[reg.value_name]
                if custom is not None:
                    lines.extend(self.value_lines(reg, custom, definition.description))
                continue

            value = reg.enabled_value if enabled else reg.disabled_value
            if value is None:
                lines.append(f"Remove-RegistryValue -Path '{path}' -Name '{escape_ps(reg.value_name)}' "
                             f"-Description '{desc}'")
            elif value == "":
                lines.append(f"Set-RegistryValue -Path '{path}' -Name '{escape_ps(reg.value_name)}' "
                             f"-Type 'String' -Value '' -Description '{desc}'")
            else:
                lines.extend(self.value_lines(reg, value, definition.description, set_bit=enabled))
        return lines

    def selection_lines(self, definition: SettingDefinition, item: ConfigurationItem,
                        is_hkcu: bool) -> List[str]:
        """Lines for a multiple-choice setting."""
        values: Dict[str, Any]
        if item.custom_state_values:
            values = item.custom_state_values
        elif item.selected_index is not None and 0 <= item.selected_index < len(definition.options):
            values = definition.options[item.selected_index].values
        else:
            self._warn(f"Selection setting {definition.id} has no option values or custom state")
            return []

        lines = []
        for value_name, value in values.items():
            if value is None:
                continue
            for reg in definition.registry_settings:
                if reg.value_name != value_name and value_name != KEY_EXISTS:
                    continue
                if reg.is_hkcu != is_hkcu:
                    continue
                lines.extend(self.value_lines(reg, value, definition.description))
        return lines

    def has_entries(self, definitions: Dict[str, SettingDefinition],
                    items: List[ConfigurationItem], is_hkcu: bool) -> bool:
        for item in items:
            definition = definitions.get(item.id)
            if definition is None or definition.id == POWER_PLAN_SETTING_ID:
                continue
            if any(reg.is_hkcu == is_hkcu for reg in definition.registry_settings):
                return True
        return False

    def feature_group_lines(self, group: FeatureGroup, catalog: SettingsCatalog,
                            is_hkcu: bool) -> List[str]:
        """
        Lines for every feature of group whose settings touch the requested hive.

        Args:
            group: Configured Optimize or Customize group
            catalog: Setting definitions per feature
            is_hkcu: True for the per-user pass, False for the machine pass

        Returns:
            Script lines without indentation; one banner per emitted feature
        """
        lines: List[str] = []
        for feature_id, items in group.features.items():
            known = catalog.features.get(feature_id)
            if known is None:
                self._warn(f"No setting definitions for feature: {feature_id}")
                continue
            definitions = {d.id: d for d in known}
            if not self.has_entries(definitions, items, is_hkcu):
                continue

            title = feature_id.replace("-", " ").replace("_", " ").upper()
            lines.extend(["",
                          "# " + "=" * 76,
                          f"# {title} SETTINGS",
                          "# " + "=" * 76,
                          ""])
            for item in items:
                definition = definitions.get(item.id)
                if definition is None:
                    self._warn(f"No setting definition for: {item.id}")
                    continue
                if definition.id == POWER_PLAN_SETTING_ID:
                    continue
                if definition.input_type == "selection":
                    lines.extend(self.selection_lines(definition, item, is_hkcu))
                else:
                    lines.extend(self.toggle_lines(definition, item, is_hkcu))
        return lines
