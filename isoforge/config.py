#!/usr/bin/env python3
"""
Configuration Module for isoforge

Holds the build settings used by every pipeline stage and the provisioning
data model consumed by the script builder: the user's configuration (apps to
remove, selected settings) and the settings catalog that describes how each
setting maps onto registry values.
"""

import json
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

GIB = 1024 ** 3

OPTIMIZE_GROUP = "Optimize"
CUSTOMIZE_GROUP = "Customize"
POWER_PLAN_SETTING_ID = "power-plan-selection"
EDGE_APP_ID = "windows-app-edge"
ONEDRIVE_APP_ID = "windows-app-onedrive"


@dataclass
class BuildSettings:
    """Tunables for the media build pipeline."""
    log_dir: Path = field(default_factory=lambda: Path.home() / ".isoforge_logs")
    working_dir: Path = field(default_factory=lambda: Path(tempfile.gettempdir()) / "isoforge" / "work")
    disk_space_margin_bytes: int = 2 * GIB
    min_iso_size_bytes: int = 1024 * 1024
    delete_attempts: int = 5
    delete_retry_delay: float = 2.0
    download_timeout_seconds: int = 30 * 60
    script_file_name: str = "Winhancements.ps1"
    answer_file_name: str = "autounattend.xml"
    user_poll_attempts: int = 12
    user_poll_interval_seconds: int = 10
    child_process_timeout_ms: int = 600000
    restart_delay_seconds: int = 20
    remote_log_dir: str = r"C:\ProgramData\Winhance\Unattend\Logs"
    remote_scripts_dir: str = r"C:\ProgramData\Winhance\Unattend\Scripts"


@dataclass
class AppItem:
    """An application selected for removal."""
    id: str
    name: str = ""
    appx_package_name: Optional[str] = None
    capability_name: Optional[str] = None
    optional_feature_name: Optional[str] = None
    sub_packages: List[str] = field(default_factory=list)


@dataclass
class ConfigurationItem:
    """The user's state for one setting."""
    id: str
    is_selected: Optional[bool] = None
    selected_index: Optional[int] = None
    custom_state_values: Dict[str, Any] = field(default_factory=dict)
    power_plan_guid: Optional[str] = None
    power_plan_name: Optional[str] = None


@dataclass
class FeatureGroup:
    """Feature id -> configured items, for one group (Optimize or Customize)."""
    name: str
    features: Dict[str, List[ConfigurationItem]] = field(default_factory=dict)

    def is_empty(self) -> bool:
        return not any(self.features.values())


@dataclass
class UnifiedConfiguration:
    """Everything the provisioning script applies on the target machine."""
    windows_apps: List[AppItem] = field(default_factory=list)
    optimize: FeatureGroup = field(default_factory=lambda: FeatureGroup(OPTIMIZE_GROUP))
    customize: FeatureGroup = field(default_factory=lambda: FeatureGroup(CUSTOMIZE_GROUP))


@dataclass
class RegistrySetting:
    """How one registry value reacts to a setting."""
    key_path: str
    value_name: Optional[str] = None
    value_type: str = "DWord"
    enabled_value: Any = None
    disabled_value: Any = None
    binary_byte_index: Optional[int] = None
    bit_mask: Optional[int] = None
    modify_byte_only: bool = False

    @property
    def is_hkcu(self) -> bool:
        return self.key_path.upper().startswith("HKEY_CURRENT_USER")


@dataclass
class SettingOption:
    """One choice of a selection setting: value name -> value."""
    label: str
    values: Dict[str, Any] = field(default_factory=dict)


@dataclass
class SettingDefinition:
    """Catalog entry for a setting."""
    id: str
    description: str = ""
    input_type: str = "toggle"
    registry_settings: List[RegistrySetting] = field(default_factory=list)
    options: List[SettingOption] = field(default_factory=list)


@dataclass
class PowerSettingData:
    """A powercfg value pair for one power setting."""
    subgroup_guid: str
    setting_guid: str
    ac_value: int
    dc_value: int
    description: str = ""


@dataclass
class SettingsCatalog:
    """Setting definitions per feature id plus the power values to apply."""
    features: Dict[str, List[SettingDefinition]] = field(default_factory=dict)
    power_settings: List[PowerSettingData] = field(default_factory=list)

    def find(self, feature_id: str, setting_id: str) -> Optional[SettingDefinition]:
        for definition in self.features.get(feature_id, []):
            if definition.id == setting_id:
                return definition
        return None


def _parse_group(name: str, data: Dict[str, Any]) -> FeatureGroup:
    features = {}
    for feature_id, items in (data or {}).items():
        features[feature_id] = [ConfigurationItem(**item) for item in items]
    return FeatureGroup(name=name, features=features)


def configuration_from_dict(data: Dict[str, Any]) -> UnifiedConfiguration:
    """Build a UnifiedConfiguration from its JSON representation."""
    try:
        apps = [AppItem(**app) for app in data.get("windows_apps", [])]
        return UnifiedConfiguration(
            windows_apps=apps,
            optimize=_parse_group(OPTIMIZE_GROUP, data.get("optimize", {})),
            customize=_parse_group(CUSTOMIZE_GROUP, data.get("customize", {})),
        )
    except (TypeError, AttributeError) as e:
        raise ValueError(f"Invalid configuration: {e}") from e


def catalog_from_dict(data: Dict[str, Any]) -> SettingsCatalog:
    """Build a SettingsCatalog from its JSON representation."""
    try:
        features = {}
        for feature_id, definitions in data.get("features", {}).items():
            parsed = []
            for definition in definitions:
                definition = dict(definition)
                registry = [RegistrySetting(**r) for r in definition.pop("registry_settings", [])]
                options = [SettingOption(**o) for o in definition.pop("options", [])]
                parsed.append(SettingDefinition(registry_settings=registry, options=options, **definition))
            features[feature_id] = parsed
        power = [PowerSettingData(**p) for p in data.get("power_settings", [])]
        return SettingsCatalog(features=features, power_settings=power)
    except (TypeError, AttributeError) as e:
        raise ValueError(f"Invalid settings catalog: {e}") from e


def _read_json(path: Path) -> Dict[str, Any]:
    try:
        with open(path, 'r', encoding="utf-8") as f:
            data = json.load(f)
    except json.JSONDecodeError as e:
        raise ValueError(f"{path} is not valid JSON: {e}") from e
    if not isinstance(data, dict):
        raise ValueError(f"{path} must contain a JSON object")
    return data


def load_configuration(path: Path) -> UnifiedConfiguration:
    """Load the provisioning configuration from a JSON file."""
    return configuration_from_dict(_read_json(Path(path)))


def load_settings_catalog(path: Path) -> SettingsCatalog:
    """Load the settings catalog from a JSON file."""
    return catalog_from_dict(_read_json(Path(path)))
