#!/usr/bin/env python3
"""
oscdimg Tool Resolver for isoforge

Finds oscdimg.exe (the ISO packaging tool from the Windows ADK Deployment
Tools) or installs it through an ordered chain of installation methods:

1. the standalone Microsoft.OSCDIMG winget package
2. the ADK online installer downloaded from a list of mirrors
3. the full Windows ADK winget package with installer overrides

Methods run strictly one after another and the chain stops at the first
method after which oscdimg.exe can be located.
"""

import os
import tempfile
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Callable, List, Optional, Tuple

from isoforge.config import BuildSettings
from isoforge.downloads import download_file
from isoforge.errors import ExternalToolError, ToolUnavailableError
from isoforge.localization import TextProvider
from isoforge.logger import LogCategory, MediaLogger
from isoforge.process_runner import ProcessRunner, run_with_progress
from isoforge.progress import CancellationToken, ProgressCallback, report
from isoforge.winget import WinGetService

TOOL_NAME = "oscdimg.exe"
OSCDIMG_PACKAGE_ID = "Microsoft.OSCDIMG"
ADK_PACKAGE_ID = "Microsoft.WindowsADK"

ADK_INSTALLER_MIRRORS = [
    "https://go.microsoft.com/fwlink/?linkid=2289980",
    "https://download.microsoft.com/download/2/d/9/2d9c8902-3fcd-48a6-a22a-432b08bed61e/ADK/adksetup.exe",
]

ADK_FEATURE_ARGS = "/quiet /norestart /features OptionId.DeploymentTools /ceip off"


class ToolProvenance(Enum):
    """How the resolved tool got onto the machine."""
    PRE_INSTALLED = "pre-installed"
    PACKAGE_MANAGER = "package-manager-installed"
    FULL_KIT = "full-kit-installed"


@dataclass
class ToolAvailability:
    """A resolved tool path and where it came from."""
    path: Path
    provenance: ToolProvenance


def default_search_paths() -> List[Path]:
    """Fixed oscdimg.exe locations, in search order."""
    kits = r"C:\Program Files (x86)\Windows Kits"
    tools = r"Assessment and Deployment Kit\Deployment Tools"
    paths = [
        Path(kits, "10", tools, "amd64", "Oscdimg", TOOL_NAME),
        Path(kits, "11", tools, "amd64", "Oscdimg", TOOL_NAME),
        Path(kits, "10", tools, "x86", "Oscdimg", TOOL_NAME),
        Path(r"C:\Program Files\WinGet\Links", TOOL_NAME),
    ]
    local_app_data = os.environ.get("LOCALAPPDATA")
    if local_app_data:
        paths.append(Path(local_app_data, "Microsoft", "WinGet", "Links", TOOL_NAME))
    return paths


def default_package_dirs() -> List[Path]:
    """winget package roots scanned for Microsoft.OSCDIMG_* folders."""
    dirs = [Path(r"C:\Program Files\WinGet\Packages")]
    local_app_data = os.environ.get("LOCALAPPDATA")
    if local_app_data:
        dirs.append(Path(local_app_data, "Microsoft", "WinGet", "Packages"))
    return dirs


class OscdimgResolver:
    """Locates oscdimg.exe and installs it on demand."""

    def __init__(self, runner: ProcessRunner, winget: WinGetService, logger: MediaLogger,
                 text: Optional[TextProvider] = None,
                 settings: Optional[BuildSettings] = None,
                 search_paths: Optional[List[Path]] = None,
                 package_dirs: Optional[List[Path]] = None,
                 downloader: Callable = download_file):
        self.runner = runner
        self.winget = winget
        self.logger = logger
        self.text = text or TextProvider()
        self.settings = settings or BuildSettings()
        self._search_paths = search_paths
        self._package_dirs = package_dirs
        self.downloader = downloader
        self._availability: Optional[ToolAvailability] = None

    def locate(self) -> Optional[Path]:
        """
        Search known locations for oscdimg.exe.

        Returns:
            Path to the first match, or None
        """
        for candidate in (self._search_paths if self._search_paths is not None else default_search_paths()):
            if candidate.is_file():
                self.logger.log_debug(LogCategory.TOOLING, "locate", f"Found oscdimg at {candidate}")
                return candidate

        package_dirs = self._package_dirs if self._package_dirs is not None else default_package_dirs()
        for packages_dir in package_dirs:
            try:
                if not packages_dir.is_dir():
                    continue
                for package in sorted(packages_dir.glob(f"{OSCDIMG_PACKAGE_ID}_*")):
                    for match in package.rglob(TOOL_NAME):
                        self.logger.log_debug(LogCategory.TOOLING, "locate",
                                              f"Found oscdimg in winget package at {match}")
                        return match
            except OSError as e:
                self.logger.log_debug(LogCategory.TOOLING, "locate",
                                      f"Error scanning winget packages directory {packages_dir}: {e}")
        return None

    def invalidate(self):
        """Forget the availability resolved earlier in this run."""
        self._availability = None

    def ensure_available(self, progress: Optional[ProgressCallback] = None,
                         cancel_token: Optional[CancellationToken] = None) -> ToolAvailability:
        """
        Make sure oscdimg.exe is present, installing it if needed.

        Raises:
            ToolUnavailableError: every installation method failed
        """
        if self._availability is not None and self._availability.path.is_file():
            return self._availability

        report(progress, self.text.get("progress_locating_oscdimg"))
        found = self.locate()
        if found:
            self._availability = ToolAvailability(found, ToolProvenance.PRE_INSTALLED)
            return self._availability

        methods: List[Tuple[str, ToolProvenance, Callable[..., bool]]] = [
            ("winget Microsoft.OSCDIMG", ToolProvenance.PACKAGE_MANAGER, self._install_oscdimg_package),
            ("ADK installer download", ToolProvenance.FULL_KIT, self._install_adk_from_mirrors),
            ("winget Microsoft.WindowsADK", ToolProvenance.FULL_KIT, self._install_adk_package),
        ]

        attempted = []
        for name, provenance, method in methods:
            if cancel_token is not None:
                cancel_token.raise_if_cancelled()
            attempted.append(name)
            self.logger.start_operation(LogCategory.TOOLING, "install_oscdimg",
                                        f"Installing oscdimg via {name}")
            try:
                installed = method(progress, cancel_token)
            except (RuntimeError, OSError, ExternalToolError) as e:
                self.logger.log_error(LogCategory.TOOLING, "install_oscdimg",
                                      f"{name} failed: {e}")
                installed = False

            found = self.locate() if installed else None
            if found:
                self.logger.end_operation(True, f"oscdimg installed via {name}: {found}")
                self._availability = ToolAvailability(found, provenance)
                return self._availability

            if installed:
                self.logger.end_operation(False, f"{name} finished but oscdimg.exe was not found")
            else:
                self.logger.end_operation(False, f"{name} failed")
            self.logger.log_warning(LogCategory.TOOLING, "install_oscdimg",
                                    f"{name} did not provide oscdimg, trying next method")

        raise ToolUnavailableError(TOOL_NAME, attempted)

    def _ensure_winget(self, progress, cancel_token) -> bool:
        if self.winget.is_available():
            return True
        return self.winget.bootstrap(progress, cancel_token)

    def _install_oscdimg_package(self, progress, cancel_token) -> bool:
        if not self._ensure_winget(progress, cancel_token):
            self.logger.log_error(LogCategory.TOOLING, "install_oscdimg", "Failed to install winget")
            return False
        exit_code = self.winget.install(
            OSCDIMG_PACKAGE_ID,
            ["--exact", "--silent", "--scope", "machine",
             "--accept-package-agreements", "--accept-source-agreements"],
            progress, cancel_token, self.text.get("progress_installing_oscdimg"))
        return exit_code == 0

    def _install_adk_from_mirrors(self, progress, cancel_token) -> bool:
        temp_dir = Path(tempfile.gettempdir())
        installer = temp_dir / "adksetup.exe"
        log_path = temp_dir / "adk_install.log"
        try:
            downloaded = False
            for url in ADK_INSTALLER_MIRRORS:
                try:
                    self.downloader(url, installer, self.settings.download_timeout_seconds,
                                    progress, self.text.get("progress_downloading_adk"), cancel_token)
                    downloaded = True
                    break
                except RuntimeError as e:
                    self.logger.log_warning(LogCategory.TOOLING, "adk_download",
                                            f"Mirror failed, trying next: {e}")
            if not downloaded:
                return False

            command = f'"{installer}" {ADK_FEATURE_ARGS} /log "{log_path}"'
            exit_code, _ = run_with_progress(self.runner, command, progress,
                                             self.text.get("progress_installing_adk"),
                                             cancel_token, LogCategory.TOOLING)
            if exit_code != 0:
                raise ExternalToolError("adksetup.exe", exit_code)
            return True
        finally:
            if installer.exists():
                try:
                    installer.unlink()
                except OSError as e:
                    self.logger.log_warning(LogCategory.TOOLING, "adk_download",
                                            f"Could not delete {installer}: {e}")

    def _install_adk_package(self, progress, cancel_token) -> bool:
        if not self._ensure_winget(progress, cancel_token):
            self.logger.log_error(LogCategory.TOOLING, "install_oscdimg", "Failed to install winget")
            return False
        log_path = Path(tempfile.gettempdir()) / "adk_winget_install.log"
        exit_code = self.winget.install(
            ADK_PACKAGE_ID,
            ["--exact", "--silent", "--accept-package-agreements", "--accept-source-agreements",
             "--override", f'"{ADK_FEATURE_ARGS}"', "--log", f'"{log_path}"'],
            progress, cancel_token, self.text.get("progress_installing_adk"))
        if exit_code != 0:
            raise ExternalToolError("winget", exit_code)
        return True
