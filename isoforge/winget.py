#!/usr/bin/env python3
"""
winget (Windows Package Manager) client used to install deployment tools.

A system-managed winget is preferred over a bundled copy shipped next to the
application; the choice is always logged.
"""

import os
import shutil
import tempfile
from pathlib import Path
from typing import List, Optional

from isoforge.downloads import download_file
from isoforge.localization import TextProvider
from isoforge.logger import LogCategory, MediaLogger
from isoforge.process_runner import ProcessRunner, ps_quote, run_with_progress
from isoforge.progress import CancellationToken, ProgressCallback, report

APP_INSTALLER_URL = ("https://github.com/microsoft/winget-cli/releases/latest/download/"
                     "Microsoft.DesktopAppInstaller_8wekyb3d8bbwe.msixbundle")

DEFAULT_BUNDLED_DIR = Path(__file__).resolve().parent.parent / "winget-cli"


class WinGetService:
    """Locates, bootstraps and drives the winget CLI."""

    def __init__(self, runner: ProcessRunner, logger: MediaLogger,
                 text: Optional[TextProvider] = None,
                 bundled_dir: Optional[Path] = None,
                 download_timeout: float = 600):
        self.runner = runner
        self.logger = logger
        self.text = text or TextProvider()
        self.bundled_dir = bundled_dir or DEFAULT_BUNDLED_DIR
        self.download_timeout = download_timeout

    def system_winget_path(self) -> Optional[str]:
        """winget.exe from PATH or the per-user WindowsApps alias."""
        on_path = shutil.which("winget")
        if on_path:
            return on_path
        local_app_data = os.environ.get("LOCALAPPDATA")
        if local_app_data:
            alias = Path(local_app_data) / "Microsoft" / "WindowsApps" / "winget.exe"
            if alias.exists():
                return str(alias)
        return None

    def bundled_winget_path(self) -> Optional[str]:
        candidate = Path(self.bundled_dir) / "winget.exe"
        return str(candidate) if candidate.exists() else None

    def resolve_executable(self) -> Optional[str]:
        """Pick the winget executable, system copy first."""
        system = self.system_winget_path()
        if system:
            self.logger.log_info(LogCategory.TOOLING, "winget_resolve",
                                 f"Using system winget: {system}")
            return system
        bundled = self.bundled_winget_path()
        if bundled:
            self.logger.log_info(LogCategory.TOOLING, "winget_resolve",
                                 f"No system winget, using bundled CLI: {bundled}")
            return bundled
        self.logger.log_warning(LogCategory.TOOLING, "winget_resolve", "winget not found")
        return None

    def is_available(self) -> bool:
        return self.system_winget_path() is not None or self.bundled_winget_path() is not None

    def bootstrap(self, progress: Optional[ProgressCallback] = None,
                  cancel_token: Optional[CancellationToken] = None) -> bool:
        """Install App Installer (which provides winget). Returns True if winget is usable afterwards."""
        status = self.text.get("progress_installing_winget")
        report(progress, status, "winget is required for this installation method")
        bundle = Path(tempfile.gettempdir()) / "Microsoft.DesktopAppInstaller_8wekyb3d8bbwe.msixbundle"
        try:
            download_file(APP_INSTALLER_URL, bundle, self.download_timeout,
                          progress, status, cancel_token)
            result = self.runner.run_powershell(
                f"Add-AppxPackage -Path {ps_quote(bundle)} -ErrorAction Stop",
                category=LogCategory.TOOLING)
            if not result.success:
                self.logger.log_error(LogCategory.TOOLING, "winget_bootstrap",
                                      f"Add-AppxPackage failed: {result.stderr.strip()}")
                return False
        except RuntimeError as e:
            self.logger.log_error(LogCategory.TOOLING, "winget_bootstrap", str(e))
            return False
        finally:
            if bundle.exists():
                bundle.unlink()

        available = self.is_available()
        if available:
            self.logger.log_info(LogCategory.TOOLING, "winget_bootstrap", "winget installed")
        return available

    def install(self, package_id: str, extra_args: List[str],
                progress: Optional[ProgressCallback] = None,
                cancel_token: Optional[CancellationToken] = None,
                status_text: str = "") -> int:
        """
        Run `winget install <package_id>` with the given arguments.

        Returns:
            winget exit code, or -1 when winget cannot be found
        """
        exe = self.resolve_executable()
        if exe is None:
            return -1
        command = " ".join([f'"{exe}"', "install", package_id] + list(extra_args))
        exit_code, _ = run_with_progress(self.runner, command, progress, status_text,
                                         cancel_token, LogCategory.TOOLING)
        return exit_code
