#!/usr/bin/env python3
"""
Driver Injection Module for isoforge

Stages drivers into extracted installation media. Storage controller
drivers go to sources/$WinpeDriver$ so Windows Setup loads them before it
looks for disks; everything else goes to sources/$OEM$/$$/Drivers and is
installed by SetupComplete.cmd after first boot.
"""

import codecs
import shutil
import tempfile
from pathlib import Path
from typing import Optional

from isoforge.errors import ExternalToolError, OperationCancelledError
from isoforge.localization import TextProvider
from isoforge.logger import LogCategory, MediaLogger
from isoforge.process_runner import ProcessRunner, run_with_progress
from isoforge.progress import CancellationToken, ProgressCallback, report

STORAGE_CLASSES = {"scsiadapter", "hdc"}
STORAGE_FILENAME_KEYWORDS = ("iaahci", "iastor", "iastorac", "iastora", "iastorv", "vmd", "irst", "rst")
MAX_NAME_SUFFIX = 100

WINPE_DRIVER_DIR = Path("sources", "$WinpeDriver$")
OEM_DRIVER_DIR = Path("sources", "$OEM$", "$$", "Drivers")
SETUP_SCRIPTS_DIR = Path("sources", "$OEM$", "$$", "Setup", "Scripts")

SETUP_COMPLETE_SCRIPT = r"""@echo off
REM Automatic driver installation, run by Windows Setup after first boot

set LOGFILE=C:\Windows\Logs\DriverInstall.log

echo ================================================== > %LOGFILE%
echo Driver Installation Log >> %LOGFILE%
echo Date: %DATE% %TIME% >> %LOGFILE%
echo ================================================== >> %LOGFILE%
echo. >> %LOGFILE%

echo Installing drivers from C:\Windows\Drivers... >> %LOGFILE%
pnputil /add-driver C:\Windows\Drivers\*.inf /subdirs /install >> %LOGFILE% 2>&1

echo. >> %LOGFILE%
echo Driver installation completed >> %LOGFILE%
echo Exit Code: %ERRORLEVEL% >> %LOGFILE%
"""


def read_inf_text(inf_path: Path) -> str:
    """Read an .inf file, which is usually UTF-16 and sometimes UTF-8/ANSI."""
    data = Path(inf_path).read_bytes()
    if data[:2] in (codecs.BOM_UTF16_LE, codecs.BOM_UTF16_BE) or b"\x00" in data[:256]:
        try:
            return data.decode("utf-16")
        except UnicodeDecodeError:
            pass
    return data.decode("utf-8-sig", errors="replace")


def _is_within(path: Path, parent: Path) -> bool:
    try:
        path.resolve().relative_to(parent.resolve())
        return True
    except ValueError:
        return False


class DriverCategorizer:
    """Splits driver packages into boot-critical storage drivers and post-install drivers."""

    def __init__(self, logger: MediaLogger):
        self.logger = logger

    def is_storage_driver(self, inf_path: Path) -> bool:
        """True for storage controller drivers (by file name or by device class)."""
        inf_path = Path(inf_path)
        file_name = inf_path.name.lower()
        if any(keyword in file_name for keyword in STORAGE_FILENAME_KEYWORDS):
            self.logger.log_info(LogCategory.DRIVERS, "categorize",
                                 f"Storage driver detected (filename): {inf_path.name}")
            return True

        try:
            content = read_inf_text(inf_path)
        except OSError as e:
            self.logger.log_warning(LogCategory.DRIVERS, "categorize",
                                    f"Could not categorize driver {inf_path.name}: {e}")
            return False

        for line in content.splitlines():
            stripped = line.strip()
            if stripped.lower().startswith("class") and "=" in stripped:
                class_name = stripped.split("=")[1].strip()
                if class_name.lower() in STORAGE_CLASSES:
                    self.logger.log_info(LogCategory.DRIVERS, "categorize",
                                         f"Storage driver detected (class={class_name}): {inf_path.name}")
                    return True
        return False

    def categorize_and_copy(self, source_dir: Path, winpe_dir: Path, oem_dir: Path,
                            exclude_dir: Optional[Path] = None) -> int:
        """
        Copy every driver package folder under source_dir to its destination.

        Args:
            source_dir: Directory searched recursively for .inf files
            winpe_dir: Destination for storage drivers
            oem_dir: Destination for post-install drivers
            exclude_dir: .inf files below this directory are ignored

        Returns:
            Number of driver folders copied
        """
        source_dir = Path(source_dir)
        inf_files = sorted(p for p in source_dir.rglob("*") if p.is_file() and p.suffix.lower() == ".inf")
        if not inf_files:
            self.logger.log_warning(LogCategory.DRIVERS, "categorize",
                                    f"No .inf files found in: {source_dir}")
            return 0

        if exclude_dir is not None:
            valid = [inf for inf in inf_files if not _is_within(inf, Path(exclude_dir))]
            excluded = len(inf_files) - len(valid)
            if excluded:
                self.logger.log_info(LogCategory.DRIVERS, "categorize",
                                     f"Excluded {excluded} driver(s) from working directory")
            inf_files = valid

        if not inf_files:
            self.logger.log_warning(LogCategory.DRIVERS, "categorize",
                                    "No valid drivers found after filtering")
            return 0

        self.logger.log_info(LogCategory.DRIVERS, "categorize",
                             f"Found {len(inf_files)} driver(s) to categorize")
        copied = 0
        processed = set()

        for inf_file in inf_files:
            folder = inf_file.parent
            key = str(folder.resolve()).lower()
            if key in processed:
                continue
            processed.add(key)

            try:
                target_base = Path(winpe_dir) if self.is_storage_driver(inf_file) else Path(oem_dir)
                target = target_base / folder.name
                counter = 1
                while target.exists() and counter < MAX_NAME_SUFFIX:
                    target = target_base / f"{folder.name}_{counter}"
                    counter += 1
                target.mkdir(parents=True, exist_ok=True)

                for item in folder.iterdir():
                    if item.is_file():
                        shutil.copy2(item, target / item.name)

                copied += 1
                self.logger.log_info(LogCategory.DRIVERS, "categorize", f"Copied driver: {folder.name}")
            except OSError as e:
                self.logger.log_error(LogCategory.DRIVERS, "categorize",
                                      f"Failed to copy driver {inf_file.name}: {e}")

        return copied


class DriverInjector:
    """Adds host-exported or user-supplied drivers to extracted media."""

    def __init__(self, runner: ProcessRunner, categorizer: DriverCategorizer,
                 logger: MediaLogger, text: Optional[TextProvider] = None):
        self.runner = runner
        self.categorizer = categorizer
        self.logger = logger
        self.text = text or TextProvider()

    def inject(self, working_dir: Path, source_path: Optional[Path] = None,
               progress: Optional[ProgressCallback] = None,
               cancel_token: Optional[CancellationToken] = None) -> bool:
        """
        Stage drivers into working_dir.

        Args:
            working_dir: Extracted media directory
            source_path: Folder of drivers; None exports the drivers of this computer
            progress: Optional progress callback
            cancel_token: Optional cancellation token

        Returns:
            True when at least one driver package was staged
        """
        working_dir = Path(working_dir)
        self.logger.start_operation(LogCategory.DRIVERS, "inject_drivers",
                                    f"Adding drivers to {working_dir}")
        temp_dir = None
        try:
            if source_path is None:
                temp_dir = Path(tempfile.mkdtemp(prefix="isoforge_drivers_"))
                if not self._export_host_drivers(temp_dir, progress, cancel_token):
                    self.logger.end_operation(False, "Driver export failed")
                    return False
                source_dir = temp_dir
            else:
                source_dir = Path(source_path)
                report(progress, self.text.get("progress_categorizing_drivers"), str(source_dir))
                if not source_dir.is_dir():
                    self.logger.end_operation(False, f"Driver source path does not exist: {source_dir}")
                    return False

            report(progress, self.text.get("progress_categorizing_drivers"),
                   "Separating storage and post-install drivers")
            copied = self.categorizer.categorize_and_copy(
                source_dir,
                working_dir / WINPE_DRIVER_DIR,
                working_dir / OEM_DRIVER_DIR,
                working_dir
            )
            if copied == 0:
                self.logger.end_operation(False, f"No drivers were found or copied from: {source_dir}")
                return False

            report(progress, self.text.get("progress_drivers_added", copied), "Setting up SetupComplete.cmd")
            self.write_setup_complete(working_dir)
            self.logger.end_operation(True, f"Added {copied} driver(s)",
                                      details={"copied": copied})
            return True
        except OSError as e:
            self.logger.end_operation(False, f"Error adding drivers: {e}")
            return False
        except OperationCancelledError:
            self.logger.end_operation(False, "Driver injection cancelled")
            raise
        finally:
            if temp_dir is not None:
                shutil.rmtree(temp_dir, ignore_errors=True)

    def _export_host_drivers(self, destination: Path, progress, cancel_token) -> bool:
        status = self.text.get("progress_exporting_drivers")
        report(progress, status, "Exporting drivers from current system...")
        command = f'dism.exe /Online /Export-Driver /Destination:"{destination}"'
        try:
            exit_code, output = run_with_progress(self.runner, command, progress, status,
                                                  cancel_token, LogCategory.DRIVERS)
            if exit_code != 0:
                raise ExternalToolError("dism /Export-Driver", exit_code, output)
        except (ExternalToolError, OSError) as e:
            self.logger.log_error(LogCategory.DRIVERS, "export_drivers",
                                  f"Failed to export system drivers: {e}")
            return False
        return True

    def write_setup_complete(self, working_dir: Path) -> Path:
        """Write the first-boot driver installation script."""
        scripts_dir = Path(working_dir) / SETUP_SCRIPTS_DIR
        scripts_dir.mkdir(parents=True, exist_ok=True)
        script_path = scripts_dir / "SetupComplete.cmd"
        with open(script_path, 'w', encoding="ascii", newline="\r\n") as f:
            f.write(SETUP_COMPLETE_SCRIPT)
        self.logger.log_info(LogCategory.DRIVERS, "setup_complete",
                             f"Created SetupComplete.cmd at: {script_path}")
        return script_path
