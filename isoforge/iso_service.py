#!/usr/bin/env python3
"""
ISO Service Module for isoforge

Extracts a Windows installation ISO into a working directory and packages a
working directory back into a dual-boot (BIOS + UEFI) ISO with oscdimg.

Mounting and dismounting go through PowerShell's Mount-DiskImage and
Dismount-DiskImage. The source image is always dismounted once copying
stops, whatever the outcome.
"""

import os
import re
import shutil
import stat
from pathlib import Path
from typing import Optional

from isoforge.config import BuildSettings
from isoforge.disk_space import DiskSpaceChecker, directory_size
from isoforge.errors import DirectoryBusyError, ExternalToolError, OperationCancelledError
from isoforge.localization import TextProvider
from isoforge.logger import LogCategory, MediaLogger
from isoforge.process_runner import ProcessRunner, ps_quote, run_with_progress
from isoforge.progress import CancellationToken, ProgressCallback, report
from isoforge.tool_resolver import OscdimgResolver

DRIVE_LETTER_PATTERN = re.compile(r"\b[A-Z]\b")

REQUIRED_MEDIA_DIRS = ("sources", "boot")
BIOS_BOOT_FILE = Path("boot", "etfsboot.com")
UEFI_BOOT_FILE = Path("efi", "microsoft", "boot", "efisys.bin")


def parse_drive_letter(output: str) -> Optional[str]:
    """First standalone capital letter in Mount-DiskImage output."""
    match = DRIVE_LETTER_PATTERN.search(output or "")
    return match.group(0) if match else None


def build_oscdimg_command(tool: Path, working_dir: Path, output_path: Path) -> str:
    """oscdimg command line for a BIOS + UEFI bootable image."""
    etfsboot = Path(working_dir) / BIOS_BOOT_FILE
    efisys = Path(working_dir) / UEFI_BOOT_FILE
    return (
        f'"{tool}" -m -o -u2 -udfver102 '
        f'-bootdata:2#p0,e,b"{etfsboot}"#pEF,e,b"{efisys}" '
        f'"{working_dir}" "{output_path}"'
    )


def clear_readonly(path: Path):
    """Make every file and directory below path writable."""
    for root, dirs, files in os.walk(path):
        for name in dirs + files:
            target = os.path.join(root, name)
            os.chmod(target, stat.S_IWRITE | stat.S_IREAD | stat.S_IEXEC)


class ImageExtractor:
    """Copies the contents of an installation ISO into a working directory."""

    def __init__(self, runner: ProcessRunner, disk_checker: DiskSpaceChecker,
                 logger: MediaLogger, text: Optional[TextProvider] = None,
                 settings: Optional[BuildSettings] = None):
        self.runner = runner
        self.disk_checker = disk_checker
        self.logger = logger
        self.text = text or TextProvider()
        self.settings = settings or BuildSettings()

    def validate(self, image_path: Path) -> bool:
        """
        Check that image_path looks like a real ISO.

        Never raises; logs the reason when the file is rejected.
        """
        try:
            image_path = Path(image_path)
            if not image_path.is_file():
                self.logger.log_error(LogCategory.EXTRACTION, "validate_iso",
                                      f"ISO file not found: {image_path}")
                return False
            if image_path.suffix.lower() != ".iso":
                self.logger.log_error(LogCategory.EXTRACTION, "validate_iso",
                                      f"Not an ISO file: {image_path}")
                return False
            size = image_path.stat().st_size
            if size < self.settings.min_iso_size_bytes:
                self.logger.log_error(LogCategory.EXTRACTION, "validate_iso",
                                      f"ISO file is too small to be a Windows image ({size} bytes)")
                return False
            return True
        except OSError as e:
            self.logger.log_error(LogCategory.EXTRACTION, "validate_iso",
                                  f"Could not read ISO file {image_path}: {e}")
            return False

    def verify(self, working_dir: Path) -> bool:
        """True when the working directory holds both sources/ and boot/."""
        missing = [name for name in REQUIRED_MEDIA_DIRS if not (Path(working_dir) / name).is_dir()]
        if missing:
            self.logger.log_error(LogCategory.EXTRACTION, "verify_extraction",
                                  f"Extracted media is missing: {', '.join(missing)}",
                                  {"working_dir": str(working_dir)})
            return False
        return True

    def extract(self, image_path: Path, working_dir: Path,
                progress: Optional[ProgressCallback] = None,
                cancel_token: Optional[CancellationToken] = None) -> bool:
        """
        Extract an ISO into working_dir.

        Args:
            image_path: Source ISO
            working_dir: Destination directory (replaced if it exists)
            progress: Optional progress callback
            cancel_token: Optional cancellation token

        Returns:
            True when the copy completed and the media layout verified

        Raises:
            InsufficientDiskSpaceError: not enough room for the copy
            DirectoryBusyError: an existing working directory could not be removed
            ExternalToolError: the ISO could not be mounted
            OperationCancelledError: the copy was cancelled
        """
        image_path = Path(image_path)
        working_dir = Path(working_dir)
        self.logger.start_operation(LogCategory.EXTRACTION, "extract_iso",
                                    f"Extracting {image_path} to {working_dir}")
        try:
            result = self._extract(image_path, working_dir, progress, cancel_token)
        except OSError as e:
            self.logger.end_operation(False, f"ISO extraction failed: {e}")
            return False
        except Exception as e:
            self.logger.end_operation(False, f"ISO extraction stopped: {e}")
            raise

        self.logger.end_operation(result)
        if result:
            report(progress, self.text.get("progress_extraction_complete"), None, 100.0)
        return result

    def _extract(self, image_path, working_dir, progress, cancel_token) -> bool:
        report(progress, self.text.get("progress_validating_iso"))
        if not self.validate(image_path):
            return False

        report(progress, self.text.get("progress_checking_disk_space"))
        required = image_path.stat().st_size + self.settings.disk_space_margin_bytes
        self.disk_checker.check(working_dir, required, "ISO extraction")

        report(progress, self.text.get("progress_preparing_directory"))
        self._prepare_working_directory(working_dir)

        if cancel_token is not None:
            cancel_token.raise_if_cancelled()

        report(progress, self.text.get("progress_mounting_iso"))
        drive_letter = self._mount(image_path)
        try:
            source_root = self._volume_root(drive_letter)
            self._copy_media(source_root, working_dir, progress, cancel_token)
        finally:
            report(progress, self.text.get("progress_dismounting_iso"))
            self._dismount(image_path)

        report(progress, self.text.get("progress_verifying_extraction"))
        return self.verify(working_dir)

    def _prepare_working_directory(self, working_dir: Path):
        if working_dir.exists():
            try:
                clear_readonly(working_dir)
                shutil.rmtree(working_dir)
            except OSError as e:
                raise DirectoryBusyError(str(working_dir), str(e)) from e
        working_dir.mkdir(parents=True, exist_ok=True)

    def _mount(self, image_path: Path) -> str:
        script = (f"Mount-DiskImage -ImagePath {ps_quote(image_path)} -PassThru | "
                  f"Get-Volume | Select-Object -ExpandProperty DriveLetter")
        result = self.runner.run_powershell(script, category=LogCategory.EXTRACTION)
        drive_letter = parse_drive_letter(result.stdout) if result.success else None
        if drive_letter is None:
            self._dismount(image_path)
            raise ExternalToolError("Mount-DiskImage", result.exit_code if not result.success else 1,
                                    result.stderr or result.stdout)
        self.logger.log_info(LogCategory.EXTRACTION, "mount_iso",
                             f"Mounted {image_path} as {drive_letter}:")
        return drive_letter

    def _volume_root(self, drive_letter: str) -> Path:
        return Path(f"{drive_letter}:\\")

    def _dismount(self, image_path: Path):
        try:
            result = self.runner.run_powershell(
                f"Dismount-DiskImage -ImagePath {ps_quote(image_path)}",
                category=LogCategory.EXTRACTION)
            if not result.success:
                self.logger.log_warning(LogCategory.EXTRACTION, "dismount_iso",
                                        f"Dismount returned exit code {result.exit_code}")
        except OSError as e:
            self.logger.log_warning(LogCategory.EXTRACTION, "dismount_iso",
                                    f"Failed to dismount {image_path}: {e}")

    def _copy_media(self, source_root: Path, working_dir: Path,
                    progress: Optional[ProgressCallback],
                    cancel_token: Optional[CancellationToken]):
        total = sum(len(files) for _, _, files in os.walk(source_root))
        state = {"copied": 0, "total": max(total, 1), "root": source_root}
        self._copy_directory(source_root, working_dir, state, progress, cancel_token)
        self.logger.log_info(LogCategory.EXTRACTION, "copy_files",
                             f"Copied {state['copied']} files from {source_root}")

    def _copy_directory(self, source: Path, destination: Path, state: dict,
                        progress: Optional[ProgressCallback],
                        cancel_token: Optional[CancellationToken]):
        destination.mkdir(parents=True, exist_ok=True)
        entries = sorted(source.iterdir(), key=lambda p: p.name)

        for entry in entries:
            if entry.is_file():
                if cancel_token is not None:
                    cancel_token.raise_if_cancelled()
                target = destination / entry.name
                shutil.copyfile(entry, target)
                os.chmod(target, stat.S_IWRITE | stat.S_IREAD)
                state["copied"] += 1
                percent = state["copied"] * 100.0 / state["total"]
                report(progress, self.text.get("progress_copying_files"),
                       str(entry.relative_to(state["root"])), percent)

        for entry in entries:
            if entry.is_dir():
                if cancel_token is not None:
                    cancel_token.raise_if_cancelled()
                self._copy_directory(entry, destination / entry.name, state, progress, cancel_token)


class ImagePackager:
    """Builds the final bootable ISO from a working directory."""

    def __init__(self, runner: ProcessRunner, resolver: OscdimgResolver,
                 disk_checker: DiskSpaceChecker, logger: MediaLogger,
                 text: Optional[TextProvider] = None,
                 settings: Optional[BuildSettings] = None):
        self.runner = runner
        self.resolver = resolver
        self.disk_checker = disk_checker
        self.logger = logger
        self.text = text or TextProvider()
        self.settings = settings or BuildSettings()

    def create(self, working_dir: Path, output_path: Path,
               progress: Optional[ProgressCallback] = None,
               cancel_token: Optional[CancellationToken] = None) -> bool:
        """
        Package working_dir into a bootable ISO at output_path.

        Returns:
            True when the ISO exists after oscdimg finished

        Raises:
            ToolUnavailableError: oscdimg could not be found or installed
            InsufficientDiskSpaceError: not enough room for the ISO
            FileNotFoundError: a required boot file is missing
            ExternalToolError: oscdimg exited with a non-zero code
        """
        working_dir = Path(working_dir)
        output_path = Path(output_path)
        self.logger.start_operation(LogCategory.PACKAGING, "create_iso",
                                    f"Creating {output_path} from {working_dir}")
        try:
            result = self._create(working_dir, output_path, progress, cancel_token)
        except Exception as e:
            self.logger.end_operation(False, f"ISO creation failed: {e}")
            raise
        self.logger.end_operation(result)
        return result

    def _create(self, working_dir, output_path, progress, cancel_token) -> bool:
        availability = self.resolver.ensure_available(progress, cancel_token)

        report(progress, self.text.get("progress_checking_disk_space"))
        required = directory_size(working_dir) + self.settings.disk_space_margin_bytes
        self.disk_checker.check(output_path.parent, required, "ISO creation")

        for boot_file in (BIOS_BOOT_FILE, UEFI_BOOT_FILE):
            expected = working_dir / boot_file
            if not expected.is_file():
                raise FileNotFoundError(f"Required boot file not found: {expected}")

        if output_path.exists():
            output_path.unlink()
        output_path.parent.mkdir(parents=True, exist_ok=True)

        command = build_oscdimg_command(availability.path, working_dir, output_path)
        status = self.text.get("progress_creating_iso")
        report(progress, status, command)
        try:
            exit_code, output = run_with_progress(self.runner, command, progress, status,
                                                  cancel_token, LogCategory.PACKAGING)
            if exit_code != 0:
                raise ExternalToolError("oscdimg", exit_code, output)
        except (ExternalToolError, OperationCancelledError):
            self._remove_partial(output_path)
            raise

        if not output_path.is_file():
            self.logger.log_error(LogCategory.PACKAGING, "create_iso",
                                  f"oscdimg finished but {output_path} was not created")
            return False

        size_mb = output_path.stat().st_size / (1024 * 1024)
        report(progress, self.text.get("progress_iso_created"),
               f"ISO created: {output_path} ({size_mb:.1f} MB)", 100.0)
        self.logger.log_info(LogCategory.PACKAGING, "create_iso",
                             f"ISO created: {output_path} ({size_mb:.1f} MB)",
                             {"size_mb": round(size_mb, 1),
                              "tool_provenance": availability.provenance.value})
        return True

    def _remove_partial(self, output_path: Path):
        try:
            if output_path.exists():
                output_path.unlink()
        except OSError as e:
            self.logger.log_warning(LogCategory.PACKAGING, "create_iso",
                                    f"Could not remove partial ISO {output_path}: {e}")
