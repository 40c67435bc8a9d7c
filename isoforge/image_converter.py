#!/usr/bin/env python3
"""
Image Conversion Module for isoforge

Detects whether extracted media carries install.wim or install.esd and
converts between the two container formats with DISM, one edition index at
a time.
"""

import os
import stat
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import List, Optional, Tuple

from isoforge.config import BuildSettings
from isoforge.disk_space import DiskSpaceChecker
from isoforge.errors import ExternalToolError, FileContentionError, OperationCancelledError
from isoforge.localization import TextProvider
from isoforge.logger import LogCategory, MediaLogger
from isoforge.process_runner import ProcessRunner, run_with_progress
from isoforge.progress import CancellationToken, ProgressCallback, report

GB = 1024 ** 3


class ImageFormat(Enum):
    """Container formats for the installable image."""
    WIM = "wim"
    ESD = "esd"

    @property
    def file_name(self) -> str:
        return f"install.{self.value}"

    @property
    def compression(self) -> str:
        return "recovery" if self is ImageFormat.ESD else "max"

    @classmethod
    def parse(cls, value: str) -> "ImageFormat":
        try:
            return cls(value.strip().lower().lstrip("."))
        except ValueError:
            raise ValueError(f"Unknown image format: {value} (expected wim or esd)")


# WIM is checked before ESD; when both exist the WIM is treated as current.
DETECTION_ORDER = (ImageFormat.WIM, ImageFormat.ESD)


@dataclass(frozen=True)
class ImageFormatInfo:
    """What detection found for one container file."""
    format: ImageFormat
    path: Path
    size_bytes: int
    image_count: int
    edition_names: Tuple[str, ...] = ()


@dataclass(frozen=True)
class ImageDetectionResult:
    """At most one ImageFormatInfo per container kind."""
    wim: Optional[ImageFormatInfo] = None
    esd: Optional[ImageFormatInfo] = None

    def get(self, image_format: ImageFormat) -> Optional[ImageFormatInfo]:
        return self.wim if image_format is ImageFormat.WIM else self.esd

    @property
    def primary(self) -> Optional[ImageFormatInfo]:
        for image_format in DETECTION_ORDER:
            info = self.get(image_format)
            if info is not None:
                return info
        return None

    @property
    def both_present(self) -> bool:
        return self.wim is not None and self.esd is not None

    @property
    def none_present(self) -> bool:
        return self.wim is None and self.esd is None


@dataclass
class ConversionResult:
    """Outcome of a conversion. Truthy when the new image is in place."""
    success: bool
    output_path: Optional[Path] = None
    source_deleted: bool = True
    image_count: int = 0
    message: str = ""
    edition_names: List[str] = field(default_factory=list)

    def __bool__(self) -> bool:
        return self.success


def parse_image_info(output: str) -> Tuple[int, List[str]]:
    """Count `Index :` lines and collect `Name :` values from DISM /Get-ImageInfo output."""
    count = 0
    names = []
    for line in (output or "").splitlines():
        stripped = line.strip()
        if stripped.startswith("Index :") or stripped.startswith("Index:"):
            count += 1
        elif stripped.startswith("Name :") or stripped.startswith("Name:"):
            names.append(stripped.split(":", 1)[1].strip())
    return count, names


def build_export_command(source: Path, index: int, destination: Path,
                         target: ImageFormat) -> str:
    """DISM command exporting one edition into the destination container."""
    return (
        f'dism.exe /Export-Image /SourceImageFile:"{source}" /SourceIndex:{index} '
        f'/DestinationImageFile:"{destination}" /Compress:{target.compression} /CheckIntegrity'
    )


class ImageConverter:
    """Detects and converts the install image of extracted media."""

    def __init__(self, runner: ProcessRunner, disk_checker: DiskSpaceChecker,
                 logger: MediaLogger, text: Optional[TextProvider] = None,
                 settings: Optional[BuildSettings] = None):
        self.runner = runner
        self.disk_checker = disk_checker
        self.logger = logger
        self.text = text or TextProvider()
        self.settings = settings or BuildSettings()
        self._sleep = time.sleep

    def detect(self, working_dir: Path) -> ImageDetectionResult:
        """
        Look in sources/ for install.wim and install.esd.

        Read-only: only DISM /Get-ImageInfo is run against files that exist.
        """
        sources = Path(working_dir) / "sources"
        found = {}
        for image_format in DETECTION_ORDER:
            path = sources / image_format.file_name
            if path.is_file():
                found[image_format] = self._describe(path, image_format)

        result = ImageDetectionResult(wim=found.get(ImageFormat.WIM), esd=found.get(ImageFormat.ESD))
        if result.both_present:
            self.logger.log_warning(LogCategory.CONVERSION, "detect_format",
                                    "Both install.wim and install.esd are present; "
                                    "install.wim is used as the current image")
        elif result.none_present:
            self.logger.log_warning(LogCategory.CONVERSION, "detect_format",
                                    f"No install.wim or install.esd found in {sources}")
        return result

    def _describe(self, path: Path, image_format: ImageFormat) -> ImageFormatInfo:
        count, names = 1, []
        try:
            result = self.runner.run(f'dism.exe /Get-ImageInfo /ImageFile:"{path}"',
                                     category=LogCategory.CONVERSION)
            if result.success:
                parsed_count, names = parse_image_info(result.stdout)
                if parsed_count > 0:
                    count = parsed_count
            else:
                self.logger.log_warning(LogCategory.CONVERSION, "detect_format",
                                        f"Could not read image info for {path.name}, assuming 1 image")
        except OSError as e:
            self.logger.log_warning(LogCategory.CONVERSION, "detect_format",
                                    f"Error reading image info for {path.name}: {e}")
        return ImageFormatInfo(image_format, path, path.stat().st_size, count, tuple(names))

    def convert(self, working_dir: Path, target: ImageFormat,
                progress: Optional[ProgressCallback] = None,
                cancel_token: Optional[CancellationToken] = None) -> ConversionResult:
        """
        Convert the install image to target format.

        Returns:
            ConversionResult; success with source_deleted False means the
            original file must be deleted by hand

        Raises:
            InsufficientDiskSpaceError: not enough room for the conversion
            ExternalToolError: DISM failed on an edition
            OperationCancelledError: the conversion was cancelled
        """
        working_dir = Path(working_dir)
        self.logger.start_operation(LogCategory.CONVERSION, "convert_image",
                                    f"Converting image in {working_dir} to {target.value.upper()}")
        report(progress, self.text.get("progress_detecting_format"))
        current = self.detect(working_dir).primary

        if current is None:
            self.logger.end_operation(False, "Could not detect current image format")
            return ConversionResult(False, message="No install.wim or install.esd found")

        if current.format is target:
            self.logger.end_operation(True, f"Image is already in {target.value.upper()} format")
            return ConversionResult(True, current.path, True, current.image_count,
                                    f"Image is already in {target.value.upper()} format",
                                    list(current.edition_names))

        source = current.path
        destination = source.parent / target.file_name

        try:
            self.disk_checker.check(working_dir, current.size_bytes * 2, "Image conversion")
            if destination.exists():
                # DISM appends to an existing container, so a stale target is replaced.
                self.logger.log_warning(LogCategory.CONVERSION, "convert_image",
                                        f"Replacing existing {destination.name}")
                destination.unlink()
            self._export_all(current, destination, target, progress, cancel_token)
        except (ExternalToolError, OperationCancelledError, OSError) as e:
            self.runner.terminate_owned()
            self._remove_partial(destination)
            self.logger.end_operation(False, f"Image conversion failed: {e}")
            raise
        except Exception as e:
            self.logger.end_operation(False, f"Image conversion failed: {e}")
            raise

        if not destination.is_file():
            self.logger.end_operation(False, f"Target file not found: {destination}")
            return ConversionResult(False, message=f"Target file not found: {destination}")

        report(progress, self.text.get("progress_deleting_source"), f"Deleting {source.name}")
        deleted = self._try_delete(source)
        new_size = destination.stat().st_size

        if not deleted:
            message = self.text.get("conversion_manual_cleanup", destination, source)
            report(progress, self.text.get("progress_conversion_complete"),
                   f"Conversion succeeded! New size: {new_size / GB:.2f} GB\n\n{message}", 100.0)
            self.logger.end_operation(True, "Conversion succeeded but the source file is still in use",
                                      details={"manual_cleanup": str(source)})
            return ConversionResult(True, destination, False, current.image_count, message,
                                    list(current.edition_names))

        size_diff = current.size_bytes - new_size
        saved = (f"Saved {size_diff / GB:.2f} GB" if size_diff > 0
                 else f"Used {abs(size_diff) / GB:.2f} GB more")
        report(progress, self.text.get("progress_conversion_complete"),
               f"New size: {new_size / GB:.2f} GB\n{saved}", 100.0)
        self.logger.end_operation(True, f"Conversion successful: {current.format.value.upper()} -> "
                                        f"{target.value.upper()}")
        return ConversionResult(True, destination, True, current.image_count, saved,
                                list(current.edition_names))

    def _export_all(self, current: ImageFormatInfo, destination: Path, target: ImageFormat,
                    progress: Optional[ProgressCallback],
                    cancel_token: Optional[CancellationToken]):
        count = max(current.image_count, 1)
        self.logger.log_info(LogCategory.CONVERSION, "convert_image", f"Converting {count} image(s)")
        for index in range(1, count + 1):
            if cancel_token is not None:
                cancel_token.raise_if_cancelled()
            name = (current.edition_names[index - 1]
                    if len(current.edition_names) >= index else f"Index {index}")
            status = self.text.get("progress_converting_image", index, count)
            report(progress, status, name)
            command = build_export_command(current.path, index, destination, target)
            exit_code, output = run_with_progress(self.runner, command, progress, status,
                                                  cancel_token, LogCategory.CONVERSION)
            if exit_code != 0:
                raise ExternalToolError("dism /Export-Image", exit_code, output)

    def _remove_partial(self, destination: Path):
        if not destination.exists():
            return
        try:
            self.logger.log_info(LogCategory.CONVERSION, "convert_image",
                                 f"Cleaning up incomplete target file: {destination}")
            destination.unlink()
        except OSError as e:
            self.logger.log_warning(LogCategory.CONVERSION, "convert_image",
                                    f"Could not delete incomplete target file: {e}")

    def _delete_with_retry(self, path: Path):
        """
        Delete path, retrying while another process holds it open.

        Raises:
            FileContentionError: the file still exists after every attempt
        """
        attempts = self.settings.delete_attempts
        for attempt in range(1, attempts + 1):
            try:
                if not path.exists():
                    return
                os.chmod(path, stat.S_IWRITE | stat.S_IREAD)
                path.unlink()
                self.logger.log_info(LogCategory.CONVERSION, "delete_image",
                                     f"Deleted {path}")
                return
            except OSError as e:
                self.logger.log_warning(LogCategory.CONVERSION, "delete_image",
                                        f"Attempt {attempt}/{attempts} to delete {path.name} failed: {e}")
                if attempt < attempts:
                    self._sleep(self.settings.delete_retry_delay)
        if path.exists():
            raise FileContentionError(str(path), attempts)

    def _try_delete(self, path: Path) -> bool:
        try:
            self._delete_with_retry(path)
        except FileContentionError as e:
            self.logger.log_warning(LogCategory.CONVERSION, "delete_image", str(e))
            return False
        return True

    def delete_image_file(self, working_dir: Path, image_format: ImageFormat,
                          progress: Optional[ProgressCallback] = None) -> bool:
        """Delete install.wim or install.esd from the media, retrying while it is locked."""
        path = Path(working_dir) / "sources" / image_format.file_name
        if not path.exists():
            self.logger.log_warning(LogCategory.CONVERSION, "delete_image", f"{path} does not exist")
            return False
        report(progress, self.text.get("progress_deleting_source"), f"Deleting {path.name}")
        return self._try_delete(path)
