#!/usr/bin/env python3
"""
Media Builder for isoforge

Single entry point for the customization pipeline. Owns one cancellation
token and one process runner shared by every stage, so cancel() stops the
tools this builder launched and nothing else.
"""

import shutil
from pathlib import Path
from typing import Callable, Optional, Union

from isoforge.config import BuildSettings, SettingsCatalog, UnifiedConfiguration
from isoforge.disk_space import DiskSpaceChecker
from isoforge.downloads import download_file
from isoforge.drivers import SETUP_SCRIPTS_DIR, DriverCategorizer, DriverInjector
from isoforge.image_converter import (
    ConversionResult, ImageConverter, ImageDetectionResult, ImageFormat
)
from isoforge.iso_service import ImageExtractor, ImagePackager, clear_readonly
from isoforge.localization import TextProvider
from isoforge.logger import LogCategory, MediaLogger
from isoforge.process_runner import ProcessRunner
from isoforge.progress import CancellationToken, ProgressCallback, report
from isoforge.script_builder import PowerShellSyntaxValidator, ScriptBuilder
from isoforge.tool_resolver import OscdimgResolver, ToolAvailability
from isoforge.winget import WinGetService

ANSWER_FILE_URL = "https://raw.githubusercontent.com/memstechtips/UnattendedWinstall/main/autounattend.xml"


class MediaBuilder:
    """Runs the pipeline stages against a shared working directory."""

    def __init__(self, runner: ProcessRunner, extractor: ImageExtractor,
                 injector: DriverInjector, converter: ImageConverter,
                 packager: ImagePackager, resolver: OscdimgResolver,
                 script_builder: ScriptBuilder, logger: MediaLogger,
                 text: Optional[TextProvider] = None,
                 settings: Optional[BuildSettings] = None,
                 downloader: Callable = download_file):
        self.runner = runner
        self.extractor = extractor
        self.injector = injector
        self.converter = converter
        self.packager = packager
        self.resolver = resolver
        self.script_builder = script_builder
        self.logger = logger
        self.text = text or TextProvider()
        self.settings = settings or BuildSettings()
        self.downloader = downloader
        self.cancel_token = CancellationToken()

    @classmethod
    def create(cls, settings: Optional[BuildSettings] = None,
               logger: Optional[MediaLogger] = None,
               catalog: Optional[SettingsCatalog] = None) -> "MediaBuilder":
        """Wire the default collaborators."""
        settings = settings or BuildSettings()
        logger = logger or MediaLogger(settings.log_dir)
        text = TextProvider()
        runner = ProcessRunner(logger)
        disk_checker = DiskSpaceChecker(logger)
        winget = WinGetService(runner, logger, text)
        resolver = OscdimgResolver(runner, winget, logger, text, settings)
        return cls(
            runner=runner,
            extractor=ImageExtractor(runner, disk_checker, logger, text, settings),
            injector=DriverInjector(runner, DriverCategorizer(logger), logger, text),
            converter=ImageConverter(runner, disk_checker, logger, text, settings),
            packager=ImagePackager(runner, resolver, disk_checker, logger, text, settings),
            resolver=resolver,
            script_builder=ScriptBuilder(PowerShellSyntaxValidator(runner), logger, catalog, settings),
            logger=logger,
            text=text,
            settings=settings,
        )

    def _token(self, cancel_token: Optional[CancellationToken]) -> CancellationToken:
        return cancel_token if cancel_token is not None else self.cancel_token

    def extract_iso(self, image_path: Path, working_dir: Path,
                    progress: Optional[ProgressCallback] = None,
                    cancel_token: Optional[CancellationToken] = None) -> bool:
        return self.extractor.extract(image_path, working_dir, progress, self._token(cancel_token))

    def inject_drivers(self, working_dir: Path, source_path: Optional[Path] = None,
                       progress: Optional[ProgressCallback] = None,
                       cancel_token: Optional[CancellationToken] = None) -> bool:
        return self.injector.inject(working_dir, source_path, progress, self._token(cancel_token))

    def detect_image_format(self, working_dir: Path) -> ImageDetectionResult:
        return self.converter.detect(working_dir)

    def convert_image_format(self, working_dir: Path, target: ImageFormat,
                             progress: Optional[ProgressCallback] = None,
                             cancel_token: Optional[CancellationToken] = None) -> ConversionResult:
        return self.converter.convert(working_dir, target, progress, self._token(cancel_token))

    def delete_image_file(self, working_dir: Path, image_format: ImageFormat,
                          progress: Optional[ProgressCallback] = None) -> bool:
        return self.converter.delete_image_file(working_dir, image_format, progress)

    def ensure_tool(self, progress: Optional[ProgressCallback] = None,
                    cancel_token: Optional[CancellationToken] = None) -> ToolAvailability:
        return self.resolver.ensure_available(progress, self._token(cancel_token))

    def create_iso(self, working_dir: Path, output_path: Path,
                   progress: Optional[ProgressCallback] = None,
                   cancel_token: Optional[CancellationToken] = None) -> bool:
        return self.packager.create(working_dir, output_path, progress, self._token(cancel_token))

    def add_answer_file(self, source: Union[Path, str], working_dir: Path) -> bool:
        """
        Place autounattend.xml at the media root.

        Args:
            source: Path to an answer file, or the XML text itself
            working_dir: Extracted media directory

        Returns:
            True when the answer file was written
        """
        working_dir = Path(working_dir)
        if not working_dir.is_dir():
            self.logger.log_error(LogCategory.USER_ACTION, "add_answer_file",
                                  f"Working directory does not exist: {working_dir}")
            return False

        destination = working_dir / self.settings.answer_file_name
        try:
            if isinstance(source, str) and source.lstrip().startswith("<"):
                destination.write_text(source, encoding="utf-8")
            else:
                source = Path(source)
                if not source.is_file():
                    self.logger.log_error(LogCategory.USER_ACTION, "add_answer_file",
                                          f"Answer file not found: {source}")
                    return False
                # A downloaded answer file may already sit at the media root.
                if source.resolve() != destination.resolve():
                    shutil.copy2(source, destination)
        except OSError as e:
            self.logger.log_error(LogCategory.USER_ACTION, "add_answer_file",
                                  f"Failed to write answer file: {e}")
            return False

        self.logger.log_info(LogCategory.USER_ACTION, "add_answer_file",
                             f"Answer file placed at {destination}")
        return True

    def download_answer_file(self, destination: Path,
                             progress: Optional[ProgressCallback] = None,
                             url: str = ANSWER_FILE_URL) -> Path:
        """Fetch the default UnattendedWinstall answer file."""
        destination = Path(destination)
        self.downloader(url, destination, self.settings.download_timeout_seconds,
                        progress, "Downloading answer file", self.cancel_token)
        self.logger.log_info(LogCategory.USER_ACTION, "download_answer_file",
                             f"Downloaded answer file to {destination}")
        return destination

    def write_provisioning_script(self, config: UnifiedConfiguration, working_dir: Path,
                                  catalog: Optional[SettingsCatalog] = None,
                                  progress: Optional[ProgressCallback] = None) -> Path:
        """
        Build Winhancements.ps1 and stage it where Setup copies it to the target.

        Raises:
            ScriptValidationError: the generated script failed the syntax check
        """
        report(progress, self.text.get("progress_building_script"))
        artifact = self.script_builder.build(config, catalog)
        scripts_dir = Path(working_dir) / SETUP_SCRIPTS_DIR
        scripts_dir.mkdir(parents=True, exist_ok=True)
        script_path = scripts_dir / self.settings.script_file_name
        # Windows PowerShell 5.1 needs the BOM to read UTF-8 scripts correctly.
        with open(script_path, 'w', encoding="utf-8-sig", newline="\r\n") as f:
            f.write(artifact.content)
        self.logger.log_info(LogCategory.SCRIPT, "write_script", f"Wrote {script_path}")
        return script_path

    def cleanup_working_directory(self, working_dir: Path,
                                  progress: Optional[ProgressCallback] = None) -> bool:
        """Delete the working directory. True if it is gone afterwards."""
        working_dir = Path(working_dir)
        if not working_dir.exists():
            return True
        report(progress, self.text.get("progress_cleaning_up"), str(working_dir))
        try:
            clear_readonly(working_dir)
            shutil.rmtree(working_dir)
        except OSError as e:
            self.logger.log_error(LogCategory.SYSTEM, "cleanup",
                                  f"Failed to delete {working_dir}: {e}")
            return False
        self.logger.log_info(LogCategory.SYSTEM, "cleanup", f"Deleted {working_dir}")
        return True

    def cancel(self):
        """Cancel the running stage and kill the processes this builder started."""
        self.logger.log_warning(LogCategory.USER_ACTION, "cancel", "Cancellation requested")
        self.cancel_token.cancel()
        self.runner.terminate_owned()

    def reset(self):
        """Start over with a fresh cancellation token."""
        self.cancel_token = CancellationToken()
