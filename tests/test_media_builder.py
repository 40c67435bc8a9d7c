#!/usr/bin/env python3
"""
Unit tests for the media_builder module.

Pipeline stages are mostly MagicMocks; these tests cover the builder's own
work (answer files, script staging, cleanup, cancellation) and its delegation.
TestPipelineStages chains the real stages over faked DISM and oscdimg.
"""

import unittest
from unittest.mock import MagicMock
import re
import shutil
import sys
import tempfile
from pathlib import Path

project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))
sys.path.insert(0, str(Path(__file__).parent))

from isoforge.config import BuildSettings, UnifiedConfiguration
from isoforge.drivers import SETUP_SCRIPTS_DIR
from isoforge.errors import ScriptValidationError
from isoforge.image_converter import ImageConverter, ImageFormat
from isoforge.iso_service import BIOS_BOOT_FILE, UEFI_BOOT_FILE, ImageExtractor, ImagePackager
from isoforge.logger import MediaLogger
from isoforge.media_builder import ANSWER_FILE_URL, MediaBuilder
from isoforge.process_runner import ProcessResult
from isoforge.progress import CancellationToken
from isoforge.script_builder import ScriptArtifact, ScriptBuilder
from isoforge.tool_resolver import ToolAvailability, ToolProvenance
from fakes import FakeRunner, FakeValidator

ANSWER_XML = '<?xml version="1.0" encoding="utf-8"?>\n<unattend xmlns="urn:schemas-microsoft-com:unattend"/>\n'


class TestMediaBuilder(unittest.TestCase):
    """Test cases for MediaBuilder."""

    def setUp(self):
        self.temp_dir = Path(tempfile.mkdtemp())
        self.logger = MediaLogger(self.temp_dir / "logs", console=False)
        self.work_dir = self.temp_dir / "work"
        self.work_dir.mkdir()
        self.runner = MagicMock()
        self.extractor = MagicMock()
        self.injector = MagicMock()
        self.converter = MagicMock()
        self.packager = MagicMock()
        self.resolver = MagicMock()
        self.script_builder = MagicMock()
        self.downloader = MagicMock()
        self.builder = MediaBuilder(
            self.runner, self.extractor, self.injector, self.converter,
            self.packager, self.resolver, self.script_builder, self.logger,
            settings=BuildSettings(download_timeout_seconds=42),
            downloader=self.downloader,
        )

    def tearDown(self):
        self.logger.close()
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_add_answer_file_from_path(self):
        source = self.temp_dir / "my_answers.xml"
        source.write_text(ANSWER_XML, encoding="utf-8")

        self.assertTrue(self.builder.add_answer_file(source, self.work_dir))
        self.assertEqual((self.work_dir / "autounattend.xml").read_text(encoding="utf-8"), ANSWER_XML)

    def test_add_answer_file_from_content(self):
        self.assertTrue(self.builder.add_answer_file(ANSWER_XML, self.work_dir))
        self.assertIn("<unattend", (self.work_dir / "autounattend.xml").read_text(encoding="utf-8"))

    def test_add_answer_file_overwrites(self):
        (self.work_dir / "autounattend.xml").write_text("old")
        self.assertTrue(self.builder.add_answer_file(ANSWER_XML, self.work_dir))
        self.assertNotEqual((self.work_dir / "autounattend.xml").read_text(encoding="utf-8"), "old")

    def test_add_answer_file_missing_source(self):
        self.assertFalse(self.builder.add_answer_file(self.temp_dir / "missing.xml", self.work_dir))
        self.assertFalse((self.work_dir / "autounattend.xml").exists())

    def test_add_answer_file_missing_working_dir(self):
        self.assertFalse(self.builder.add_answer_file(ANSWER_XML, self.temp_dir / "nowhere"))

    def test_download_answer_file(self):
        destination = self.temp_dir / "autounattend.xml"

        self.assertEqual(self.builder.download_answer_file(destination), destination)

        args = self.downloader.call_args[0]
        self.assertEqual(args[0], ANSWER_FILE_URL)
        self.assertEqual(args[1], destination)
        self.assertEqual(args[2], 42)
        self.assertIs(args[5], self.builder.cancel_token)

    def test_downloaded_answer_file_at_media_root(self):
        def fetch(url, destination, *args):
            Path(destination).write_text(ANSWER_XML, encoding="utf-8")
        self.downloader.side_effect = fetch

        source = self.builder.download_answer_file(self.work_dir / "autounattend.xml")

        self.assertTrue(self.builder.add_answer_file(source, self.work_dir))
        self.assertEqual((self.work_dir / "autounattend.xml").read_text(encoding="utf-8"), ANSWER_XML)

    def test_write_provisioning_script(self):
        self.script_builder.build.return_value = ScriptArtifact("Write-Host 'a'\nWrite-Host 'b'\n", True)

        path = self.builder.write_provisioning_script(UnifiedConfiguration(), self.work_dir)

        self.assertEqual(path, self.work_dir / SETUP_SCRIPTS_DIR / "Winhancements.ps1")
        raw = path.read_bytes()
        self.assertTrue(raw.startswith(b"\xef\xbb\xbf"))
        self.assertIn(b"Write-Host 'a'\r\nWrite-Host 'b'\r\n", raw)

    def test_write_provisioning_script_with_real_builder(self):
        self.builder.script_builder = ScriptBuilder(FakeValidator(), self.logger)

        path = self.builder.write_provisioning_script(UnifiedConfiguration(), self.work_dir)

        self.assertIn("UserCustomizationsApplied", path.read_text(encoding="utf-8-sig"))

    def test_invalid_script_is_not_written(self):
        self.builder.script_builder = ScriptBuilder(FakeValidator(False, ["Line 1: bad"]), self.logger)

        with self.assertRaises(ScriptValidationError):
            self.builder.write_provisioning_script(UnifiedConfiguration(), self.work_dir)
        self.assertFalse((self.work_dir / SETUP_SCRIPTS_DIR / "Winhancements.ps1").exists())

    def test_cleanup_working_directory(self):
        (self.work_dir / "sources").mkdir()
        readonly = self.work_dir / "sources" / "boot.wim"
        readonly.write_bytes(b"x")
        readonly.chmod(0o444)

        self.assertTrue(self.builder.cleanup_working_directory(self.work_dir))
        self.assertFalse(self.work_dir.exists())

    def test_cleanup_missing_directory(self):
        self.assertTrue(self.builder.cleanup_working_directory(self.temp_dir / "never-created"))

    def test_cancel_stops_owned_processes(self):
        token = self.builder.cancel_token
        self.builder.cancel()

        self.assertTrue(token.is_cancelled)
        self.runner.terminate_owned.assert_called_once()

        self.builder.reset()
        self.assertFalse(self.builder.cancel_token.is_cancelled)

    def test_delegation_uses_builder_token(self):
        iso = self.temp_dir / "win.iso"
        self.builder.extract_iso(iso, self.work_dir)
        self.builder.convert_image_format(self.work_dir, ImageFormat.ESD)
        self.builder.create_iso(self.work_dir, self.temp_dir / "out.iso")
        self.builder.ensure_tool()

        self.extractor.extract.assert_called_once_with(iso, self.work_dir, None, self.builder.cancel_token)
        self.converter.convert.assert_called_once_with(self.work_dir, ImageFormat.ESD, None,
                                                       self.builder.cancel_token)
        self.packager.create.assert_called_once_with(self.work_dir, self.temp_dir / "out.iso", None,
                                                     self.builder.cancel_token)
        self.resolver.ensure_available.assert_called_once_with(None, self.builder.cancel_token)

    def test_delegation_accepts_explicit_token(self):
        token = CancellationToken()
        self.builder.inject_drivers(self.work_dir, None, None, token)
        self.injector.inject.assert_called_once_with(self.work_dir, None, None, token)

    def test_detect_and_delete_delegate(self):
        self.builder.detect_image_format(self.work_dir)
        self.builder.delete_image_file(self.work_dir, ImageFormat.WIM)

        self.converter.detect.assert_called_once_with(self.work_dir)
        self.converter.delete_image_file.assert_called_once_with(self.work_dir, ImageFormat.WIM, None)


class TestPipelineStages(unittest.TestCase):
    """Extraction, conversion and packaging chained through one builder."""

    IMAGE_INFO = ("Index : 1\nName : Windows 11 Home\n\n"
                  "Index : 2\nName : Windows 11 Pro\n\n"
                  "Index : 3\nName : Windows 11 Education\n")

    def setUp(self):
        self.temp_dir = Path(tempfile.mkdtemp())
        self.logger = MediaLogger(self.temp_dir / "logs", console=False)
        self.settings = BuildSettings(min_iso_size_bytes=16, delete_attempts=3, delete_retry_delay=0)
        self.runner = FakeRunner()
        self.runner.powershell_results = [("Mount-DiskImage", ProcessResult(0, "E\r\n"))]
        self.runner.run_results["/Get-ImageInfo"] = ProcessResult(0, self.IMAGE_INFO)
        self.runner.stream_handler = self._tool
        disk_checker = MagicMock()
        resolver = MagicMock()
        resolver.ensure_available.return_value = ToolAvailability(
            Path("C:/Kits/oscdimg.exe"), ToolProvenance.PRE_INSTALLED)

        extractor = ImageExtractor(self.runner, disk_checker, self.logger, settings=self.settings)
        self.volume = self.temp_dir / "volume"
        self._lay_out_media(self.volume)
        extractor._volume_root = lambda letter: self.volume
        converter = ImageConverter(self.runner, disk_checker, self.logger, settings=self.settings)
        converter._sleep = lambda seconds: None
        packager = ImagePackager(self.runner, resolver, disk_checker, self.logger, settings=self.settings)

        self.builder = MediaBuilder(
            self.runner, extractor, MagicMock(), converter, packager, resolver,
            MagicMock(), self.logger, settings=self.settings, downloader=MagicMock())
        self.iso = self.temp_dir / "Win11.iso"
        self.iso.write_bytes(b"\0" * 64)
        self.work_dir = self.temp_dir / "work"
        self.output = self.temp_dir / "out" / "custom.iso"

    def tearDown(self):
        self.logger.close()
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def _lay_out_media(self, root: Path):
        (root / "sources").mkdir(parents=True)
        (root / "boot").mkdir()
        (root / "efi" / "microsoft" / "boot").mkdir(parents=True)
        (root / "setup.exe").write_bytes(b"MZ")
        (root / "sources" / "install.esd").write_bytes(b"E" * 64)
        (root / BIOS_BOOT_FILE).write_bytes(b"boot")
        (root / UEFI_BOOT_FILE).write_bytes(b"efi")

    def _tool(self, command):
        if "/Export-Image" in command:
            destination = Path(re.search(r'/DestinationImageFile:"([^"]+)"', command).group(1))
            with open(destination, 'ab') as f:
                f.write(b"W" * 10)
            return 0, ["[==========================100.0%==========================]"]
        if "oscdimg" in command:
            self.output.write_bytes(b"ISO" * 1000)
            return 0, ["100% complete"]
        return 1, ["unexpected command"]

    def test_extract_convert_package(self):
        self.assertTrue(self.builder.extract_iso(self.iso, self.work_dir))
        self.assertEqual(self.builder.detect_image_format(self.work_dir).primary.format, ImageFormat.ESD)

        result = self.builder.convert_image_format(self.work_dir, ImageFormat.WIM)
        self.assertTrue(result.success)
        self.assertEqual(result.image_count, 3)
        self.assertTrue((self.work_dir / "sources" / "install.wim").is_file())
        self.assertFalse((self.work_dir / "sources" / "install.esd").exists())

        self.assertTrue(self.builder.create_iso(self.work_dir, self.output))
        self.assertGreater(self.output.stat().st_size, 0)
        self.assertIn("oscdimg.exe", self.runner.streamed[-1])
        self.assertEqual(len(self.runner.streamed), 4)


class TestMediaBuilderCreate(unittest.TestCase):
    """Test cases for MediaBuilder.create wiring."""

    def setUp(self):
        self.temp_dir = Path(tempfile.mkdtemp())

    def tearDown(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_create_shares_one_runner(self):
        settings = BuildSettings(log_dir=self.temp_dir / "logs")
        logger = MediaLogger(settings.log_dir, console=False)
        try:
            builder = MediaBuilder.create(settings, logger)

            self.assertIs(builder.extractor.runner, builder.runner)
            self.assertIs(builder.converter.runner, builder.runner)
            self.assertIs(builder.packager.resolver, builder.resolver)
            self.assertIs(builder.script_builder.validator.runner, builder.runner)
            self.assertIs(builder.logger, logger)
        finally:
            logger.close()


def main():
    """Run the media builder tests."""
    unittest.main(verbosity=2)


if __name__ == '__main__':
    main()
