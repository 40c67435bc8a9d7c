#!/usr/bin/env python3
"""
Unit tests for the image_converter module.

DISM is faked: /Get-ImageInfo answers with a canned edition list and
/Export-Image writes the destination file itself.
"""

import unittest
from unittest.mock import MagicMock, patch
import re
import shutil
import sys
import tempfile
from pathlib import Path

project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))
sys.path.insert(0, str(Path(__file__).parent))

from isoforge.config import BuildSettings
from isoforge.errors import ExternalToolError, InsufficientDiskSpaceError, OperationCancelledError
from isoforge.image_converter import (
    ImageConverter, ImageFormat, build_export_command, parse_image_info
)
from isoforge.logger import MediaLogger
from isoforge.process_runner import ProcessResult
from isoforge.progress import CancellationToken
from fakes import FakeRunner

IMAGE_INFO = """
Deployment Image Servicing and Management tool
Version: 10.0.22621.1

Details for image : D:\\work\\sources\\install.esd

Index : 1
Name : Windows 11 Home
Description : Windows 11 Home
Size : 16,512,345,678 bytes

Index : 2
Name : Windows 11 Pro
Description : Windows 11 Pro
Size : 16,712,345,678 bytes

Index : 3
Name : Windows 11 Education
Description : Windows 11 Education
Size : 16,612,345,678 bytes

The operation completed successfully.
"""

DESTINATION = re.compile(r'/DestinationImageFile:"([^"]+)"')


class TestConverterHelpers(unittest.TestCase):
    """Test cases for parsing and command helpers."""

    def test_parse_image_info(self):
        count, names = parse_image_info(IMAGE_INFO)
        self.assertEqual(count, 3)
        self.assertEqual(names, ["Windows 11 Home", "Windows 11 Pro", "Windows 11 Education"])

    def test_parse_empty_output(self):
        self.assertEqual(parse_image_info(""), (0, []))

    def test_format_properties(self):
        self.assertEqual(ImageFormat.WIM.file_name, "install.wim")
        self.assertEqual(ImageFormat.ESD.compression, "recovery")
        self.assertEqual(ImageFormat.WIM.compression, "max")
        self.assertIs(ImageFormat.parse(" .ESD "), ImageFormat.ESD)
        with self.assertRaises(ValueError):
            ImageFormat.parse("swm")

    def test_export_command(self):
        command = build_export_command(Path("C:/w/sources/install.esd"), 2,
                                       Path("C:/w/sources/install.wim"), ImageFormat.WIM)
        self.assertIn("/SourceIndex:2", command)
        self.assertIn("/Compress:max", command)
        self.assertIn("/CheckIntegrity", command)


class TestImageConverter(unittest.TestCase):
    """Test cases for ImageConverter."""

    def setUp(self):
        self.temp_dir = Path(tempfile.mkdtemp())
        self.logger = MediaLogger(self.temp_dir / "logs", console=False)
        self.runner = FakeRunner()
        self.runner.run_results["/Get-ImageInfo"] = ProcessResult(0, IMAGE_INFO)
        self.disk_checker = MagicMock()
        self.settings = BuildSettings(delete_attempts=3, delete_retry_delay=0)
        self.converter = ImageConverter(self.runner, self.disk_checker, self.logger, settings=self.settings)
        self.converter._sleep = lambda seconds: None
        self.work_dir = self.temp_dir / "work"
        self.sources = self.work_dir / "sources"
        self.sources.mkdir(parents=True)

    def tearDown(self):
        self.logger.close()
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def _export(self, command):
        destination = Path(DESTINATION.search(command).group(1))
        with open(destination, 'ab') as f:
            f.write(b"E" * 10)
        return 0, ["[==========================100.0%==========================]"]

    def test_detect_single_format(self):
        (self.sources / "install.esd").write_bytes(b"E" * 40)

        detection = self.converter.detect(self.work_dir)

        self.assertIsNone(detection.wim)
        self.assertEqual(detection.primary.format, ImageFormat.ESD)
        self.assertEqual(detection.esd.image_count, 3)
        self.assertEqual(detection.esd.size_bytes, 40)

    def test_detect_both_prefers_wim(self):
        (self.sources / "install.wim").write_bytes(b"W")
        (self.sources / "install.esd").write_bytes(b"E")

        detection = self.converter.detect(self.work_dir)

        self.assertTrue(detection.both_present)
        self.assertEqual(detection.primary.format, ImageFormat.WIM)

    def test_detect_none(self):
        detection = self.converter.detect(self.work_dir)
        self.assertTrue(detection.none_present)
        self.assertIsNone(detection.primary)
        self.assertEqual(self.runner.commands, [])

    def test_detect_falls_back_to_one_image(self):
        self.runner.run_results["/Get-ImageInfo"] = ProcessResult(87, "Error: 87")
        (self.sources / "install.wim").write_bytes(b"W")

        self.assertEqual(self.converter.detect(self.work_dir).wim.image_count, 1)

    def test_detect_is_repeatable(self):
        (self.sources / "install.esd").write_bytes(b"E" * 40)
        before = (self.sources / "install.esd").stat().st_mtime_ns

        first = self.converter.detect(self.work_dir)
        second = self.converter.detect(self.work_dir)

        self.assertEqual(first, second)
        self.assertEqual((self.sources / "install.esd").stat().st_mtime_ns, before)
        self.assertEqual(sorted(p.name for p in self.sources.iterdir()), ["install.esd"])
        self.assertEqual(self.runner.streamed, [])

    def test_same_format_is_a_no_op(self):
        (self.sources / "install.wim").write_bytes(b"W")

        result = self.converter.convert(self.work_dir, ImageFormat.WIM)

        self.assertTrue(result.success)
        self.assertTrue(result.source_deleted)
        self.assertEqual(self.runner.streamed, [])
        self.disk_checker.check.assert_not_called()

    def test_no_image_fails(self):
        result = self.converter.convert(self.work_dir, ImageFormat.WIM)
        self.assertFalse(result)
        self.assertEqual(self.runner.streamed, [])

    def test_converts_every_edition(self):
        (self.sources / "install.esd").write_bytes(b"E" * 40)
        self.runner.stream_handler = self._export

        result = self.converter.convert(self.work_dir, ImageFormat.WIM)

        self.assertTrue(result.success)
        self.assertEqual(result.image_count, 3)
        self.assertEqual(result.edition_names[1], "Windows 11 Pro")
        self.assertEqual(len(self.runner.streamed), 3)
        for index, command in enumerate(self.runner.streamed, start=1):
            self.assertIn(f"/SourceIndex:{index}", command)
            self.assertIn("/Compress:max", command)
        self.assertTrue((self.sources / "install.wim").is_file())
        self.assertFalse((self.sources / "install.esd").exists())
        self.disk_checker.check.assert_called_once_with(self.work_dir, 80, "Image conversion")

    def test_round_trip_keeps_editions(self):
        (self.sources / "install.esd").write_bytes(b"E" * 40)
        self.runner.stream_handler = self._export

        to_wim = self.converter.convert(self.work_dir, ImageFormat.WIM)
        back_to_esd = self.converter.convert(self.work_dir, ImageFormat.ESD)

        self.assertTrue(to_wim.success)
        self.assertTrue(back_to_esd.success)
        self.assertEqual(back_to_esd.image_count, 3)
        self.assertEqual(back_to_esd.edition_names, to_wim.edition_names)
        self.assertEqual(len(self.runner.streamed), 6)
        self.assertIn("/Compress:recovery", self.runner.streamed[-1])
        detection = self.converter.detect(self.work_dir)
        self.assertIsNone(detection.wim)
        self.assertEqual(detection.esd.edition_names,
                         ("Windows 11 Home", "Windows 11 Pro", "Windows 11 Education"))

    def test_stale_target_is_replaced(self):
        (self.sources / "install.wim").write_bytes(b"W" * 40)
        (self.sources / "install.esd").write_bytes(b"stale")
        self.runner.stream_handler = self._export

        result = self.converter.convert(self.work_dir, ImageFormat.ESD)

        self.assertTrue(result.success)
        self.assertEqual((self.sources / "install.esd").stat().st_size, 30)
        self.assertFalse((self.sources / "install.wim").exists())

    def test_locked_source_is_soft_success(self):
        (self.sources / "install.esd").write_bytes(b"E" * 40)
        self.runner.stream_handler = self._export
        source = self.sources / "install.esd"
        real_unlink = Path.unlink

        def locked_unlink(path, *args, **kwargs):
            if path == source:
                raise PermissionError("being used by another process")
            return real_unlink(path, *args, **kwargs)

        with patch.object(Path, 'unlink', locked_unlink):
            result = self.converter.convert(self.work_dir, ImageFormat.WIM)

        self.assertTrue(result.success)
        self.assertFalse(result.source_deleted)
        self.assertIn(str(source), result.message)
        self.assertTrue(source.exists())
        self.assertTrue((self.sources / "install.wim").is_file())

    def test_failed_edition_removes_partial_target(self):
        (self.sources / "install.esd").write_bytes(b"E" * 40)
        calls = []

        def export(command):
            calls.append(command)
            if len(calls) == 2:
                return 1450, ["Error: 1450"]
            return self._export(command)

        self.runner.stream_handler = export

        with self.assertRaises(ExternalToolError) as ctx:
            self.converter.convert(self.work_dir, ImageFormat.WIM)

        self.assertEqual(ctx.exception.exit_code, 1450)
        self.assertFalse((self.sources / "install.wim").exists())
        self.assertTrue((self.sources / "install.esd").exists())
        self.assertEqual(self.runner.terminated, 1)

    def test_cancel_between_editions(self):
        (self.sources / "install.esd").write_bytes(b"E" * 40)
        token = CancellationToken()

        def export(command):
            token.cancel()
            return self._export(command)

        self.runner.stream_handler = export

        with self.assertRaises(OperationCancelledError):
            self.converter.convert(self.work_dir, ImageFormat.WIM, None, token)
        self.assertEqual(len(self.runner.streamed), 1)
        self.assertFalse((self.sources / "install.wim").exists())

    def test_insufficient_space_stops_before_dism(self):
        (self.sources / "install.esd").write_bytes(b"E" * 40)
        self.disk_checker.check.side_effect = InsufficientDiskSpaceError("D:", 10.0, 2.0, "Image conversion")

        with self.assertRaises(InsufficientDiskSpaceError):
            self.converter.convert(self.work_dir, ImageFormat.WIM)
        self.assertEqual(self.runner.streamed, [])

    def test_delete_image_file(self):
        (self.sources / "install.wim").write_bytes(b"W")
        self.assertTrue(self.converter.delete_image_file(self.work_dir, ImageFormat.WIM))
        self.assertFalse((self.sources / "install.wim").exists())
        self.assertFalse(self.converter.delete_image_file(self.work_dir, ImageFormat.WIM))


def main():
    """Run the image converter tests."""
    unittest.main(verbosity=2)


if __name__ == '__main__':
    main()
