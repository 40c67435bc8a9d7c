#!/usr/bin/env python3
"""
Unit tests for progress events, cancellation, errors and downloads.
"""

import unittest
import shutil
import sys
import tempfile
import threading
from pathlib import Path

project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from isoforge.downloads import download_file
from isoforge.errors import (
    InsufficientDiskSpaceError, OperationCancelledError, ScriptValidationError,
    ToolUnavailableError
)
from isoforge.progress import CancellationToken, report


class TestCancellationToken(unittest.TestCase):
    """Test cases for CancellationToken."""

    def test_cancel_fires_callbacks_once(self):
        token = CancellationToken()
        calls = []
        token.register(lambda: calls.append("kill"))

        token.cancel()
        token.cancel()

        self.assertTrue(token.is_cancelled)
        self.assertEqual(calls, ["kill"])

    def test_register_after_cancel_runs_immediately(self):
        token = CancellationToken()
        token.cancel()
        calls = []
        token.register(lambda: calls.append(1))
        self.assertEqual(calls, [1])

    def test_unregister(self):
        token = CancellationToken()
        calls = []
        callback = lambda: calls.append(1)
        token.register(callback)
        token.unregister(callback)
        token.cancel()
        self.assertEqual(calls, [])

    def test_raise_if_cancelled(self):
        token = CancellationToken()
        token.raise_if_cancelled()
        token.cancel()
        with self.assertRaises(OperationCancelledError):
            token.raise_if_cancelled()

    def test_wait_returns_when_cancelled(self):
        token = CancellationToken()
        self.assertFalse(token.wait(0.01))
        timer = threading.Timer(0.05, token.cancel)
        timer.start()
        self.assertTrue(token.wait(5))
        timer.join()


class TestReport(unittest.TestCase):
    """Test cases for report()."""

    def test_report_without_callback(self):
        report(None, "ignored")

    def test_report_builds_detail(self):
        events = []
        report(events.append, "Copying", "sources/install.wim", 40.0)
        self.assertEqual(events[0].status_text, "Copying")
        self.assertEqual(events[0].terminal_output, "sources/install.wim")
        self.assertEqual(events[0].progress, 40.0)


class TestErrors(unittest.TestCase):
    """Test cases for error messages."""

    def test_messages(self):
        self.assertIn("8.00 GB required", str(InsufficientDiskSpaceError("C:", 8, 1.5, "ISO extraction")))
        self.assertIn("tried: winget, adk", str(ToolUnavailableError("oscdimg.exe", ["winget", "adk"])))
        self.assertIn("Line 3", str(ScriptValidationError(["Line 3: bad token"])))


class TestDownloadFile(unittest.TestCase):
    """Test cases for download_file using file:// URLs."""

    def setUp(self):
        self.temp_dir = Path(tempfile.mkdtemp())
        self.source = self.temp_dir / "autounattend.xml"
        self.source.write_bytes(b"<unattend/>" * 2000)

    def tearDown(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_download(self):
        destination = self.temp_dir / "out" / "answer.xml"
        events = []

        result = download_file(self.source.as_uri(), destination, 10, events.append, "Downloading")

        self.assertEqual(result, destination)
        self.assertEqual(destination.read_bytes(), self.source.read_bytes())
        self.assertEqual(events[-1].progress, 100.0)

    def test_missing_source_raises(self):
        destination = self.temp_dir / "answer.xml"
        with self.assertRaises(RuntimeError):
            download_file((self.temp_dir / "missing.xml").as_uri(), destination, 10)
        self.assertFalse(destination.exists())

    def test_cancelled_download_removes_partial(self):
        token = CancellationToken()
        token.cancel()
        destination = self.temp_dir / "answer.xml"

        with self.assertRaises(OperationCancelledError):
            download_file(self.source.as_uri(), destination, 10, cancel_token=token)
        self.assertFalse(destination.exists())


def main():
    """Run the progress tests."""
    unittest.main(verbosity=2)


if __name__ == '__main__':
    main()
