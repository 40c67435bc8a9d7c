#!/usr/bin/env python3
"""
Disk space preflight checks.
"""

import os
import shutil
from pathlib import Path
from typing import Optional

from isoforge.errors import InsufficientDiskSpaceError
from isoforge.logger import LogCategory, MediaLogger

GB = 1024 ** 3


def format_size(size_bytes: int) -> str:
    """Convert bytes to a human-readable size."""
    for unit in ['B', 'KB', 'MB', 'GB', 'TB']:
        if size_bytes < 1024.0:
            return f"{size_bytes:.1f} {unit}"
        size_bytes /= 1024.0
    return f"{size_bytes:.1f} PB"


def directory_size(path: Path) -> int:
    """Total size in bytes of every file below path."""
    total = 0
    for root, _dirs, files in os.walk(path):
        for name in files:
            try:
                total += os.path.getsize(os.path.join(root, name))
            except OSError:
                continue
    return total


def _existing_anchor(path: Path) -> Path:
    """Nearest existing ancestor of path, so unborn directories can be checked."""
    candidate = Path(path).absolute()
    while not candidate.exists() and candidate != candidate.parent:
        candidate = candidate.parent
    return candidate


class DiskSpaceChecker:
    """Verifies free space before large writes."""

    def __init__(self, logger: Optional[MediaLogger] = None):
        self.logger = logger

    def check(self, path: Path, required_bytes: int, operation: str) -> bool:
        """
        Ensure the drive holding path has at least required_bytes free.

        Raises:
            InsufficientDiskSpaceError: when free space is short

        Returns:
            True when there is enough space or the check itself could not run
        """
        try:
            anchor = _existing_anchor(path)
            drive = anchor.drive or anchor.anchor or str(anchor)
            free = shutil.disk_usage(anchor).free
        except OSError as e:
            if self.logger:
                self.logger.log_warning(LogCategory.SYSTEM, "disk_space",
                                        f"Could not check disk space for {path}: {e}")
            return True

        required_gb = required_bytes / GB
        available_gb = free / GB
        if self.logger:
            self.logger.log_info(LogCategory.SYSTEM, "disk_space",
                                 f"{operation}: required {required_gb:.2f} GB, "
                                 f"available {available_gb:.2f} GB on {drive}")

        if free < required_bytes:
            raise InsufficientDiskSpaceError(drive, required_gb, available_gb, operation)
        return True
