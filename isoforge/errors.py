#!/usr/bin/env python3
"""
Error types raised by the media build pipeline.

Verification failures are not exceptions: structural checks return False.
"""

from typing import List, Optional


class MediaBuildError(Exception):
    """Base class for every pipeline failure."""


class InsufficientDiskSpaceError(MediaBuildError):
    """Preflight found less free space than the operation needs."""

    def __init__(self, drive: str, required_gb: float, available_gb: float, operation: str):
        self.drive = drive
        self.required_gb = required_gb
        self.available_gb = available_gb
        self.operation = operation
        super().__init__(
            f"Insufficient disk space on {drive} for {operation}: "
            f"{required_gb:.2f} GB required, {available_gb:.2f} GB available"
        )


class ToolUnavailableError(MediaBuildError):
    """The packaging tool could not be found or installed."""

    def __init__(self, tool: str, attempted: Optional[List[str]] = None):
        self.tool = tool
        self.attempted = attempted or []
        message = f"{tool} is not available"
        if self.attempted:
            message += f" (tried: {', '.join(self.attempted)})"
        super().__init__(message)


class ExternalToolError(MediaBuildError):
    """An external tool exited with a non-zero code."""

    def __init__(self, tool: str, exit_code: int, output: str = ""):
        self.tool = tool
        self.exit_code = exit_code
        self.output = output
        super().__init__(f"{tool} failed with exit code {exit_code}")


class FileContentionError(MediaBuildError):
    """A file stayed locked through every deletion attempt."""

    def __init__(self, path: str, attempts: int):
        self.path = path
        self.attempts = attempts
        super().__init__(f"Could not delete {path} after {attempts} attempts")


class DirectoryBusyError(MediaBuildError):
    """The working directory could not be cleared because files are in use."""

    def __init__(self, path: str, reason: str = ""):
        self.path = path
        message = f"Working directory is in use and could not be cleared: {path}"
        if reason:
            message += f" ({reason})"
        super().__init__(message)


class OperationCancelledError(MediaBuildError):
    """The caller cancelled the running operation."""

    def __init__(self, message: str = "Operation was cancelled"):
        super().__init__(message)


class ScriptValidationError(MediaBuildError):
    """The generated provisioning script has syntax errors."""

    def __init__(self, errors: List[str]):
        self.errors = list(errors)
        summary = "; ".join(self.errors[:5]) if self.errors else "unknown parser error"
        super().__init__(f"Generated script failed validation: {summary}")
