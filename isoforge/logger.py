#!/usr/bin/env python3
"""
Logging Module for isoforge

Session-scoped structured logging for the media build pipeline. Every entry
lands in three places: a human-readable session log, a JSON-lines file for
tooling, and (for warnings and worse) a separate error log. Operations are
timed between start_operation and end_operation so the session summary can
report what ran, how long it took and which external tools failed.
"""

import logging
import json
import shutil
import time
import sys
from typing import Dict, Any, Optional, List, Callable
from pathlib import Path
from datetime import datetime
from dataclasses import dataclass, asdict
from enum import Enum


class LogLevel(Enum):
    """Log levels for pipeline operations."""
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"

    @property
    def python_level(self) -> int:
        return getattr(logging, self.value)


class LogCategory(Enum):
    """Pipeline stage an entry belongs to."""
    SYSTEM = "system"
    EXTRACTION = "extraction"
    DRIVERS = "drivers"
    CONVERSION = "conversion"
    PACKAGING = "packaging"
    TOOLING = "tooling"
    SCRIPT = "script"
    USER_ACTION = "user_action"


@dataclass
class LogEntry:
    """One structured log record."""
    timestamp: str
    level: str
    category: str
    operation: str
    message: str
    details: Optional[Dict[str, Any]] = None
    duration_ms: Optional[int] = None
    success: Optional[bool] = None
    error_code: Optional[str] = None


def _file_handler(path: Path, level: int, fmt: str) -> logging.Handler:
    handler = logging.FileHandler(path, encoding="utf-8")
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(fmt))
    return handler


def _fresh_logger(name: str, level: int) -> logging.Logger:
    logger = logging.getLogger(name)
    logger.setLevel(level)
    logger.propagate = False
    logger.handlers.clear()
    return logger


class MediaLogger:
    """Session logger shared by every pipeline component."""

    def __init__(self, log_dir: Optional[Path] = None, session_id: Optional[str] = None,
                 console: bool = True):
        """
        Open a logging session.

        Args:
            log_dir: Directory for log files (default: ~/.isoforge_logs)
            session_id: Unique session identifier (default: timestamp-based)
            console: Whether INFO and above are echoed to stdout
        """
        self.log_dir = Path(log_dir) if log_dir else Path.home() / ".isoforge_logs"
        self.log_dir.mkdir(parents=True, exist_ok=True)

        self.session_id = session_id or f"isoforge_{int(time.time())}"
        self.session_start = time.time()

        self.main_log_file = self.log_dir / f"{self.session_id}.log"
        self.json_log_file = self.log_dir / f"{self.session_id}.json"
        self.error_log_file = self.log_dir / f"{self.session_id}_errors.log"

        self.main_logger = _fresh_logger(f"isoforge.{self.session_id}", logging.DEBUG)
        self.main_logger.addHandler(_file_handler(
            self.main_log_file, logging.DEBUG, '%(asctime)s - %(name)s - %(levelname)s - %(message)s'))
        if console:
            stream = logging.StreamHandler(sys.stdout)
            stream.setLevel(logging.INFO)
            stream.setFormatter(logging.Formatter('%(levelname)s: %(message)s'))
            self.main_logger.addHandler(stream)

        self.error_logger = _fresh_logger(f"isoforge.{self.session_id}.errors", logging.WARNING)
        self.error_logger.addHandler(_file_handler(
            self.error_log_file, logging.WARNING, '%(asctime)s - %(levelname)s - %(message)s'))

        self.operations: List[LogEntry] = []
        self.current_operation: Optional[str] = None
        self.current_category: Optional[LogCategory] = None
        self.operation_start_time: Optional[float] = None

        self.log_info(LogCategory.SYSTEM, "session_start",
                      f"Media build session started: {self.session_id}")

    def close(self):
        """Release the file handlers held by this session."""
        for logger in (self.main_logger, self.error_logger):
            for handler in list(logger.handlers):
                handler.close()
                logger.removeHandler(handler)

    def start_operation(self, category: LogCategory, operation: str, message: str,
                        details: Optional[Dict[str, Any]] = None):
        """
        Start timing an operation.

        Args:
            category: Pipeline stage
            operation: Operation name used in every entry of this operation
            message: Description of the operation
            details: Additional operation details
        """
        self.current_operation = operation
        self.current_category = category
        self.operation_start_time = time.time()
        self.log_info(category, operation, f"Started: {message}", details)

    def end_operation(self, success: bool, message: str = None,
                      error_code: str = None, details: Optional[Dict[str, Any]] = None):
        """
        Close the current operation with its outcome and duration.

        Args:
            success: Whether the operation succeeded
            message: Final message (default: Completed/Failed: <operation>)
            error_code: Error code if the operation failed
            details: Additional details about the result
        """
        if not self.current_operation or not self.operation_start_time:
            self.log_warning(LogCategory.SYSTEM, "logging_error",
                             "end_operation called without active operation")
            return

        operation = self.current_operation
        self._log_entry(
            LogLevel.INFO if success else LogLevel.ERROR,
            self.current_category or LogCategory.SYSTEM,
            operation,
            message or f"{'Completed' if success else 'Failed'}: {operation}",
            details,
            duration_ms=int((time.time() - self.operation_start_time) * 1000),
            success=success,
            error_code=error_code,
        )
        self.current_operation = None
        self.current_category = None
        self.operation_start_time = None

    def log_debug(self, category: LogCategory, operation: str, message: str,
                  details: Optional[Dict[str, Any]] = None):
        self._log_entry(LogLevel.DEBUG, category, operation, message, details)

    def log_info(self, category: LogCategory, operation: str, message: str,
                 details: Optional[Dict[str, Any]] = None):
        self._log_entry(LogLevel.INFO, category, operation, message, details)

    def log_warning(self, category: LogCategory, operation: str, message: str,
                    details: Optional[Dict[str, Any]] = None):
        self._log_entry(LogLevel.WARNING, category, operation, message, details)

    def log_error(self, category: LogCategory, operation: str, message: str,
                  details: Optional[Dict[str, Any]] = None, error_code: str = None):
        self._log_entry(LogLevel.ERROR, category, operation, message, details,
                        error_code=error_code)

    def _log_entry(self, level: LogLevel, category: LogCategory, operation: str,
                   message: str, details: Optional[Dict[str, Any]] = None,
                   duration_ms: Optional[int] = None, success: Optional[bool] = None,
                   error_code: Optional[str] = None):
        entry = LogEntry(
            timestamp=datetime.now().isoformat(),
            level=level.value,
            category=category.value,
            operation=operation,
            message=message,
            details=details,
            duration_ms=duration_ms,
            success=success,
            error_code=error_code,
        )
        self.operations.append(entry)

        text = f"[{category.value}:{operation}] {message}"
        if details:
            text += f" | Details: {json.dumps(details, default=str)}"
        self.main_logger.log(level.python_level, text)
        if level.python_level >= logging.WARNING:
            self.error_logger.log(level.python_level, text)

        try:
            with open(self.json_log_file, 'a', encoding="utf-8") as f:
                f.write(json.dumps(asdict(entry), default=str) + '\n')
        except OSError as e:
            self.main_logger.error(f"Failed to write JSON log entry: {e}")

    def log_command_execution(self, command: List[str], return_code: int,
                              output: str = None,
                              category: LogCategory = LogCategory.SYSTEM):
        """Record an external tool run; non-zero exits are errors coded EXIT_<code>."""
        joined = ' '.join(command)
        details = {
            "command": command,
            "return_code": return_code,
            "output": output[-1000:] if output else None,
        }
        if return_code == 0:
            self.log_debug(category, "command_exec", f"Command executed successfully: {joined}", details)
        else:
            self.log_error(category, "command_exec", f"Command failed: {joined}", details,
                           error_code=f"EXIT_{return_code}")

    def log_progress_update(self, operation: str, progress_percent: float,
                            message: str = None,
                            category: LogCategory = LogCategory.SYSTEM):
        details = {"progress_percent": progress_percent}
        if message:
            details["progress_message"] = message
        self.log_debug(category, operation, f"Progress: {progress_percent:.1f}%", details)

    def create_session_summary(self) -> Dict[str, Any]:
        """Counts per category, outcome and error code for this session."""
        category_counts: Dict[str, int] = {}
        success_counts = {"success": 0, "failure": 0, "unknown": 0}
        error_codes: Dict[str, int] = {}
        outcome = {True: "success", False: "failure", None: "unknown"}

        for entry in self.operations:
            category_counts[entry.category] = category_counts.get(entry.category, 0) + 1
            success_counts[outcome[entry.success]] += 1
            if entry.error_code:
                error_codes[entry.error_code] = error_codes.get(entry.error_code, 0) + 1

        return {
            "session_id": self.session_id,
            "start_time": datetime.fromtimestamp(self.session_start).isoformat(),
            "duration_seconds": int(time.time() - self.session_start),
            "total_operations": len(self.operations),
            "category_counts": category_counts,
            "success_counts": success_counts,
            "error_codes": error_codes,
            "log_files": {
                "main_log": str(self.main_log_file),
                "json_log": str(self.json_log_file),
                "error_log": str(self.error_log_file),
            },
        }

    def _write_summary(self, path: Path):
        with open(path, 'w', encoding="utf-8") as f:
            json.dump(self.create_session_summary(), f, indent=2, default=str)

    def finalize_session(self, success: bool = True, final_message: str = None):
        """Log the session outcome and write <session>_summary.json."""
        self.log_info(LogCategory.SYSTEM, "session_end",
                      final_message or f"Session {'completed successfully' if success else 'ended with errors'}",
                      {"total_duration_seconds": int(time.time() - self.session_start)})
        try:
            self._write_summary(self.log_dir / f"{self.session_id}_summary.json")
        except OSError as e:
            self.main_logger.error(f"Failed to write session summary: {e}")

    def get_recent_errors(self, limit: int = 10) -> List[LogEntry]:
        errors = [entry for entry in self.operations
                  if entry.level == LogLevel.ERROR.value]
        return errors[-limit:]

    def export_logs(self, export_path: Path, include_json: bool = True) -> bool:
        """
        Copy this session's log files and a fresh summary into export_path.

        Returns:
            True if every file was written
        """
        export_path = Path(export_path)
        sources = [self.main_log_file, self.error_log_file]
        if include_json:
            sources.append(self.json_log_file)
        try:
            export_path.mkdir(parents=True, exist_ok=True)
            for source in sources:
                if source.exists():
                    shutil.copy2(source, export_path / source.name)
            self._write_summary(export_path / f"{self.session_id}_summary.json")
        except OSError as e:
            self.log_error(LogCategory.SYSTEM, "log_export", f"Failed to export logs: {e}")
            return False

        self.log_info(LogCategory.SYSTEM, "log_export", f"Logs exported to {export_path}")
        return True


def create_progress_callback(logger: MediaLogger, category: LogCategory,
                             operation: str) -> Callable:
    """
    Build a ProgressCallback that records pipeline progress in the session log.

    Events carrying a percentage become progress updates; other events with
    terminal output are logged at debug level.
    """
    def progress_callback(detail):
        if detail.progress is not None:
            logger.log_progress_update(operation, detail.progress,
                                       detail.terminal_output, category)
        elif detail.terminal_output:
            logger.log_debug(category, operation, detail.terminal_output)

    return progress_callback
