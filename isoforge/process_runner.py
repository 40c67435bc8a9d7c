#!/usr/bin/env python3
"""
External process execution for isoforge.

Every spawned tool is tracked by the runner that launched it so that
cancellation terminates exactly those child processes and nothing else
running on the machine.
"""

import re
import subprocess
import threading
from dataclasses import dataclass
from typing import Callable, List, Optional, Tuple, Union

from isoforge.errors import OperationCancelledError
from isoforge.logger import LogCategory, MediaLogger
from isoforge.progress import CancellationToken, ProgressCallback, report

Command = Union[str, List[str]]

PERCENT_PATTERN = re.compile(r"(\d+\.?\d*)\s*%")

POWERSHELL = ["powershell.exe", "-NoProfile", "-NonInteractive", "-ExecutionPolicy", "Bypass", "-Command"]


@dataclass
class ProcessResult:
    """Outcome of a buffered process run."""
    exit_code: int
    stdout: str
    stderr: str = ""

    @property
    def success(self) -> bool:
        return self.exit_code == 0


def describe(command: Command) -> List[str]:
    """Command as a list for logging."""
    return [command] if isinstance(command, str) else list(command)


def ps_quote(value) -> str:
    """Quote a value as a PowerShell single-quoted literal."""
    return "'" + str(value).replace("'", "''") + "'"


class ProcessRunner:
    """Runs external tools and owns the handles of the processes it starts."""

    def __init__(self, logger: Optional[MediaLogger] = None):
        self.logger = logger
        self._owned: List[subprocess.Popen] = []
        self._lock = threading.Lock()

    def run(self, command: Command, timeout: Optional[float] = None,
            category: LogCategory = LogCategory.SYSTEM) -> ProcessResult:
        """
        Run a command to completion and capture its output.

        Args:
            command: Command line (string passed through unchanged) or argument list
            timeout: Seconds before the process is killed
            category: Log category for the command record

        Returns:
            ProcessResult with exit code and captured text
        """
        try:
            completed = subprocess.run(
                command,
                capture_output=True,
                text=True,
                errors="replace",
                timeout=timeout
            )
        except subprocess.TimeoutExpired as e:
            if self.logger:
                self.logger.log_error(category, "command_exec",
                                      f"Command timed out after {timeout}s: {describe(command)[0]}")
            return ProcessResult(-1, e.stdout or "", e.stderr or "timed out")
        except FileNotFoundError as e:
            if self.logger:
                self.logger.log_error(category, "command_exec", f"Executable not found: {e}")
            return ProcessResult(-1, "", str(e))

        if self.logger:
            self.logger.log_command_execution(describe(command), completed.returncode,
                                              (completed.stdout or "") + (completed.stderr or ""),
                                              category)
        return ProcessResult(completed.returncode, completed.stdout or "", completed.stderr or "")

    def run_powershell(self, script: str, timeout: Optional[float] = None,
                       category: LogCategory = LogCategory.SYSTEM) -> ProcessResult:
        """Run an inline PowerShell script."""
        return self.run(POWERSHELL + [script], timeout=timeout, category=category)

    def stream(self, command: Command, on_line: Optional[Callable[[str], None]] = None,
               cancel_token: Optional[CancellationToken] = None,
               category: LogCategory = LogCategory.SYSTEM) -> Tuple[int, str]:
        """
        Run a long command, forwarding each output line as it arrives.

        stdout and stderr are merged so no diagnostic output is lost.
        Cancelling the token kills this process only.

        Returns:
            Tuple of (exit code, combined output)
        """
        if cancel_token is not None:
            cancel_token.raise_if_cancelled()

        process = subprocess.Popen(
            command,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            errors="replace",
            bufsize=1
        )
        self._track(process)

        def kill():
            self._kill(process)

        if cancel_token is not None:
            cancel_token.register(kill)

        lines = []
        try:
            while True:
                output = process.stdout.readline()
                if output == '' and process.poll() is not None:
                    break
                line = output.rstrip()
                if not line:
                    continue
                lines.append(line)
                if on_line:
                    on_line(line)
            exit_code = process.wait()
        finally:
            if cancel_token is not None:
                cancel_token.unregister(kill)
            if process.poll() is None:
                self._kill(process)
            process.stdout.close()
            self._untrack(process)

        combined = "\n".join(lines)
        if cancel_token is not None and cancel_token.is_cancelled:
            if self.logger:
                self.logger.log_warning(category, "command_exec",
                                        f"Command cancelled: {describe(command)[0]}")
            raise OperationCancelledError()

        if self.logger:
            self.logger.log_command_execution(describe(command), exit_code, combined, category)
        return exit_code, combined

    def terminate_owned(self) -> int:
        """Kill every still-running process this runner started. Returns the count."""
        with self._lock:
            running = [p for p in self._owned if p.poll() is None]
        for process in running:
            self._kill(process)
        return len(running)

    @property
    def owned_processes(self) -> List[subprocess.Popen]:
        with self._lock:
            return list(self._owned)

    def _track(self, process: subprocess.Popen):
        with self._lock:
            self._owned.append(process)

    def _untrack(self, process: subprocess.Popen):
        with self._lock:
            if process in self._owned:
                self._owned.remove(process)

    def _kill(self, process: subprocess.Popen):
        try:
            if process.poll() is None:
                process.kill()
        except OSError as e:
            if self.logger:
                self.logger.log_warning(LogCategory.SYSTEM, "process_kill",
                                        f"Failed to kill process {process.pid}: {e}")


def run_with_progress(runner: ProcessRunner, command: Command,
                      progress: Optional[ProgressCallback], status_text: str,
                      cancel_token: Optional[CancellationToken] = None,
                      category: LogCategory = LogCategory.SYSTEM) -> Tuple[int, str]:
    """
    Stream a command and translate its output into progress events.

    Lines containing a percentage carry a progress value; every other line is
    forwarded verbatim as terminal output.
    """
    def on_line(line: str):
        match = PERCENT_PATTERN.search(line)
        if match:
            value = min(float(match.group(1)), 100.0)
            report(progress, status_text, line, value)
        else:
            report(progress, status_text, line)

    return runner.stream(command, on_line, cancel_token, category)
