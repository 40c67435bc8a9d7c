#!/usr/bin/env python3
"""
Test doubles shared by the isoforge unit tests.

None of them launch real processes; commands are recorded so tests can
assert on what would have been run.
"""

from typing import Callable, Dict, List, Optional, Tuple

from isoforge.process_runner import ProcessResult


class FakeRunner:
    """Stands in for ProcessRunner."""

    def __init__(self):
        self.commands: List = []
        self.powershell_scripts: List[str] = []
        self.streamed: List = []
        self.run_results: Dict[str, ProcessResult] = {}
        self.powershell_results: List[Tuple[str, ProcessResult]] = []
        self.stream_handler: Optional[Callable] = None
        self.terminated = 0

    def run(self, command, timeout=None, category=None) -> ProcessResult:
        self.commands.append(command)
        text = command if isinstance(command, str) else " ".join(command)
        for needle, result in self.run_results.items():
            if needle in text:
                return result
        return ProcessResult(0, "")

    def run_powershell(self, script, timeout=None, category=None) -> ProcessResult:
        self.powershell_scripts.append(script)
        for needle, result in self.powershell_results:
            if needle in script:
                return result
        return ProcessResult(0, "")

    def stream(self, command, on_line=None, cancel_token=None, category=None):
        if cancel_token is not None:
            cancel_token.raise_if_cancelled()
        self.streamed.append(command)
        exit_code, lines = 0, []
        if self.stream_handler is not None:
            exit_code, lines = self.stream_handler(command)
        for line in lines:
            if on_line:
                on_line(line)
        return exit_code, "\n".join(lines)

    def terminate_owned(self) -> int:
        self.terminated += 1
        return 0


class FakeValidator:
    """Stands in for PowerShellSyntaxValidator."""

    def __init__(self, ok: bool = True, errors: Optional[List[str]] = None):
        self.ok = ok
        self.errors = errors or []
        self.calls: List[str] = []

    def validate(self, content: str):
        self.calls.append(content)
        return self.ok, list(self.errors)
