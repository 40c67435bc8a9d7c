#!/usr/bin/env python3
"""
Progress events and cooperative cancellation shared by the pipeline stages.
"""

import threading
from dataclasses import dataclass
from typing import Callable, List, Optional

from isoforge.errors import OperationCancelledError


@dataclass
class TaskProgressDetail:
    """Progress event emitted at each pipeline milestone."""
    status_text: str
    terminal_output: Optional[str] = None
    progress: Optional[float] = None


ProgressCallback = Callable[[TaskProgressDetail], None]


def report(callback: Optional[ProgressCallback], status_text: str,
           terminal_output: Optional[str] = None, progress: Optional[float] = None):
    """Send a progress event if a callback was supplied."""
    if callback is not None:
        callback(TaskProgressDetail(status_text, terminal_output, progress))


class CancellationToken:
    """Thread-safe cancellation flag with cancel callbacks."""

    def __init__(self):
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._callbacks: List[Callable[[], None]] = []

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self):
        """Signal cancellation and fire every registered callback once."""
        with self._lock:
            if self._event.is_set():
                return
            self._event.set()
            callbacks = list(self._callbacks)
            self._callbacks.clear()
        for callback in callbacks:
            callback()

    def register(self, callback: Callable[[], None]):
        """Register a callback; it runs immediately if already cancelled."""
        with self._lock:
            if not self._event.is_set():
                self._callbacks.append(callback)
                return
        callback()

    def unregister(self, callback: Callable[[], None]):
        with self._lock:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

    def raise_if_cancelled(self):
        if self._event.is_set():
            raise OperationCancelledError()

    def wait(self, timeout: float) -> bool:
        """Sleep up to timeout seconds; returns True if cancelled meanwhile."""
        return self._event.wait(timeout)
