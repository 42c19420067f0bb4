"""Time and cancellation primitives shared by a build's components."""

from __future__ import annotations

import threading
import time
from typing import Optional

from imagepuppet.exceptions import BuildCancelled


class CancelToken:
    """Per-build cancellation signal checked at every suspension point."""

    def __init__(self) -> None:
        self._event = threading.Event()
        self.reason: Optional[str] = None

    def cancel(self, reason: str = "cancelled by operator") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def check(self) -> None:
        if self._event.is_set():
            raise BuildCancelled(f"Build {self.reason or 'cancelled'}")

    def wait(self, seconds: float) -> bool:
        """Block up to ``seconds``; return True if cancelled meanwhile."""
        return self._event.wait(max(0.0, seconds))


def interruptible_sleep(seconds: float, cancel: Optional[CancelToken] = None) -> None:
    """Sleep, raising BuildCancelled as soon as ``cancel`` fires."""
    if cancel is None:
        time.sleep(max(0.0, seconds))
        return
    cancel.check()
    if cancel.wait(seconds):
        cancel.check()


class SystemClock:
    def monotonic(self) -> float:
        return time.monotonic()

    def sleep(self, seconds: float, cancel: Optional[CancelToken] = None) -> None:
        interruptible_sleep(seconds, cancel)
