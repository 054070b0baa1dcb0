"""Cooperative cancellation with optional deadlines."""

import threading
import time
from typing import Optional

from ..exceptions import OperationCancelledError, StepTimeoutError


class CancellationToken:
    """
    Cancellation signal shared by a run and everything it starts.

    Child tokens observe their parent's cancellation and may add their own
    deadline, so a step timeout stops only that step while a user cancel
    stops everything.
    """

    def __init__(self, parent: Optional["CancellationToken"] = None, timeout_sec: Optional[float] = None):
        self._event = threading.Event()
        self._parent = parent
        self.timeout_sec = timeout_sec
        self._deadline = time.monotonic() + timeout_sec if timeout_sec else None

    def cancel(self) -> None:
        self._event.set()

    def child(self, timeout_sec: Optional[float] = None) -> "CancellationToken":
        """Derive a token that is cancelled with this one, or at its own deadline."""
        return CancellationToken(parent=self, timeout_sec=timeout_sec)

    @property
    def expired(self) -> bool:
        """True if this token's own deadline has passed."""
        return self._deadline is not None and time.monotonic() >= self._deadline

    @property
    def is_cancelled(self) -> bool:
        if self._event.is_set() or self.expired:
            return True
        return self._parent is not None and self._parent.is_cancelled

    def remaining(self) -> Optional[float]:
        """Seconds until the nearest deadline in the chain, or None."""
        remaining = None
        if self._deadline is not None:
            remaining = max(0.0, self._deadline - time.monotonic())
        if self._parent is not None:
            parent_remaining = self._parent.remaining()
            if parent_remaining is not None:
                remaining = parent_remaining if remaining is None else min(remaining, parent_remaining)
        return remaining

    def raise_if_cancelled(self) -> None:
        """
        Raises:
            OperationCancelledError: If cancelled
            StepTimeoutError: If a deadline in the chain has passed
        """
        if self._parent is not None:
            self._parent.raise_if_cancelled()
        if self._event.is_set():
            raise OperationCancelledError()
        if self.expired:
            raise StepTimeoutError(self.timeout_sec)

    def wait(self, seconds: float) -> bool:
        """Sleep up to ``seconds`` or until cancelled; returns is_cancelled."""
        remaining = self.remaining()
        if remaining is not None:
            seconds = min(seconds, remaining)
        self._event.wait(seconds)
        return self.is_cancelled
