"""Deadline and cancellation shared by every stage of one transfer."""

from __future__ import annotations

import threading
import time
from typing import Callable

from syncronicity.exceptions import TransferCancelled, TransferTimeout


class TransferContext:
    """A bounded deadline plus a cancellation flag, passed to every blocking call.

    ``check()`` raises ``TransferCancelled`` or ``TransferTimeout``; ``remaining()``
    is the per-call timeout handed to remote calls.
    """

    def __init__(self, timeout_seconds: float | None = None, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._deadline = None if timeout_seconds is None else clock() + timeout_seconds
        self._timeout_seconds = timeout_seconds
        self._cancelled = threading.Event()
        self._reason = ""
        self._lock = threading.Lock()
        self._children: list[TransferContext] = []
        self._callbacks: list[Callable[[], None]] = []

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    @property
    def expired(self) -> bool:
        return self._deadline is not None and self._clock() >= self._deadline

    @property
    def reason(self) -> str:
        return self._reason

    def cancel(self, reason: str = "cancelled by caller") -> None:
        callbacks: list[Callable[[], None]] = []
        with self._lock:
            if not self._cancelled.is_set():
                self._reason = reason
                self._cancelled.set()
                callbacks, self._callbacks = self._callbacks, []
            children = list(self._children)
        for callback in callbacks:
            callback()
        for child in children:
            child.cancel(reason)

    def add_callback(self, callback: Callable[[], None]) -> Callable[[], None]:
        """Run ``callback`` once when this context is cancelled; returns a function that unregisters it.

        Used to abort blocking remote calls. On an already cancelled context the callback runs at once.
        """
        with self._lock:
            cancelled = self._cancelled.is_set()
            if not cancelled:
                self._callbacks.append(callback)
        if cancelled:
            callback()

        def _remove() -> None:
            with self._lock:
                if callback in self._callbacks:
                    self._callbacks.remove(callback)

        return _remove

    def child(self, timeout_seconds: float | None = None) -> "TransferContext":
        """Cancelled along with this context but cancellable on its own.

        The child keeps this context's deadline, or ``timeout_seconds`` from now when that is sooner.
        """
        child = TransferContext(timeout_seconds, clock=self._clock)
        if self._deadline is not None and (child._deadline is None or self._deadline < child._deadline):
            child._deadline = self._deadline
            child._timeout_seconds = self._timeout_seconds
        with self._lock:
            self._children.append(child)
            cancelled = self._cancelled.is_set()
        if cancelled:
            child.cancel(self._reason)
        return child

    def remaining(self) -> float | None:
        if self._deadline is None:
            return None
        return max(self._deadline - self._clock(), 0.0)

    def check(self) -> None:
        if self._cancelled.is_set():
            raise TransferCancelled(f"Transfer cancelled: {self._reason}")
        if self.expired:
            raise self._timeout()

    def sleep(self, seconds: float) -> None:
        """Sleep up to ``seconds``; wakes early on cancel and never past the deadline."""
        remaining = self.remaining()
        if remaining is not None and seconds >= remaining:
            # Sleeping through the deadline ends the transfer.
            self._cancelled.wait(remaining)
            self.check()
            raise self._timeout()
        self._cancelled.wait(seconds)
        self.check()

    def _timeout(self) -> TransferTimeout:
        return TransferTimeout(
            "Transfer deadline exceeded",
            details={"timeout_seconds": self._timeout_seconds},
        )
