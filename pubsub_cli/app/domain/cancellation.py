"""One-shot cancellation trigger shared between the consumer and a transport.

The consumer fires it from a worker thread; the transport registers listeners
(its stop hook) and may block on wait(). Listeners run exactly once, on the
thread that fires, outside the signal's own lock.
"""
from __future__ import annotations

import threading
from typing import Callable

from loguru import logger


class CancellationSignal:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._event = threading.Event()
        self._listeners: list[Callable[[], None]] = []
        self._fire_count = 0

    @property
    def fired(self) -> bool:
        return self._event.is_set()

    @property
    def fire_count(self) -> int:
        """Number of fire() calls that took effect; never more than 1."""
        return self._fire_count

    def add_listener(self, listener: Callable[[], None]) -> None:
        """Register a stop hook. Runs immediately if the signal already fired."""
        with self._lock:
            if not self._event.is_set():
                self._listeners.append(listener)
                return
        listener()

    def fire(self) -> bool:
        """Transition armed -> fired. Returns False if it had already fired."""
        with self._lock:
            if self._event.is_set():
                return False
            self._event.set()
            self._fire_count += 1
            listeners, self._listeners = self._listeners, []
        for listener in listeners:
            try:
                listener()
            except Exception as exc:
                logger.warning("cancellation listener failed: {}", exc)
        return True

    def wait(self, timeout: float | None = None) -> bool:
        return self._event.wait(timeout)
