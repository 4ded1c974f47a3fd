"""Synchronous observer fan-out for store snapshots."""

from __future__ import annotations

import logging
import threading
from typing import Any, Callable

logger = logging.getLogger(__name__)

Observer = Callable[[Any], None]


class ObserverRegistry:
    """A set of callbacks notified, in subscription order, with each new snapshot.

    Registration is thread-safe. ``publish`` calls every observer in its own
    error boundary: one failing observer is logged and the rest still run.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._observers: list[Observer] = []

    def subscribe(self, callback: Observer) -> Callable[[], None]:
        """Register a callback.

        Args:
            callback: Called with every published snapshot.

        Returns:
            A function that removes this subscription. Calling it more than
            once is harmless.
        """
        if not callable(callback):
            raise TypeError(f"Observer must be callable, got {type(callback).__name__}")

        with self._lock:
            self._observers.append(callback)

        def unsubscribe() -> None:
            with self._lock:
                try:
                    self._observers.remove(callback)
                except ValueError:
                    pass

        return unsubscribe

    def publish(self, snapshot: Any) -> int:
        """Deliver a snapshot to every observer.

        Observers subscribed or removed during delivery take effect from the
        next publish.

        Returns:
            The number of observers that raised.
        """
        with self._lock:
            observers = list(self._observers)

        failures = 0
        for observer in observers:
            try:
                observer(snapshot)
            except Exception:
                failures += 1
                logger.exception("Observer %r failed", observer)
        return failures

    def clear(self) -> None:
        with self._lock:
            self._observers.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._observers)
