"""
Subscription channels for context notifications.

Consumers register a callback and receive a ``Subscription`` handle; calling
``unsubscribe()`` on the handle removes the callback. A failing callback is
logged and does not prevent delivery to the others.
"""

import logging
import threading
from typing import Any, Callable, Generic, TypeVar

logger = logging.getLogger(__name__)

Callback = TypeVar("Callback", bound=Callable[..., Any])


class Subscription:
    """Deregistration handle returned by ``EventChannel.subscribe``."""

    def __init__(self, channel: "EventChannel", callback: Callable[..., Any]) -> None:
        self._channel = channel
        self._callback = callback
        self._active = True

    @property
    def active(self) -> bool:
        return self._active

    def unsubscribe(self) -> None:
        if self._active:
            self._channel._remove(self._callback)
            self._active = False


class EventChannel(Generic[Callback]):
    """A named list of callbacks, safe to use from several threads."""

    def __init__(self, name: str) -> None:
        self.name = name
        self._lock = threading.Lock()
        self._callbacks: list[Callback] = []

    def subscribe(self, callback: Callback) -> Subscription:
        with self._lock:
            self._callbacks.append(callback)
        logger.debug("Subscribed %r to '%s'", callback, self.name)
        return Subscription(self, callback)

    def _remove(self, callback: Callback) -> None:
        with self._lock:
            try:
                self._callbacks.remove(callback)
            except ValueError:
                logger.debug("Callback %r already removed from '%s'", callback, self.name)

    def emit(self, *args: Any) -> int:
        """Call every subscriber with ``args``; return how many were called."""
        with self._lock:
            callbacks = list(self._callbacks)
        for callback in callbacks:
            try:
                callback(*args)
            except Exception:
                logger.exception("Subscriber %r of '%s' failed", callback, self.name)
        return len(callbacks)

    def __len__(self) -> int:
        with self._lock:
            return len(self._callbacks)
