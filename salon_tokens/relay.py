"""Notification relay.

The Queue Engine publishes a `TokenEvent` after every committed change. A
relay fans those events out to whoever watches the queue.

- `LocalRelay` delivers in-process, synchronously, in publish order.
- `MqttRelay` (see `mqtt_relay.py`) forwards to an MQTT broker.
- `FanoutRelay` combines several relays.
"""

from __future__ import annotations

import logging
import threading
from typing import Callable, Protocol

from .models import TokenEvent

logger = logging.getLogger(__name__)

EventHandler = Callable[[TokenEvent], None]


class NotificationRelay(Protocol):
    def publish(self, queue: str, event: TokenEvent) -> None: ...

    def close(self) -> None: ...


class NullRelay:
    """Relay that drops everything (no watchers configured)."""

    def publish(self, queue: str, event: TokenEvent) -> None:
        return None

    def close(self) -> None:
        return None


class LocalRelay:
    """In-process publish/subscribe keyed by queue."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        # queue (or None for "all queues") -> handlers
        self._handlers: dict[str | None, list[EventHandler]] = {}

    def subscribe(self, handler: EventHandler, *, queue: str | None = None) -> Callable[[], None]:
        """Register `handler`; returns a function that unsubscribes it."""
        with self._lock:
            self._handlers.setdefault(queue, []).append(handler)

        def unsubscribe() -> None:
            with self._lock:
                handlers = self._handlers.get(queue, [])
                if handler in handlers:
                    handlers.remove(handler)

        return unsubscribe

    def publish(self, queue: str, event: TokenEvent) -> None:
        with self._lock:
            handlers = list(self._handlers.get(queue, ())) + list(self._handlers.get(None, ()))
        for h in handlers:
            try:
                h(event)
            except Exception:
                # One broken subscriber must not starve the others.
                logger.exception("event handler %r failed for %s", h, event.kind.value)

    def close(self) -> None:
        with self._lock:
            self._handlers.clear()


class FanoutRelay:
    def __init__(self, *relays: NotificationRelay) -> None:
        self.relays = list(relays)

    def publish(self, queue: str, event: TokenEvent) -> None:
        for r in self.relays:
            r.publish(queue, event)

    def close(self) -> None:
        for r in self.relays:
            r.close()
