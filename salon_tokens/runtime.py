from __future__ import annotations

# Process-wide wiring.
#
# A Runtime is built once at process start from Settings and closed at
# shutdown. It owns the store, the relays and the OTP gate, and hands them
# to the QueueEngine; nothing else holds module-level clients.

import logging
import os
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Iterator

from .config import Settings
from .engine import QueueEngine
from .otp import OpenGate, OtpGate, OtpIssuer
from .relay import FanoutRelay, LocalRelay, NotificationRelay
from .store import MemoryTokenStore, TokenStore

logger = logging.getLogger(__name__)


@dataclass
class Runtime:
    """Everything one process needs to serve the queues.

    `events` is the in-process subscription point: code embedding the engine
    (a kiosk display, a test, a worker sharing the process) calls
    `runtime.events.subscribe(handler, queue=...)` to receive every committed
    change without a broker. It is always part of `relay`.
    """

    settings: Settings
    store: TokenStore
    events: LocalRelay
    relay: NotificationRelay
    otp: OtpGate
    engine: QueueEngine

    def close(self) -> None:
        try:
            self.relay.close()
        finally:
            try:
                self.otp.close()
            finally:
                self.store.close()
        logger.info("runtime closed")


def build_store(settings: Settings) -> TokenStore:
    if settings.uses_memory_store:
        return MemoryTokenStore(timeout=settings.store_timeout, retry_attempts=settings.retry_attempts,
                                retry_backoff=settings.retry_backoff)

    from .sql_store import SqlTokenStore

    return SqlTokenStore(
        settings.database_url,
        timeout=settings.store_timeout,
        retry_attempts=settings.retry_attempts,
        retry_backoff=settings.retry_backoff,
        queues=settings.catalog.queues,
    )


def _describe_store(store: TokenStore) -> str:
    engine = getattr(store, "engine", None)
    if engine is None:
        return "memory"
    return engine.url.render_as_string(hide_password=True)


def build_runtime(settings: Settings) -> Runtime:
    store = build_store(settings)

    events = LocalRelay()
    relay: NotificationRelay = events
    if settings.mqtt_host:
        from .mqtt_relay import MqttRelay

        try:
            mqtt_relay = MqttRelay.connect(
                host=settings.mqtt_host,
                port=settings.mqtt_port,
                namespace=settings.namespace,
                client_id=f"salon-tokens-{os.getpid()}",
            )
        except BaseException:
            store.close()
            raise
        relay = FanoutRelay(events, mqtt_relay)

    otp: OtpGate = OtpIssuer(ttl_seconds=settings.otp_ttl_seconds) if settings.otp_required else OpenGate()

    engine = QueueEngine(
        store,
        catalog=settings.catalog,
        relay=relay,
        otp=otp,
        lock_timeout=settings.store_timeout,
    )
    logger.info(
        "runtime ready: store=%s queues=%s otp=%s mqtt=%s",
        _describe_store(store),
        ",".join(settings.catalog.queues),
        "on" if otp.enabled else "off",
        settings.mqtt_host or "off",
    )
    return Runtime(settings=settings, store=store, events=events, relay=relay, otp=otp, engine=engine)


@contextmanager
def open_runtime(settings: Settings) -> Iterator[Runtime]:
    runtime = build_runtime(settings)
    try:
        yield runtime
    finally:
        runtime.close()
