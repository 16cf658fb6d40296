"""Small MQTT helper built on top of paho-mqtt.

Why this exists:
- paho-mqtt is callback-based and speaks bytes.
- The relay and the watcher only need "publish a JSON dict" and "call me with
  each JSON dict that arrives".

Design:
- `MqttClient` manages connection + a background network loop.
- Subscriptions are remembered and replayed after a reconnect.
- Queue events are published with QoS 1 (at-least-once).
"""

from __future__ import annotations

import json
import logging
import threading
from typing import Any, Callable

import paho.mqtt.client as mqtt

logger = logging.getLogger(__name__)

MessageHandler = Callable[[str, dict[str, Any]], None]


class MqttClient:
    """Thin wrapper around paho-mqtt with JSON convenience APIs."""

    def __init__(
        self,
        *,
        client_id: str,
        host: str,
        port: int,
        keepalive: int = 30,
    ) -> None:
        self.client_id = client_id
        self.host = host
        self.port = port
        self.keepalive = keepalive

        self._client = mqtt.Client(
            mqtt.CallbackAPIVersion.VERSION2,
            client_id=client_id,
            clean_session=True,
        )
        self._client.on_message = self._on_message
        self._client.on_connect = self._on_connect

        # External subscribers. Called with (topic, json_message).
        self._handlers: list[MessageHandler] = []

        # topic -> qos, replayed on every (re)connect
        self._subscriptions: dict[str, int] = {}
        self._lock = threading.Lock()

        self._started = False

    def start(self) -> None:
        """Connect and start the background network loop."""
        if self._started:
            return
        self._client.connect(self.host, self.port, keepalive=self.keepalive)
        self._client.loop_start()
        self._started = True

    def stop(self) -> None:
        """Stop and disconnect."""
        if not self._started:
            return
        self._client.disconnect()
        self._client.loop_stop()
        self._started = False

    def add_handler(self, handler: MessageHandler) -> None:
        self._handlers.append(handler)

    def subscribe(self, topic: str, *, qos: int = 1) -> None:
        with self._lock:
            self._subscriptions[topic] = qos
        self._client.subscribe(topic, qos=qos)

    def publish(self, topic: str, message: dict[str, Any], *, qos: int = 1) -> None:
        payload = json.dumps(message, separators=(",", ":")).encode("utf-8")
        info = self._client.publish(topic, payload=payload, qos=qos)
        if info.rc != mqtt.MQTT_ERR_SUCCESS and info.rc != mqtt.MQTT_ERR_NO_CONN:
            # NO_CONN is fine for QoS>0: paho keeps the message and sends it on reconnect.
            raise ConnectionError(f"MQTT publish to {topic} failed: {mqtt.error_string(info.rc)}")

    # -------------------- internal callbacks --------------------

    def _on_connect(self, client: mqtt.Client, userdata: Any, flags: Any, reason_code: Any, properties: Any) -> None:
        if getattr(reason_code, "is_failure", False):
            logger.warning("MQTT connect to %s:%s refused: %s", self.host, self.port, reason_code)
            return
        with self._lock:
            subs = list(self._subscriptions.items())
        for topic, qos in subs:
            client.subscribe(topic, qos=qos)
        logger.info("MQTT connected to %s:%s as %s", self.host, self.port, self.client_id)

    def _on_message(self, client: mqtt.Client, userdata: Any, msg: mqtt.MQTTMessage) -> None:
        # Depending on paho-mqtt version / type stubs, msg.payload may be `bytes` (typical)
        # or a `str`. We normalize to text before JSON parsing.
        try:
            raw = msg.payload
            payload = raw.decode("utf-8") if isinstance(raw, bytes) else str(raw)
            data = json.loads(payload)
        except (UnicodeDecodeError, ValueError):
            logger.warning("ignoring malformed MQTT payload on %s", msg.topic)
            return
        if not isinstance(data, dict):
            return

        for h in list(self._handlers):
            try:
                h(msg.topic, data)
            except Exception:
                logger.exception("MQTT handler failed for topic %s", msg.topic)
