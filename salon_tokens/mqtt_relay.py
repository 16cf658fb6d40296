from __future__ import annotations

# Relay that forwards queue events to an MQTT broker.
#
# Kept apart from relay.py so the core can be imported without paho-mqtt.

import logging
from typing import TYPE_CHECKING

from .models import TokenEvent
from .mqtt_topics import queue_events

if TYPE_CHECKING:
    from .mqtt_client import MqttClient

logger = logging.getLogger(__name__)


class MqttRelay:
    def __init__(self, *, mqtt: MqttClient, namespace: str = "salon/v1", owns_client: bool = True) -> None:
        self.mqtt = mqtt
        self.namespace = namespace
        self._owns_client = owns_client

    @classmethod
    def connect(cls, *, host: str, port: int, namespace: str, client_id: str) -> MqttRelay:
        from .mqtt_client import MqttClient

        client = MqttClient(client_id=client_id, host=host, port=port)
        client.start()
        logger.info("publishing queue events to MQTT %s:%s under %s", host, port, namespace)
        return cls(mqtt=client, namespace=namespace)

    def publish(self, queue: str, event: TokenEvent) -> None:
        self.mqtt.publish(queue_events(queue, self.namespace), event.to_message(), qos=1)

    def close(self) -> None:
        if self._owns_client:
            self.mqtt.stop()
