from __future__ import annotations

# Queue event watcher.
#
# Subscribes to the MQTT event topics and prints one line per change, e.g.
#   [watch male] M3 issued (Haircut)
#   [watch male] M2 serving -> served
#
# Events are delivered at-least-once, so the watcher remembers the highest
# `version` seen per token and skips anything older or repeated.

import argparse
import threading
import time
from typing import Any

from .config import add_mqtt_args
from .log import configure_logging
from .mqtt_client import MqttClient
from .mqtt_topics import all_queue_events, queue_events, queue_from_topic


class EventDeduper:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._versions: dict[str, int] = {}

    def accept(self, msg: dict[str, Any]) -> bool:
        token = msg.get("token")
        if not isinstance(token, dict):
            return False
        token_id = token.get("id")
        version = token.get("version")
        if not isinstance(token_id, str) or not isinstance(version, int):
            return False
        with self._lock:
            if version <= self._versions.get(token_id, 0):
                return False
            self._versions[token_id] = version
            return True


def format_event(msg: dict[str, Any]) -> str | None:
    token = msg.get("token")
    if not isinstance(token, dict):
        return None
    label = token.get("label", "?")
    mtype = msg.get("type")
    if mtype == "token_issued":
        return f"{label} issued ({token.get('service')})"
    if mtype == "token_status_changed":
        return f"{label} {msg.get('previous_status')} -> {token.get('status')}"
    return None


def run_watch(
    *,
    mqtt_host: str,
    mqtt_port: int,
    namespace: str,
    queue: str | None = None,
    max_events: int | None = None,
) -> None:
    mqtt = MqttClient(client_id=f"watch-{int(time.time() * 1000)}", host=mqtt_host, port=mqtt_port)
    deduper = EventDeduper()
    done = threading.Event()
    printed = 0

    def on_message(topic: str, msg: dict[str, Any]) -> None:
        nonlocal printed
        q = queue_from_topic(topic, namespace)
        if q is None or not deduper.accept(msg):
            return
        line = format_event(msg)
        if line is None:
            return
        print(f"[watch {q}] {line}", flush=True)
        printed += 1
        if max_events is not None and printed >= max_events:
            done.set()

    mqtt.add_handler(on_message)
    mqtt.start()
    mqtt.subscribe(queue_events(queue, namespace) if queue else all_queue_events(namespace))
    print(f"[watch] connected to MQTT {mqtt_host}:{mqtt_port}, namespace={namespace}", flush=True)

    try:
        while not done.wait(0.5):
            pass
    except KeyboardInterrupt:
        pass
    finally:
        mqtt.stop()


def main() -> None:
    parser = argparse.ArgumentParser(description="Print queue events from MQTT")
    add_mqtt_args(parser)
    parser.add_argument("--queue", default=None, help="only this queue (default: all)")
    parser.add_argument("--max-events", type=int, default=None)
    args = parser.parse_args()
    configure_logging("WARNING")

    run_watch(
        mqtt_host=args.mqtt_host or "127.0.0.1",
        mqtt_port=args.mqtt_port,
        namespace=args.namespace,
        queue=args.queue,
        max_events=args.max_events,
    )


if __name__ == "__main__":
    main()
