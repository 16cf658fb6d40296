"""MQTT topic helpers.

We keep topic construction in one place so the relay and the watchers agree
on naming.

Topic layout under a configurable namespace (default: `salon/v1`):

- `<ns>/queues/<queue>/events`
    Every committed token change in that queue (`token_issued`,
    `token_status_changed`), JSON encoded.
- `<ns>/queues/+/events`
    Wildcard used by displays that watch every queue.

You can run multiple independent salons on a shared broker by changing the
`namespace` parameter (e.g. `--namespace salon/downtown`).
"""

from __future__ import annotations


def queue_events(queue: str, namespace: str = "salon/v1") -> str:
    return f"{namespace}/queues/{queue}/events"


def all_queue_events(namespace: str = "salon/v1") -> str:
    return f"{namespace}/queues/+/events"


def queue_from_topic(topic: str, namespace: str = "salon/v1") -> str | None:
    """Inverse of `queue_events`; None when the topic isn't a queue event topic."""
    prefix = f"{namespace}/queues/"
    if not topic.startswith(prefix) or not topic.endswith("/events"):
        return None
    queue = topic[len(prefix) : -len("/events")]
    return queue if queue and "/" not in queue else None
