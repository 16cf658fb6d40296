from datetime import datetime, timezone

from salon_tokens.models import Token, TokenEvent, TokenStatus
from salon_tokens.mqtt_relay import MqttRelay
from salon_tokens.relay import FanoutRelay, LocalRelay


def _token(queue="male", n=1, status=TokenStatus.WAITING):
    ts = datetime(2024, 5, 1, 9, 0, tzinfo=timezone.utc)
    return Token(
        id=f"{queue}-{n}",
        queue=queue,
        sequence_number=n,
        customer_name="A",
        customer_mobile="9000000001",
        service="Haircut",
        status=status,
        created_at=ts,
        updated_at=ts,
    )


def test_local_relay_filters_by_queue():
    relay = LocalRelay()
    male, everything = [], []
    relay.subscribe(male.append, queue="male")
    relay.subscribe(everything.append)

    e1 = TokenEvent.issued(_token("male"))
    e2 = TokenEvent.issued(_token("female"))
    relay.publish("male", e1)
    relay.publish("female", e2)

    assert male == [e1]
    assert everything == [e1, e2]


def test_unsubscribe_and_broken_handlers():
    relay = LocalRelay()
    got = []

    def broken(event):
        raise RuntimeError("display crashed")

    relay.subscribe(broken)
    unsubscribe = relay.subscribe(got.append)
    relay.publish("male", TokenEvent.issued(_token()))
    assert len(got) == 1

    unsubscribe()
    relay.publish("male", TokenEvent.issued(_token(n=2)))
    assert len(got) == 1


def test_event_message_shape():
    event = TokenEvent.status_changed(_token(status=TokenStatus.SERVING), TokenStatus.WAITING)
    msg = event.to_message()
    assert msg["type"] == "token_status_changed"
    assert msg["queue"] == "male"
    assert msg["previous_status"] == "waiting"
    assert msg["token"]["status"] == "serving"
    assert msg["token"]["label"] == "M1"
    assert msg["token"]["created_at"] == "2024-05-01T09:00:00+00:00"
    assert msg["token"]["served_at"] is None


class RecordingMqtt:
    def __init__(self):
        self.published = []
        self.stopped = False

    def publish(self, topic, message, *, qos=1):
        self.published.append((topic, message, qos))

    def stop(self):
        self.stopped = True


def test_mqtt_relay_publishes_per_queue_topic():
    mqtt = RecordingMqtt()
    relay = MqttRelay(mqtt=mqtt, namespace="salon/test")
    relay.publish("female", TokenEvent.issued(_token("female")))

    topic, message, qos = mqtt.published[0]
    assert topic == "salon/test/queues/female/events"
    assert message["type"] == "token_issued"
    assert qos == 1

    relay.close()
    assert mqtt.stopped


def test_fanout_relay_reaches_every_relay():
    a, b = LocalRelay(), LocalRelay()
    got_a, got_b = [], []
    a.subscribe(got_a.append)
    b.subscribe(got_b.append)

    event = TokenEvent.issued(_token())
    FanoutRelay(a, b).publish("male", event)
    assert got_a == [event] and got_b == [event]
