import threading
from datetime import datetime, timedelta, timezone

import pytest

from salon_tokens.engine import QueueEngine
from salon_tokens.relay import LocalRelay
from salon_tokens.sql_store import SqlTokenStore
from salon_tokens.store import MemoryTokenStore


class StepClock:
    """Deterministic clock: every call is one second after the previous one."""

    def __init__(self, start=datetime(2024, 5, 1, 9, 0, tzinfo=timezone.utc), step=timedelta(seconds=1)):
        self.now = start
        self.step = step
        self._lock = threading.Lock()

    def __call__(self):
        with self._lock:
            self.now = self.now + self.step
            return self.now


@pytest.fixture
def clock():
    return StepClock()


@pytest.fixture(params=["memory", "sqlite"])
def store(request, tmp_path):
    if request.param == "memory":
        s = MemoryTokenStore(timeout=2.0)
    else:
        s = SqlTokenStore(f"sqlite:///{tmp_path / 'tokens.db'}", timeout=10.0, queues=("male", "female"))
    yield s
    s.close()


@pytest.fixture
def relay():
    return LocalRelay()


@pytest.fixture
def received(relay):
    events = []
    relay.subscribe(events.append)
    return events


@pytest.fixture
def engine(store, relay, clock):
    return QueueEngine(store, relay=relay, clock=clock)
