import threading
from datetime import timezone

import pytest
from sqlalchemy import text

from salon_tokens.engine import QueueEngine
from salon_tokens.errors import InvalidTransition, NotFound, StoreUnavailable
from salon_tokens.models import TokenDraft, TokenStatus
from salon_tokens.sql_store import SqlTokenStore


def _url(tmp_path):
    return f"sqlite:///{tmp_path / 'salon.db'}"


def test_tokens_and_counters_survive_reopen(tmp_path, clock):
    store = SqlTokenStore(_url(tmp_path), queues=("male", "female"))
    engine = QueueEngine(store, clock=clock)
    first = engine.submit_token("male", "Haircut", "A", "9000000001")
    engine.serve_next("male")
    store.close()

    reopened = SqlTokenStore(_url(tmp_path), queues=("male", "female"))
    engine = QueueEngine(reopened, clock=clock)
    try:
        assert engine.current_serving("male").id == first.id
        second = engine.submit_token("male", "Haircut", "B", "9000000002")
        assert second.sequence_number == 2
    finally:
        reopened.close()


def test_timestamps_come_back_as_utc(tmp_path, clock):
    store = SqlTokenStore(_url(tmp_path))
    try:
        token = store.insert(TokenDraft("male", "Haircut", "A", "9000000001"), 1, clock())
        loaded = store.find_by_id(token.id)
        assert loaded.created_at.tzinfo == timezone.utc
        assert loaded.created_at == token.created_at
        assert loaded.served_at is None
    finally:
        store.close()


def test_counter_row_is_created_for_unseeded_queue(tmp_path):
    store = SqlTokenStore(_url(tmp_path))
    try:
        assert store.next_sequence("female") == 1
        assert store.next_sequence("female") == 2
        assert store.next_sequence("male") == 1
    finally:
        store.close()


def test_conditional_update_checks_expected_status(tmp_path, clock):
    store = SqlTokenStore(_url(tmp_path))
    try:
        token = store.insert(TokenDraft("male", "Haircut", "A", "9000000001"), 1, clock())
        with pytest.raises(InvalidTransition):
            store.update_status(token.id, TokenStatus.SERVED, clock())
        with pytest.raises(InvalidTransition):
            store.update_status(token.id, TokenStatus.SERVING, clock(), expected=TokenStatus.SERVING)
        with pytest.raises(NotFound):
            store.update_status("missing", TokenStatus.SERVING, clock())

        serving = store.update_status(token.id, TokenStatus.SERVING, clock(), expected=TokenStatus.WAITING)
        assert serving.version == 2
        assert serving.served_at == serving.updated_at
    finally:
        store.close()


def test_transaction_rolls_back_everything(tmp_path, clock):
    store = SqlTokenStore(_url(tmp_path), queues=("male",))
    try:
        with pytest.raises(RuntimeError):
            with store.transaction():
                n = store.next_sequence("male")
                store.insert(TokenDraft("male", "Haircut", "A", "9000000001"), n, clock())
                raise RuntimeError("client went away")

        assert store.find_most_recent("male") is None
        assert store.next_sequence("male") == 1
    finally:
        store.close()


def test_database_refuses_a_second_serving_row(tmp_path, clock):
    store = SqlTokenStore(_url(tmp_path), queues=("male",))
    try:
        a = store.insert(TokenDraft("male", "Haircut", "A", "9000000001"), 1, clock())
        b = store.insert(TokenDraft("male", "Haircut", "B", "9000000002"), 2, clock())
        store.update_status(a.id, TokenStatus.SERVING, clock())
        with pytest.raises(StoreUnavailable):
            store.update_status(b.id, TokenStatus.SERVING, clock())
        assert store.find_serving("male").id == a.id
    finally:
        store.close()


def test_two_processes_sharing_a_database(tmp_path, clock):
    # Two stores on one file stand in for two app servers.
    stores = [SqlTokenStore(_url(tmp_path), timeout=10.0, queues=("male", "female")) for _ in range(2)]
    engines = [QueueEngine(s, clock=clock) for s in stores]
    numbers = []
    lock = threading.Lock()

    def submit(engine, prefix):
        for j in range(15):
            t = engine.submit_token("male", "Haircut", f"{prefix}{j}", f"9{prefix}000000{j:02d}")
            with lock:
                numbers.append(t.sequence_number)

    try:
        workers = [threading.Thread(target=submit, args=(e, str(i + 1))) for i, e in enumerate(engines)]
        for w in workers:
            w.start()
        for w in workers:
            w.join()

        assert sorted(numbers) == list(range(1, 31))

        served = []

        def admin(engine):
            for _ in range(5):
                t = engine.serve_next("male")
                with lock:
                    served.append(t.sequence_number)

        workers = [threading.Thread(target=admin, args=(e,)) for e in engines]
        for w in workers:
            w.start()
        for w in workers:
            w.join()

        assert sorted(served) == list(range(1, 11))
        with stores[0].engine.connect() as conn:
            count = conn.execute(text("SELECT COUNT(*) FROM tokens WHERE status = 'serving'")).scalar()
        assert count == 1
    finally:
        for s in stores:
            s.close()


def test_in_memory_sqlite_url_works(clock):
    store = SqlTokenStore("sqlite://", queues=("male", "female"))
    try:
        engine = QueueEngine(store, clock=clock)
        t = engine.submit_token("female", "Manicure", "A", "9000000001")
        assert engine.serve_next("female").id == t.id
    finally:
        store.close()
