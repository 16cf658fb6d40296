import pytest

from salon_tokens.errors import StoreUnavailable, ValidationError
from salon_tokens.retry import call_with_retries


def test_retries_transient_failures_with_backoff():
    calls = []
    sleeps = []

    def flaky():
        calls.append(1)
        if len(calls) < 3:
            raise StoreUnavailable("timeout")
        return "ok"

    assert call_with_retries(flaky, attempts=3, backoff=0.1, sleep=sleeps.append) == "ok"
    assert len(calls) == 3
    assert sleeps == [0.1, 0.2]


def test_gives_up_after_attempts():
    sleeps = []

    def down():
        raise StoreUnavailable("still down")

    with pytest.raises(StoreUnavailable):
        call_with_retries(down, attempts=2, backoff=0.01, sleep=sleeps.append)
    assert sleeps == [0.01]


def test_does_not_retry_final_errors():
    calls = []

    def invalid():
        calls.append(1)
        raise ValidationError("bad mobile")

    with pytest.raises(ValidationError):
        call_with_retries(invalid, attempts=5, sleep=lambda s: None)
    assert len(calls) == 1


def test_attempts_must_be_positive():
    with pytest.raises(ValueError):
        call_with_retries(lambda: None, attempts=0)
