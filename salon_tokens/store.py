from __future__ import annotations

# Token Store contract and the process-local implementation.
#
# This file contains two layers:
# 1) `TokenStore` (the contract the Queue Engine consumes) + draft validation
# 2) `MemoryTokenStore` (lock-guarded dicts, used for tests and single-process runs)
#
# The durable implementation lives in `sql_store.py`.

import re
import threading
import uuid
from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime
from typing import Callable, ContextManager, Iterator, Protocol

from .errors import InvalidTransition, NotFound, StoreUnavailable, ValidationError
from .models import Token, TokenDraft, TokenStatus, can_transition, utcnow
from .retry import call_with_retries

MOBILE_RE = re.compile(r"^[0-9]{10}$")


def validate_draft(draft: TokenDraft) -> TokenDraft:
    """Return a whitespace-trimmed copy of `draft` or raise ValidationError."""
    cleaned = TokenDraft(
        queue=(draft.queue or "").strip(),
        service=(draft.service or "").strip(),
        customer_name=(draft.customer_name or "").strip(),
        customer_mobile=(draft.customer_mobile or "").strip(),
    )
    missing = [
        name
        for name, value in (
            ("queue", cleaned.queue),
            ("service", cleaned.service),
            ("name", cleaned.customer_name),
            ("mobile", cleaned.customer_mobile),
        )
        if not value
    ]
    if missing:
        raise ValidationError(f"missing required fields: {', '.join(missing)}")
    if not MOBILE_RE.match(cleaned.customer_mobile):
        raise ValidationError("mobile must be exactly 10 digits")
    return cleaned


def check_transition(token: Token, new_status: TokenStatus, expected: TokenStatus | None) -> None:
    if expected is not None and token.status is not expected:
        raise InvalidTransition(
            f"token {token.label} is {token.status.value}, expected {expected.value}"
        )
    if not can_transition(token.status, new_status):
        raise InvalidTransition(
            f"token {token.label} cannot move from {token.status.value} to {new_status.value}"
        )


class TokenStore(Protocol):
    """Durable record of tokens. The only owner of persisted Token rows."""

    def transaction(self) -> ContextManager[None]: ...

    def next_sequence(self, queue: str) -> int: ...

    def insert(self, draft: TokenDraft, sequence_number: int, created_at: datetime | None = None) -> Token: ...

    def find_by_id(self, token_id: str) -> Token | None: ...

    def find_serving(self, queue: str) -> Token | None: ...

    def find_waiting(self, queue: str, limit: int | None = None) -> list[Token]: ...

    def count_waiting(self, queue: str) -> int: ...

    def find_most_recent(self, queue: str) -> Token | None: ...

    def find_recently_served(self, queue: str, limit: int = 5) -> list[Token]: ...

    def update_status(
        self,
        token_id: str,
        new_status: TokenStatus,
        timestamp: datetime | None = None,
        *,
        expected: TokenStatus | None = None,
    ) -> Token: ...

    def close(self) -> None: ...


class MemoryTokenStore:
    """Token store backed by dicts and one reentrant lock.

    Every call holds the lock, so each one is atomic. `transaction()` holds it
    for the whole block and restores a snapshot if the block raises.
    """

    def __init__(
        self,
        *,
        timeout: float = 5.0,
        retry_attempts: int = 3,
        retry_backoff: float = 0.05,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.timeout = timeout
        self.retry_attempts = retry_attempts
        self.retry_backoff = retry_backoff
        self._clock = clock

        self._lock = threading.RLock()
        self._tokens: dict[str, Token] = {}
        self._sequences: dict[str, int] = {}
        self._depth = 0

    # -------------------- locking --------------------

    def _acquire(self) -> None:
        def attempt() -> None:
            if not self._lock.acquire(timeout=self.timeout):
                raise StoreUnavailable(f"store lock not acquired within {self.timeout}s")

        call_with_retries(
            attempt,
            attempts=self.retry_attempts,
            backoff=self.retry_backoff,
            what="memory store lock",
        )

    @contextmanager
    def _locked(self) -> Iterator[None]:
        self._acquire()
        try:
            yield
        finally:
            self._lock.release()

    @contextmanager
    def transaction(self) -> Iterator[None]:
        with self._locked():
            outermost = self._depth == 0
            snapshot = (dict(self._tokens), dict(self._sequences)) if outermost else None
            self._depth += 1
            try:
                yield
            except BaseException:
                if snapshot is not None:
                    self._tokens, self._sequences = snapshot
                raise
            finally:
                self._depth -= 1

    # -------------------- writes --------------------

    def next_sequence(self, queue: str) -> int:
        with self._locked():
            n = self._sequences.get(queue, 0) + 1
            self._sequences[queue] = n
            return n

    def insert(self, draft: TokenDraft, sequence_number: int, created_at: datetime | None = None) -> Token:
        draft = validate_draft(draft)
        if sequence_number < 1:
            raise ValidationError("sequence_number must be positive")
        now = created_at or self._clock()
        with self._locked():
            for t in self._tokens.values():
                if t.queue == draft.queue and t.sequence_number == sequence_number:
                    raise ValidationError(f"sequence number {sequence_number} already issued in {draft.queue}")
            token = Token(
                id=str(uuid.uuid4()),
                queue=draft.queue,
                sequence_number=sequence_number,
                customer_name=draft.customer_name,
                customer_mobile=draft.customer_mobile,
                service=draft.service,
                status=TokenStatus.WAITING,
                created_at=now,
                updated_at=now,
            )
            self._tokens[token.id] = token
            return token

    def update_status(
        self,
        token_id: str,
        new_status: TokenStatus,
        timestamp: datetime | None = None,
        *,
        expected: TokenStatus | None = None,
    ) -> Token:
        with self._locked():
            current = self._tokens.get(token_id)
            if current is None:
                raise NotFound(f"token {token_id} not found")
            check_transition(current, new_status, expected)

            now = timestamp or self._clock()
            updated = replace(
                current,
                status=new_status,
                served_at=now if new_status is TokenStatus.SERVING else current.served_at,
                updated_at=now,
                version=current.version + 1,
            )
            self._tokens[token_id] = updated
            return updated

    # -------------------- reads --------------------

    def _in_queue(self, queue: str, status: TokenStatus | None = None) -> list[Token]:
        return [
            t for t in self._tokens.values() if t.queue == queue and (status is None or t.status is status)
        ]

    def find_by_id(self, token_id: str) -> Token | None:
        with self._locked():
            return self._tokens.get(token_id)

    def find_serving(self, queue: str) -> Token | None:
        with self._locked():
            serving = self._in_queue(queue, TokenStatus.SERVING)
        return serving[0] if serving else None

    def find_waiting(self, queue: str, limit: int | None = None) -> list[Token]:
        with self._locked():
            waiting = sorted(self._in_queue(queue, TokenStatus.WAITING), key=lambda t: t.sequence_number)
        return waiting if limit is None else waiting[:limit]

    def count_waiting(self, queue: str) -> int:
        with self._locked():
            return len(self._in_queue(queue, TokenStatus.WAITING))

    def find_most_recent(self, queue: str) -> Token | None:
        with self._locked():
            tokens = self._in_queue(queue)
        if not tokens:
            return None
        return max(tokens, key=lambda t: (t.created_at, t.sequence_number))

    def find_recently_served(self, queue: str, limit: int = 5) -> list[Token]:
        with self._locked():
            served = self._in_queue(queue, TokenStatus.SERVED)
        served.sort(key=lambda t: (t.updated_at, t.sequence_number), reverse=True)
        return served[:limit]

    def close(self) -> None:
        with self._locked():
            self._tokens.clear()
            self._sequences.clear()
