from __future__ import annotations

# The Queue Engine is the *authoritative brain* of the token system.
#
# It owns the token lifecycle (waiting -> serving -> served) and the
# "at most one serving token per queue" rule. It talks to three injected
# collaborators: a TokenStore, a NotificationRelay and an OtpGate. Nothing
# here knows about HTTP, MQTT or SQL.
#
# Every write runs under the queue's engine lock *and* inside one store
# transaction. The lock orders writers inside this process; the transaction
# makes the write all-or-nothing and serializes writers across processes.
# Events are published after commit, still under the lock, so one token's
# events leave this process in the order they happened.

import logging
import threading
from contextlib import contextmanager
from datetime import datetime
from typing import Callable, Iterator

from .allocator import SequenceAllocator
from .config import ServiceCatalog
from .errors import InvalidTransition, NotFound, StoreUnavailable
from .models import QueueBoard, Token, TokenDraft, TokenEvent, TokenStatus, utcnow
from .otp import OpenGate, OtpGate
from .relay import NotificationRelay, NullRelay
from .store import TokenStore, validate_draft

logger = logging.getLogger(__name__)

SERVE_NEXT_ATTEMPTS = 3


class QueueEngine:
    """Core business logic (testable without HTTP or MQTT)."""

    def __init__(
        self,
        store: TokenStore,
        *,
        catalog: ServiceCatalog | None = None,
        relay: NotificationRelay | None = None,
        otp: OtpGate | None = None,
        clock: Callable[[], datetime] = utcnow,
        lock_timeout: float = 5.0,
        recent_limit: int = 5,
    ) -> None:
        self.store = store
        self.catalog = catalog or ServiceCatalog()
        self.allocator = SequenceAllocator(store)
        self.relay: NotificationRelay = relay or NullRelay()
        self.otp: OtpGate = otp or OpenGate()
        self.lock_timeout = lock_timeout
        self.recent_limit = recent_limit
        self._clock = clock

        self._locks = {q: threading.Lock() for q in self.catalog.queues}

    @property
    def queues(self) -> tuple[str, ...]:
        return self.catalog.queues

    # -------------------- helpers --------------------

    def _queue(self, queue: str) -> str:
        return self.catalog.require_queue((queue or "").strip().lower())

    @contextmanager
    def _locked(self, queue: str) -> Iterator[None]:
        lock = self._locks.setdefault(queue, threading.Lock())
        if not lock.acquire(timeout=self.lock_timeout):
            raise StoreUnavailable(f"{queue} queue is busy, try again")
        try:
            yield
        finally:
            lock.release()

    def _publish(self, events: list[TokenEvent]) -> None:
        for event in events:
            try:
                self.relay.publish(event.queue, event)
            except Exception:
                # The change is committed; a failed broadcast must not undo it.
                logger.exception("could not publish %s for %s", event.kind.value, event.token.label)

    def _promote(self, target: Token) -> tuple[Token, list[TokenEvent]]:
        """Make `target` the serving token. Caller holds the lock and a transaction."""
        if target.status is TokenStatus.SERVED:
            raise InvalidTransition(f"token {target.label} has already been served")
        if target.status is TokenStatus.SERVING:
            return target, []

        now = self._clock()
        events: list[TokenEvent] = []

        current = self.store.find_serving(target.queue)
        if current is not None:
            # served_at keeps the time the token started being served.
            demoted = self.store.update_status(current.id, TokenStatus.SERVED, now, expected=TokenStatus.SERVING)
            events.append(TokenEvent.status_changed(demoted, TokenStatus.SERVING))

        promoted = self.store.update_status(target.id, TokenStatus.SERVING, now, expected=TokenStatus.WAITING)
        events.append(TokenEvent.status_changed(promoted, TokenStatus.WAITING))
        return promoted, events

    # -------------------- commands --------------------

    def submit_token(
        self,
        queue: str,
        service: str,
        name: str,
        mobile: str,
        *,
        verification: str | None = None,
    ) -> Token:
        """Issue the next token in `queue`.

        Raises:
            ValidationError: unknown queue/service, missing field or bad mobile.
            VerificationRequired: OTP is enabled and `verification` isn't valid.
            AllocationUnavailable / StoreUnavailable: the store is unreachable.
        """
        draft = validate_draft(
            TokenDraft(queue=(queue or "").lower(), service=service, customer_name=name, customer_mobile=mobile)
        )
        self.catalog.require_service(draft.queue, draft.service)
        self.otp.claim(draft.customer_mobile, verification)

        try:
            with self._locked(draft.queue):
                with self.store.transaction():
                    n = self.allocator.next(draft.queue)
                    token = self.store.insert(draft, n, self._clock())
                self.otp.consume(verification)
                self._publish([TokenEvent.issued(token)])
        except BaseException:
            # Hands the claim back unless the token was already committed.
            self.otp.release(verification)
            raise

        logger.info("issued %s (%s) in %s queue", token.label, token.service, token.queue)
        return token

    def serve_specific(self, token_id: str) -> Token:
        """Call `token_id` to the chair, finishing whoever was being served.

        Raises:
            NotFound: no such token.
            InvalidTransition: the token has already been served.
        """
        token = self.find_by_id(token_id)
        with self._locked(token.queue):
            with self.store.transaction():
                target = self.store.find_by_id(token_id)
                if target is None:
                    raise NotFound(f"token {token_id} not found")
                promoted, events = self._promote(target)
            self._publish(events)

        if events:
            logger.info("now serving %s in %s queue", promoted.label, promoted.queue)
        return promoted

    def serve_next(self, queue: str) -> Token | None:
        """Serve the waiting token with the lowest number.

        Returns None when nobody is waiting; nothing is changed in that case.
        """
        queue = self._queue(queue)
        with self._locked(queue):
            for attempt in range(SERVE_NEXT_ATTEMPTS):
                try:
                    with self.store.transaction():
                        waiting = self.store.find_waiting(queue, limit=1)
                        if not waiting:
                            logger.info("serve-next on %s: no tokens waiting", queue)
                            return None
                        promoted, events = self._promote(waiting[0])
                    break
                except InvalidTransition:
                    # Another process served the head first; pick the new head.
                    if attempt + 1 == SERVE_NEXT_ATTEMPTS:
                        raise
                    logger.info("serve-next on %s lost the head to another desk, retrying", queue)
            self._publish(events)

        logger.info("now serving %s in %s queue", promoted.label, promoted.queue)
        return promoted

    # -------------------- queries --------------------

    def find_by_id(self, token_id: str) -> Token:
        token = self.store.find_by_id(token_id)
        if token is None:
            raise NotFound(f"token {token_id} not found")
        return token

    def current_serving(self, queue: str) -> Token | None:
        return self.store.find_serving(self._queue(queue))

    def most_recent_issued(self, queue: str) -> Token | None:
        return self.store.find_most_recent(self._queue(queue))

    def find_waiting(self, queue: str) -> list[Token]:
        return self.store.find_waiting(self._queue(queue))

    def board(self, queue: str) -> QueueBoard:
        queue = self._queue(queue)
        return QueueBoard(
            queue=queue,
            serving=self.store.find_serving(queue),
            last_issued=self.store.find_most_recent(queue),
            waiting_count=self.store.count_waiting(queue),
            recently_served=self.store.find_recently_served(queue, self.recent_limit),
        )
