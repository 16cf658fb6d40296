"""Durable token store on SQLAlchemy.

One `tokens` table holds every queue, discriminated by the `queue` column.
Sequence numbers come from a `queue_sequences` counter row per queue that is
incremented with a single UPDATE inside the caller's transaction, so the
number and the token row commit together.

Concurrency guards:
- SQLite connections open write transactions with `BEGIN IMMEDIATE`, which
  serializes writers across processes; the busy timeout bounds the wait.
- On PostgreSQL the counter UPDATE takes a row lock held until commit.
- `version` is the mapper's version column, so an UPDATE of a token that
  changed underneath us fails instead of overwriting it.
- A partial unique index allows at most one `serving` row per queue.
"""

from __future__ import annotations

import logging
import threading
import uuid
from contextlib import contextmanager, nullcontext
from datetime import datetime, timezone
from typing import Callable, ContextManager, Iterable, Iterator, TypeVar

from sqlalchemy import (
    DateTime,
    Index,
    Integer,
    String,
    UniqueConstraint,
    create_engine,
    event,
    func,
    select,
    text,
    update,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError, SQLAlchemyError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, sessionmaker
from sqlalchemy.orm.exc import StaleDataError
from sqlalchemy.pool import StaticPool
from sqlalchemy.types import TypeDecorator

from .errors import InvalidTransition, NotFound, StoreUnavailable, TokenError, ValidationError
from .models import Token, TokenDraft, TokenStatus, utcnow
from .retry import call_with_retries
from .store import check_transition, validate_draft

logger = logging.getLogger(__name__)

T = TypeVar("T")


class UtcDateTime(TypeDecorator):
    """Stores naive UTC, hands back timezone-aware UTC."""

    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            raise ValueError("naive datetimes are not accepted")
        return value.astimezone(timezone.utc).replace(tzinfo=None)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return value.replace(tzinfo=timezone.utc)


class Base(DeclarativeBase):
    pass


class TokenRow(Base):
    __tablename__ = "tokens"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    queue: Mapped[str] = mapped_column(String(32), nullable=False)
    sequence_number: Mapped[int] = mapped_column(Integer, nullable=False)
    customer_name: Mapped[str] = mapped_column(String(200), nullable=False)
    customer_mobile: Mapped[str] = mapped_column(String(10), nullable=False)
    service: Mapped[str] = mapped_column(String(100), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False)
    created_at: Mapped[datetime] = mapped_column(UtcDateTime, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UtcDateTime, nullable=False)
    served_at: Mapped[datetime | None] = mapped_column(UtcDateTime, nullable=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        UniqueConstraint("queue", "sequence_number", name="uq_tokens_queue_sequence"),
        Index("ix_tokens_queue_status_sequence", "queue", "status", "sequence_number"),
        Index(
            "uq_tokens_one_serving_per_queue",
            "queue",
            unique=True,
            sqlite_where=text("status = 'serving'"),
            postgresql_where=text("status = 'serving'"),
        ),
    )

    def to_token(self) -> Token:
        return Token(
            id=self.id,
            queue=self.queue,
            sequence_number=self.sequence_number,
            customer_name=self.customer_name,
            customer_mobile=self.customer_mobile,
            service=self.service,
            status=TokenStatus(self.status),
            created_at=self.created_at,
            updated_at=self.updated_at,
            served_at=self.served_at,
            version=self.version,
        )


class QueueSequenceRow(Base):
    __tablename__ = "queue_sequences"

    queue: Mapped[str] = mapped_column(String(32), primary_key=True)
    last_value: Mapped[int] = mapped_column(Integer, nullable=False, default=0)


def _is_memory_sqlite(url: str) -> bool:
    return url in ("sqlite://", "sqlite:///:memory:")


def make_engine(url: str, *, timeout: float = 5.0) -> Engine:
    if url.startswith("sqlite"):
        kwargs: dict = {"connect_args": {"timeout": timeout, "check_same_thread": False}}
        if _is_memory_sqlite(url):
            kwargs["poolclass"] = StaticPool
        engine = create_engine(url, **kwargs)

        # pysqlite's own BEGIN handling is disabled so every transaction can
        # start as a write transaction.
        @event.listens_for(engine, "connect")
        def _disable_pysqlite_begin(dbapi_connection, connection_record):
            dbapi_connection.isolation_level = None

        @event.listens_for(engine, "begin")
        def _begin_immediate(conn):
            conn.exec_driver_sql("BEGIN IMMEDIATE")

        return engine

    connect_args = {}
    if url.startswith("postgresql"):
        connect_args["options"] = f"-c statement_timeout={int(timeout * 1000)}"
    return create_engine(
        url,
        pool_size=5,
        max_overflow=10,
        pool_timeout=timeout,
        pool_recycle=1800,
        pool_pre_ping=True,
        connect_args=connect_args,
    )


def _translate(exc: SQLAlchemyError) -> TokenError | None:
    if isinstance(exc, StaleDataError):
        return InvalidTransition("token was modified concurrently")
    if isinstance(exc, IntegrityError):
        return StoreUnavailable(f"conflicting concurrent write: {exc.orig}")
    if isinstance(exc, (OperationalError, PoolTimeoutError)):
        return StoreUnavailable(f"database unavailable: {exc}")
    if isinstance(exc, DBAPIError) and exc.connection_invalidated:
        return StoreUnavailable(f"database connection lost: {exc}")
    return None


class SqlTokenStore:
    """TokenStore on a SQLAlchemy engine.

    Transactions are bound to the calling thread: while a thread is inside
    `transaction()`, every store call from that thread joins it.
    """

    def __init__(
        self,
        url: str,
        *,
        timeout: float = 5.0,
        retry_attempts: int = 3,
        retry_backoff: float = 0.05,
        clock: Callable[[], datetime] = utcnow,
        queues: Iterable[str] = (),
        create_schema: bool = True,
    ) -> None:
        self.url = url
        self.retry_attempts = retry_attempts
        self.retry_backoff = retry_backoff
        self._clock = clock

        self.engine = make_engine(url, timeout=timeout)
        self._sessions = sessionmaker(bind=self.engine, autoflush=False, expire_on_commit=False)
        self._local = threading.local()

        # A StaticPool shares one connection, so threads must take turns.
        self._serial = threading.RLock() if _is_memory_sqlite(url) else None

        if create_schema:
            self.create_schema(queues)

    def create_schema(self, queues: Iterable[str] = ()) -> None:
        Base.metadata.create_all(self.engine)
        with self.transaction():
            session = self._current()
            existing = set(session.scalars(select(QueueSequenceRow.queue)))
            for queue in queues:
                if queue not in existing:
                    session.add(QueueSequenceRow(queue=queue, last_value=0))

    def close(self) -> None:
        self.engine.dispose()

    # -------------------- session plumbing --------------------

    def _serialized(self) -> ContextManager:
        return self._serial if self._serial is not None else nullcontext()

    def _current(self) -> Session:
        session = getattr(self._local, "session", None)
        if session is None:
            raise RuntimeError("no active transaction")
        return session

    def _guard(self, fn: Callable[[], T]) -> T:
        try:
            return fn()
        except SQLAlchemyError as e:
            translated = _translate(e)
            if translated is None:
                raise
            raise translated from e

    def _begin(self, session: Session) -> None:
        call_with_retries(
            lambda: self._guard(session.connection),
            attempts=self.retry_attempts,
            backoff=self.retry_backoff,
            what="begin transaction",
        )

    @contextmanager
    def transaction(self) -> Iterator[None]:
        if getattr(self._local, "session", None) is not None:
            yield
            return

        with self._serialized():
            session = self._sessions()
            try:
                self._begin(session)
                self._local.session = session
                try:
                    yield
                    self._guard(session.commit)
                except BaseException:
                    session.rollback()
                    raise
                finally:
                    self._local.session = None
            finally:
                session.close()

    def _read(self, what: str, fn: Callable[[Session], T]) -> T:
        session = getattr(self._local, "session", None)
        if session is not None:
            return self._guard(lambda: fn(session))

        def attempt() -> T:
            with self._serialized(), self._sessions() as s:
                return self._guard(lambda: fn(s))

        return call_with_retries(attempt, attempts=self.retry_attempts, backoff=self.retry_backoff, what=what)

    def _write(self, fn: Callable[[Session], T]) -> T:
        with self.transaction():
            session = self._current()
            return self._guard(lambda: fn(session))

    # -------------------- writes --------------------

    def next_sequence(self, queue: str) -> int:
        def run(s: Session) -> int:
            result = s.execute(
                update(QueueSequenceRow)
                .where(QueueSequenceRow.queue == queue)
                .values(last_value=QueueSequenceRow.last_value + 1)
            )
            if result.rowcount == 0:
                s.add(QueueSequenceRow(queue=queue, last_value=1))
                s.flush()
                return 1
            return s.scalar(select(QueueSequenceRow.last_value).where(QueueSequenceRow.queue == queue))

        return self._write(run)

    def insert(self, draft: TokenDraft, sequence_number: int, created_at: datetime | None = None) -> Token:
        draft = validate_draft(draft)
        if sequence_number < 1:
            raise ValidationError("sequence_number must be positive")
        now = created_at or self._clock()

        def run(s: Session) -> Token:
            row = TokenRow(
                id=str(uuid.uuid4()),
                queue=draft.queue,
                sequence_number=sequence_number,
                customer_name=draft.customer_name,
                customer_mobile=draft.customer_mobile,
                service=draft.service,
                status=TokenStatus.WAITING.value,
                created_at=now,
                updated_at=now,
            )
            s.add(row)
            s.flush()
            return row.to_token()

        return self._write(run)

    def update_status(
        self,
        token_id: str,
        new_status: TokenStatus,
        timestamp: datetime | None = None,
        *,
        expected: TokenStatus | None = None,
    ) -> Token:
        def run(s: Session) -> Token:
            row = s.get(TokenRow, token_id, populate_existing=True, with_for_update=True)
            if row is None:
                raise NotFound(f"token {token_id} not found")
            check_transition(row.to_token(), new_status, expected)

            now = timestamp or self._clock()
            row.status = new_status.value
            row.updated_at = now
            if new_status is TokenStatus.SERVING:
                row.served_at = now
            s.flush()
            return row.to_token()

        return self._write(run)

    # -------------------- reads --------------------

    def find_by_id(self, token_id: str) -> Token | None:
        def run(s: Session) -> Token | None:
            row = s.get(TokenRow, token_id, populate_existing=True)
            return row.to_token() if row is not None else None

        return self._read("find_by_id", run)

    def find_serving(self, queue: str) -> Token | None:
        stmt = select(TokenRow).where(TokenRow.queue == queue, TokenRow.status == TokenStatus.SERVING.value).limit(1)
        return self._read("find_serving", lambda s: _first(s, stmt))

    def find_waiting(self, queue: str, limit: int | None = None) -> list[Token]:
        stmt = (
            select(TokenRow)
            .where(TokenRow.queue == queue, TokenRow.status == TokenStatus.WAITING.value)
            .order_by(TokenRow.sequence_number)
        )
        if limit is not None:
            stmt = stmt.limit(limit)
        return self._read("find_waiting", lambda s: [r.to_token() for r in s.scalars(stmt)])

    def count_waiting(self, queue: str) -> int:
        stmt = (
            select(func.count())
            .select_from(TokenRow)
            .where(TokenRow.queue == queue, TokenRow.status == TokenStatus.WAITING.value)
        )
        return self._read("count_waiting", lambda s: int(s.scalar(stmt) or 0))

    def find_most_recent(self, queue: str) -> Token | None:
        stmt = (
            select(TokenRow)
            .where(TokenRow.queue == queue)
            .order_by(TokenRow.created_at.desc(), TokenRow.sequence_number.desc())
            .limit(1)
        )
        return self._read("find_most_recent", lambda s: _first(s, stmt))

    def find_recently_served(self, queue: str, limit: int = 5) -> list[Token]:
        stmt = (
            select(TokenRow)
            .where(TokenRow.queue == queue, TokenRow.status == TokenStatus.SERVED.value)
            .order_by(TokenRow.updated_at.desc(), TokenRow.sequence_number.desc())
            .limit(limit)
        )
        return self._read("find_recently_served", lambda s: [r.to_token() for r in s.scalars(stmt)])


def _first(session: Session, stmt) -> Token | None:
    row = session.scalars(stmt).first()
    return row.to_token() if row is not None else None
