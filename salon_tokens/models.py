from __future__ import annotations

# Domain types shared by the stores, the engine and the surfaces.
#
# Tokens are immutable values. A store never mutates a Token in place: every
# status change produces a fresh Token with a bumped `version`.

import enum
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TokenStatus(str, enum.Enum):
    WAITING = "waiting"
    SERVING = "serving"
    SERVED = "served"


# Linear lifecycle: waiting -> serving -> served.
ALLOWED_TRANSITIONS: dict[TokenStatus, tuple[TokenStatus, ...]] = {
    TokenStatus.WAITING: (TokenStatus.SERVING,),
    TokenStatus.SERVING: (TokenStatus.SERVED,),
    TokenStatus.SERVED: (),
}


def can_transition(current: TokenStatus, new: TokenStatus) -> bool:
    return new in ALLOWED_TRANSITIONS[current]


@dataclass(frozen=True)
class TokenDraft:
    """Customer input for a new token, before a number is assigned."""

    queue: str
    service: str
    customer_name: str
    customer_mobile: str


@dataclass(frozen=True)
class Token:
    id: str
    queue: str
    sequence_number: int
    customer_name: str
    customer_mobile: str
    service: str
    status: TokenStatus
    created_at: datetime
    updated_at: datetime
    served_at: datetime | None = None
    version: int = 1

    @property
    def label(self) -> str:
        """Short display form, e.g. `M3` for the third male token."""
        return f"{self.queue[:1].upper()}{self.sequence_number}"

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        for key in ("created_at", "updated_at", "served_at"):
            value = data[key]
            data[key] = value.isoformat() if value is not None else None
        data["label"] = self.label
        return data


class EventKind(str, enum.Enum):
    ISSUED = "token_issued"
    STATUS_CHANGED = "token_status_changed"


@dataclass(frozen=True)
class TokenEvent:
    """Typed payload handed to the notification relay."""

    kind: EventKind
    token: Token
    previous_status: TokenStatus | None = None

    @property
    def queue(self) -> str:
        return self.token.queue

    @classmethod
    def issued(cls, token: Token) -> TokenEvent:
        return cls(kind=EventKind.ISSUED, token=token)

    @classmethod
    def status_changed(cls, token: Token, previous: TokenStatus) -> TokenEvent:
        return cls(kind=EventKind.STATUS_CHANGED, token=token, previous_status=previous)

    def to_message(self) -> dict[str, Any]:
        return {
            "type": self.kind.value,
            "queue": self.queue,
            "previous_status": self.previous_status.value if self.previous_status else None,
            "token": self.token.to_dict(),
        }


@dataclass(frozen=True)
class QueueBoard:
    """Snapshot of one queue, as shown on the waiting-area display."""

    queue: str
    serving: Token | None
    last_issued: Token | None
    waiting_count: int
    recently_served: list[Token] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "queue": self.queue,
            "serving": self.serving.to_dict() if self.serving else None,
            "last_issued": self.last_issued.to_dict() if self.last_issued else None,
            "waiting_count": self.waiting_count,
            "recently_served": [t.to_dict() for t in self.recently_served],
        }
