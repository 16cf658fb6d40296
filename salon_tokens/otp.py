from __future__ import annotations

# Mobile verification gate for token submission.
#
# The Queue Engine only asks one question: "may this mobile submit now?".
# `OpenGate` always says yes. `OtpIssuer` keeps one-time codes in memory and
# trades a correct code for a short-lived verification handle.
#
# A submission claims the handle before the token is written. Claiming takes
# the handle out of circulation, so a second submission with the same handle
# fails even while the first is still in flight. The engine then either
# consumes the claim (token issued) or releases it (write failed).
#
# Delivering the code (SMS etc.) is the `sender` callable's job.

import logging
import secrets
import threading
import time
from dataclasses import dataclass
from typing import Callable, Protocol

from .errors import ValidationError, VerificationRequired
from .store import MOBILE_RE

logger = logging.getLogger(__name__)

CodeSender = Callable[[str, str], None]


class OtpGate(Protocol):
    enabled: bool

    def claim(self, mobile: str, verification: str | None) -> None: ...

    def release(self, verification: str | None) -> None: ...

    def consume(self, verification: str | None) -> None: ...

    def close(self) -> None: ...


class OpenGate:
    """No verification: every submission passes."""

    enabled = False

    def claim(self, mobile: str, verification: str | None) -> None:
        return None

    def release(self, verification: str | None) -> None:
        return None

    def consume(self, verification: str | None) -> None:
        return None

    def close(self) -> None:
        return None


@dataclass(frozen=True)
class OtpChallenge:
    mobile: str
    code: str
    expires_in: float


@dataclass(frozen=True)
class Verification:
    handle: str
    mobile: str
    expires_in: float


def _mask(mobile: str) -> str:
    return "*" * max(0, len(mobile) - 4) + mobile[-4:]


def log_sender(mobile: str, code: str) -> None:
    logger.info("OTP issued for %s (no SMS sender configured)", _mask(mobile))


class OtpIssuer:
    enabled = True

    def __init__(
        self,
        *,
        ttl_seconds: float = 300.0,
        sender: CodeSender = log_sender,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be > 0")
        self.ttl_seconds = ttl_seconds
        self._sender = sender
        self._clock = clock

        self._lock = threading.Lock()
        self._codes: dict[str, tuple[str, float]] = {}  # mobile -> (code, expires_at)
        self._verified: dict[str, tuple[str, float]] = {}  # handle -> (mobile, expires_at)
        self._claimed: dict[str, tuple[str, float]] = {}  # in-flight submissions

    def _purge(self, now: float) -> None:
        for table in (self._codes, self._verified):
            for key in [k for k, (_, exp) in table.items() if exp <= now]:
                del table[key]

    def send_code(self, mobile: str) -> OtpChallenge:
        mobile = (mobile or "").strip()
        if not MOBILE_RE.match(mobile):
            raise ValidationError("mobile must be exactly 10 digits")

        code = f"{secrets.randbelow(900000) + 100000}"
        with self._lock:
            now = self._clock()
            self._purge(now)
            self._codes[mobile] = (code, now + self.ttl_seconds)
        self._sender(mobile, code)
        return OtpChallenge(mobile=mobile, code=code, expires_in=self.ttl_seconds)

    def verify(self, mobile: str, code: str) -> Verification:
        mobile = (mobile or "").strip()
        with self._lock:
            now = self._clock()
            self._purge(now)
            pending = self._codes.get(mobile)
            if pending is None or not secrets.compare_digest(pending[0], (code or "").strip()):
                raise VerificationRequired("invalid or expired code")
            del self._codes[mobile]

            handle = secrets.token_urlsafe(16)
            self._verified[handle] = (mobile, now + self.ttl_seconds)
        logger.info("mobile %s verified", _mask(mobile))
        return Verification(handle=handle, mobile=mobile, expires_in=self.ttl_seconds)

    def claim(self, mobile: str, verification: str | None) -> None:
        """Check `verification` belongs to `mobile` and reserve it in one step.

        Raises:
            VerificationRequired: missing, expired, already claimed or issued
                for another mobile.
        """
        if not verification:
            raise VerificationRequired("mobile verification required")
        with self._lock:
            self._purge(self._clock())
            entry = self._verified.get(verification)
            if entry is None or entry[0] != (mobile or "").strip():
                raise VerificationRequired("verification is invalid or expired")
            self._claimed[verification] = self._verified.pop(verification)

    def release(self, verification: str | None) -> None:
        """Return a claimed handle so the customer can retry."""
        if not verification:
            return
        with self._lock:
            entry = self._claimed.pop(verification, None)
            if entry is not None and entry[1] > self._clock():
                self._verified[verification] = entry

    def consume(self, verification: str | None) -> None:
        if not verification:
            return
        with self._lock:
            self._claimed.pop(verification, None)
            self._verified.pop(verification, None)

    def close(self) -> None:
        with self._lock:
            self._codes.clear()
            self._verified.clear()
            self._claimed.clear()
