"""Error taxonomy and the shared error envelope.

Every failure that reaches a caller carries a stable `code`. The HTTP layer,
the CLI and the event watcher all render errors through `ErrorResponse` so
messages stay consistent across surfaces.

Validation and transition errors are final: retrying does not change the
outcome. `StoreUnavailable` (and its `AllocationUnavailable` subclass) are
transient; the stores retry them a bounded number of times before letting
them escape.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any


@dataclass(frozen=True)
class ErrorResponse:
    code: str
    message: str

    def to_message(self, *, details: dict[str, Any] | None = None) -> dict[str, Any]:
        msg: dict[str, Any] = {"type": "error", "code": self.code, "message": self.message}
        if details:
            msg["details"] = details
        return msg


class TokenError(Exception):
    """Base class for all errors raised by the token core."""

    code = "internal_error"
    retryable = False

    def to_response(self) -> ErrorResponse:
        return ErrorResponse(self.code, str(self) or self.code)


class ValidationError(TokenError):
    code = "validation_error"


class VerificationRequired(TokenError):
    """Submission needs a valid OTP verification handle."""

    code = "verification_required"


class NotFound(TokenError):
    code = "not_found"


class InvalidTransition(TokenError):
    code = "invalid_transition"


class StoreUnavailable(TokenError):
    code = "store_unavailable"
    retryable = True


class AllocationUnavailable(StoreUnavailable):
    code = "allocation_unavailable"
