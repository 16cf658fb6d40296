"""Request and response models for the HTTP API."""

from __future__ import annotations

from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from .models import QueueBoard, Token


class SubmitTokenRequest(BaseModel):
    """Customer submission from the kiosk/form."""

    queue: str = Field(..., description="Queue category, e.g. 'male' or 'female'")
    service: str = Field(..., description="Service label offered by that queue")
    name: str = Field(..., description="Customer name")
    mobile: str = Field(..., description="10-digit mobile number")
    verification: Optional[str] = Field(None, description="Handle returned by /otp/verify")


class TokenOut(BaseModel):
    id: str
    queue: str
    sequence_number: int
    label: str
    customer_name: str
    customer_mobile: str
    service: str
    status: str
    created_at: datetime
    updated_at: datetime
    served_at: Optional[datetime] = None
    version: int

    @classmethod
    def from_token(cls, token: Token) -> TokenOut:
        return cls(
            id=token.id,
            queue=token.queue,
            sequence_number=token.sequence_number,
            label=token.label,
            customer_name=token.customer_name,
            customer_mobile=token.customer_mobile,
            service=token.service,
            status=token.status.value,
            created_at=token.created_at,
            updated_at=token.updated_at,
            served_at=token.served_at,
            version=token.version,
        )


class QueueBoardOut(BaseModel):
    queue: str
    serving: Optional[TokenOut] = None
    last_issued: Optional[TokenOut] = None
    waiting_count: int
    recently_served: List[TokenOut] = Field(default_factory=list)

    @classmethod
    def from_board(cls, board: QueueBoard) -> QueueBoardOut:
        return cls(
            queue=board.queue,
            serving=TokenOut.from_token(board.serving) if board.serving else None,
            last_issued=TokenOut.from_token(board.last_issued) if board.last_issued else None,
            waiting_count=board.waiting_count,
            recently_served=[TokenOut.from_token(t) for t in board.recently_served],
        )


class CatalogOut(BaseModel):
    queues: Dict[str, List[str]]


class OtpSendRequest(BaseModel):
    mobile: str


class OtpSendResponse(BaseModel):
    mobile: str
    expires_in: float
    code: Optional[str] = Field(None, description="Only present when codes are exposed for development")


class OtpVerifyRequest(BaseModel):
    mobile: str
    code: str


class OtpVerifyResponse(BaseModel):
    verification: str
    expires_in: float
