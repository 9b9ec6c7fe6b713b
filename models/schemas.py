"""
Core data models for the Integration Bridge.
These are the universal types shared across ingress, queue and delivery.
"""
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ──────────────────────────────────────────────────────────────
#  Enums
# ──────────────────────────────────────────────────────────────

class AttemptState(str, Enum):
    PENDING = "pending"
    IN_FLIGHT = "in_flight"
    COMPLETED_SUCCESS = "completed_success"
    COMPLETED_FAILURE = "completed_failure"


class AttemptOutcome(str, Enum):
    DELIVERED = "delivered"
    REQUEST_TIMEOUT = "request_timeout"
    RESPONSE_TIMEOUT = "response_timeout"
    TRANSPORT_ERROR = "transport_error"
    INVALID_MESSAGE = "invalid_message"
    INTERNAL_ERROR = "internal_error"


# ──────────────────────────────────────────────────────────────
#  Message: one inbound notification bound for one target
# ──────────────────────────────────────────────────────────────

class Message(BaseModel):
    """A unit of work. Immutable once built.

    Construction does not enforce non-empty fields; the ingress validates
    before building and the dispatch queue re-checks at dequeue time.
    """
    model_config = ConfigDict(frozen=True)

    target: str = ""
    body: str = ""
    message_id: str = Field(default_factory=lambda: f"msg_{uuid.uuid4().hex[:12]}")
    received_at: datetime = Field(default_factory=_utcnow)

    @property
    def is_valid(self) -> bool:
        return (
            isinstance(self.target, str) and bool(self.target.strip())
            and isinstance(self.body, str) and bool(self.body)
        )


# ──────────────────────────────────────────────────────────────
#  DeliveryAttempt: transient record of one forwarding attempt
# ──────────────────────────────────────────────────────────────

class DeliveryAttempt(BaseModel):
    attempt_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    message_id: str = ""
    target: str = ""
    state: AttemptState = AttemptState.PENDING
    outcome: Optional[AttemptOutcome] = None
    status_code: Optional[int] = None
    error: str = ""
    latency_ms: float = 0.0
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @classmethod
    def for_message(cls, message: Any) -> DeliveryAttempt:
        return cls(
            message_id=getattr(message, "message_id", "") or "",
            target=getattr(message, "target", "") or "",
        )

    @property
    def is_complete(self) -> bool:
        return self.state in (AttemptState.COMPLETED_SUCCESS, AttemptState.COMPLETED_FAILURE)

    @property
    def succeeded(self) -> bool:
        return self.state == AttemptState.COMPLETED_SUCCESS

    def mark_in_flight(self) -> None:
        self.state = AttemptState.IN_FLIGHT
        self.started_at = _utcnow()

    def complete(
        self,
        outcome: AttemptOutcome,
        status_code: Optional[int] = None,
        error: str = "",
        latency_ms: float = 0.0,
    ) -> DeliveryAttempt:
        self.outcome = outcome
        self.state = (
            AttemptState.COMPLETED_SUCCESS
            if outcome == AttemptOutcome.DELIVERED
            else AttemptState.COMPLETED_FAILURE
        )
        self.status_code = status_code
        self.error = error
        self.latency_ms = round(latency_ms, 1)
        self.completed_at = _utcnow()
        return self
