"""Outbound notification intents.

Intents are fire-and-forget from the core's point of view. Each one carries a
stable idempotency key so a re-emission (retry, restart) is deduplicated by
the outbox instead of reaching the egress channel twice.
"""

from __future__ import annotations
from datetime import datetime
from typing import Literal, Optional, Protocol, Union
from pydantic import BaseModel
from errors import MatchingError


class NotifyOffer(BaseModel):
    kind: Literal["notify_offer"] = "notify_offer"
    request_id: str
    volunteer_id: str
    round: int
    expires_at: Optional[datetime] = None

    def idempotency_key(self) -> str:
        return f"offer:{self.request_id}:{self.volunteer_id}:{self.round}"


class NotifyAssignmentConfirmed(BaseModel):
    kind: Literal["notify_assignment_confirmed"] = "notify_assignment_confirmed"
    request_id: str
    volunteer_id: str

    def idempotency_key(self) -> str:
        return f"confirmed:{self.request_id}:{self.volunteer_id}"


class NotifyEscalation(BaseModel):
    kind: Literal["notify_escalation"] = "notify_escalation"
    request_id: str
    offer_rounds: int

    def idempotency_key(self) -> str:
        return f"escalation:{self.request_id}"


class NotifyOperator(BaseModel):
    """Error surfaced to the operator channel (not found, invalid transition, ...)."""

    kind: Literal["notify_operator"] = "notify_operator"
    code: str
    detail: str
    entity_id: Optional[str] = None
    correlation_id: str

    def idempotency_key(self) -> str:
        return f"operator:{self.code}:{self.entity_id}:{self.correlation_id}"

    @classmethod
    def from_error(cls, error: MatchingError, correlation_id: str) -> "NotifyOperator":
        return cls(code=error.code, detail=str(error), entity_id=error.entity_id, correlation_id=correlation_id)


Intent = Union[NotifyOffer, NotifyAssignmentConfirmed, NotifyEscalation, NotifyOperator]


class EgressPort(Protocol):
    """Sink for outbound intents. Returns False when the intent was a duplicate."""

    def publish(self, intent: Intent) -> bool:
        ...
