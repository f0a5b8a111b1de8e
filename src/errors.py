from __future__ import annotations
from typing import Optional


class MatchingError(Exception):
    code = "matching_error"

    def __init__(self, message: str, *, entity_id: Optional[str] = None):
        super().__init__(message)
        self.entity_id = entity_id


class Contention(MatchingError):
    """A compare-and-swap lost against a concurrent writer."""

    code = "contention"


class InvalidTransition(MatchingError):
    code = "invalid_transition"

    def __init__(self, entity_id: str, current: str, target: str):
        super().__init__(f"{entity_id}: cannot move from {current} to {target}", entity_id=entity_id)
        self.current = current
        self.target = target


class NotFound(MatchingError):
    code = "not_found"

    def __init__(self, kind: str, entity_id: str):
        super().__init__(f"{kind} {entity_id} not found", entity_id=entity_id)
        self.kind = kind


class DispatchTimeout(MatchingError):
    code = "timeout"


class RetryExhausted(MatchingError):
    code = "retry_exhausted"


# Errors that are reported to the operator channel instead of recovered locally.
SURFACED = (InvalidTransition, NotFound, RetryExhausted)
