"""Request and volunteer state machines.

Every status change in the core goes through ``transition_request`` or
``transition_volunteer``; both return a new record and raise
InvalidTransition for any edge not listed below.
"""

from __future__ import annotations
from dataclasses import replace
from datetime import datetime
from typing import Dict, FrozenSet, Sequence
from errors import InvalidTransition
from state.models import Request, RequestStatus, Volunteer, VolunteerStatus

REQUEST_TRANSITIONS: Dict[RequestStatus, FrozenSet[RequestStatus]] = {
    RequestStatus.OPEN: frozenset({
        RequestStatus.MATCHING,
        RequestStatus.CANCELLED,
        RequestStatus.UNMATCHED_ESCALATED,
    }),
    RequestStatus.MATCHING: frozenset({
        RequestStatus.ASSIGNED,
        RequestStatus.OPEN,
        RequestStatus.CANCELLED,
    }),
    RequestStatus.ASSIGNED: frozenset({
        RequestStatus.FULFILLED,
        RequestStatus.CANCELLED,
    }),
    RequestStatus.FULFILLED: frozenset(),
    RequestStatus.CANCELLED: frozenset(),
    RequestStatus.UNMATCHED_ESCALATED: frozenset(),
}

TERMINAL_REQUEST_STATES = frozenset(s for s, targets in REQUEST_TRANSITIONS.items() if not targets)

VOLUNTEER_TRANSITIONS: Dict[VolunteerStatus, FrozenSet[VolunteerStatus]] = {
    VolunteerStatus.OFFLINE: frozenset({VolunteerStatus.AVAILABLE}),
    VolunteerStatus.AVAILABLE: frozenset({VolunteerStatus.RESERVED, VolunteerStatus.OFFLINE}),
    VolunteerStatus.RESERVED: frozenset({
        VolunteerStatus.BUSY,
        VolunteerStatus.AVAILABLE,
        VolunteerStatus.OFFLINE,
    }),
    VolunteerStatus.BUSY: frozenset({VolunteerStatus.AVAILABLE, VolunteerStatus.OFFLINE}),
}


def is_terminal(status: RequestStatus) -> bool:
    return status in TERMINAL_REQUEST_STATES


def can_transition(current: RequestStatus, target: RequestStatus) -> bool:
    return target in REQUEST_TRANSITIONS[current]


def transition_request(request: Request, target: RequestStatus, now: datetime, **changes) -> Request:
    if not can_transition(request.status, target):
        raise InvalidTransition(request.id, request.status.value, target.value)
    return replace(request, status=target, last_transition_at=now, **changes)


def transition_request_path(request: Request, path: Sequence[RequestStatus], now: datetime, **changes) -> Request:
    """Walk several edges in one record update; each edge is validated."""
    current = request
    for target in path:
        current = transition_request(current, target, now)
    return replace(current, **changes) if changes else current


def transition_volunteer(volunteer: Volunteer, target: VolunteerStatus, **changes) -> Volunteer:
    if target not in VOLUNTEER_TRANSITIONS[volunteer.status]:
        raise InvalidTransition(volunteer.id, volunteer.status.value, target.value)
    return replace(volunteer, status=target, **changes)
