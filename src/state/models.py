from __future__ import annotations
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, Dict, Any, FrozenSet, Iterable, Mapping
import uuid

# Core domain records. Records are frozen: every change goes through
# dataclasses.replace and is written back with compare-and-swap.

def _now() -> datetime:
    return datetime.now(timezone.utc)


class VolunteerStatus(str, Enum):
    AVAILABLE = "available"
    RESERVED = "reserved"
    BUSY = "busy"
    OFFLINE = "offline"


class RequestStatus(str, Enum):
    OPEN = "open"
    MATCHING = "matching"
    ASSIGNED = "assigned"
    FULFILLED = "fulfilled"
    CANCELLED = "cancelled"
    UNMATCHED_ESCALATED = "unmatched_escalated"


class HelpKind(str, Enum):
    # offered by volunteers
    DRIVER = "driver"
    USEFUL_CONTACT = "useful_contact"
    COLLECTING_HUMANITARIAN_HELP = "collecting_humanitarian_help"
    # needed by requesters
    NEED_EVACUATION = "need_evacuation"
    NEED_HUMANITARIAN_HELP = "need_humanitarian_help"


OFFERED_HELP_KINDS = frozenset({HelpKind.DRIVER, HelpKind.USEFUL_CONTACT, HelpKind.COLLECTING_HUMANITARIAN_HELP})
NEEDED_HELP_KINDS = frozenset({HelpKind.NEED_EVACUATION, HelpKind.NEED_HUMANITARIAN_HELP})

HELP_KIND_TAGS: Dict[HelpKind, FrozenSet[str]] = {
    HelpKind.DRIVER: frozenset({"evacuation"}),
    HelpKind.USEFUL_CONTACT: frozenset({"contacts"}),
    HelpKind.COLLECTING_HUMANITARIAN_HELP: frozenset({"humanitarian"}),
    HelpKind.NEED_EVACUATION: frozenset({"evacuation"}),
    HelpKind.NEED_HUMANITARIAN_HELP: frozenset({"humanitarian"}),
}


def normalize_tags(tags: Iterable[str], help_kinds: Iterable[HelpKind] = ()) -> FrozenSet[str]:
    out = {t.strip().lower() for t in tags if t and t.strip()}
    for kind in help_kinds:
        out |= HELP_KIND_TAGS[HelpKind(kind)]
    return frozenset(out)


@dataclass(frozen=True)
class Contact:
    full_name: Optional[str] = None
    phone_numbers: Optional[str] = None
    address: Optional[str] = None
    comments: Optional[str] = None


@dataclass(frozen=True)
class Volunteer:
    id: str
    tags: FrozenSet[str]
    status: VolunteerStatus = VolunteerStatus.OFFLINE
    current_assignment: Optional[str] = None
    registered_at: datetime = field(default_factory=_now)
    help_kinds: FrozenSet[HelpKind] = frozenset()
    contact: Optional[Contact] = None
    # asked to go offline while reserved or busy; applied when released
    offline_requested: bool = False

    def is_available(self) -> bool:
        return self.status == VolunteerStatus.AVAILABLE


@dataclass(frozen=True)
class Request:
    id: str
    required_tags: FrozenSet[str]
    priority: int = 0
    status: RequestStatus = RequestStatus.OPEN
    assigned_volunteer_id: Optional[str] = None
    created_at: datetime = field(default_factory=_now)
    last_transition_at: datetime = field(default_factory=_now)
    offer_rounds: int = 0
    # volunteer_id -> end of cool-down; treat as read-only, replace to change
    excluded_until: Mapping[str, datetime] = field(default_factory=dict)
    offer_expires_at: Optional[datetime] = None
    help_kind: Optional[HelpKind] = None
    contact: Optional[Contact] = None

    def is_open(self) -> bool:
        return self.status == RequestStatus.OPEN

    def is_excluded(self, volunteer_id: str, now: datetime) -> bool:
        until = self.excluded_until.get(volunteer_id)
        return until is not None and now < until


@dataclass(frozen=True)
class MatchDecision:
    request_id: str
    volunteer_id: str
    decided_at: datetime = field(default_factory=_now)


@dataclass
class EventLogEntry:
    id: str
    timestamp: datetime
    correlation_id: str
    actor: str
    kind: str  # volunteer_registered, match_reserved, offer_settled, request_escalated, ...
    data: Dict[str, Any]


@dataclass
class MessageOutboxItem:
    id: str
    kind: str  # notify_offer | notify_assignment_confirmed | notify_escalation | notify_operator
    payload: Dict[str, Any]
    idempotency_key: str
    created_at: datetime = field(default_factory=_now)
    attempts: int = 0
    delivered_at: Optional[datetime] = None
    last_error: Optional[str] = None


# Store keys: volunteers and requests share one keyspace.

VOLUNTEER_PREFIX = "volunteer:"
REQUEST_PREFIX = "request:"


def volunteer_key(volunteer_id: str) -> str:
    return f"{VOLUNTEER_PREFIX}{volunteer_id}"


def request_key(request_id: str) -> str:
    return f"{REQUEST_PREFIX}{request_id}"


# JSON round-trip used by the Postgres store and the HTTP views.

def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _dt(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _contact_from(data: Optional[dict]) -> Optional[Contact]:
    return Contact(**data) if data else None


def volunteer_to_dict(v: Volunteer) -> Dict[str, Any]:
    return {
        "id": v.id,
        "tags": sorted(v.tags),
        "status": v.status.value,
        "current_assignment": v.current_assignment,
        "registered_at": _iso(v.registered_at),
        "help_kinds": sorted(k.value for k in v.help_kinds),
        "contact": asdict(v.contact) if v.contact else None,
        "offline_requested": v.offline_requested,
    }


def volunteer_from_dict(data: Dict[str, Any]) -> Volunteer:
    return Volunteer(
        id=data["id"],
        tags=frozenset(data.get("tags") or ()),
        status=VolunteerStatus(data["status"]),
        current_assignment=data.get("current_assignment"),
        registered_at=_dt(data.get("registered_at")) or _now(),
        help_kinds=frozenset(HelpKind(k) for k in data.get("help_kinds") or ()),
        contact=_contact_from(data.get("contact")),
        offline_requested=bool(data.get("offline_requested", False)),
    )


def request_to_dict(r: Request) -> Dict[str, Any]:
    return {
        "id": r.id,
        "required_tags": sorted(r.required_tags),
        "priority": r.priority,
        "status": r.status.value,
        "assigned_volunteer_id": r.assigned_volunteer_id,
        "created_at": _iso(r.created_at),
        "last_transition_at": _iso(r.last_transition_at),
        "offer_rounds": r.offer_rounds,
        "excluded_until": {vid: _iso(until) for vid, until in r.excluded_until.items()},
        "offer_expires_at": _iso(r.offer_expires_at),
        "help_kind": r.help_kind.value if r.help_kind else None,
        "contact": asdict(r.contact) if r.contact else None,
    }


def request_from_dict(data: Dict[str, Any]) -> Request:
    return Request(
        id=data["id"],
        required_tags=frozenset(data.get("required_tags") or ()),
        priority=int(data.get("priority", 0)),
        status=RequestStatus(data["status"]),
        assigned_volunteer_id=data.get("assigned_volunteer_id"),
        created_at=_dt(data.get("created_at")) or _now(),
        last_transition_at=_dt(data.get("last_transition_at")) or _now(),
        offer_rounds=int(data.get("offer_rounds", 0)),
        excluded_until={vid: _dt(until) for vid, until in (data.get("excluded_until") or {}).items()},
        offer_expires_at=_dt(data.get("offer_expires_at")),
        help_kind=HelpKind(data["help_kind"]) if data.get("help_kind") else None,
        contact=_contact_from(data.get("contact")),
    )


def record_to_dict(record: Any) -> Dict[str, Any]:
    if isinstance(record, Volunteer):
        return {"kind": "volunteer", **volunteer_to_dict(record)}
    if isinstance(record, Request):
        return {"kind": "request", **request_to_dict(record)}
    raise TypeError(f"unsupported record type {type(record).__name__}")


def record_from_dict(data: Dict[str, Any]) -> Any:
    body = dict(data)
    kind = body.pop("kind", None)
    if kind == "volunteer":
        return volunteer_from_dict(body)
    if kind == "request":
        return request_from_dict(body)
    raise ValueError(f"unknown record kind {kind!r}")

# Utility factories

def new_id() -> str:
    return uuid.uuid4().hex
