from __future__ import annotations
from typing import Annotated, List, Literal, Optional, Union
from pydantic import BaseModel, Field, TypeAdapter, field_validator
from state.models import Contact, HelpKind, NEEDED_HELP_KINDS, OFFERED_HELP_KINDS


class ContactIn(BaseModel):
    full_name: str | None = None
    phone_numbers: str | None = None
    address: str | None = None
    comments: str | None = None

    def to_contact(self) -> Contact:
        return Contact(**self.model_dump())


class _Event(BaseModel):
    # set by the transport; redeliveries with the same id are dropped
    event_id: str | None = None
    # originating messaging-platform user, used as the audit actor
    user_id: str | None = None


class VolunteerRegistered(_Event):
    type: Literal["volunteer_registered"]
    volunteer_id: str
    tags: List[str] = []
    help_kinds: List[HelpKind] = []
    contact: ContactIn | None = None

    @field_validator("help_kinds")
    @classmethod
    def _offered_only(cls, value: List[HelpKind]) -> List[HelpKind]:
        wrong = [k.value for k in value if k not in OFFERED_HELP_KINDS]
        if wrong:
            raise ValueError(f"volunteers cannot offer {wrong}")
        return value


class VolunteerAvailable(_Event):
    type: Literal["volunteer_available"]
    volunteer_id: str


class VolunteerUnavailable(_Event):
    type: Literal["volunteer_unavailable"]
    volunteer_id: str


class RequestOpened(_Event):
    type: Literal["request_opened"]
    request_id: str
    tags: List[str] = []
    priority: int = 0
    help_kind: Optional[HelpKind] = None
    contact: ContactIn | None = None

    @field_validator("help_kind")
    @classmethod
    def _needed_only(cls, value: Optional[HelpKind]) -> Optional[HelpKind]:
        if value is not None and value not in NEEDED_HELP_KINDS:
            raise ValueError(f"requests cannot ask for {value.value}")
        return value


class RequestCancelled(_Event):
    type: Literal["request_cancelled"]
    request_id: str


class RequestFulfilled(_Event):
    type: Literal["request_fulfilled"]
    request_id: str


class OfferAcknowledged(_Event):
    type: Literal["offer_acknowledged"]
    request_id: str
    volunteer_id: str | None = None
    decision: Literal["accept", "decline"]


InboundEvent = Annotated[
    Union[
        VolunteerRegistered,
        VolunteerAvailable,
        VolunteerUnavailable,
        RequestOpened,
        RequestCancelled,
        RequestFulfilled,
        OfferAcknowledged,
    ],
    Field(discriminator="type"),
]

_ADAPTER: TypeAdapter[InboundEvent] = TypeAdapter(InboundEvent)


def parse_event(payload: dict) -> InboundEvent:
    return _ADAPTER.validate_python(payload)
