"""
Domain models. Field names are snake_case in Python and camelCase on the wire.
"""

import uuid
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic import ValidationError as PydanticValidationError
from pydantic.alias_generators import to_camel

from donorlink.compatibility import BloodType, parse_blood_type
from donorlink.errors import ValidationError


def new_id() -> str:
    return str(uuid.uuid4())


def utcnow() -> datetime:
    return datetime.now(UTC)


class WireModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class Urgency(StrEnum):
    LOW = "Low"
    MEDIUM = "Medium"
    HIGH = "High"
    EMERGENCY = "Emergency"

    @classmethod
    def _missing_(cls, value: object) -> "Urgency | None":
        if not isinstance(value, str):
            return None
        key = value.strip().lower()
        key = _URGENCY_ALIASES.get(key, key)
        for member in cls:
            if member.value.lower() == key:
                return member
        return None

    @classmethod
    def parse(cls, value: object) -> "Urgency":
        try:
            return cls(value)
        except ValueError:
            raise ValidationError(f"Unknown urgency: {value!r}") from None

    @property
    def rank(self) -> int:
        return _URGENCY_ORDER.index(self)


_URGENCY_ALIASES = {"moderate": "medium", "critical": "emergency"}
_URGENCY_ORDER = [Urgency.LOW, Urgency.MEDIUM, Urgency.HIGH, Urgency.EMERGENCY]


class OfferStatus(StrEnum):
    PENDING = "pending"
    ACCEPTED = "accepted"  # terminal
    REJECTED = "rejected"  # terminal


class GeoPoint(WireModel):
    latitude: float = Field(ge=-90, le=90)
    longitude: float = Field(ge=-180, le=180)

    @property
    def is_placeholder(self) -> bool:
        """(0, 0) is what unset location pickers produce, never a real position."""
        return self.latitude == 0 and self.longitude == 0


def parse_coordinates(value: GeoPoint | dict[str, Any] | None) -> GeoPoint | None:
    if value is None or isinstance(value, GeoPoint):
        return value
    try:
        return GeoPoint.model_validate(value)
    except PydanticValidationError as exc:
        raise ValidationError(f"Invalid coordinates: {value!r}") from exc


class User(WireModel):
    id: str = Field(default_factory=new_id)
    name: str
    email: str | None = None
    is_donor: bool = False
    is_hospital: bool = False
    blood_type: BloodType | None = None  # None for hospitals
    location: str = ""
    coordinates: GeoPoint | None = None
    available: bool = True
    created_at: datetime = Field(default_factory=utcnow)

    @field_validator("blood_type", mode="before")
    @classmethod
    def _normalize_blood_type(cls, value: object) -> object:
        if value is None or value == "":
            return None
        return parse_blood_type(value)


class BloodRequest(WireModel):
    id: str = Field(default_factory=new_id)
    requester_id: str
    blood_type: BloodType
    location: str
    hospital: str = ""
    coordinates: GeoPoint | None = None
    urgency: Urgency = Urgency.MEDIUM
    created_at: datetime = Field(default_factory=utcnow)
    fulfilled: bool = False
    fulfilled_by: str | None = None
    fulfilled_at: datetime | None = None
    accepted_offer_id: str | None = None

    @field_validator("blood_type", mode="before")
    @classmethod
    def _normalize_blood_type(cls, value: object) -> BloodType:
        return parse_blood_type(value)

    @field_validator("urgency", mode="before")
    @classmethod
    def _normalize_urgency(cls, value: object) -> Urgency:
        return Urgency.parse(value)


class Offer(WireModel):
    """A donor's proposal to fulfill one blood request."""

    id: str = Field(default_factory=new_id)
    request_id: str
    donor_id: str
    status: OfferStatus = OfferStatus.PENDING
    message: str = ""
    created_at: datetime = Field(default_factory=utcnow)
    responded_at: datetime | None = None


class Message(WireModel):
    """Chat message. The room id is the blood request id."""

    id: str = Field(default_factory=new_id)
    room_id: str
    sender_id: str
    sender_name: str = ""
    text: str
    created_at: datetime = Field(default_factory=utcnow)


class RoomUser(WireModel):
    id: str
    name: str


class TypingState(WireModel):
    user_id: str
    name: str
    is_typing: bool


class Session(WireModel):
    session_id: str = Field(default_factory=new_id)
    user_id: str
    device_id: str
    created_at: datetime = Field(default_factory=utcnow)
    last_seen: datetime = Field(default_factory=utcnow)
    active: bool = True
