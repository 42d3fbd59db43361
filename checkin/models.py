"""Data models for tickets, event settings and change events."""

from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field, PositiveInt, field_validator

from checkin.config import DEFAULT_EVENT_ID


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TicketStatus(str, Enum):
    BOOKED = "booked"
    ARRIVED = "arrived"


class TicketIn(BaseModel):
    """Input model for ticket registration."""

    full_name: str
    gender: str
    age: PositiveInt
    phone_number: str

    @field_validator("full_name", "gender", "phone_number")
    @classmethod
    def not_blank(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("must not be blank")
        return value


class Ticket(BaseModel):
    """A stored ticket. Only ``status`` ever changes after creation."""

    id: str
    full_name: str
    gender: str
    age: PositiveInt
    phone_number: str
    status: TicketStatus = TicketStatus.BOOKED
    created_at: datetime = Field(default_factory=utcnow)
    event_id: str = DEFAULT_EVENT_ID

    @classmethod
    def book(cls, ticket_id: str, data: TicketIn) -> "Ticket":
        return cls(id=ticket_id, status=TicketStatus.BOOKED, **data.model_dump())

    def with_status(self, status: TicketStatus) -> "Ticket":
        return self.model_copy(update={"status": status})


class EventSettings(BaseModel):
    """Organizer settings for the single event. The deadline is display only."""

    event_name: str = "My Event"
    event_place: str = "Event Venue"
    arrival_deadline: Optional[datetime] = None


class EventSettingsIn(BaseModel):
    """Partial settings update; unset fields keep their stored values."""

    event_name: Optional[str] = None
    event_place: Optional[str] = None
    arrival_deadline: Optional[datetime] = None

    def merge_into(self, current: EventSettings) -> EventSettings:
        return current.model_copy(update=self.model_dump(exclude_unset=True, exclude_none=True))


class ChangeKind(str, Enum):
    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"


class TicketChange(BaseModel):
    """A single row change pushed through the change feed."""

    kind: ChangeKind
    ticket_id: str
    ticket: Optional[Ticket] = None

    @classmethod
    def insert(cls, ticket: Ticket) -> "TicketChange":
        return cls(kind=ChangeKind.INSERT, ticket_id=ticket.id, ticket=ticket)

    @classmethod
    def update(cls, ticket: Ticket) -> "TicketChange":
        return cls(kind=ChangeKind.UPDATE, ticket_id=ticket.id, ticket=ticket)

    @classmethod
    def delete(cls, ticket_id: str) -> "TicketChange":
        return cls(kind=ChangeKind.DELETE, ticket_id=ticket_id)


class ScanIn(BaseModel):
    """Input model for a decoded QR payload from a scanner device."""

    payload: str
    device_id: str = "default"


class BulkDeleteIn(BaseModel):
    ids: list[str]


class CameraErrorIn(BaseModel):
    device_id: str = "default"
    detail: str = ""
