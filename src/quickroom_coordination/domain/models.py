"""Domain models for conversations, viewing appointments and notifications."""

from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    """Timezone-aware current time."""
    return datetime.now(timezone.utc)


class MessageType(str, Enum):
    """Kind of content carried by a message."""

    TEXT = "text"
    IMAGE = "image"
    FILE = "file"


class AppointmentStatus(str, Enum):
    """Lifecycle states of a viewing appointment."""

    PENDING = "pending"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"
    COMPLETED = "completed"

    @property
    def is_terminal(self) -> bool:
        return self in (AppointmentStatus.CANCELLED, AppointmentStatus.COMPLETED)

    @classmethod
    def parse(cls, value: Optional[str]) -> "AppointmentStatus":
        """Read a stored status; a missing status means pending."""
        if value is None:
            return cls.PENDING
        return cls(value)


class Conversation(BaseModel):
    """Two-party chat thread, optionally scoped to a listing."""

    id: UUID = Field(default_factory=uuid4)
    listing_id: Optional[UUID] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class Participant(BaseModel):
    """Membership of a user in a conversation."""

    id: UUID = Field(default_factory=uuid4)
    conversation_id: UUID
    user_id: UUID
    joined_at: datetime = Field(default_factory=utcnow)
    last_read_at: Optional[datetime] = None


class Message(BaseModel):
    """Message model."""

    id: UUID = Field(default_factory=uuid4)
    conversation_id: UUID
    sender_id: UUID
    content: Optional[str] = None
    message_type: MessageType = MessageType.TEXT
    file_url: Optional[str] = None
    is_read: bool = False
    created_at: datetime = Field(default_factory=utcnow)


class Appointment(BaseModel):
    """Scheduled property viewing between a listing owner and a requester."""

    id: UUID = Field(default_factory=uuid4)
    listing_id: UUID
    owner_id: UUID
    requester_id: UUID
    appointment_date: datetime
    notes: Optional[str] = None
    status: AppointmentStatus = AppointmentStatus.PENDING
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @classmethod
    def from_row(cls, row: dict) -> "Appointment":
        data = dict(row)
        data["status"] = AppointmentStatus.parse(data.get("status"))
        return cls(**data)


class Notification(BaseModel):
    """User-facing notification record."""

    id: UUID = Field(default_factory=uuid4)
    user_id: UUID
    title: str
    content: str
    type: str
    link: Optional[str] = None
    is_read: bool = False
    created_at: datetime = Field(default_factory=utcnow)


class PresenceState(BaseModel):
    """Ephemeral typing state of one user in one conversation channel."""

    user_id: UUID
    typing: bool = False


class ConversationSummary(BaseModel):
    """Conversation as shown in a user's inbox."""

    conversation_id: UUID
    listing_id: Optional[UUID] = None
    other_user_id: Optional[UUID] = None
    last_message: Optional[str] = None
    updated_at: datetime


class AppointmentOverview(BaseModel):
    """Appointments split by the role the user holds in them."""

    received: List[Appointment] = []
    requested: List[Appointment] = []
