from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DeliveryStatus(str, Enum):

    PENDING = "pending"
    SENT = "sent"
    DELIVERED = "delivered"
    READ = "read"


class ChangeKind(str, Enum):

    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


class Participant(BaseModel):

    profile_id: str
    display_name: Optional[str] = None
    last_read_at: Optional[datetime] = None
    is_muted: bool = False


class Conversation(BaseModel):

    id: str
    last_message_at: datetime
    last_message_preview: Optional[str] = None
    unread_count: int = Field(0, ge=0)
    participants: List[Participant] = Field(default_factory=list)

    def participant(self, profile_id: str) -> Optional[Participant]:
        for p in self.participants:
            if p.profile_id == profile_id:
                return p
        return None

    def other_participants(self, profile_id: str) -> List[Participant]:
        return [p for p in self.participants if p.profile_id != profile_id]


class Message(BaseModel):

    id: str
    conversation_id: str
    sender_id: Optional[str] = None
    content: str = ""
    created_at: datetime = Field(default_factory=utcnow)
    status: DeliveryStatus = DeliveryStatus.SENT
    is_deleted: bool = False
    client_message_id: Optional[str] = None

    @property
    def is_pending(self) -> bool:
        return self.status == DeliveryStatus.PENDING


class ChangeEvent(BaseModel):
    """Row-level change on the message table, as carried by the feed."""

    event_kind: ChangeKind
    table: str = "direct_messages"
    row: Message

    @property
    def removes_row(self) -> bool:
        return self.event_kind == ChangeKind.DELETE or (
            self.event_kind == ChangeKind.UPDATE and self.row.is_deleted
        )


class ConversationCreate(BaseModel):

    other_user_id: str = Field(min_length=1)


class MessageCreate(BaseModel):

    content: str
    client_message_id: Optional[str] = None


class MuteUpdate(BaseModel):

    muted: bool


class ConversationPage(BaseModel):

    items: List[Conversation]
    next_cursor: Optional[str] = None


class MessagePage(BaseModel):

    items: List[Message]
    next_cursor: Optional[str] = None


class ReadReceipt(BaseModel):

    updated: int = 0


class MuteState(BaseModel):

    muted: bool


class UnreadCount(BaseModel):

    count: int = 0
