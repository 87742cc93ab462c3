from datetime import datetime
from typing import Optional, TypedDict


class MessageDocument(TypedDict, total=False):
    _id: str
    conversation_id: str
    sender_id: str
    receiver_id: str
    content: str
    timestamp: datetime
    updated_at: datetime
    # delivery states
    delivered: bool
    seen: bool
    # soft delete
    is_deleted: bool
    # client ack
    client_message_id: Optional[str]
