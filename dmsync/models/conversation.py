from datetime import datetime
from typing import List, Optional, TypedDict


class ParticipantState(TypedDict, total=False):
    display_name: Optional[str]
    last_read_at: Optional[datetime]
    is_muted: bool


class ConversationDocument(TypedDict, total=False):
    _id: str
    # sorted, so one document per participant set
    participants: List[str]
    # unique, joined from the sorted participants
    participants_key: str
    created_at: datetime
    last_message_at: datetime
    last_message_preview: Optional[str]
    # per-user unread counters (user_id -> count)
    unread_counters: dict[str, int]
    # per-user read marker and mute flag
    participant_state: dict[str, ParticipantState]
