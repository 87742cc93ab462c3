"""In-memory view state for one chat session.

ConversationStore holds the signed-in user's conversation list, always sorted
by most recent activity. MessageStore holds the message sequence of the
conversation currently open. Both are mutated only from the event loop.
"""

import logging
from collections import OrderedDict
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Dict, Iterable, List, Optional

from dmsync.config import settings
from dmsync.schemas.chat import ChangeEvent, ChangeKind, Conversation, DeliveryStatus, Message

logger = logging.getLogger(__name__)


class ApplyOutcome(str, Enum):

    APPLIED = "applied"
    IGNORED = "ignored"
    # the event cannot be applied locally, the list must be refetched
    REFETCH = "refetch"


@dataclass
class PreviewSnapshot:
    conversation_id: str
    previous_preview: Optional[str]
    previous_at: datetime
    preview: str
    at: datetime


def _sort_key(conversation: Conversation):
    return (conversation.last_message_at, conversation.id)


class ConversationStore:

    def __init__(self, seen_limit: int = 2048) -> None:
        self._items: Dict[str, Conversation] = {}
        self._order: List[str] = []
        self._seen: "OrderedDict[str, None]" = OrderedDict()
        self._seen_limit = seen_limit

    @property
    def conversations(self) -> List[Conversation]:
        return [self._items[cid] for cid in self._order]

    @property
    def total_unread(self) -> int:
        return sum(c.unread_count for c in self._items.values())

    def __len__(self) -> int:
        return len(self._items)

    def __contains__(self, conversation_id: str) -> bool:
        return conversation_id in self._items

    def get(self, conversation_id: str) -> Optional[Conversation]:
        return self._items.get(conversation_id)

    def replace_all(self, conversations: Iterable[Conversation]) -> None:
        self._items = {c.id: c for c in conversations}
        self._resort()

    def apply_event(self, event: ChangeEvent, *, current_user_id: str, open_conversation_id: Optional[str]) -> ApplyOutcome:
        row = event.row
        conversation = self._items.get(row.conversation_id)

        if event.removes_row:
            if conversation is None:
                return ApplyOutcome.IGNORED
            if row.created_at >= conversation.last_message_at:
                # the preview may have been this row; only the server knows the new one
                return ApplyOutcome.REFETCH
            return ApplyOutcome.IGNORED

        if event.event_kind != ChangeKind.INSERT:
            return ApplyOutcome.IGNORED
        if not self._mark_seen(row.id):
            return ApplyOutcome.IGNORED
        if conversation is None:
            return ApplyOutcome.REFETCH

        update = {}
        if row.created_at >= conversation.last_message_at:
            update["last_message_at"] = row.created_at
            update["last_message_preview"] = row.content[: settings.preview_length]
        inbound = row.sender_id != current_user_id
        if inbound and row.conversation_id != open_conversation_id:
            update["unread_count"] = conversation.unread_count + 1
        if not update:
            return ApplyOutcome.IGNORED

        self._items[conversation.id] = conversation.model_copy(update=update)
        self._resort()
        return ApplyOutcome.APPLIED

    def reset_unread(self, conversation_id: str) -> bool:
        conversation = self._items.get(conversation_id)
        if conversation is None or conversation.unread_count == 0:
            return False
        self._items[conversation_id] = conversation.model_copy(update={"unread_count": 0})
        return True

    def touch(self, conversation_id: str, preview: str, at: datetime) -> Optional[PreviewSnapshot]:
        conversation = self._items.get(conversation_id)
        if conversation is None:
            return None
        preview = preview[: settings.preview_length]
        snapshot = PreviewSnapshot(
            conversation_id=conversation_id,
            previous_preview=conversation.last_message_preview,
            previous_at=conversation.last_message_at,
            preview=preview,
            at=at,
        )
        self._items[conversation_id] = conversation.model_copy(
            update={"last_message_preview": preview, "last_message_at": at}
        )
        self._resort()
        return snapshot

    def restore(self, snapshot: Optional[PreviewSnapshot]) -> bool:
        if snapshot is None:
            return False
        conversation = self._items.get(snapshot.conversation_id)
        if conversation is None:
            return False
        if conversation.last_message_preview != snapshot.preview or conversation.last_message_at != snapshot.at:
            # something newer landed since the optimistic touch
            return False
        self._items[snapshot.conversation_id] = conversation.model_copy(
            update={"last_message_preview": snapshot.previous_preview, "last_message_at": snapshot.previous_at}
        )
        self._resort()
        return True

    def is_muted(self, conversation_id: str, user_id: str) -> bool:
        conversation = self._items.get(conversation_id)
        if conversation is None:
            return False
        participant = conversation.participant(user_id)
        return bool(participant and participant.is_muted)

    def set_muted(self, conversation_id: str, user_id: str, muted: bool) -> bool:
        conversation = self._items.get(conversation_id)
        if conversation is None:
            return False
        participants = [
            p.model_copy(update={"is_muted": muted}) if p.profile_id == user_id else p
            for p in conversation.participants
        ]
        self._items[conversation_id] = conversation.model_copy(update={"participants": participants})
        return True

    def _mark_seen(self, message_id: str) -> bool:
        if message_id in self._seen:
            return False
        self._seen[message_id] = None
        while len(self._seen) > self._seen_limit:
            self._seen.popitem(last=False)
        return True

    def _resort(self) -> None:
        self._order = [c.id for c in sorted(self._items.values(), key=_sort_key, reverse=True)]


class MessageStore:

    def __init__(self) -> None:
        self.conversation_id: Optional[str] = None
        self._messages: List[Message] = []

    @property
    def messages(self) -> List[Message]:
        return list(self._messages)

    def __len__(self) -> int:
        return len(self._messages)

    def __contains__(self, message_id: str) -> bool:
        return self.index_of(message_id) is not None

    def index_of(self, message_id: str) -> Optional[int]:
        for i, m in enumerate(self._messages):
            if m.id == message_id:
                return i
        return None

    def load(self, conversation_id: str, messages: Iterable[Message]) -> List[Message]:
        self.conversation_id = conversation_id
        rows = {m.id: m for m in messages if m.conversation_id == conversation_id and not m.is_deleted}
        self._messages = sorted(rows.values(), key=lambda m: m.created_at)
        return self.messages

    def clear(self) -> None:
        self.conversation_id = None
        self._messages = []

    def append(self, message: Message) -> bool:
        """Add a message at its timestamp position; no-op when the id is already present."""
        if message.conversation_id != self.conversation_id or message.is_deleted:
            return False
        if self.index_of(message.id) is not None:
            return False
        if message.client_message_id:
            pending = self.index_of(message.client_message_id)
            if pending is not None and self._messages[pending].is_pending:
                # server echo of our own optimistic send
                return self.reconcile(message.client_message_id, message)
        idx = len(self._messages)
        while idx > 0 and self._messages[idx - 1].created_at > message.created_at:
            idx -= 1
        self._messages.insert(idx, message)
        return True

    def merge(self, messages: List[Message]) -> bool:
        """Merge a freshly fetched page (oldest first) into the open conversation."""
        changed = False
        server_ids = {m.id for m in messages}
        if messages:
            oldest, newest = messages[0].created_at, messages[-1].created_at
            for local in list(self._messages):
                # rows newer than the page may have arrived through the feed meanwhile
                in_range = oldest <= local.created_at <= newest
                if not local.is_pending and in_range and local.id not in server_ids:
                    changed = self.remove(local.id) or changed
        for m in messages:
            if self.index_of(m.id) is None:
                changed = self.append(m) or changed
            else:
                changed = self.update(m) or changed
        return changed

    def reconcile(self, temporary_id: str, server_message: Message) -> bool:
        idx = self.index_of(temporary_id)
        if idx is None:
            return False
        if server_message.status == DeliveryStatus.PENDING:
            server_message = server_message.model_copy(update={"status": DeliveryStatus.SENT})
        duplicate = self.index_of(server_message.id)
        if duplicate is not None:
            # the feed delivered the server copy before the send resolved
            del self._messages[duplicate]
            if duplicate < idx:
                idx -= 1
        self._messages[idx] = server_message
        return True

    def rollback(self, temporary_id: str) -> Optional[Message]:
        idx = self.index_of(temporary_id)
        if idx is None:
            return None
        return self._messages.pop(idx)

    def update(self, message: Message) -> bool:
        idx = self.index_of(message.id)
        if idx is None:
            return False
        if message.is_deleted:
            del self._messages[idx]
            return True
        if self._messages[idx] == message:
            return False
        self._messages[idx] = message
        return True

    def remove(self, message_id: str) -> bool:
        idx = self.index_of(message_id)
        if idx is None:
            return False
        del self._messages[idx]
        return True
