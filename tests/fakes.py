"""In-memory stand-ins for the bus, the HTTP API, notifiers and Mongo."""

import asyncio
import itertools
from collections import defaultdict
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import mongomock
from bson import ObjectId

from dmsync.client.exceptions import ApiError, NetworkError
from dmsync.schemas.chat import ChangeEvent, ChangeKind, Conversation, DeliveryStatus, Message, Participant

ME = "me"
OTHER = "ana"
THIRD = "bruno"

BASE_TIME = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)


def at(minutes: float) -> datetime:
    return BASE_TIME + timedelta(minutes=minutes)


def make_conversation(cid: str, minutes: float, unread: int = 0, other: str = OTHER, preview: Optional[str] = None, muted: bool = False, other_name: Optional[str] = None) -> Conversation:
    return Conversation(
        id=cid,
        last_message_at=at(minutes),
        last_message_preview=preview,
        unread_count=unread,
        participants=[Participant(profile_id=ME, is_muted=muted), Participant(profile_id=other, display_name=other_name)],
    )


def make_message(mid: str, cid: str, minutes: float, sender: str = OTHER, content: str = "hello", **kw) -> Message:
    return Message(id=mid, conversation_id=cid, sender_id=sender, content=content, created_at=at(minutes), **kw)


def insert_event(message: Message) -> ChangeEvent:
    return ChangeEvent(event_kind=ChangeKind.INSERT, row=message)


def delete_event(message: Message) -> ChangeEvent:
    return ChangeEvent(event_kind=ChangeKind.UPDATE, row=message.model_copy(update={"is_deleted": True}))


async def drain(rounds: int = 10) -> None:
    for _ in range(rounds):
        await asyncio.sleep(0)


class MemorySubscription:

    def __init__(self, bus: "MemoryBus", channel: str, on_message) -> None:
        self._bus = bus
        self.channel = channel
        self._on_message = on_message
        self.queue: asyncio.Queue = asyncio.Queue()
        self.cancelled = 0

    async def run(self) -> None:
        while True:
            raw = await self.queue.get()
            if raw is MemoryBus.DROP:
                raise ConnectionError("connection reset")
            await self._on_message(raw)

    async def cancel(self) -> None:
        self.cancelled += 1
        subs = self._bus.subscriptions[self.channel]
        if self in subs:
            subs.remove(self)


class MemoryBus:

    enabled = True
    DROP = object()

    def __init__(self, fail_subscribe: bool = False) -> None:
        self.fail_subscribe = fail_subscribe
        self.subscriptions: Dict[str, List[MemorySubscription]] = defaultdict(list)
        self.published: List[tuple] = []

    async def publish(self, channel: str, message: str) -> None:
        self.published.append((channel, message))
        for sub in list(self.subscriptions[channel]):
            sub.queue.put_nowait(message)

    async def publish_event(self, user_id: str, event: ChangeEvent) -> None:
        await self.publish(f"{event.table}:{user_id}", event.model_dump_json())

    def drop(self, channel: str) -> None:
        for sub in list(self.subscriptions[channel]):
            sub.queue.put_nowait(self.DROP)

    async def subscribe(self, channel: str, on_message) -> MemorySubscription:
        if self.fail_subscribe:
            raise ConnectionError("bus unavailable")
        sub = MemorySubscription(self, channel, on_message)
        self.subscriptions[channel].append(sub)
        return sub

    def active(self, channel: str) -> int:
        return len(self.subscriptions[channel])

    async def close(self) -> None:
        return


class RecordingNotifier:

    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.notifications: List[Any] = []

    def notify(self, notification) -> None:
        if self.fail:
            raise RuntimeError("toast container unmounted")
        self.notifications.append(notification)


class FakeChatApi:

    def __init__(self, conversations: Optional[List[Conversation]] = None, messages: Optional[Dict[str, List[Message]]] = None) -> None:
        self.conversations = list(conversations or [])
        self.messages: Dict[str, List[Message]] = defaultdict(list, messages or {})
        self.fail_list = False
        self.fail_messages = False
        self.fail_send = False
        self.send_gate: Optional[asyncio.Event] = None
        self.next_ids: List[str] = []
        self.sent: List[tuple] = []
        self.mark_read_calls: List[str] = []
        self.deleted: List[str] = []
        self.list_calls = 0
        # raised one per list call, ahead of fail_list
        self.list_errors: List[Exception] = []
        self._counter = itertools.count(1)

    async def get_conversations(self) -> List[Conversation]:
        self.list_calls += 1
        if self.list_errors:
            raise self.list_errors.pop(0)
        if self.fail_list:
            raise NetworkError(code="NETWORK_ERROR", message="connection refused")
        return list(self.conversations)

    async def get_messages(self, conversation_id: str, limit: int = 50, cursor: Optional[str] = None):
        if self.fail_messages:
            raise ApiError(code="MESSAGES_FAILED", message="server error", http_status=500)
        return list(self.messages[conversation_id]), None

    async def send_message(self, conversation_id: str, content: str, client_message_id: Optional[str] = None) -> Message:
        self.sent.append((conversation_id, content, client_message_id))
        if self.send_gate is not None:
            await self.send_gate.wait()
        if self.fail_send:
            raise ApiError(code="SEND_FAILED", message="could not send", http_status=500)
        mid = self.next_ids.pop(0) if self.next_ids else f"m-{next(self._counter)}"
        return Message(
            id=mid,
            conversation_id=conversation_id,
            sender_id=ME,
            content=content,
            created_at=datetime.now(timezone.utc),
            status=DeliveryStatus.SENT,
            client_message_id=client_message_id,
        )

    async def mark_read(self, conversation_id: str) -> int:
        self.mark_read_calls.append(conversation_id)
        return 0

    async def set_muted(self, conversation_id: str, muted: bool) -> bool:
        return muted

    async def delete_message(self, message_id: str) -> None:
        self.deleted.append(message_id)


class FakeConversationRepository:
    """Mimics ConversationRepository over a dict of documents."""

    def __init__(self) -> None:
        self.docs: Dict[str, Dict[str, Any]] = {}

    async def get_or_create_one_to_one(self, user_a: str, user_b: str) -> Dict[str, Any]:
        participants = sorted([user_a, user_b])
        for doc in self.docs.values():
            if doc["participants"] == participants:
                return dict(doc)
        oid = str(ObjectId())
        now = datetime.now(timezone.utc)
        doc = {
            "_id": oid,
            "participants": participants,
            "participants_key": "|".join(participants),
            "created_at": now,
            "last_message_at": now,
            "last_message_preview": None,
            "unread_counters": {user_a: 0, user_b: 0},
            "participant_state": {
                user_a: {"last_read_at": None, "is_muted": False},
                user_b: {"last_read_at": None, "is_muted": False},
            },
        }
        self.docs[oid] = doc
        return dict(doc)

    async def get_by_id(self, conversation_id: str) -> Optional[Dict[str, Any]]:
        doc = self.docs.get(str(conversation_id))
        return dict(doc) if doc else None

    async def update_on_new_message(self, conversation_id, preview: str, sent_at: datetime, receivers: List[str]) -> None:
        doc = self.docs[str(conversation_id)]
        doc["last_message_at"] = sent_at
        doc["last_message_preview"] = preview
        for r in receivers:
            doc["unread_counters"][r] = doc["unread_counters"].get(r, 0) + 1

    async def reset_unread(self, conversation_id, user_id: str) -> None:
        doc = self.docs[str(conversation_id)]
        doc["unread_counters"][user_id] = 0
        doc["participant_state"][user_id]["last_read_at"] = datetime.now(timezone.utc)

    async def set_muted(self, conversation_id, user_id: str, muted: bool) -> bool:
        doc = self.docs.get(str(conversation_id))
        if not doc or user_id not in doc["participants"]:
            return False
        doc["participant_state"][user_id]["is_muted"] = muted
        return True

    async def set_display_name(self, conversation_id, user_id: str, name: str) -> None:
        doc = self.docs.get(str(conversation_id))
        if doc and user_id in doc["participants"]:
            doc["participant_state"][user_id]["display_name"] = name

    async def refresh_preview(self, conversation_id, preview, last_message_at) -> None:
        doc = self.docs[str(conversation_id)]
        doc["last_message_preview"] = preview
        if last_message_at is not None:
            doc["last_message_at"] = last_message_at

    async def list_for_user(self, user_id: str, limit: int = 20, cursor: Optional[str] = None):
        items = [dict(d) for d in self.docs.values() if user_id in d["participants"]]
        items.sort(key=lambda d: (d["last_message_at"], d["_id"]), reverse=True)
        return items[:limit], None

    async def total_unread(self, user_id: str) -> int:
        return sum(d["unread_counters"].get(user_id, 0) for d in self.docs.values() if user_id in d["participants"])


class FakeMessageRepository:
    """Mimics MessageRepository over a list of documents."""

    def __init__(self) -> None:
        self.docs: List[Dict[str, Any]] = []
        self._tick = itertools.count(1)

    async def save_message(self, conversation_id, sender_id: str, receiver_id: str, content: str, client_message_id: Optional[str] = None) -> Dict[str, Any]:
        ts = BASE_TIME + timedelta(seconds=next(self._tick))
        doc = {
            "_id": str(ObjectId()),
            "conversation_id": str(conversation_id),
            "sender_id": sender_id,
            "receiver_id": receiver_id,
            "content": content,
            "timestamp": ts,
            "updated_at": ts,
            "delivered": False,
            "seen": False,
            "is_deleted": False,
            "client_message_id": client_message_id,
        }
        self.docs.append(doc)
        return dict(doc)

    async def get_messages_by_conversation(self, conversation_id, limit: int = 50, cursor: Optional[str] = None):
        items = [dict(d) for d in self.docs if d["conversation_id"] == str(conversation_id) and not d["is_deleted"]]
        items.sort(key=lambda d: d["timestamp"])
        return items[-limit:], None

    async def get_latest(self, conversation_id) -> Optional[Dict[str, Any]]:
        items, _ = await self.get_messages_by_conversation(conversation_id)
        return items[-1] if items else None

    async def mark_read(self, receiver_id: str, conversation_id) -> int:
        count = 0
        for d in self.docs:
            if d["conversation_id"] == str(conversation_id) and d["receiver_id"] == receiver_id and not d["seen"]:
                d["seen"] = True
                d["delivered"] = True
                count += 1
        return count

    async def soft_delete(self, message_id: str, sender_id: str) -> Optional[Dict[str, Any]]:
        for d in self.docs:
            if d["_id"] == message_id and d["sender_id"] == sender_id and not d["is_deleted"]:
                d["is_deleted"] = True
                return dict(d)
        return None


class AsyncMongoCursor:
    """Motor-style cursor over a mongomock cursor."""

    def __init__(self, cursor) -> None:
        self._cursor = cursor

    def sort(self, *args, **kwargs) -> "AsyncMongoCursor":
        self._cursor.sort(*args, **kwargs)
        return self

    def limit(self, count: int) -> "AsyncMongoCursor":
        self._cursor.limit(count)
        return self

    async def to_list(self, length: Optional[int] = None) -> List[Dict[str, Any]]:
        await asyncio.sleep(0)
        docs = list(self._cursor)
        return docs if length is None else docs[:length]

    async def _iterate(self):
        for doc in self._cursor:
            await asyncio.sleep(0)
            yield doc

    def __aiter__(self):
        return self._iterate()


class AsyncMongoCollection:
    """Awaitable facade over a mongomock collection; every call yields to the loop first."""

    def __init__(self, collection) -> None:
        self.sync = collection

    def find(self, *args, **kwargs) -> AsyncMongoCursor:
        return AsyncMongoCursor(self.sync.find(*args, **kwargs))

    def __getattr__(self, name: str):
        method = getattr(self.sync, name)

        async def call(*args, **kwargs):
            await asyncio.sleep(0)
            return method(*args, **kwargs)

        return call


class AsyncMongoDatabase:

    def __init__(self, name: str = "dmsync_test") -> None:
        self._db = mongomock.MongoClient(tz_aware=True)[name]
        self._collections: Dict[str, AsyncMongoCollection] = {}

    def __getitem__(self, name: str) -> AsyncMongoCollection:
        if name not in self._collections:
            self._collections[name] = AsyncMongoCollection(self._db[name])
        return self._collections[name]
