from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from bson import ObjectId
from bson.errors import InvalidId
from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ASCENDING, DESCENDING, ReturnDocument
from pymongo.errors import DuplicateKeyError

from dmsync.models.conversation import ConversationDocument


def to_object_id(value) -> Optional[ObjectId]:
    if isinstance(value, ObjectId):
        return value
    try:
        return ObjectId(value)
    except (InvalidId, TypeError):
        return None


def participants_key(participants: List[str]) -> str:
    return "|".join(sorted(participants))


class ConversationRepository:

    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        self._db = db

    @property
    def collection(self):
        return self._db["conversations"]

    async def ensure_indexes(self) -> None:
        await self.collection.create_index([("participants_key", ASCENDING)], unique=True)
        await self.collection.create_index([("participants", ASCENDING)])
        await self.collection.create_index([("last_message_at", DESCENDING)])

    async def get_or_create_one_to_one(self, user_a: str, user_b: str) -> ConversationDocument:
        participants = sorted([user_a, user_b])
        key = participants_key(participants)
        now = datetime.now(timezone.utc)
        on_insert: ConversationDocument = {
            "participants": participants,
            "created_at": now,
            "last_message_at": now,
            "last_message_preview": None,
            "unread_counters": {user_a: 0, user_b: 0},
            "participant_state": {
                user_a: {"last_read_at": None, "is_muted": False},
                user_b: {"last_read_at": None, "is_muted": False},
            },
        }
        try:
            doc = await self.collection.find_one_and_update(
                {"participants_key": key},
                {"$setOnInsert": on_insert},
                upsert=True,
                return_document=ReturnDocument.AFTER,
            )
        except DuplicateKeyError:
            # two upserts raced; the unique key let exactly one insert through
            doc = await self.collection.find_one({"participants_key": key})
        doc["_id"] = str(doc["_id"])
        return doc

    async def get_by_id(self, conversation_id: str) -> Optional[ConversationDocument]:
        oid = to_object_id(conversation_id)
        if oid is None:
            return None
        doc = await self.collection.find_one({"_id": oid})
        if doc:
            doc["_id"] = str(doc["_id"])
        return doc

    async def update_on_new_message(self, conversation_id, preview: str, sent_at: datetime, receivers: List[str]) -> None:
        inc = {f"unread_counters.{receiver_id}": 1 for receiver_id in receivers}
        update: Dict[str, Any] = {
            "$set": {
                "last_message_at": sent_at,
                "last_message_preview": preview,
            },
        }
        if inc:
            update["$inc"] = inc
        await self.collection.update_one({"_id": to_object_id(conversation_id)}, update)

    async def reset_unread(self, conversation_id, user_id: str) -> None:
        await self.collection.update_one(
            {"_id": to_object_id(conversation_id)},
            {
                "$set": {
                    f"unread_counters.{user_id}": 0,
                    f"participant_state.{user_id}.last_read_at": datetime.now(timezone.utc),
                }
            },
        )

    async def set_muted(self, conversation_id, user_id: str, muted: bool) -> bool:
        doc = await self.collection.find_one_and_update(
            {"_id": to_object_id(conversation_id), "participants": user_id},
            {"$set": {f"participant_state.{user_id}.is_muted": muted}},
            return_document=ReturnDocument.AFTER,
        )
        return doc is not None

    async def set_display_name(self, conversation_id, user_id: str, name: str) -> None:
        await self.collection.update_one(
            {"_id": to_object_id(conversation_id), "participants": user_id},
            {"$set": {f"participant_state.{user_id}.display_name": name}},
        )

    async def refresh_preview(self, conversation_id, preview: Optional[str], last_message_at: Optional[datetime]) -> None:
        fields: Dict[str, Any] = {"last_message_preview": preview}
        if last_message_at is not None:
            fields["last_message_at"] = last_message_at
        await self.collection.update_one({"_id": to_object_id(conversation_id)}, {"$set": fields})

    async def list_for_user(self, user_id: str, limit: int = 20, cursor: Optional[str] = None) -> Tuple[List[ConversationDocument], Optional[str]]:
        query: Dict[str, Any] = {"participants": {"$in": [user_id]}}
        sort = [("last_message_at", DESCENDING), ("_id", DESCENDING)]
        if cursor:
            # Cursor format: timestamp_ms:object_id_hex
            parsed = self._parse_cursor(cursor)
            if parsed is not None:
                ts, oid = parsed
                query["$or"] = [
                    {"last_message_at": {"$lt": ts}},
                    {"last_message_at": ts, "_id": {"$lt": oid}},
                ]

        cursor_db = self.collection.find(query).sort(sort).limit(limit)
        items = await cursor_db.to_list(length=limit)
        for it in items:
            it["_id"] = str(it.get("_id"))
        next_cursor = None
        if len(items) == limit:
            last = items[-1]
            last_ts = int(last["last_message_at"].timestamp() * 1000)
            next_cursor = f"{last_ts}:{last['_id']}"
        return items, next_cursor

    async def total_unread(self, user_id: str) -> int:
        cur = self.collection.find({"participants": user_id}, {f"unread_counters.{user_id}": 1})
        total = 0
        async for doc in cur:
            total += int((doc.get("unread_counters") or {}).get(user_id, 0))
        return total

    @staticmethod
    def _parse_cursor(cursor: str) -> Optional[Tuple[datetime, ObjectId]]:
        try:
            ts_str, oid_hex = cursor.split(":", 1)
            ts = datetime.fromtimestamp(int(ts_str) / 1000.0, tz=timezone.utc)
        except ValueError:
            return None
        oid = to_object_id(oid_hex)
        if oid is None:
            return None
        return ts, oid
