from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ASCENDING, DESCENDING, ReturnDocument

from dmsync.models.message import MessageDocument
from dmsync.repositories.conversation_repository import ConversationRepository, to_object_id


class MessageRepository:

    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        self._db = db

    @property
    def collection(self):
        return self._db["messages"]

    async def ensure_indexes(self) -> None:
        await self.collection.create_index([("conversation_id", ASCENDING), ("timestamp", DESCENDING)])
        await self.collection.create_index([("receiver_id", ASCENDING), ("seen", ASCENDING)])

    async def save_message(
        self,
        conversation_id,
        sender_id: str,
        receiver_id: str,
        content: str,
        client_message_id: Optional[str] = None,
    ) -> MessageDocument:
        now = datetime.now(timezone.utc)
        doc: MessageDocument = {
            "conversation_id": str(conversation_id),
            "sender_id": sender_id,
            "receiver_id": receiver_id,
            "content": content,
            "timestamp": now,
            "updated_at": now,
            "delivered": False,
            "seen": False,
            "is_deleted": False,
            "client_message_id": client_message_id,
        }
        result = await self.collection.insert_one(doc)
        doc["_id"] = str(result.inserted_id)
        return doc

    async def get_by_id(self, message_id: str) -> Optional[MessageDocument]:
        oid = to_object_id(message_id)
        if oid is None:
            return None
        doc = await self.collection.find_one({"_id": oid})
        if doc:
            doc["_id"] = str(doc["_id"])
        return doc

    async def get_messages_by_conversation(
        self,
        conversation_id,
        limit: int = 50,
        cursor: Optional[str] = None,
    ) -> Tuple[List[MessageDocument], Optional[str]]:
        query: Dict[str, Any] = {"conversation_id": str(conversation_id), "is_deleted": {"$ne": True}}
        sort = [("timestamp", DESCENDING), ("_id", DESCENDING)]
        if cursor:
            # cursor format: ts_ms:oid
            parsed = ConversationRepository._parse_cursor(cursor)
            if parsed is not None:
                ts, oid = parsed
                query["$or"] = [
                    {"timestamp": {"$lt": ts}},
                    {"timestamp": ts, "_id": {"$lt": oid}},
                ]
        cur = self.collection.find(query).sort(sort).limit(limit)
        items = await cur.to_list(length=limit)
        for it in items:
            it["_id"] = str(it.get("_id"))
        next_cursor = None
        if len(items) == limit:
            last = items[-1]
            last_ts = int(last["timestamp"].timestamp() * 1000)
            next_cursor = f"{last_ts}:{last['_id']}"
        # newest page first, chronological order inside the page
        return list(reversed(items)), next_cursor

    async def get_latest(self, conversation_id) -> Optional[MessageDocument]:
        cur = self.collection.find(
            {"conversation_id": str(conversation_id), "is_deleted": {"$ne": True}}
        ).sort([("timestamp", DESCENDING), ("_id", DESCENDING)]).limit(1)
        items = await cur.to_list(length=1)
        if not items:
            return None
        items[0]["_id"] = str(items[0]["_id"])
        return items[0]

    async def mark_read(self, receiver_id: str, conversation_id) -> int:
        result = await self.collection.update_many(
            {"conversation_id": str(conversation_id), "receiver_id": receiver_id, "seen": False},
            {"$set": {"seen": True, "delivered": True}},
        )
        return result.modified_count or 0

    async def soft_delete(self, message_id: str, sender_id: str) -> Optional[MessageDocument]:
        oid = to_object_id(message_id)
        if oid is None:
            return None
        doc = await self.collection.find_one_and_update(
            {"_id": oid, "sender_id": sender_id, "is_deleted": {"$ne": True}},
            {"$set": {"is_deleted": True, "updated_at": datetime.now(timezone.utc)}},
            return_document=ReturnDocument.AFTER,
        )
        if doc:
            doc["_id"] = str(doc["_id"])
        return doc
