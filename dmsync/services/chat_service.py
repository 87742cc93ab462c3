import logging
from typing import Awaitable, Callable, List, Optional, Tuple

from dmsync.config import settings
from dmsync.models.conversation import ConversationDocument
from dmsync.models.message import MessageDocument
from dmsync.repositories.conversation_repository import ConversationRepository
from dmsync.repositories.message_repository import MessageRepository
from dmsync.schemas.chat import ChangeEvent, ChangeKind, Conversation, DeliveryStatus, Message, Participant
from dmsync.utils.realtime_bus import feed_channel, get_bus
from dmsync.utils.websocket_manager import manager

logger = logging.getLogger(__name__)

Publisher = Callable[[ChangeEvent, List[str]], Awaitable[None]]


async def publish_change(event: ChangeEvent, recipients: List[str]) -> None:
    """Deliver a change event to each recipient's feed channel."""
    payload = event.model_dump_json()
    bus = await get_bus()
    for user_id in recipients:
        if bus.enabled:
            await bus.publish(feed_channel(user_id, event.table), payload)
        else:
            await manager.send_personal_message(user_id, payload)


def to_message(doc: MessageDocument) -> Message:
    if doc.get("seen"):
        status = DeliveryStatus.READ
    elif doc.get("delivered"):
        status = DeliveryStatus.DELIVERED
    else:
        status = DeliveryStatus.SENT
    return Message(
        id=str(doc["_id"]),
        conversation_id=str(doc["conversation_id"]),
        sender_id=doc.get("sender_id"),
        content=doc.get("content", ""),
        created_at=doc["timestamp"],
        status=status,
        is_deleted=bool(doc.get("is_deleted", False)),
        client_message_id=doc.get("client_message_id"),
    )


def to_conversation(doc: ConversationDocument, user_id: str) -> Conversation:
    state = doc.get("participant_state") or {}
    participants = [
        Participant(
            profile_id=pid,
            last_read_at=(state.get(pid) or {}).get("last_read_at"),
            is_muted=bool((state.get(pid) or {}).get("is_muted", False)),
            display_name=(state.get(pid) or {}).get("display_name"),
        )
        for pid in doc.get("participants", [])
    ]
    return Conversation(
        id=str(doc["_id"]),
        last_message_at=doc["last_message_at"],
        last_message_preview=doc.get("last_message_preview"),
        unread_count=max(0, int((doc.get("unread_counters") or {}).get(user_id, 0))),
        participants=participants,
    )


class ChatService:

    def __init__(
        self,
        message_repo: MessageRepository,
        conversation_repo: ConversationRepository,
        publish: Optional[Publisher] = None,
    ) -> None:
        self._message_repo = message_repo
        self._conversation_repo = conversation_repo
        self._publish = publish or publish_change

    async def _participant_doc(self, conversation_id: str, user_id: str) -> ConversationDocument:
        doc = await self._conversation_repo.get_by_id(conversation_id)
        if not doc or user_id not in doc.get("participants", []):
            raise LookupError("Conversation not found")
        return doc

    async def _remember_name(self, doc: ConversationDocument, user_id: str, display_name: Optional[str]) -> None:
        # names come from the token; keep the latest one a participant used
        state = doc.setdefault("participant_state", {}).setdefault(user_id, {})
        if not display_name or state.get("display_name") == display_name:
            return
        await self._conversation_repo.set_display_name(doc["_id"], user_id, display_name)
        state["display_name"] = display_name

    async def list_conversations(self, user_id: str, limit: int = 20, cursor: Optional[str] = None) -> Tuple[List[Conversation], Optional[str]]:
        docs, next_cursor = await self._conversation_repo.list_for_user(user_id, limit=limit, cursor=cursor)
        return [to_conversation(d, user_id) for d in docs], next_cursor

    async def get_conversation(self, conversation_id: str, user_id: str) -> Conversation:
        doc = await self._participant_doc(conversation_id, user_id)
        return to_conversation(doc, user_id)

    async def get_or_create_conversation(self, user_id: str, other_user_id: str, display_name: Optional[str] = None) -> Conversation:
        if user_id == other_user_id:
            raise ValueError("Cannot start a conversation with yourself")
        doc = await self._conversation_repo.get_or_create_one_to_one(user_id, other_user_id)
        await self._remember_name(doc, user_id, display_name)
        return to_conversation(doc, user_id)

    async def get_history(self, conversation_id: str, user_id: str, limit: int = 50, cursor: Optional[str] = None) -> Tuple[List[Message], Optional[str]]:
        await self._participant_doc(conversation_id, user_id)
        docs, next_cursor = await self._message_repo.get_messages_by_conversation(conversation_id, limit=limit, cursor=cursor)
        return [to_message(d) for d in docs], next_cursor

    async def send_message(
        self,
        conversation_id: str,
        sender_id: str,
        content: str,
        client_message_id: Optional[str] = None,
        display_name: Optional[str] = None,
    ) -> Message:
        if not content or not content.strip():
            raise ValueError("Message content cannot be empty")
        convo = await self._participant_doc(conversation_id, sender_id)
        await self._remember_name(convo, sender_id, display_name)
        participants = convo.get("participants", [])
        receivers = [p for p in participants if p != sender_id]
        saved = await self._message_repo.save_message(
            conversation_id=conversation_id,
            sender_id=sender_id,
            receiver_id=receivers[0] if receivers else sender_id,
            content=content.strip(),
            client_message_id=client_message_id,
        )
        preview = content.strip()[: settings.preview_length]
        await self._conversation_repo.update_on_new_message(conversation_id, preview, saved["timestamp"], receivers)
        message = to_message(saved)
        await self._publish(ChangeEvent(event_kind=ChangeKind.INSERT, table=settings.feed_table, row=message), participants)
        logger.debug(f"Message {message.id} sent to conversation {conversation_id}")
        return message

    async def mark_read(self, conversation_id: str, user_id: str) -> int:
        await self._participant_doc(conversation_id, user_id)
        modified = await self._message_repo.mark_read(user_id, conversation_id)
        await self._conversation_repo.reset_unread(conversation_id, user_id)
        return modified

    async def set_muted(self, conversation_id: str, user_id: str, muted: bool) -> bool:
        ok = await self._conversation_repo.set_muted(conversation_id, user_id, muted)
        if not ok:
            raise LookupError("Conversation not found")
        return muted

    async def delete_message(self, message_id: str, user_id: str) -> Message:
        doc = await self._message_repo.soft_delete(message_id, user_id)
        if not doc:
            raise LookupError("Message not found")
        message = to_message(doc)
        convo = await self._conversation_repo.get_by_id(message.conversation_id)
        participants = (convo or {}).get("participants", [user_id])
        if convo and convo.get("last_message_at") == doc["timestamp"]:
            latest = await self._message_repo.get_latest(message.conversation_id)
            if latest:
                await self._conversation_repo.refresh_preview(
                    message.conversation_id, latest["content"][: settings.preview_length], latest["timestamp"]
                )
            else:
                await self._conversation_repo.refresh_preview(message.conversation_id, None, None)
        await self._publish(ChangeEvent(event_kind=ChangeKind.UPDATE, table=settings.feed_table, row=message), participants)
        logger.debug(f"Message {message_id} soft-deleted by {user_id}")
        return message

    async def unread_count(self, user_id: str) -> int:
        return await self._conversation_repo.total_unread(user_id)
