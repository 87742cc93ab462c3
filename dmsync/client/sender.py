import logging
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, Optional

from dmsync.client.exceptions import ChatApiError
from dmsync.client.notifications import LogNotifier, Notification, NotificationKind, Notifier, deliver
from dmsync.client.stores import ConversationStore, MessageStore
from dmsync.schemas.chat import DeliveryStatus, Message, utcnow

logger = logging.getLogger(__name__)

TEMP_ID_PREFIX = "temp-"


class SendState(str, Enum):

    COMPOSING = "composing"
    PENDING = "pending"
    CONFIRMED = "confirmed"
    FAILED = "failed"


_TRANSITIONS = {
    SendState.COMPOSING: {SendState.PENDING},
    SendState.PENDING: {SendState.CONFIRMED, SendState.FAILED},
    SendState.CONFIRMED: set(),
    SendState.FAILED: set(),
}


def new_temporary_id() -> str:
    return f"{TEMP_ID_PREFIX}{uuid.uuid4().hex}"


@dataclass
class OutgoingMessage:
    temporary_id: str
    conversation_id: str
    content: str
    # text as typed, restored into the draft on failure
    original: str
    state: SendState = SendState.COMPOSING
    message: Optional[Message] = None
    error: Optional[ChatApiError] = None

    def transition(self, state: SendState) -> None:
        if state not in _TRANSITIONS[self.state]:
            raise ValueError(f"Illegal send transition {self.state.value} -> {state.value}")
        self.state = state


class OptimisticSendCoordinator:

    def __init__(
        self,
        user_id: str,
        api,
        conversations: ConversationStore,
        messages: MessageStore,
        notifier: Optional[Notifier] = None,
        is_alive: Callable[[], bool] = lambda: True,
        on_change: Callable[[], None] = lambda: None,
    ) -> None:
        self.user_id = user_id
        self._api = api
        self._conversations = conversations
        self._messages = messages
        self._notifier = notifier or LogNotifier()
        self._is_alive = is_alive
        self._on_change = on_change
        self.draft = ""
        self.in_flight: Dict[str, OutgoingMessage] = {}

    async def submit(self, conversation_id: str, text: Optional[str] = None) -> Optional[OutgoingMessage]:
        original = self.draft if text is None else text
        content = original.strip()
        if not content:
            return None

        outgoing = OutgoingMessage(
            temporary_id=new_temporary_id(),
            conversation_id=conversation_id,
            content=content,
            original=original,
        )
        provisional = Message(
            id=outgoing.temporary_id,
            conversation_id=conversation_id,
            sender_id=self.user_id,
            content=content,
            created_at=utcnow(),
            status=DeliveryStatus.PENDING,
            client_message_id=outgoing.temporary_id,
        )
        outgoing.transition(SendState.PENDING)
        self._messages.append(provisional)
        snapshot = self._conversations.touch(conversation_id, content, provisional.created_at)
        self.draft = ""
        self.in_flight[outgoing.temporary_id] = outgoing
        self._on_change()

        try:
            server_message = await self._api.send_message(conversation_id, content, client_message_id=outgoing.temporary_id)
        except ChatApiError as e:
            self.in_flight.pop(outgoing.temporary_id, None)
            outgoing.error = e
            outgoing.transition(SendState.FAILED)
            if not self._is_alive():
                return outgoing
            logger.warning(f"Send to conversation {conversation_id} failed: {e.code} {e.message}")
            self._messages.rollback(outgoing.temporary_id)
            self._conversations.restore(snapshot)
            self.draft = original
            deliver(
                self._notifier,
                Notification(
                    kind=NotificationKind.SEND_FAILED,
                    title="Message not sent",
                    body=e.message,
                    conversation_id=conversation_id,
                ),
            )
            self._on_change()
            return outgoing

        self.in_flight.pop(outgoing.temporary_id, None)
        outgoing.message = server_message
        outgoing.transition(SendState.CONFIRMED)
        if not self._is_alive():
            return outgoing
        if not self._messages.reconcile(outgoing.temporary_id, server_message):
            # the feed echo already promoted it, or the user navigated away
            self._messages.append(server_message)
        self._on_change()
        return outgoing
