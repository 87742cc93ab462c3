import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, List, Optional

from dmsync.client.notifications import LogNotifier, Notification, NotificationKind, Notifier, deliver
from dmsync.client.stores import ApplyOutcome, ConversationStore, MessageStore
from dmsync.schemas.chat import ChangeEvent, ChangeKind, Message

logger = logging.getLogger(__name__)

Listener = Callable[[], None]


@dataclass
class EventResult:
    conversation: ApplyOutcome
    message_changed: bool = False
    notified: bool = False
    refetch_scheduled: bool = False


class ReconciliationEngine:
    """Merges change events into the conversation and message stores.

    One instance is shared by every presentation of a session; presentations
    register listeners and re-render after each applied change. Apply is
    idempotent, so the push feed and the periodic refresh can both feed it.
    """

    def __init__(
        self,
        user_id: str,
        conversations: ConversationStore,
        messages: MessageStore,
        notifier: Optional[Notifier] = None,
        refetch: Optional[Callable[[], Awaitable[object]]] = None,
        on_read: Optional[Callable[[str], None]] = None,
    ) -> None:
        self.user_id = user_id
        self.conversations = conversations
        self.messages = messages
        self.notifier = notifier or LogNotifier()
        self._refetch = refetch
        self._on_read = on_read
        self._listeners: List[Listener] = []
        self._refetch_task: Optional[asyncio.Task] = None
        self._refetch_started = False
        self._refetch_again = False
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    def start(self) -> None:
        self._running = True

    def close(self) -> None:
        self._running = False
        if self._refetch_task is not None and not self._refetch_task.done():
            self._refetch_task.cancel()
        self._refetch_task = None
        self._listeners.clear()

    def add_listener(self, listener: Listener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: Listener) -> None:
        try:
            self._listeners.remove(listener)
        except ValueError:
            pass

    def emit_change(self) -> None:
        for listener in list(self._listeners):
            try:
                listener()
            except Exception:
                logger.exception("View listener failed")

    def apply(self, event: ChangeEvent) -> Optional[EventResult]:
        if not self._running:
            logger.debug(f"Engine closed, ignoring event for message {event.row.id}")
            return None

        row = event.row
        inbound = row.sender_id != self.user_id
        open_id = self.messages.conversation_id
        is_open = row.conversation_id == open_id

        message_changed = False
        if is_open:
            if event.removes_row:
                message_changed = self.messages.remove(row.id)
            elif event.event_kind == ChangeKind.INSERT:
                message_changed = self.messages.append(row)
                if message_changed and inbound and self._on_read is not None:
                    self._on_read(row.conversation_id)
            else:
                message_changed = self.messages.update(row)

        outcome = self.conversations.apply_event(event, current_user_id=self.user_id, open_conversation_id=open_id)
        result = EventResult(conversation=outcome, message_changed=message_changed)

        if outcome == ApplyOutcome.REFETCH:
            result.refetch_scheduled = self.request_refetch()

        fresh_insert = event.event_kind == ChangeKind.INSERT and outcome != ApplyOutcome.IGNORED
        if fresh_insert and inbound and not is_open and not self.conversations.is_muted(row.conversation_id, self.user_id):
            result.notified = deliver(
                self.notifier,
                Notification(
                    kind=NotificationKind.NEW_MESSAGE,
                    title=self._sender_name(row),
                    body=row.content,
                    conversation_id=row.conversation_id,
                    sender_id=row.sender_id,
                ),
            )

        if message_changed or outcome == ApplyOutcome.APPLIED:
            self.emit_change()
        return result

    def _sender_name(self, row: Message) -> str:
        conversation = self.conversations.get(row.conversation_id)
        participant = conversation.participant(row.sender_id) if conversation and row.sender_id else None
        if participant is not None and participant.display_name:
            return participant.display_name
        return row.sender_id or "New message"

    def request_refetch(self) -> bool:
        """Schedule a full list refetch.

        Requests are coalesced: while a refetch has not started yet, further
        requests are covered by it and return False. Once it is underway, one
        follow-up run is queued so changes landing mid-fetch are not lost.
        """
        if self._refetch is None or not self._running:
            return False
        if self._refetch_task is not None and not self._refetch_task.done():
            if not self._refetch_started or self._refetch_again:
                return False
            self._refetch_again = True
            return True
        self._refetch_started = False
        self._refetch_again = False
        self._refetch_task = asyncio.get_running_loop().create_task(self._run_refetch())
        return True

    async def _run_refetch(self) -> None:
        while self._running:
            self._refetch_started = True
            self._refetch_again = False
            try:
                await self._refetch()
            except Exception:
                logger.exception("Conversation refetch failed")
            if not self._refetch_again:
                return
