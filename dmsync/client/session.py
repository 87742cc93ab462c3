"""A mounted chat view: stores, change feed, refresh timer and send path.

A ChatSession owns exactly one change-feed subscription and one refresh
timer between ``start()`` and ``close()``. Both the conversation list and the
split-pane presentation read from the same session and register listeners on
its engine, so events are merged once.
"""

import asyncio
import logging
from typing import List, Optional, Set

from dmsync.client.exceptions import ChatApiError
from dmsync.client.feed import ChangeFeedListener, FeedScope, SubscriptionHandle
from dmsync.client.notifications import LogNotifier, Notifier
from dmsync.client.reconciler import Listener, ReconciliationEngine
from dmsync.client.sender import OptimisticSendCoordinator, OutgoingMessage
from dmsync.client.stores import ConversationStore, MessageStore
from dmsync.config import settings
from dmsync.schemas.chat import Conversation, Message

logger = logging.getLogger(__name__)


class ChatSession:

    def __init__(
        self,
        api,
        bus,
        user_id: str,
        notifier: Optional[Notifier] = None,
        refresh_interval: Optional[float] = None,
        table: Optional[str] = None,
    ) -> None:
        self.api = api
        self.user_id = user_id
        self.notifier = notifier or LogNotifier()
        self.refresh_interval = settings.refresh_interval if refresh_interval is None else refresh_interval

        self.conversations = ConversationStore()
        self.messages = MessageStore()
        self.feed = ChangeFeedListener(bus, table)
        self.engine = ReconciliationEngine(
            user_id,
            self.conversations,
            self.messages,
            notifier=self.notifier,
            refetch=self.refresh,
            on_read=self._schedule_mark_read,
        )
        self.sender = OptimisticSendCoordinator(
            user_id,
            api,
            self.conversations,
            self.messages,
            notifier=self.notifier,
            is_alive=lambda: self._alive,
            on_change=self.engine.emit_change,
        )

        self.last_error: Optional[ChatApiError] = None
        self._subscription: Optional[SubscriptionHandle] = None
        self._timer: Optional[asyncio.Task] = None
        self._background: Set[asyncio.Task] = set()
        self._alive = False

    @property
    def alive(self) -> bool:
        return self._alive

    @property
    def subscription(self) -> Optional[SubscriptionHandle]:
        return self._subscription

    @property
    def open_conversation_id(self) -> Optional[str]:
        return self.messages.conversation_id

    @property
    def draft(self) -> str:
        return self.sender.draft

    @draft.setter
    def draft(self, value: str) -> None:
        self.sender.draft = value

    def add_listener(self, listener: Listener) -> None:
        self.engine.add_listener(listener)

    def remove_listener(self, listener: Listener) -> None:
        self.engine.remove_listener(listener)

    async def start(self) -> None:
        if self._alive:
            return
        self._alive = True
        self.engine.start()
        try:
            await self.refresh()
            self._subscription = await self.feed.subscribe(FeedScope(self.user_id), self.engine.apply)
            if self.refresh_interval > 0:
                self._timer = asyncio.create_task(self._refresh_loop())
        except BaseException:
            await self.close()
            raise
        logger.info(f"Chat session started for user {self.user_id}")

    async def close(self) -> None:
        if not self._alive:
            return
        self._alive = False
        self.engine.close()
        subscription, self._subscription = self._subscription, None
        await self.feed.unsubscribe(subscription)
        timer, self._timer = self._timer, None
        tasks = list(self._background)
        if timer is not None:
            tasks.append(timer)
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
            except Exception:
                logger.exception(f"Background task failed while closing session for {self.user_id}")
        self._background.clear()
        logger.info(f"Chat session closed for user {self.user_id}")

    async def __aenter__(self) -> "ChatSession":
        await self.start()
        return self

    async def __aexit__(self, *exc) -> None:
        await self.close()

    async def refresh(self) -> bool:
        """Refetch the list and the open conversation; the polling fallback for the feed."""
        try:
            conversations = await self.api.get_conversations()
        except ChatApiError as e:
            self.last_error = e
            logger.warning(f"Conversation list fetch failed: {e.code} {e.message}")
            return False
        if not self._alive:
            return False

        self.conversations.replace_all(conversations)
        open_id = self.messages.conversation_id
        if open_id is not None:
            self.conversations.reset_unread(open_id)
            try:
                page, _ = await self.api.get_messages(open_id)
            except ChatApiError as e:
                self.last_error = e
                logger.warning(f"Message fetch for {open_id} failed: {e.code} {e.message}")
                self.engine.emit_change()
                return False
            if self._alive and self.messages.conversation_id == open_id:
                self.messages.merge(page)

        self.last_error = None
        self.engine.emit_change()
        return True

    async def open_conversation(self, conversation_id: str) -> bool:
        self.messages.load(conversation_id, [])
        self.conversations.reset_unread(conversation_id)
        self.engine.emit_change()
        try:
            page, _ = await self.api.get_messages(conversation_id)
        except ChatApiError as e:
            self.last_error = e
            logger.warning(f"Message fetch for {conversation_id} failed: {e.code} {e.message}")
            return False
        if not self._alive or self.messages.conversation_id != conversation_id:
            # user navigated elsewhere while the fetch was in flight
            return False
        self.messages.merge(page)
        self.last_error = None
        self._schedule_mark_read(conversation_id)
        self.engine.emit_change()
        return True

    def close_conversation(self) -> None:
        self.messages.clear()
        self.engine.emit_change()

    def conversation(self, conversation_id: str) -> Optional[Conversation]:
        return self.conversations.get(conversation_id)

    @property
    def open_messages(self) -> List[Message]:
        return self.messages.messages

    async def send(self, text: Optional[str] = None) -> Optional[OutgoingMessage]:
        conversation_id = self.messages.conversation_id
        if conversation_id is None:
            return None
        return await self.sender.submit(conversation_id, text)

    async def delete_message(self, message_id: str) -> bool:
        try:
            await self.api.delete_message(message_id)
        except ChatApiError as e:
            logger.warning(f"Delete of message {message_id} failed: {e.code} {e.message}")
            return False
        if self._alive and self.messages.remove(message_id):
            self.engine.emit_change()
        return True

    async def set_muted(self, conversation_id: str, muted: bool) -> bool:
        try:
            muted = await self.api.set_muted(conversation_id, muted)
        except ChatApiError as e:
            logger.warning(f"Mute toggle for {conversation_id} failed: {e.code} {e.message}")
            return False
        if self._alive:
            self.conversations.set_muted(conversation_id, self.user_id, muted)
            self.engine.emit_change()
        return True

    def _schedule_mark_read(self, conversation_id: str) -> None:
        if not self._alive:
            return
        task = asyncio.get_running_loop().create_task(self._mark_read(conversation_id))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _mark_read(self, conversation_id: str) -> None:
        try:
            await self.api.mark_read(conversation_id)
        except ChatApiError as e:
            logger.warning(f"Mark read for {conversation_id} failed: {e.code} {e.message}")

    async def _refresh_loop(self) -> None:
        while self._alive:
            await asyncio.sleep(self.refresh_interval)
            try:
                await self.refresh()
            except Exception:
                # keep ticking; the next tick is the retry
                logger.exception(f"Periodic refresh failed for {self.user_id}")
