import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, FrozenSet, Optional

from pydantic import ValidationError

from dmsync.config import settings
from dmsync.schemas.chat import ChangeEvent
from dmsync.utils.realtime_bus import feed_channel

logger = logging.getLogger(__name__)

OnEvent = Callable[[ChangeEvent], Any]


@dataclass(frozen=True)
class FeedScope:
    """Which change events a subscription delivers."""

    user_id: str
    conversation_ids: Optional[FrozenSet[str]] = None

    def matches(self, event: ChangeEvent) -> bool:
        if self.conversation_ids is None:
            return True
        return event.row.conversation_id in self.conversation_ids


@dataclass(eq=False)
class SubscriptionHandle:
    channel: str
    scope: FeedScope
    subscriber: Any
    task: Optional[asyncio.Task] = None
    released: bool = False
    dropped: bool = False
    delivered: int = field(default=0)


class ChangeFeedListener:
    """Subscribes to the message table's change feed on a realtime bus.

    The bus is anything exposing ``enabled`` and ``subscribe(channel, on_message)``
    returning an object with ``run()`` and ``cancel()``; see
    ``dmsync.utils.realtime_bus``.
    """

    def __init__(self, bus, table: Optional[str] = None) -> None:
        self._bus = bus
        self._table = table or settings.feed_table

    async def subscribe(self, scope: FeedScope, on_event: OnEvent) -> Optional[SubscriptionHandle]:
        if not getattr(self._bus, "enabled", False):
            logger.info("Change feed disabled, relying on periodic refresh")
            return None

        channel = feed_channel(scope.user_id, self._table)
        handle = SubscriptionHandle(channel=channel, scope=scope, subscriber=None)

        async def _on_message(raw: str) -> None:
            self._dispatch(handle, raw, on_event)

        try:
            handle.subscriber = await self._bus.subscribe(channel, _on_message)
        except Exception as e:
            logger.warning(f"Change feed subscribe failed on {channel}, relying on periodic refresh: {e}")
            return None

        handle.task = asyncio.create_task(handle.subscriber.run())
        handle.task.add_done_callback(lambda task: self._on_task_done(handle, task))
        logger.info(f"Subscribed to change feed {channel}")
        return handle

    async def unsubscribe(self, handle: Optional[SubscriptionHandle]) -> bool:
        if handle is None or handle.released:
            return False
        handle.released = True
        try:
            await handle.subscriber.cancel()
        except Exception as e:
            logger.warning(f"Change feed cancel failed on {handle.channel}: {e}")
        if handle.task is not None and not handle.task.done():
            handle.task.cancel()
            try:
                await handle.task
            except asyncio.CancelledError:
                pass
        logger.info(f"Unsubscribed from change feed {handle.channel}")
        return True

    def _dispatch(self, handle: SubscriptionHandle, raw: str, on_event: OnEvent) -> None:
        if handle.released:
            return
        try:
            event = ChangeEvent.model_validate_json(raw)
        except ValidationError as e:
            logger.warning(f"Dropping malformed change event on {handle.channel}: {e}")
            return
        if event.table != self._table or not handle.scope.matches(event):
            logger.debug(f"Ignoring out-of-scope event for {event.table}/{event.row.conversation_id}")
            return
        handle.delivered += 1
        try:
            on_event(event)
        except Exception:
            # one bad event must not tear down the subscription
            logger.exception(f"Change event handler failed for message {event.row.id}")

    def _on_task_done(self, handle: SubscriptionHandle, task: asyncio.Task) -> None:
        if task.cancelled() or handle.released:
            return
        handle.dropped = True
        exc = task.exception()
        logger.warning(f"Change feed {handle.channel} dropped, relying on periodic refresh: {exc}")
