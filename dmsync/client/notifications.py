import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Protocol

logger = logging.getLogger(__name__)


class NotificationKind(str, Enum):

    NEW_MESSAGE = "new_message"
    SEND_FAILED = "send_failed"


@dataclass
class Notification:
    kind: NotificationKind
    title: str
    body: str
    conversation_id: Optional[str] = None
    sender_id: Optional[str] = None


class Notifier(Protocol):

    def notify(self, notification: Notification) -> None: ...


class LogNotifier:
    """Default toast sink: writes notifications to the log."""

    def notify(self, notification: Notification) -> None:
        logger.info(f"[{notification.kind.value}] {notification.title}: {notification.body}")


def deliver(notifier: Notifier, notification: Notification) -> bool:
    """Show a passive notification; a sink that fails is logged, never raised."""
    try:
        notifier.notify(notification)
    except Exception as e:
        logger.warning(f"Notification sink failed for {notification.kind.value}: {e}")
        return False
    return True
