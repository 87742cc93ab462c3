import logging
from collections import defaultdict
from typing import Dict, Set

from fastapi import WebSocket
from starlette.websockets import WebSocketDisconnect

logger = logging.getLogger(__name__)


class ConnectionManager:
    """Change-feed sockets held by this worker, keyed by user id.

    Used for fan-out when no Redis bus is configured; with Redis each socket
    gets its own bus subscription instead.
    """

    def __init__(self) -> None:
        self._sockets: Dict[str, Set[WebSocket]] = defaultdict(set)

    async def connect(self, user_id: str, websocket: WebSocket) -> None:
        await websocket.accept()
        self._sockets[user_id].add(websocket)
        logger.info(f"Feed socket opened for {user_id} ({len(self._sockets[user_id])} open)")

    def disconnect(self, user_id: str, websocket: WebSocket) -> None:
        sockets = self._sockets.get(user_id)
        if sockets is None:
            return
        sockets.discard(websocket)
        if not sockets:
            del self._sockets[user_id]
        logger.info(f"Feed socket closed for {user_id}")

    def is_connected(self, user_id: str) -> bool:
        return bool(self._sockets.get(user_id))

    async def send_personal_message(self, receiver_id: str, message: str) -> int:
        delivered = 0
        for websocket in list(self._sockets.get(receiver_id, ())):
            try:
                await websocket.send_text(message)
            except (RuntimeError, WebSocketDisconnect) as e:
                logger.debug(f"Dropping stale feed socket for {receiver_id}: {e}")
                self.disconnect(receiver_id, websocket)
                continue
            delivered += 1
        return delivered


manager = ConnectionManager()
