import asyncio
import logging

from fastapi import APIRouter, Depends, HTTPException, WebSocket, WebSocketDisconnect

from dmsync.routers.conversations import get_chat_service
from dmsync.schemas.chat import UnreadCount
from dmsync.services.chat_service import ChatService
from dmsync.utils.dependencies import get_current_user
from dmsync.utils.realtime_bus import feed_channel, get_bus
from dmsync.utils.security import InvalidTokenError, decode_access_token
from dmsync.utils.websocket_manager import manager

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/messages", tags=["chat"])
feed_router = APIRouter(prefix="/feed", tags=["chat"])


@router.get("/unread_count", response_model=UnreadCount)
async def get_unread_count(current_user: dict = Depends(get_current_user), service: ChatService = Depends(get_chat_service)):
    count = await service.unread_count(current_user["_id"])
    return UnreadCount(count=count)


@router.delete("/{message_id}")
async def delete_message(message_id: str, current_user: dict = Depends(get_current_user), service: ChatService = Depends(get_chat_service)):
    try:
        await service.delete_message(message_id, current_user["_id"])
    except LookupError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return {"deleted": True}


@feed_router.websocket("/ws")
async def feed_socket(websocket: WebSocket):
    # JWT via query ?token=...
    token = websocket.query_params.get("token")
    if not token:
        await websocket.close(code=4401)
        return
    try:
        user_id = decode_access_token(token)["sub"]
    except InvalidTokenError:
        await websocket.close(code=4401)
        return

    await manager.connect(user_id, websocket)
    subscriber = None
    sub_task = None
    try:
        bus = await get_bus()
        if bus.enabled:
            # Redis carries events published by other workers; fan them out to this socket
            subscriber = await bus.subscribe(feed_channel(user_id), websocket.send_text)
            sub_task = asyncio.create_task(subscriber.run())
        while True:
            # clients only send keepalives on this socket
            await websocket.receive_text()
    except WebSocketDisconnect:
        logger.debug(f"Feed socket closed by client {user_id}")
    except Exception:
        logger.exception(f"Feed socket for {user_id} failed")
        await websocket.close(code=1011)
    finally:
        manager.disconnect(user_id, websocket)
        if subscriber is not None:
            await subscriber.cancel()
        if sub_task is not None:
            sub_task.cancel()
            try:
                await sub_task
            except asyncio.CancelledError:
                pass
            except Exception:
                logger.exception(f"Feed subscription for {user_id} ended with an error")
