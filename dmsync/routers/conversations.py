from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from dmsync.database.connection import mongo_db_dependency
from dmsync.repositories.conversation_repository import ConversationRepository
from dmsync.repositories.message_repository import MessageRepository
from dmsync.schemas.chat import (
    Conversation,
    ConversationCreate,
    ConversationPage,
    Message,
    MessageCreate,
    MessagePage,
    MuteState,
    MuteUpdate,
    ReadReceipt,
)
from dmsync.services.chat_service import ChatService
from dmsync.utils.dependencies import get_current_user


router = APIRouter(prefix="/conversations", tags=["chat"])


def get_chat_service(db = Depends(mongo_db_dependency)) -> ChatService:
    convo_repo = ConversationRepository(db)
    msg_repo = MessageRepository(db)
    return ChatService(msg_repo, convo_repo)


@router.get("", response_model=ConversationPage)
async def list_conversations(limit: int = Query(20, ge=1, le=100), cursor: Optional[str] = None, current_user: dict = Depends(get_current_user), service: ChatService = Depends(get_chat_service)):
    items, next_cursor = await service.list_conversations(current_user["_id"], limit=limit, cursor=cursor)
    return ConversationPage(items=items, next_cursor=next_cursor)


@router.post("", response_model=Conversation)
async def get_or_create_conversation(body: ConversationCreate, current_user: dict = Depends(get_current_user), service: ChatService = Depends(get_chat_service)):
    try:
        return await service.get_or_create_conversation(current_user["_id"], body.other_user_id, display_name=current_user.get("name"))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.get("/{conversation_id}", response_model=Conversation)
async def get_conversation(conversation_id: str, current_user: dict = Depends(get_current_user), service: ChatService = Depends(get_chat_service)):
    try:
        return await service.get_conversation(conversation_id, current_user["_id"])
    except LookupError as e:
        raise HTTPException(status_code=404, detail=str(e))


@router.get("/{conversation_id}/messages", response_model=MessagePage)
async def list_messages(conversation_id: str, limit: int = Query(50, ge=1, le=200), cursor: Optional[str] = None, current_user: dict = Depends(get_current_user), service: ChatService = Depends(get_chat_service)):
    try:
        messages, next_cursor = await service.get_history(conversation_id, current_user["_id"], limit=limit, cursor=cursor)
    except LookupError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return MessagePage(items=messages, next_cursor=next_cursor)


@router.post("/{conversation_id}/messages", response_model=Message)
async def send_message(conversation_id: str, body: MessageCreate, current_user: dict = Depends(get_current_user), service: ChatService = Depends(get_chat_service)):
    try:
        return await service.send_message(
            conversation_id,
            current_user["_id"],
            body.content,
            body.client_message_id,
            display_name=current_user.get("name"),
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except LookupError as e:
        raise HTTPException(status_code=404, detail=str(e))


@router.post("/{conversation_id}/read", response_model=ReadReceipt)
async def mark_read(conversation_id: str, current_user: dict = Depends(get_current_user), service: ChatService = Depends(get_chat_service)):
    try:
        count = await service.mark_read(conversation_id, current_user["_id"])
    except LookupError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return ReadReceipt(updated=count)


@router.put("/{conversation_id}/mute", response_model=MuteState)
async def set_muted(conversation_id: str, body: MuteUpdate, current_user: dict = Depends(get_current_user), service: ChatService = Depends(get_chat_service)):
    try:
        muted = await service.set_muted(conversation_id, current_user["_id"], body.muted)
    except LookupError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return MuteState(muted=muted)
