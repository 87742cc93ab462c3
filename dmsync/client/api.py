import logging
from typing import Any, Dict, List, Optional, Tuple, Type, TypeVar

import httpx
from pydantic import BaseModel, ValidationError

from dmsync.client.exceptions import ApiError, NetworkError
from dmsync.config import settings
from dmsync.schemas.chat import (
    Conversation,
    ConversationPage,
    Message,
    MessagePage,
    MuteState,
    ReadReceipt,
    UnreadCount,
)

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)


class ChatApi:
    """Async HTTP client for the message service."""

    def __init__(
        self,
        token: str,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            base_url=base_url or settings.api_base_url,
            timeout=timeout if timeout is not None else settings.http_timeout,
        )
        self._headers = {"Authorization": f"Bearer {token}"}

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> "ChatApi":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.aclose()

    async def _request(self, method: str, path: str, code: str, model: Optional[Type[ModelT]] = None, **kwargs) -> Optional[ModelT]:
        try:
            resp = await self._client.request(method, path, headers=self._headers, **kwargs)
        except httpx.RequestError as e:
            raise NetworkError(code="NETWORK_ERROR", message=str(e)) from e
        if resp.status_code >= 400:
            try:
                detail = resp.json().get("detail", resp.text)
            except (ValueError, AttributeError):
                detail = resp.text
            raise ApiError(code=code, message=str(detail), http_status=resp.status_code)
        if model is None:
            return None
        # proxies and half-deployed servers answer 2xx with bodies we cannot use
        try:
            return model.model_validate_json(resp.content)
        except ValidationError as e:
            logger.warning(f"{method} {path} returned an unusable body: {e.error_count()} errors")
            raise ApiError(
                code=code,
                message=f"Malformed response body: {e.errors()[0]['msg']}",
                http_status=resp.status_code,
            ) from e

    async def get_conversations(self, limit: int = 100) -> List[Conversation]:
        """Fetch every conversation of the signed-in user, newest activity first."""
        items: List[Conversation] = []
        cursor: Optional[str] = None
        while True:
            params: Dict[str, Any] = {"limit": limit}
            if cursor:
                params["cursor"] = cursor
            page = await self._request("GET", "/conversations", "LIST_FAILED", ConversationPage, params=params)
            items.extend(page.items)
            if not page.next_cursor:
                return items
            cursor = page.next_cursor

    async def get_conversation(self, conversation_id: str) -> Conversation:
        return await self._request("GET", f"/conversations/{conversation_id}", "CONVERSATION_FAILED", Conversation)

    async def get_or_create_conversation(self, other_user_id: str) -> Conversation:
        return await self._request(
            "POST", "/conversations", "CONVERSATION_FAILED", Conversation, json={"other_user_id": other_user_id}
        )

    async def get_messages(self, conversation_id: str, limit: int = 50, cursor: Optional[str] = None) -> Tuple[List[Message], Optional[str]]:
        params: Dict[str, Any] = {"limit": limit}
        if cursor:
            params["cursor"] = cursor
        page = await self._request("GET", f"/conversations/{conversation_id}/messages", "MESSAGES_FAILED", MessagePage, params=params)
        return page.items, page.next_cursor

    async def send_message(self, conversation_id: str, content: str, client_message_id: Optional[str] = None) -> Message:
        payload = {"content": content, "client_message_id": client_message_id}
        return await self._request("POST", f"/conversations/{conversation_id}/messages", "SEND_FAILED", Message, json=payload)

    async def mark_read(self, conversation_id: str) -> int:
        receipt = await self._request("POST", f"/conversations/{conversation_id}/read", "MARK_READ_FAILED", ReadReceipt)
        return receipt.updated

    async def set_muted(self, conversation_id: str, muted: bool) -> bool:
        state = await self._request("PUT", f"/conversations/{conversation_id}/mute", "MUTE_FAILED", MuteState, json={"muted": muted})
        return state.muted

    async def delete_message(self, message_id: str) -> None:
        await self._request("DELETE", f"/messages/{message_id}", "DELETE_FAILED")

    async def get_unread_count(self) -> int:
        unread = await self._request("GET", "/messages/unread_count", "UNREAD_FAILED", UnreadCount)
        return unread.count
