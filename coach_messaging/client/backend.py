import logging
from typing import Any, Dict, List, Optional, Protocol

import httpx

from coach_messaging.core.config import get_settings
from coach_messaging.schemas.messaging import Attachment, ConversationPage, Message
from coach_messaging.schemas.notification import NotificationEvent, NotificationFilter
from coach_messaging.utils.errors import AuthorizationError, MessagingError, TransientNetworkError, ValidationError


logger = logging.getLogger(__name__)

RETRYABLE_STATUSES = {408, 425, 429}


class ConversationBackend(Protocol):
    """The conversation service as seen from the client. Every call may suspend."""

    async def list_conversations(self, limit: int, offset: int, search: Optional[str] = None) -> ConversationPage: ...

    async def get_messages(self, conversation_id: str) -> List[Message]: ...

    async def send_message(
        self,
        conversation_id: str,
        content: str,
        attachment: Optional[Attachment] = None,
        client_message_id: Optional[str] = None,
    ) -> Message: ...

    async def mark_as_read(self, conversation_id: str) -> None: ...

    async def get_unread_count(self) -> int: ...

    async def get_conversation_unread_counts(self) -> Dict[str, int]: ...

    async def get_notifications(self, filter: NotificationFilter) -> List[NotificationEvent]: ...

    async def get_notification_unread_count(self) -> int: ...

    async def mark_notification_read(self, notification_id: str) -> None: ...


class HttpConversationBackend:

    def __init__(self, client: httpx.AsyncClient) -> None:
        self._client = client

    @classmethod
    def connect(
        cls,
        user_id: str,
        role: str,
        name: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> "HttpConversationBackend":
        settings = get_settings()
        headers = {"X-User-Id": user_id, "X-User-Role": role}
        if name:
            headers["X-User-Name"] = name
        client = httpx.AsyncClient(
            base_url=base_url or settings.api_base_url,
            headers=headers,
            timeout=timeout or settings.request_timeout,
            transport=transport,
        )
        return cls(client)

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(self, method: str, url: str, **kwargs) -> Any:
        try:
            response = await self._client.request(method, url, **kwargs)
        except httpx.HTTPError as exc:
            raise TransientNetworkError(f"{method} {url} failed: {exc}") from exc

        if response.is_success:
            try:
                return response.json()
            except ValueError as exc:
                raise TransientNetworkError(f"{method} {url} returned a malformed body") from exc

        detail = _error_detail(response)
        code = response.status_code
        logger.debug("%s %s -> %d %s", method, url, code, detail)
        if code in (401, 403, 404):
            raise AuthorizationError(detail)
        if code in (400, 422):
            raise ValidationError(detail)
        if code >= 500 or code in RETRYABLE_STATUSES:
            raise TransientNetworkError(f"{method} {url} returned {code}: {detail}")
        raise MessagingError(f"{method} {url} returned {code}: {detail}")

    async def list_conversations(self, limit: int, offset: int, search: Optional[str] = None) -> ConversationPage:
        params: Dict[str, Any] = {"limit": limit, "offset": offset}
        if search:
            params["search"] = search
        data = await self._request("GET", "/conversations", params=params)
        return ConversationPage.model_validate(data)

    async def get_messages(self, conversation_id: str) -> List[Message]:
        data = await self._request("GET", f"/conversations/{conversation_id}/messages")
        return [Message.model_validate(item) for item in data]

    async def send_message(
        self,
        conversation_id: str,
        content: str,
        attachment: Optional[Attachment] = None,
        client_message_id: Optional[str] = None,
    ) -> Message:
        body: Dict[str, Any] = {"content": content}
        if attachment is not None:
            body["attachment"] = attachment.model_dump()
        if client_message_id:
            body["client_message_id"] = client_message_id
        data = await self._request("POST", f"/conversations/{conversation_id}/messages", json=body)
        return Message.model_validate(data)

    async def mark_as_read(self, conversation_id: str) -> None:
        await self._request("POST", f"/conversations/{conversation_id}/read")

    async def get_unread_count(self) -> int:
        data = await self._request("GET", "/messages/unread-count")
        return int(data["count"])

    async def get_conversation_unread_counts(self) -> Dict[str, int]:
        data = await self._request("GET", "/conversations/unread-counts")
        return {str(key): int(value) for key, value in data.items()}

    async def get_notifications(self, filter: NotificationFilter) -> List[NotificationEvent]:
        params = {"limit": filter.limit, "unread_only": filter.unread_only}
        data = await self._request("GET", "/notifications", params=params)
        return [NotificationEvent.model_validate(item) for item in data]

    async def get_notification_unread_count(self) -> int:
        data = await self._request("GET", "/notifications/unread-count")
        return int(data["count"])

    async def mark_notification_read(self, notification_id: str) -> None:
        await self._request("POST", f"/notifications/{notification_id}/read")


def _error_detail(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return response.text or response.reason_phrase
    if isinstance(payload, dict) and "detail" in payload:
        return str(payload["detail"])
    return str(payload)
