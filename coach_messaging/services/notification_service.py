import logging
from typing import Any, Dict, List, Optional

from coach_messaging.repositories.device_repository import DeviceRepository
from coach_messaging.repositories.notification_repository import NotificationRepository
from coach_messaging.schemas.notification import NotificationEvent, NotificationFilter
from coach_messaging.utils.errors import AuthorizationError
from coach_messaging.utils.notifications import get_push


logger = logging.getLogger(__name__)


class NotificationService:

    def __init__(self, notification_repo: NotificationRepository, device_repo: Optional[DeviceRepository] = None) -> None:
        self._notification_repo = notification_repo
        self._device_repo = device_repo

    async def notify(self, user_id: str, type: str, title: str, message: str, data: Optional[Dict[str, Any]] = None) -> NotificationEvent:
        """Store a notification for ``user_id`` and push it to their devices if push is configured."""
        doc = await self._notification_repo.create(user_id, type, title, message, data)
        event = NotificationEvent.from_document(doc)
        await self._push(user_id, event)
        return event

    async def _push(self, user_id: str, event: NotificationEvent) -> None:
        push = await get_push()
        if not getattr(push, "enabled", False) or self._device_repo is None:
            return
        tokens = await self._device_repo.tokens_for(user_id)
        if not tokens:
            return
        data = {"notificationId": event.id, "type": event.type, **event.data}
        delivered = await push.send_fcm(tokens, event.title, event.message[:100], data)
        logger.debug("Pushed notification %s to %d/%d devices", event.id, delivered, len(tokens))

    async def list_notifications(self, user_id: str, filter: NotificationFilter) -> List[NotificationEvent]:
        docs = await self._notification_repo.list_for_user(user_id, limit=filter.limit, unread_only=filter.unread_only)
        return [NotificationEvent.from_document(doc) for doc in docs]

    async def unread_count(self, user_id: str) -> int:
        return await self._notification_repo.count_unread(user_id)

    async def mark_read(self, notification_id: str, user_id: str) -> None:
        ok = await self._notification_repo.mark_read(notification_id, user_id)
        if not ok:
            raise AuthorizationError(f"Notification {notification_id} not found")

    async def mark_all_read(self, user_id: str) -> int:
        return await self._notification_repo.mark_all_read(user_id)
