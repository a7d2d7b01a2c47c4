import logging
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

from coach_messaging.client.backend import ConversationBackend
from coach_messaging.client.background import BackgroundTasks
from coach_messaging.client.cache import (
    CONVERSATION_UNREAD_COUNTS,
    MESSAGES,
    NAVIGATION_BADGE,
    NOTIFICATION_LISTS,
    NOTIFICATION_UNREAD,
    UNREAD_TOTAL,
    QueryCache,
    QueryKey,
    messages_key,
    notifications_key,
)
from coach_messaging.client.loader import ConversationListLoader
from coach_messaging.client.notification_router import NavigationTarget, NotificationRouter
from coach_messaging.client.pipeline import MessageSendPipeline
from coach_messaging.client.read_sync import ReadReceiptSynchronizer
from coach_messaging.client.state import ConversationForbidden, MessagingStore
from coach_messaging.client.timeline import EntryView, render_entry
from coach_messaging.core.config import get_settings
from coach_messaging.schemas.messaging import UnreadCounts, ViewerRole
from coach_messaging.schemas.notification import NotificationEvent, NotificationFilter
from coach_messaging.utils.errors import AuthorizationError


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class NavigationBadge:
    messages: int
    notifications: int

    @property
    def total(self) -> int:
        return self.messages + self.notifications


class MessagingClient:
    """Messaging for one signed-in viewer: one store, one cache, shared by every surface."""

    def __init__(
        self,
        backend: ConversationBackend,
        viewer_id: str,
        viewer_role: ViewerRole,
        page_size: Optional[int] = None,
        navigate: Optional[Callable[[NavigationTarget], None]] = None,
        clock: Optional[Callable[[], float]] = None,
    ) -> None:
        settings = get_settings()
        self.backend = backend
        self.viewer_id = viewer_id
        self.viewer_role = viewer_role
        self.store = MessagingStore()
        self.cache = QueryCache(
            stale_after={
                MESSAGES: settings.messages_stale_after,
                CONVERSATION_UNREAD_COUNTS: settings.unread_stale_after,
                UNREAD_TOTAL: settings.unread_stale_after,
                NAVIGATION_BADGE: settings.unread_stale_after,
                NOTIFICATION_UNREAD: settings.notifications_stale_after,
                NOTIFICATION_LISTS: settings.notifications_stale_after,
            },
            clock=clock,
        )
        self.tasks = BackgroundTasks()
        self._pipelines: Dict[str, MessageSendPipeline] = {}

        self.cache.register(MESSAGES, self._fetch_messages)
        self.cache.register(CONVERSATION_UNREAD_COUNTS, self._fetch_unread_map)
        self.cache.register(UNREAD_TOTAL, self._fetch_unread_total)
        self.cache.register(NAVIGATION_BADGE, self._fetch_badge)
        self.cache.register(NOTIFICATION_UNREAD, self._fetch_notification_unread)
        self.cache.register(NOTIFICATION_LISTS, self._fetch_notifications)

        self.conversations = ConversationListLoader(backend, self.store, page_size=page_size)
        self.read_receipts = ReadReceiptSynchronizer(backend, self.store, self.cache, self.tasks)
        self.notifications = NotificationRouter(backend, self.cache, self.tasks, navigate=navigate)

    # fetchers

    async def _fetch_messages(self, key: QueryKey):
        return await self.backend.get_messages(key[-1])

    async def _fetch_unread_map(self, key: QueryKey):
        return await self.backend.get_conversation_unread_counts()

    async def _fetch_unread_total(self, key: QueryKey):
        return await self.backend.get_unread_count()

    async def _fetch_badge(self, key: QueryKey):
        messages = await self.backend.get_unread_count()
        notifications = await self.backend.get_notification_unread_count()
        return NavigationBadge(messages=messages, notifications=notifications)

    async def _fetch_notification_unread(self, key: QueryKey):
        return await self.backend.get_notification_unread_count()

    async def _fetch_notifications(self, key: QueryKey):
        limit, unread_only = key[-2], key[-1]
        return await self.backend.get_notifications(NotificationFilter(limit=limit, unread_only=unread_only))

    # conversations

    def pipeline(self, conversation_id: str) -> MessageSendPipeline:
        pipeline = self._pipelines.get(conversation_id)
        if pipeline is None:
            pipeline = MessageSendPipeline(
                conversation_id,
                self.backend,
                self.store,
                self.cache,
                on_sent=self.conversations.note_sent,
            )
            self._pipelines[conversation_id] = pipeline
        return pipeline

    async def open_conversation(self, conversation_id: str) -> List[EntryView]:
        """Load the thread, mark it read in the background and return the rendered timeline."""
        pipeline = self.pipeline(conversation_id)
        try:
            await self.cache.fetch(messages_key(conversation_id))
        except AuthorizationError:
            self.store.dispatch(ConversationForbidden(conversation_id))
            raise
        self.read_receipts.mark_read(conversation_id)
        return [render_entry(entry, self.viewer_id) for entry in pipeline.timeline()]

    async def refresh_conversation(self, conversation_id: str) -> List[EntryView]:
        await self.cache.refetch(messages_key(conversation_id))
        return [render_entry(entry, self.viewer_id) for entry in self.pipeline(conversation_id).timeline()]

    # counts

    async def unread_counts(self) -> UnreadCounts:
        counts = await self.cache.fetch(CONVERSATION_UNREAD_COUNTS)
        return UnreadCounts(per_conversation=counts)

    async def unread_total(self) -> int:
        return await self.cache.fetch(UNREAD_TOTAL)

    async def navigation_badge(self) -> NavigationBadge:
        return await self.cache.fetch(NAVIGATION_BADGE)

    # notifications

    async def notification_feed(self, filter: Optional[NotificationFilter] = None) -> List[NotificationEvent]:
        filter = filter or NotificationFilter()
        return await self.cache.fetch(notifications_key(filter.limit, filter.unread_only))

    async def notification_unread_count(self) -> int:
        return await self.cache.fetch(NOTIFICATION_UNREAD)

    def open_notification(self, notification: NotificationEvent) -> NavigationTarget:
        return self.notifications.route(notification, self.viewer_role)

    async def close(self) -> None:
        """Let background work (mark-read calls, cache refetches) finish, then detach pipelines."""
        await self.tasks.drain()
        for pipeline in self._pipelines.values():
            pipeline.close()
        self._pipelines.clear()
