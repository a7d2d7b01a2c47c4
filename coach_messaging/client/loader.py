import logging
from typing import Optional, Tuple

from coach_messaging.client.backend import ConversationBackend
from coach_messaging.client.state import (
    ConversationList,
    LastMessageUpdated,
    MessagingStore,
    PageFailed,
    PageReceived,
    PageRequested,
    SearchChanged,
)
from coach_messaging.core.config import get_settings
from coach_messaging.schemas.messaging import Conversation, ConversationPage, Message
from coach_messaging.utils.errors import MessagingError


logger = logging.getLogger(__name__)


class ConversationListLoader:
    """
    Incremental offset pager over the viewer's conversations.

    Offset 0 replaces the accumulated list, later offsets append (deduplicated by
    id, never reordering what is already loaded). At most one request is in
    flight per search generation; a response for a superseded search term is
    dropped on arrival.
    """

    def __init__(self, backend: ConversationBackend, store: MessagingStore, page_size: Optional[int] = None) -> None:
        self._backend = backend
        self._store = store
        self.page_size = page_size or get_settings().conversation_page_size

    @property
    def state(self) -> ConversationList:
        return self._store.state.conversations

    @property
    def items(self) -> Tuple[Conversation, ...]:
        return self.state.items

    async def request_page(self, offset: int, limit: Optional[int] = None) -> Optional[ConversationPage]:
        current = self.state
        if current.loading:
            logger.debug("Page request at offset %d suppressed, offset %d in flight", offset, current.in_flight)
            return None
        generation = current.generation
        self._store.dispatch(PageRequested(generation, offset))
        try:
            page = await self._backend.list_conversations(
                limit=limit or self.page_size,
                offset=offset,
                search=current.search or None,
            )
        except MessagingError as exc:
            logger.warning("Loading conversations at offset %d failed: %s", offset, exc)
            self._store.dispatch(PageFailed(generation, offset, str(exc)))
            return None
        except Exception as exc:
            self._store.dispatch(PageFailed(generation, offset, str(exc)))
            raise

        if generation != self.state.generation:
            logger.debug("Dropping conversations page at offset %d for a superseded search", offset)
            return None
        self._store.dispatch(PageReceived(generation, offset, tuple(page.items), page.has_more))
        return page

    async def load_first_page(self) -> Optional[ConversationPage]:
        return await self.request_page(0)

    async def on_sentinel_visible(self) -> Optional[ConversationPage]:
        current = self.state
        # after a failure only the explicit retry affordance loads more
        if current.loading or not current.has_more or current.error is not None:
            return None
        return await self.request_page(current.next_offset)

    async def retry(self) -> Optional[ConversationPage]:
        current = self.state
        if current.error is None:
            return None
        return await self.request_page(current.next_offset)

    async def set_search(self, term: str) -> Optional[ConversationPage]:
        before = self.state.generation
        self._store.dispatch(SearchChanged(term))
        if self.state.generation == before:
            return None
        return await self.request_page(0)

    def note_sent(self, conversation_id: str, message: Message) -> None:
        self._store.dispatch(LastMessageUpdated(conversation_id, message))
