import logging

from coach_messaging.client.backend import ConversationBackend
from coach_messaging.client.background import BackgroundTasks
from coach_messaging.client.cache import CONVERSATION_UNREAD_COUNTS, INVALIDATIONS, QueryCache, messages_key
from coach_messaging.client.state import MarkReadRequested, MarkReadSettled, MessagingStore
from coach_messaging.utils.errors import MessagingError


logger = logging.getLogger(__name__)


class ReadReceiptSynchronizer:
    """
    Marks conversations read and refreshes every cached count that depends on it.

    Counts are never decremented locally. A successful mark-read invalidates the
    per-conversation map, the global total and the navigation badge, and the
    cache refetches them from the server. Failures are logged and dropped; the
    next refetch of an affected view will call again.
    """

    def __init__(self, backend: ConversationBackend, store: MessagingStore, cache: QueryCache, tasks: BackgroundTasks) -> None:
        self._backend = backend
        self._store = store
        self._cache = cache
        self._tasks = tasks

    def mark_read(self, conversation_id: str) -> None:
        """Fire-and-forget; repeated calls while one is pending are no-ops."""
        if not self._claim(conversation_id):
            return
        self._tasks.spawn(self._run(conversation_id), name=f"mark-read:{conversation_id}")

    async def mark_read_now(self, conversation_id: str) -> bool:
        """Awaitable variant; returns whether a backend call was made and succeeded."""
        if not self._claim(conversation_id):
            return False
        return await self._run(conversation_id)

    def _claim(self, conversation_id: str) -> bool:
        state = self._store.state
        if conversation_id in state.read_in_flight or conversation_id in state.forbidden:
            return False
        if self._known_read(conversation_id):
            logger.debug("Conversation %s already read, skipping mark-read", conversation_id)
            return False
        self._store.dispatch(MarkReadRequested(conversation_id))
        return True

    def _known_read(self, conversation_id: str) -> bool:
        # a map loaded before the thread cannot vouch for messages the thread fetch brought in
        if self._cache.is_stale(CONVERSATION_UNREAD_COUNTS):
            return False
        if self._cache.version(CONVERSATION_UNREAD_COUNTS) < self._cache.version(messages_key(conversation_id)):
            return False
        counts = self._cache.peek(CONVERSATION_UNREAD_COUNTS)
        return counts is not None and counts.get(conversation_id, 0) <= 0

    async def _run(self, conversation_id: str) -> bool:
        ok = False
        try:
            await self._backend.mark_as_read(conversation_id)
            ok = True
        except MessagingError as exc:
            logger.info("Mark-read for conversation %s failed: %s", conversation_id, exc)
        finally:
            self._store.dispatch(MarkReadSettled(conversation_id, ok))
        if ok:
            await self._cache.invalidate(*INVALIDATIONS["mark_as_read"](conversation_id))
        return ok
