"""
Query cache shared by every surface that shows server-computed state
(navigation badge, conversation list, notification center, message threads).

Entries are keyed by operation + parameters. Mutations never patch values in
place: they name the keys they invalidate and the cache refetches them, so all
surfaces converge on the server's view instead of drifting with local arithmetic.

Values also age out. ``stale_after`` maps key prefixes to a number of seconds
after which a loaded value counts as stale, so the next ``fetch`` polls the
server again even when no local mutation touched it.
"""
import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple


logger = logging.getLogger(__name__)

QueryKey = Tuple[Any, ...]
Fetcher = Callable[[QueryKey], Awaitable[Any]]
Listener = Callable[[QueryKey, Any], None]

MESSAGES: QueryKey = ("messaging", "messages")
CONVERSATION_UNREAD_COUNTS: QueryKey = ("messaging", "conversation-unread-counts")
UNREAD_TOTAL: QueryKey = ("messaging", "unread-count")
NAVIGATION_BADGE: QueryKey = ("navigation", "badge")
NOTIFICATION_UNREAD: QueryKey = ("notifications", "unread-count")
NOTIFICATION_LISTS: QueryKey = ("notifications", "list")


def messages_key(conversation_id: str) -> QueryKey:
    return MESSAGES + (conversation_id,)


def notifications_key(limit: int, unread_only: bool) -> QueryKey:
    return NOTIFICATION_LISTS + (limit, unread_only)


# mutation -> keys (or key prefixes) it invalidates, given the mutated record id
INVALIDATIONS: Dict[str, Callable[[str], Tuple[QueryKey, ...]]] = {
    "send_message": lambda conversation_id: (messages_key(conversation_id),),
    "mark_as_read": lambda conversation_id: (CONVERSATION_UNREAD_COUNTS, UNREAD_TOTAL, NAVIGATION_BADGE),
    "mark_notification_read": lambda notification_id: (NOTIFICATION_UNREAD, NOTIFICATION_LISTS, NAVIGATION_BADGE),
}


def _matches(key: QueryKey, prefix: QueryKey) -> bool:
    return key[:len(prefix)] == prefix


@dataclass
class CacheEntry:
    value: Any = None
    has_value: bool = False
    stale: bool = True
    error: Optional[BaseException] = None
    # sequence numbers of fetches for this key; a result is applied only if it is
    # newer than the one held, so an earlier request can never overwrite a later one
    issued: int = 0
    applied: int = 0
    invalidated_at: int = 0
    updated_at: Optional[datetime] = None
    # clock reading and cache-wide load order of the value held
    loaded_at: Optional[float] = None
    version: int = 0


class QueryCache:

    def __init__(
        self,
        stale_after: Optional[Dict[QueryKey, float]] = None,
        clock: Optional[Callable[[], float]] = None,
    ) -> None:
        self._entries: Dict[QueryKey, CacheEntry] = {}
        self._fetchers: Dict[QueryKey, Fetcher] = {}
        self._listeners: Dict[QueryKey, List[Listener]] = {}
        self._inflight: Dict[QueryKey, Tuple[int, asyncio.Task]] = {}
        self._stale_after: Dict[QueryKey, float] = dict(stale_after or {})
        self._clock = clock or time.monotonic
        self._loads = 0

    def _window(self, key: QueryKey) -> Optional[float]:
        for size in range(len(key), 0, -1):
            window = self._stale_after.get(key[:size])
            if window is not None:
                return window
        return None

    def _expired(self, key: QueryKey, entry: CacheEntry) -> bool:
        window = self._window(key)
        if window is None or entry.loaded_at is None:
            return False
        return self._clock() - entry.loaded_at >= window

    def _fresh(self, key: QueryKey, entry: Optional[CacheEntry]) -> bool:
        return entry is not None and entry.has_value and not entry.stale and not self._expired(key, entry)

    def _loaded(self, entry: CacheEntry, value: Any) -> None:
        self._loads += 1
        entry.value = value
        entry.has_value = True
        entry.error = None
        entry.updated_at = datetime.now(timezone.utc)
        entry.loaded_at = self._clock()
        entry.version = self._loads

    def register(self, prefix: QueryKey, fetcher: Fetcher) -> None:
        self._fetchers[prefix] = fetcher

    def _fetcher_for(self, key: QueryKey) -> Fetcher:
        for size in range(len(key), 0, -1):
            fetcher = self._fetchers.get(key[:size])
            if fetcher is not None:
                return fetcher
        raise KeyError(f"No fetcher registered for {key!r}")

    def subscribe(self, prefix: QueryKey, listener: Listener) -> Callable[[], None]:
        self._listeners.setdefault(prefix, []).append(listener)

        def unsubscribe() -> None:
            listeners = self._listeners.get(prefix, [])
            if listener in listeners:
                listeners.remove(listener)

        return unsubscribe

    def peek(self, key: QueryKey) -> Any:
        entry = self._entries.get(key)
        return entry.value if entry is not None and entry.has_value else None

    def is_stale(self, key: QueryKey) -> bool:
        return not self._fresh(key, self._entries.get(key))

    def version(self, key: QueryKey) -> int:
        """Load order of the held value; 0 when nothing was loaded. Later loads compare greater."""
        entry = self._entries.get(key)
        return entry.version if entry is not None else 0

    def error(self, key: QueryKey) -> Optional[BaseException]:
        entry = self._entries.get(key)
        return entry.error if entry is not None else None

    async def fetch(self, key: QueryKey) -> Any:
        """Return the cached value, loading it if missing, invalidated or aged out."""
        entry = self._entries.get(key)
        if self._fresh(key, entry):
            return entry.value
        inflight = self._inflight.get(key)
        if inflight is not None and entry is not None and inflight[0] > entry.invalidated_at:
            return await asyncio.shield(inflight[1])
        return await self.refetch(key)

    async def refetch(self, key: QueryKey) -> Any:
        """Start a new fetch for ``key`` regardless of freshness. Raises what the fetcher raises."""
        fetcher = self._fetcher_for(key)
        entry = self._entries.setdefault(key, CacheEntry())
        entry.issued += 1
        seq = entry.issued
        task = asyncio.get_running_loop().create_task(self._run(key, seq, fetcher))
        self._inflight[key] = (seq, task)
        return await asyncio.shield(task)

    async def _run(self, key: QueryKey, seq: int, fetcher: Fetcher) -> Any:
        entry = self._entries[key]
        try:
            value = await fetcher(key)
        except Exception as exc:
            if seq > entry.applied:
                entry.error = exc
            raise
        finally:
            current = self._inflight.get(key)
            if current is not None and current[0] == seq:
                del self._inflight[key]
        if seq > entry.applied:
            self._loaded(entry, value)
            entry.applied = seq
            entry.stale = seq <= entry.invalidated_at
            self._notify(key, value)
        return entry.value

    def set(self, key: QueryKey, value: Any) -> None:
        entry = self._entries.setdefault(key, CacheEntry())
        entry.issued += 1
        entry.applied = entry.issued
        entry.stale = False
        self._loaded(entry, value)
        self._notify(key, value)

    def _notify(self, key: QueryKey, value: Any) -> None:
        for prefix, listeners in list(self._listeners.items()):
            if not _matches(key, prefix):
                continue
            for listener in list(listeners):
                try:
                    listener(key, value)
                except Exception:
                    logger.exception("Cache listener for %r failed", key)

    async def invalidate(self, *prefixes: QueryKey) -> None:
        """
        Mark every loaded entry under ``prefixes`` stale and refetch it.

        Refetch failures are logged and leave the entry stale with its last
        value, so the next ``fetch`` retries.
        """
        keys = [key for key in self._entries if any(_matches(key, prefix) for prefix in prefixes)]
        for key in keys:
            entry = self._entries[key]
            entry.stale = True
            entry.invalidated_at = entry.issued
        if not keys:
            return
        results = await asyncio.gather(*(self.refetch(key) for key in keys), return_exceptions=True)
        for key, result in zip(keys, results):
            if isinstance(result, Exception):
                logger.warning("Refetch of %r after invalidation failed: %s", key, result)
