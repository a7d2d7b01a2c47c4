import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Tuple
from urllib.parse import urlencode

from coach_messaging.client.backend import ConversationBackend
from coach_messaging.client.background import BackgroundTasks
from coach_messaging.client.cache import INVALIDATIONS, QueryCache
from coach_messaging.schemas.messaging import ViewerRole
from coach_messaging.schemas.notification import NotificationEvent, NotificationType as T
from coach_messaging.utils.errors import MessagingError


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class NavigationTarget:
    path: str
    params: Tuple[Tuple[str, str], ...] = ()

    @property
    def url(self) -> str:
        if not self.params:
            return self.path
        return f"{self.path}?{urlencode(self.params)}"


Resolver = Callable[[Dict[str, Any]], NavigationTarget]
# (payload key, query param, *fixed params that come with it)
Choice = Tuple[Any, ...]


def _first(path: str, *choices: Choice) -> Resolver:
    """
    Target at ``path`` carrying the first choice whose payload key has a value.
    With none present the bare path is used.
    """
    def resolve(data: Dict[str, Any]) -> NavigationTarget:
        for key, param, *fixed in choices:
            value = data.get(key)
            if value not in (None, ""):
                return NavigationTarget(path, ((param, str(value)),) + tuple(fixed))
        return NavigationTarget(path)
    return resolve


_conversation = (("conversationId", "conversation"), ("messageId", "message"))
_client = (("clientId", "client"), ("clientUserId", "user"))
_program = (("programId", "program"), ("drillId", "drill"))
_progress = (("programId", "program", ("tab", "progress")),)
_event = (("eventId", "event"),)
_submission = (("videoSubmissionId", "submission"),)
_swap = (("swapRequestId", "request"),)

ROUTES: Dict[Tuple[T, str], Resolver] = {
    (T.MESSAGE, "coach"): _first("/messages", *_conversation),
    (T.CLIENT_JOIN_REQUEST, "coach"): _first("/clients", *_client),
    (T.WORKOUT_ASSIGNED, "coach"): _first("/programs", *_program),
    (T.WORKOUT_COMPLETED, "coach"): _first("/programs", *_program),
    (T.PROGRAM_ASSIGNED, "coach"): _first("/programs", *_program),
    (T.PROGRESS_UPDATE, "coach"): _first("/programs", *_progress),
    (T.LESSON_SCHEDULED, "coach"): _first("/schedule", *_event),
    (T.LESSON_CANCELLED, "coach"): _first("/schedule", *_event),
    (T.SCHEDULE_REQUEST, "coach"): _first("/schedule", *_event),
    (T.VIDEO_SUBMISSION, "coach"): _first("/videos", *_submission),
    (T.TIME_SWAP_REQUEST, "coach"): _first("/time-swap", *_swap),

    (T.MESSAGE, "client"): _first("/client-messages", *_conversation),
    (T.WORKOUT_ASSIGNED, "client"): _first("/client-dashboard", *_program),
    (T.WORKOUT_COMPLETED, "client"): _first("/client-dashboard", *_program),
    (T.PROGRAM_ASSIGNED, "client"): _first("/client-dashboard", *_program),
    (T.PROGRESS_UPDATE, "client"): _first("/client-dashboard", *_progress),
    (T.LESSON_SCHEDULED, "client"): _first("/client-schedule", *_event),
    (T.LESSON_CANCELLED, "client"): _first("/client-schedule", *_event),
    (T.TIME_SWAP_REQUEST, "client"): _first("/client-schedule", *_swap),
    (T.VIDEO_SUBMISSION, "client"): _first("/videos", *_submission),
}

FALLBACK: Dict[str, NavigationTarget] = {
    "coach": NavigationTarget("/notifications"),
    "client": NavigationTarget("/client-notifications"),
}


def resolve_route(notification: NotificationEvent, role: ViewerRole) -> NavigationTarget:
    fallback = FALLBACK.get(role, FALLBACK["client"])
    try:
        kind = T(notification.type)
    except ValueError:
        logger.info("Unknown notification type %r, routing to %s", notification.type, fallback.path)
        return fallback
    resolver = ROUTES.get((kind, role))
    if resolver is None:
        return fallback
    return resolver(notification.data or {})


class NotificationRouter:
    """
    Resolves a notification to a navigation target and marks it read.

    The mark-read call is spawned in the background; navigation never waits on it.
    """

    def __init__(
        self,
        backend: ConversationBackend,
        cache: QueryCache,
        tasks: BackgroundTasks,
        navigate: Optional[Callable[[NavigationTarget], None]] = None,
    ) -> None:
        self._backend = backend
        self._cache = cache
        self._tasks = tasks
        self._navigate = navigate

    def route(self, notification: NotificationEvent, viewer_role: ViewerRole) -> NavigationTarget:
        self._tasks.spawn(self._mark_read(notification.id), name=f"notification-read:{notification.id}")
        target = resolve_route(notification, viewer_role)
        if self._navigate is not None:
            self._navigate(target)
        return target

    async def _mark_read(self, notification_id: str) -> None:
        try:
            await self._backend.mark_notification_read(notification_id)
        except MessagingError as exc:
            logger.info("Marking notification %s read failed: %s", notification_id, exc)
            return
        await self._cache.invalidate(*INVALIDATIONS["mark_notification_read"](notification_id))
