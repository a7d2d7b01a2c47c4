import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

from coach_messaging.client.backend import ConversationBackend
from coach_messaging.client.cache import INVALIDATIONS, QueryCache, messages_key
from coach_messaging.client.state import (
    CanonicalRefreshed,
    Composer,
    ComposerEdited,
    ConversationForbidden,
    MessageSubmitted,
    MessagingStore,
    PendingDiscarded,
    PendingMessage,
    RetryRequested,
    SendFailed,
    SendSucceeded,
)
from coach_messaging.client.timeline import TimelineEntry, build_timeline
from coach_messaging.schemas.messaging import MAX_MESSAGE_LENGTH, Attachment, Message
from coach_messaging.utils.errors import AuthorizationError, MessagingError, ValidationError


logger = logging.getLogger(__name__)


class MessageSendPipeline:
    """
    Optimistic send state machine for one conversation.

    ``composed -> sending -> sent`` on the happy path, ``sending -> failed`` on
    error, then ``failed -> sending`` (explicit retry) or discarded. Nothing is
    retried automatically. A ``sent`` entry is removed only once a refreshed
    canonical list contains it, so the bubble never disappears before its
    canonical version has loaded.
    """

    def __init__(
        self,
        conversation_id: str,
        backend: ConversationBackend,
        store: MessagingStore,
        cache: QueryCache,
        on_sent: Optional[Callable[[str, Message], None]] = None,
        id_factory: Optional[Callable[[], str]] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.conversation_id = conversation_id
        self._backend = backend
        self._store = store
        self._cache = cache
        self._on_sent = on_sent
        self._id_factory = id_factory or (lambda: uuid.uuid4().hex)
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._unsubscribe = cache.subscribe(messages_key(conversation_id), self._on_canonical)

    def _on_canonical(self, key: Tuple[Any, ...], messages: List[Message]) -> None:
        self._store.dispatch(CanonicalRefreshed(self.conversation_id, tuple(messages)))

    def close(self) -> None:
        self._unsubscribe()

    @property
    def composer(self) -> Composer:
        return self._store.state.composer(self.conversation_id)

    @property
    def pending(self) -> Tuple[PendingMessage, ...]:
        return self._store.state.pending_for(self.conversation_id)

    def find(self, temp_id: str) -> Optional[PendingMessage]:
        return self._store.state.find_pending(self.conversation_id, temp_id)

    def timeline(self) -> List[TimelineEntry]:
        messages = self._cache.peek(messages_key(self.conversation_id)) or []
        return build_timeline(messages, self.pending)

    def edit(self, content: str) -> None:
        self._store.dispatch(ComposerEdited(self.conversation_id, content, self.composer.attachment))

    def attach(self, upload: Optional[Dict[str, Any]]) -> None:
        """Attach an uploaded file (``{url, type, name, size}``) or clear it with ``None``."""
        attachment = Attachment.from_upload(upload) if upload else None
        self._store.dispatch(ComposerEdited(self.conversation_id, self.composer.content, attachment))

    def _check_submittable(self, content: str, attachment: Optional[Attachment]) -> None:
        if self.conversation_id in self._store.state.forbidden:
            raise AuthorizationError(f"Conversation {self.conversation_id} is not available")
        if not content and attachment is None:
            raise ValidationError("Message must contain either text content or a file attachment")
        if len(content) > MAX_MESSAGE_LENGTH:
            raise ValidationError(f"Message must be at most {MAX_MESSAGE_LENGTH} characters")

    async def submit(self) -> str:
        """
        Send the composer's draft and return the pending entry's temp id.

        A draft restored from a failed entry is sent as a retry of that entry.
        Raises ValidationError without touching the network for an empty or
        oversized draft.
        """
        composer = self.composer
        content = composer.content.strip()
        self._check_submittable(content, composer.attachment)

        failed = self.find(composer.restored_from) if composer.restored_from else None
        if failed is not None and failed.status == "failed":
            return await self._resend(failed, content, composer.attachment)

        temp_id = f"temp-{self._id_factory()}"
        self._store.dispatch(MessageSubmitted(
            conversation_id=self.conversation_id,
            temp_id=temp_id,
            client_message_id=self._id_factory(),
            content=content,
            attachment=composer.attachment,
            submitted_at=self._clock(),
        ))
        await self._send(temp_id)
        return temp_id

    async def retry(self, temp_id: str) -> str:
        entry = self.find(temp_id)
        if entry is None or entry.status != "failed":
            raise ValidationError(f"No failed message {temp_id} to retry")
        if not entry.retryable:
            raise AuthorizationError(f"Conversation {self.conversation_id} is not available")
        return await self._resend(entry, entry.content, entry.attachment)

    async def _resend(self, entry: PendingMessage, content: str, attachment: Optional[Attachment]) -> str:
        # an unchanged message keeps its key so a send that did land is not duplicated
        if content == entry.content and attachment == entry.attachment:
            key = entry.client_message_id
        else:
            key = self._id_factory()
        self._store.dispatch(RetryRequested(self.conversation_id, entry.temp_id, key, content, attachment))
        await self._send(entry.temp_id)
        return entry.temp_id

    def discard(self, temp_id: str) -> None:
        entry = self.find(temp_id)
        if entry is None or entry.status != "failed":
            raise ValidationError(f"Only failed messages can be discarded ({temp_id})")
        self._store.dispatch(PendingDiscarded(self.conversation_id, temp_id))

    async def _send(self, temp_id: str) -> None:
        entry = self.find(temp_id)
        try:
            message = await self._backend.send_message(
                self.conversation_id,
                entry.content,
                attachment=entry.attachment,
                client_message_id=entry.client_message_id,
            )
        except AuthorizationError as exc:
            logger.warning("Send to conversation %s refused: %s", self.conversation_id, exc)
            self._store.dispatch(SendFailed(self.conversation_id, temp_id, str(exc), retryable=False))
            self._store.dispatch(ConversationForbidden(self.conversation_id))
            return
        except MessagingError as exc:
            logger.info("Send %s in conversation %s failed: %s", temp_id, self.conversation_id, exc)
            self._store.dispatch(SendFailed(self.conversation_id, temp_id, str(exc)))
            return
        except Exception as exc:
            logger.exception("Send %s in conversation %s failed unexpectedly", temp_id, self.conversation_id)
            self._store.dispatch(SendFailed(self.conversation_id, temp_id, str(exc)))
            return

        self._store.dispatch(SendSucceeded(self.conversation_id, temp_id, message))
        if self._on_sent is not None:
            self._on_sent(self.conversation_id, message)
        await self._reconcile()

    async def _reconcile(self) -> None:
        # the cache listener turns the refreshed list into CanonicalRefreshed
        for key in INVALIDATIONS["send_message"](self.conversation_id):
            try:
                await self._cache.refetch(key)
            except MessagingError as exc:
                logger.info(
                    "Refresh after send in %s failed, pending entries stay 'sent' until the next refresh: %s",
                    self.conversation_id, exc,
                )
