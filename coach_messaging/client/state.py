"""
Client-side messaging state as an explicit record plus the events that change it.

``reduce`` is pure; ``MessagingStore`` applies events one at a time on the event
loop, so every transition is atomic. Each slice has one writer: pending entries
and composers belong to the send pipeline of their conversation, the
conversation list belongs to the loader, read flags to the read-receipt
synchronizer.
"""
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Callable, Dict, FrozenSet, List, Literal, Optional, Tuple

from coach_messaging.schemas.messaging import Attachment, Conversation, LastMessage, Message


SendStatus = Literal["sending", "sent", "failed"]


@dataclass(frozen=True)
class PendingMessage:
    temp_id: str
    conversation_id: str
    content: str
    attachment: Optional[Attachment]
    status: SendStatus
    submitted_at: datetime
    sequence: int
    # idempotency key echoed back by the server on the canonical message
    client_message_id: str
    message_id: Optional[str] = None
    error: Optional[str] = None
    retryable: bool = True


@dataclass(frozen=True)
class Composer:
    content: str = ""
    attachment: Optional[Attachment] = None
    # temp id of the failed entry this draft was restored from
    restored_from: Optional[str] = None

    @property
    def is_empty(self) -> bool:
        return not self.content.strip() and self.attachment is None


@dataclass(frozen=True)
class ConversationList:
    items: Tuple[Conversation, ...] = ()
    search: str = ""
    generation: int = 0
    next_offset: int = 0
    has_more: bool = True
    in_flight: Optional[int] = None
    error: Optional[str] = None
    loaded: bool = False

    @property
    def loading(self) -> bool:
        return self.in_flight is not None


@dataclass(frozen=True)
class MessagingState:
    pending: Dict[str, Tuple[PendingMessage, ...]] = field(default_factory=dict)
    composers: Dict[str, Composer] = field(default_factory=dict)
    conversations: ConversationList = field(default_factory=ConversationList)
    read_in_flight: FrozenSet[str] = frozenset()
    forbidden: FrozenSet[str] = frozenset()
    next_sequence: int = 1

    def pending_for(self, conversation_id: str) -> Tuple[PendingMessage, ...]:
        return self.pending.get(conversation_id, ())

    def composer(self, conversation_id: str) -> Composer:
        return self.composers.get(conversation_id, Composer())

    def find_pending(self, conversation_id: str, temp_id: str) -> Optional[PendingMessage]:
        for entry in self.pending_for(conversation_id):
            if entry.temp_id == temp_id:
                return entry
        return None


# events

@dataclass(frozen=True)
class ComposerEdited:
    conversation_id: str
    content: str
    attachment: Optional[Attachment] = None


@dataclass(frozen=True)
class MessageSubmitted:
    conversation_id: str
    temp_id: str
    client_message_id: str
    content: str
    attachment: Optional[Attachment]
    submitted_at: datetime


@dataclass(frozen=True)
class RetryRequested:
    conversation_id: str
    temp_id: str
    client_message_id: str
    content: str
    attachment: Optional[Attachment]


@dataclass(frozen=True)
class SendSucceeded:
    conversation_id: str
    temp_id: str
    message: Message


@dataclass(frozen=True)
class SendFailed:
    conversation_id: str
    temp_id: str
    error: str
    retryable: bool = True


@dataclass(frozen=True)
class PendingDiscarded:
    conversation_id: str
    temp_id: str


@dataclass(frozen=True)
class CanonicalRefreshed:
    conversation_id: str
    messages: Tuple[Message, ...]


@dataclass(frozen=True)
class ConversationForbidden:
    conversation_id: str


@dataclass(frozen=True)
class SearchChanged:
    term: str


@dataclass(frozen=True)
class PageRequested:
    generation: int
    offset: int


@dataclass(frozen=True)
class PageReceived:
    generation: int
    offset: int
    items: Tuple[Conversation, ...]
    has_more: bool


@dataclass(frozen=True)
class PageFailed:
    generation: int
    offset: int
    error: str


@dataclass(frozen=True)
class LastMessageUpdated:
    conversation_id: str
    message: Message


@dataclass(frozen=True)
class MarkReadRequested:
    conversation_id: str


@dataclass(frozen=True)
class MarkReadSettled:
    conversation_id: str
    ok: bool


# reducers

def _with_pending(state: MessagingState, conversation_id: str, entries: Tuple[PendingMessage, ...]) -> Dict[str, Tuple[PendingMessage, ...]]:
    pending = dict(state.pending)
    if entries:
        pending[conversation_id] = entries
    else:
        pending.pop(conversation_id, None)
    return pending


def _update_entry(state: MessagingState, conversation_id: str, temp_id: str, **changes) -> MessagingState:
    entries = tuple(
        replace(entry, **changes) if entry.temp_id == temp_id else entry
        for entry in state.pending_for(conversation_id)
    )
    return replace(state, pending=_with_pending(state, conversation_id, entries))


def _with_composer(state: MessagingState, conversation_id: str, composer: Composer) -> Dict[str, Composer]:
    return {**state.composers, conversation_id: composer}


def _composer_edited(state: MessagingState, event: ComposerEdited) -> MessagingState:
    current = state.composer(event.conversation_id)
    composer = replace(current, content=event.content, attachment=event.attachment)
    if composer.is_empty:
        # a cleared draft starts a new message instead of editing the failed one
        composer = replace(composer, restored_from=None)
    return replace(state, composers=_with_composer(state, event.conversation_id, composer))


def _message_submitted(state: MessagingState, event: MessageSubmitted) -> MessagingState:
    entry = PendingMessage(
        temp_id=event.temp_id,
        conversation_id=event.conversation_id,
        content=event.content,
        attachment=event.attachment,
        status="sending",
        submitted_at=event.submitted_at,
        sequence=state.next_sequence,
        client_message_id=event.client_message_id,
    )
    entries = state.pending_for(event.conversation_id) + (entry,)
    return replace(
        state,
        pending=_with_pending(state, event.conversation_id, entries),
        composers=_with_composer(state, event.conversation_id, Composer()),
        next_sequence=state.next_sequence + 1,
    )


def _retry_requested(state: MessagingState, event: RetryRequested) -> MessagingState:
    entry = state.find_pending(event.conversation_id, event.temp_id)
    if entry is None or entry.status != "failed":
        return state
    state = _update_entry(
        state,
        event.conversation_id,
        event.temp_id,
        status="sending",
        content=event.content,
        attachment=event.attachment,
        client_message_id=event.client_message_id,
        message_id=None,
        error=None,
    )
    if state.composer(event.conversation_id).restored_from == event.temp_id:
        state = replace(state, composers=_with_composer(state, event.conversation_id, Composer()))
    return state


def _send_succeeded(state: MessagingState, event: SendSucceeded) -> MessagingState:
    if state.find_pending(event.conversation_id, event.temp_id) is None:
        return state
    return _update_entry(state, event.conversation_id, event.temp_id, status="sent", message_id=event.message.id, error=None)


def _send_failed(state: MessagingState, event: SendFailed) -> MessagingState:
    entry = state.find_pending(event.conversation_id, event.temp_id)
    if entry is None:
        return state
    state = _update_entry(state, event.conversation_id, event.temp_id, status="failed", error=event.error, retryable=event.retryable)
    restored = Composer(content=entry.content, attachment=entry.attachment, restored_from=entry.temp_id)
    return replace(state, composers=_with_composer(state, event.conversation_id, restored))


def _pending_discarded(state: MessagingState, event: PendingDiscarded) -> MessagingState:
    entry = state.find_pending(event.conversation_id, event.temp_id)
    if entry is None or entry.status != "failed":
        return state
    entries = tuple(e for e in state.pending_for(event.conversation_id) if e.temp_id != event.temp_id)
    state = replace(state, pending=_with_pending(state, event.conversation_id, entries))
    composer = state.composer(event.conversation_id)
    if composer.restored_from == event.temp_id:
        state = replace(state, composers=_with_composer(state, event.conversation_id, replace(composer, restored_from=None)))
    return state


def _canonical_refreshed(state: MessagingState, event: CanonicalRefreshed) -> MessagingState:
    ids = {message.id for message in event.messages}
    keys = {message.client_message_id for message in event.messages if message.client_message_id}

    def represented(entry: PendingMessage) -> bool:
        if entry.client_message_id in keys:
            return True
        return entry.status == "sent" and entry.message_id in ids

    current = state.pending_for(event.conversation_id)
    entries = tuple(entry for entry in current if not represented(entry))
    if len(entries) == len(current):
        return state
    state = replace(state, pending=_with_pending(state, event.conversation_id, entries))
    removed = {entry.temp_id: entry for entry in current if represented(entry)}
    composer = state.composer(event.conversation_id)
    landed = removed.get(composer.restored_from) if composer.restored_from else None
    if landed is not None:
        # the failed send reached the server after all; an unchanged draft is that message
        if composer.content.strip() == landed.content and composer.attachment == landed.attachment:
            composer = Composer()
        else:
            composer = replace(composer, restored_from=None)
        state = replace(state, composers=_with_composer(state, event.conversation_id, composer))
    return state


def _conversation_forbidden(state: MessagingState, event: ConversationForbidden) -> MessagingState:
    return replace(state, forbidden=state.forbidden | {event.conversation_id})


def _search_changed(state: MessagingState, event: SearchChanged) -> MessagingState:
    term = event.term.strip()
    current = state.conversations
    if term == current.search and current.loaded:
        return state
    # items stay visible until the first page for the new term replaces them
    conversations = replace(
        current,
        search=term,
        generation=current.generation + 1,
        next_offset=0,
        has_more=True,
        in_flight=None,
        error=None,
    )
    return replace(state, conversations=conversations)


def _page_requested(state: MessagingState, event: PageRequested) -> MessagingState:
    current = state.conversations
    if event.generation != current.generation:
        return state
    return replace(state, conversations=replace(current, in_flight=event.offset, error=None))


def _page_received(state: MessagingState, event: PageReceived) -> MessagingState:
    current = state.conversations
    if event.generation != current.generation or current.in_flight != event.offset:
        return state
    if event.offset == 0:
        base: Tuple[Conversation, ...] = ()
    else:
        base = current.items
    seen = {conversation.id for conversation in base}
    merged: List[Conversation] = list(base)
    for conversation in event.items:
        if conversation.id not in seen:
            seen.add(conversation.id)
            merged.append(conversation)
    conversations = replace(
        current,
        items=tuple(merged),
        next_offset=event.offset + len(event.items),
        has_more=event.has_more,
        in_flight=None,
        error=None,
        loaded=True,
    )
    return replace(state, conversations=conversations)


def _page_failed(state: MessagingState, event: PageFailed) -> MessagingState:
    current = state.conversations
    if event.generation != current.generation or current.in_flight != event.offset:
        return state
    return replace(state, conversations=replace(current, in_flight=None, error=event.error))


def _last_message_updated(state: MessagingState, event: LastMessageUpdated) -> MessagingState:
    current = state.conversations
    if not any(c.id == event.conversation_id for c in current.items):
        return state
    snapshot = LastMessage(
        id=event.message.id,
        content=event.message.content,
        sender_id=event.message.sender_id,
        created_at=event.message.created_at,
    )
    items = tuple(
        c.model_copy(update={"last_message": snapshot, "updated_at": event.message.created_at})
        if c.id == event.conversation_id else c
        for c in current.items
    )
    return replace(state, conversations=replace(current, items=items))


def _mark_read_requested(state: MessagingState, event: MarkReadRequested) -> MessagingState:
    return replace(state, read_in_flight=state.read_in_flight | {event.conversation_id})


def _mark_read_settled(state: MessagingState, event: MarkReadSettled) -> MessagingState:
    return replace(state, read_in_flight=state.read_in_flight - {event.conversation_id})


_REDUCERS: Dict[type, Callable] = {
    ComposerEdited: _composer_edited,
    MessageSubmitted: _message_submitted,
    RetryRequested: _retry_requested,
    SendSucceeded: _send_succeeded,
    SendFailed: _send_failed,
    PendingDiscarded: _pending_discarded,
    CanonicalRefreshed: _canonical_refreshed,
    ConversationForbidden: _conversation_forbidden,
    SearchChanged: _search_changed,
    PageRequested: _page_requested,
    PageReceived: _page_received,
    PageFailed: _page_failed,
    LastMessageUpdated: _last_message_updated,
    MarkReadRequested: _mark_read_requested,
    MarkReadSettled: _mark_read_settled,
}


def reduce(state: MessagingState, event: object) -> MessagingState:
    handler = _REDUCERS.get(type(event))
    if handler is None:
        raise TypeError(f"Unknown messaging event {type(event).__name__}")
    return handler(state, event)


StoreListener = Callable[[object, MessagingState], None]


class MessagingStore:

    def __init__(self, state: Optional[MessagingState] = None) -> None:
        self._state = state or MessagingState()
        self._listeners: List[StoreListener] = []

    @property
    def state(self) -> MessagingState:
        return self._state

    def dispatch(self, event: object) -> MessagingState:
        self._state = reduce(self._state, event)
        for listener in list(self._listeners):
            listener(event, self._state)
        return self._state

    def subscribe(self, listener: StoreListener) -> Callable[[], None]:
        self._listeners.append(listener)
        return lambda: self._listeners.remove(listener) if listener in self._listeners else None
