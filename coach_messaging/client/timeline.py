from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, List, Literal, Optional, Union

from coach_messaging.client.state import PendingMessage
from coach_messaging.schemas.messaging import Attachment, Message


@dataclass(frozen=True)
class CanonicalEntry:
    message: Message
    kind: Literal["canonical"] = "canonical"


@dataclass(frozen=True)
class PendingEntry:
    pending: PendingMessage
    kind: Literal["pending"] = "pending"


TimelineEntry = Union[CanonicalEntry, PendingEntry]


@dataclass(frozen=True)
class EntryView:
    key: str
    kind: str
    content: str
    attachment: Optional[Attachment]
    timestamp: datetime
    status: str
    own: bool
    can_retry: bool = False
    needs_acknowledgment: bool = False
    error: Optional[str] = None


def build_timeline(messages: Iterable[Message], pending: Iterable[PendingMessage]) -> List[TimelineEntry]:
    """
    Canonical messages by ``created_at``, then pending entries in submission order.

    Pending entries always come last so a message the user just sent is never
    re-sorted when its server timestamp arrives.
    """
    canonical = sorted(messages, key=lambda m: (m.created_at, m.id))
    ids = {m.id for m in canonical}
    keys = {m.client_message_id for m in canonical if m.client_message_id}
    entries: List[TimelineEntry] = [CanonicalEntry(m) for m in canonical]
    for entry in sorted(pending, key=lambda p: p.sequence):
        if entry.client_message_id in keys or (entry.message_id and entry.message_id in ids):
            continue
        entries.append(PendingEntry(entry))
    return entries


def render_entry(entry: TimelineEntry, viewer_id: str) -> EntryView:
    if entry.kind == "canonical":
        message = entry.message
        return EntryView(
            key=message.id,
            kind=entry.kind,
            content=message.content,
            attachment=message.attachment,
            timestamp=message.created_at,
            status="read" if message.is_read else "delivered",
            own=message.sender_id == viewer_id,
            needs_acknowledgment=message.requires_acknowledgment and message.acknowledged_at is None,
        )
    pending = entry.pending
    return EntryView(
        key=pending.temp_id,
        kind=entry.kind,
        content=pending.content,
        attachment=pending.attachment,
        timestamp=pending.submitted_at,
        status=pending.status,
        own=True,
        can_retry=pending.status == "failed" and pending.retryable,
        error=pending.error,
    )
