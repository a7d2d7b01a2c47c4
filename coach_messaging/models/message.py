from typing import Optional, TypedDict


class AttachmentDocument(TypedDict, total=False):
    url: str
    mime_type: str
    name: str
    size: int


class MessageDocument(TypedDict, total=False):
    _id: str
    conversation_id: str
    sender_id: str
    content: str
    attachment: Optional[AttachmentDocument]
    created_at: str
    # read state
    is_read: bool
    read_at: Optional[str]
    # acknowledgment
    requires_acknowledgment: bool
    acknowledged_at: Optional[str]
    acknowledged_by: Optional[str]
    # client idempotency key, echoed back to the sender
    client_message_id: Optional[str]
