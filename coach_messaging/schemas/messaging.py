from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field, model_validator

from coach_messaging.models.conversation import ConversationKind


MAX_MESSAGE_LENGTH = 1000
ViewerRole = Literal["coach", "client"]


class Attachment(BaseModel):

    url: str
    mime_type: str = "application/octet-stream"
    name: str = "file"
    size: int = Field(default=0, ge=0)

    @classmethod
    def from_upload(cls, payload: Dict[str, Any]) -> "Attachment":
        """Build from the object-storage upload result ``{url, type, name, size}``."""
        return cls(
            url=payload["url"],
            mime_type=payload.get("type") or "application/octet-stream",
            name=payload.get("name") or "file",
            size=payload.get("size") or 0,
        )


class Participant(BaseModel):

    user_id: str
    display_name: str = ""


class LastMessage(BaseModel):

    id: str
    content: str = ""
    sender_id: str
    created_at: datetime


class Conversation(BaseModel):

    id: str
    kind: ConversationKind
    participants: List[Participant] = Field(min_length=2, max_length=2)
    last_message: Optional[LastMessage] = None
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> "Conversation":
        return cls(
            id=str(doc["_id"]),
            kind=doc.get("kind", "coach_client"),
            participants=doc.get("participants", []),
            last_message=doc.get("last_message"),
            created_at=doc["created_at"],
            updated_at=doc.get("updated_at") or doc["created_at"],
        )

    def other_participant(self, user_id: str) -> Participant:
        for participant in self.participants:
            if participant.user_id != user_id:
                return participant
        return self.participants[0]


class ConversationPage(BaseModel):

    items: List[Conversation]
    has_more: bool
    total_count: int = 0


class Message(BaseModel):

    id: str
    conversation_id: str
    sender_id: str
    content: str = ""
    attachment: Optional[Attachment] = None
    created_at: datetime
    is_read: bool = False
    requires_acknowledgment: bool = False
    acknowledged_at: Optional[datetime] = None
    client_message_id: Optional[str] = None

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> "Message":
        return cls(
            id=str(doc["_id"]),
            conversation_id=str(doc["conversation_id"]),
            sender_id=doc["sender_id"],
            content=doc.get("content", ""),
            attachment=doc.get("attachment"),
            created_at=doc["created_at"],
            is_read=doc.get("is_read", False),
            requires_acknowledgment=doc.get("requires_acknowledgment", False),
            acknowledged_at=doc.get("acknowledged_at"),
            client_message_id=doc.get("client_message_id"),
        )


class SendMessageRequest(BaseModel):

    content: str = Field(default="", max_length=MAX_MESSAGE_LENGTH)
    attachment: Optional[Attachment] = None
    client_message_id: Optional[str] = Field(default=None, min_length=1, max_length=64)
    requires_acknowledgment: bool = False

    @model_validator(mode="after")
    def _content_or_attachment(self) -> "SendMessageRequest":
        if not self.content.strip() and self.attachment is None:
            raise ValueError("Message must contain either text content or a file attachment")
        return self


class StartConversationRequest(BaseModel):

    participant_id: str = Field(min_length=1)
    participant_name: str = ""
    kind: ConversationKind = "coach_client"


class UnreadCounts(BaseModel):
    """Server-computed unread tallies; the total is always derived from the map."""

    per_conversation: Dict[str, int] = Field(default_factory=dict)

    @property
    def total(self) -> int:
        return sum(max(count, 0) for count in self.per_conversation.values())

    def for_conversation(self, conversation_id: str) -> int:
        return max(self.per_conversation.get(conversation_id, 0), 0)
