from typing import List, Literal, Optional, TypedDict


ConversationKind = Literal["coach_client", "client_client"]


class ParticipantDocument(TypedDict, total=False):
    user_id: str
    display_name: str


class LastMessageDocument(TypedDict, total=False):
    id: str
    content: str
    sender_id: str
    created_at: str


class ConversationDocument(TypedDict, total=False):
    _id: str
    kind: ConversationKind
    # exactly two entries, fixed at creation
    participants: List[ParticipantDocument]
    participant_ids: List[str]
    last_message: Optional[LastMessageDocument]
    created_at: str
    updated_at: str
