from datetime import datetime
from enum import Enum
from typing import Any, Dict, Literal

from pydantic import BaseModel, Field


class NotificationType(str, Enum):

    MESSAGE = "MESSAGE"
    CLIENT_JOIN_REQUEST = "CLIENT_JOIN_REQUEST"
    WORKOUT_ASSIGNED = "WORKOUT_ASSIGNED"
    WORKOUT_COMPLETED = "WORKOUT_COMPLETED"
    PROGRAM_ASSIGNED = "PROGRAM_ASSIGNED"
    PROGRESS_UPDATE = "PROGRESS_UPDATE"
    LESSON_SCHEDULED = "LESSON_SCHEDULED"
    LESSON_CANCELLED = "LESSON_CANCELLED"
    SCHEDULE_REQUEST = "SCHEDULE_REQUEST"
    VIDEO_SUBMISSION = "VIDEO_SUBMISSION"
    TIME_SWAP_REQUEST = "TIME_SWAP_REQUEST"
    SYSTEM = "SYSTEM"


class NotificationEvent(BaseModel):

    id: str
    # kept as a plain string so events of a type this build does not know still parse
    type: str
    title: str = ""
    message: str = ""
    data: Dict[str, Any] = Field(default_factory=dict)
    is_read: bool = False
    created_at: datetime

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> "NotificationEvent":
        return cls(
            id=str(doc["_id"]),
            type=doc["type"],
            title=doc.get("title", ""),
            message=doc.get("message", ""),
            data=doc.get("data") or {},
            is_read=doc.get("is_read", False),
            created_at=doc["created_at"],
        )


class NotificationFilter(BaseModel):

    limit: int = Field(default=20, ge=1, le=100)
    unread_only: bool = False


class CreateNotificationRequest(BaseModel):

    user_id: str = Field(min_length=1)
    type: NotificationType
    title: str
    message: str
    data: Dict[str, Any] = Field(default_factory=dict)


class DeviceRegistration(BaseModel):

    platform: Literal["fcm", "webpush"]
    token: str = Field(min_length=1)
