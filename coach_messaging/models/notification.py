from typing import Any, Dict, TypedDict


class NotificationDocument(TypedDict, total=False):
    _id: str
    user_id: str
    type: str
    title: str
    message: str
    data: Dict[str, Any]
    is_read: bool
    created_at: str
