from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from bson import ObjectId
from bson.errors import InvalidId
from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ASCENDING, DESCENDING

from coach_messaging.models.notification import NotificationDocument


class NotificationRepository:

    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        self._db = db

    @property
    def collection(self):
        return self._db["notifications"]

    async def ensure_indexes(self) -> None:
        await self.collection.create_index([("user_id", ASCENDING), ("created_at", DESCENDING)])

    async def create(self, user_id: str, type: str, title: str, message: str, data: Optional[Dict[str, Any]] = None) -> NotificationDocument:
        doc: Dict[str, Any] = {
            "user_id": user_id,
            "type": type,
            "title": title,
            "message": message,
            "data": data or {},
            "is_read": False,
            "created_at": datetime.now(timezone.utc),
        }
        result = await self.collection.insert_one(doc)
        doc["_id"] = str(result.inserted_id)
        return doc

    async def list_for_user(self, user_id: str, limit: int = 20, unread_only: bool = False) -> List[NotificationDocument]:
        query: Dict[str, Any] = {"user_id": user_id}
        if unread_only:
            query["is_read"] = False
        cursor = self.collection.find(query).sort("created_at", DESCENDING).limit(limit)
        items = await cursor.to_list(length=limit)
        for it in items:
            it["_id"] = str(it.get("_id"))
        return items

    async def count_unread(self, user_id: str) -> int:
        return await self.collection.count_documents({"user_id": user_id, "is_read": False})

    async def mark_read(self, notification_id: str, user_id: str) -> bool:
        """Return False when the notification does not exist or belongs to someone else."""
        try:
            oid = ObjectId(notification_id)
        except (InvalidId, TypeError):
            return False
        result = await self.collection.update_one(
            {"_id": oid, "user_id": user_id},
            {"$set": {"is_read": True}},
        )
        return bool(result.matched_count)

    async def mark_all_read(self, user_id: str) -> int:
        result = await self.collection.update_many(
            {"user_id": user_id, "is_read": False},
            {"$set": {"is_read": True}},
        )
        return result.modified_count or 0
