from datetime import datetime, timezone
from typing import List

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ASCENDING, DESCENDING

from coach_messaging.models.device import DeviceDocument, PushPlatform
from coach_messaging.schemas.notification import DeviceRegistration


MAX_TOKENS_PER_USER = 20


class DeviceRepository:
    """Push registrations, one document per (user, platform, token)."""

    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        self._db = db

    @property
    def collection(self):
        return self._db["devices"]

    async def ensure_indexes(self) -> None:
        await self.collection.create_index(
            [("user_id", ASCENDING), ("platform", ASCENDING), ("token", ASCENDING)],
            unique=True,
        )
        await self.collection.create_index([("token", ASCENDING)])

    async def register(self, user_id: str, registration: DeviceRegistration) -> DeviceDocument:
        now = datetime.now(timezone.utc)
        # a token belongs to whoever signed in on the device last
        await self.collection.delete_many({"token": registration.token, "user_id": {"$ne": user_id}})
        await self.collection.update_one(
            {"user_id": user_id, "platform": registration.platform, "token": registration.token},
            {"$set": {"last_seen_at": now}, "$setOnInsert": {"registered_at": now}},
            upsert=True,
        )
        return DeviceDocument(user_id=user_id, platform=registration.platform, token=registration.token)

    async def tokens_for(self, user_id: str, platform: PushPlatform = "fcm") -> List[str]:
        cursor = (
            self.collection.find({"user_id": user_id, "platform": platform}, {"token": 1, "_id": 0})
            .sort("last_seen_at", DESCENDING)
            .limit(MAX_TOKENS_PER_USER)
        )
        return [doc["token"] async for doc in cursor]
