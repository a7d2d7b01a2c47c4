import re
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from bson import ObjectId
from bson.errors import InvalidId
from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ASCENDING, DESCENDING

from coach_messaging.models.conversation import ConversationDocument


class ConversationRepository:

    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        self._db = db

    @property
    def collection(self):
        return self._db["conversations"]

    async def ensure_indexes(self) -> None:
        await self.collection.create_index([("participant_ids", ASCENDING)])
        await self.collection.create_index([("updated_at", DESCENDING), ("_id", DESCENDING)])

    async def get_or_create(self, kind: str, participants: List[Dict[str, str]]) -> ConversationDocument:
        participant_ids = sorted(p["user_id"] for p in participants)
        existing = await self.collection.find_one({"participant_ids": participant_ids})
        if existing:
            return self._serialize(existing)
        now = datetime.now(timezone.utc)
        doc: Dict[str, Any] = {
            "kind": kind,
            "participants": sorted(participants, key=lambda p: p["user_id"]),
            "participant_ids": participant_ids,
            "last_message": None,
            "created_at": now,
            "updated_at": now,
        }
        result = await self.collection.insert_one(doc)
        doc["_id"] = str(result.inserted_id)
        return doc

    async def get_for_member(self, conversation_id: str, user_id: str) -> Optional[ConversationDocument]:
        oid = self._to_object_id(conversation_id)
        if oid is None:
            return None
        doc = await self.collection.find_one({"_id": oid, "participant_ids": user_id})
        return self._serialize(doc) if doc else None

    async def list_ids_for_user(self, user_id: str) -> List[ObjectId]:
        cursor = self.collection.find({"participant_ids": user_id}, {"_id": 1})
        return [doc["_id"] async for doc in cursor]

    async def list_for_user(
        self,
        user_id: str,
        limit: int = 8,
        offset: int = 0,
        search: Optional[str] = None,
    ) -> Tuple[List[ConversationDocument], int]:
        query: Dict[str, Any] = {"participant_ids": user_id}
        if search and search.strip():
            pattern = {"$regex": re.escape(search.strip()), "$options": "i"}
            query["$or"] = [
                {"participants.display_name": pattern},
                {"last_message.content": pattern},
            ]
        sort = [("updated_at", DESCENDING), ("_id", DESCENDING)]
        cursor = self.collection.find(query).sort(sort).skip(offset).limit(limit)
        items = await cursor.to_list(length=limit)
        total = await self.collection.count_documents(query)
        return [self._serialize(it) for it in items], total

    async def update_on_new_message(self, conversation_id: str, message: Dict[str, Any]) -> None:
        await self.collection.update_one(
            {"_id": ObjectId(conversation_id)},
            {
                "$set": {
                    "updated_at": message["created_at"],
                    "last_message": {
                        "id": message["_id"],
                        "content": message.get("content", "")[:200],
                        "sender_id": message["sender_id"],
                        "created_at": message["created_at"],
                    },
                },
            },
        )

    def _serialize(self, doc: Dict[str, Any]) -> Dict[str, Any]:
        doc["_id"] = str(doc.get("_id"))
        return doc

    def _to_object_id(self, oid_hex: str) -> Optional[ObjectId]:
        try:
            return ObjectId(oid_hex)
        except (InvalidId, TypeError):
            return None
