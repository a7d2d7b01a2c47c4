from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from bson import ObjectId
from bson.errors import InvalidId
from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ASCENDING, ReturnDocument
from pymongo.errors import DuplicateKeyError

from coach_messaging.models.message import MessageDocument


class MessageRepository:

    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        self._db = db

    @property
    def collection(self):
        return self._db["messages"]

    async def ensure_indexes(self) -> None:
        await self.collection.create_index([("conversation_id", ASCENDING), ("created_at", ASCENDING)])
        await self.collection.create_index(
            [("conversation_id", ASCENDING), ("sender_id", ASCENDING), ("client_message_id", ASCENDING)],
            unique=True,
            partialFilterExpression={"client_message_id": {"$type": "string"}},
        )

    async def find_by_client_message_id(
        self, conversation_id: str, sender_id: str, client_message_id: str
    ) -> Optional[MessageDocument]:
        doc = await self.collection.find_one({
            "conversation_id": ObjectId(conversation_id),
            "sender_id": sender_id,
            "client_message_id": client_message_id,
        })
        return self._serialize(doc) if doc else None

    async def save_message(
        self,
        conversation_id: str,
        sender_id: str,
        content: str,
        attachment: Optional[Dict[str, Any]] = None,
        client_message_id: Optional[str] = None,
        requires_acknowledgment: bool = False,
    ) -> Tuple[MessageDocument, bool]:
        """Insert a message; returns the stored document and whether this call created it."""
        doc: Dict[str, Any] = {
            "conversation_id": ObjectId(conversation_id),
            "sender_id": sender_id,
            "content": content,
            "attachment": attachment,
            "created_at": datetime.now(timezone.utc),
            "is_read": False,
            "read_at": None,
            "requires_acknowledgment": requires_acknowledgment,
            "acknowledged_at": None,
            "acknowledged_by": None,
            "client_message_id": client_message_id,
        }
        try:
            result = await self.collection.insert_one(doc)
        except DuplicateKeyError:
            # a concurrent retry with the same key won the insert
            existing = await self.find_by_client_message_id(conversation_id, sender_id, client_message_id)
            if existing is None:
                raise
            return existing, False
        doc["_id"] = result.inserted_id
        return self._serialize(doc), True

    async def get_message(self, message_id: str) -> Optional[MessageDocument]:
        try:
            oid = ObjectId(message_id)
        except (InvalidId, TypeError):
            return None
        doc = await self.collection.find_one({"_id": oid})
        return self._serialize(doc) if doc else None

    async def get_messages_by_conversation(self, conversation_id: str) -> List[MessageDocument]:
        cursor = self.collection.find({"conversation_id": ObjectId(conversation_id)})
        cursor = cursor.sort([("created_at", ASCENDING), ("_id", ASCENDING)])
        return [self._serialize(it) async for it in cursor]

    async def mark_read(self, conversation_id: str, reader_id: str) -> int:
        result = await self.collection.update_many(
            {"conversation_id": ObjectId(conversation_id), "sender_id": {"$ne": reader_id}, "is_read": False},
            {"$set": {"is_read": True, "read_at": datetime.now(timezone.utc)}},
        )
        return result.modified_count or 0

    async def count_unread(self, user_id: str, conversation_ids: List[ObjectId]) -> int:
        if not conversation_ids:
            return 0
        return await self.collection.count_documents(
            {"conversation_id": {"$in": conversation_ids}, "sender_id": {"$ne": user_id}, "is_read": False}
        )

    async def unread_by_conversation(self, user_id: str, conversation_ids: List[ObjectId]) -> Dict[str, int]:
        if not conversation_ids:
            return {}
        pipeline = [
            {"$match": {"conversation_id": {"$in": conversation_ids}, "sender_id": {"$ne": user_id}, "is_read": False}},
            {"$group": {"_id": "$conversation_id", "count": {"$sum": 1}}},
        ]
        counts: Dict[str, int] = {}
        async for row in self.collection.aggregate(pipeline):
            counts[str(row["_id"])] = row["count"]
        return counts

    async def acknowledge(self, message_id: str, user_id: str) -> Optional[MessageDocument]:
        doc = await self.collection.find_one_and_update(
            {"_id": ObjectId(message_id)},
            {"$set": {"acknowledged_at": datetime.now(timezone.utc), "acknowledged_by": user_id}},
            return_document=ReturnDocument.AFTER,
        )
        return self._serialize(doc) if doc else None

    def _serialize(self, doc: Dict[str, Any]) -> Dict[str, Any]:
        doc["_id"] = str(doc.get("_id"))
        doc["conversation_id"] = str(doc.get("conversation_id"))
        return doc
