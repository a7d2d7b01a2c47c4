import asyncio
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace
from typing import Any, Dict, List, Optional, Tuple

import pytest
from bson import ObjectId
from fastapi.testclient import TestClient

from coach_messaging.routers.dependencies import get_chat_service, get_device_repository, get_notification_service
from coach_messaging.schemas.messaging import Attachment, Conversation, ConversationPage, LastMessage, Message, Participant
from coach_messaging.schemas.notification import NotificationEvent, NotificationFilter
from coach_messaging.services.chat_service import ChatService
from coach_messaging.services.notification_service import NotificationService
from coach_messaging.utils.errors import AuthorizationError, TransientNetworkError


START = datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc)


async def settle(rounds: int = 25) -> None:
    """Give spawned background work a chance to run to completion."""
    for _ in range(rounds):
        await asyncio.sleep(0)


class FakeBackend:
    """
    In-memory conversation service for one viewer.

    ``fail_next`` queues a one-shot exception for a method, ``lose_next_response``
    makes the next send commit and then raise, ``hold`` blocks the next call of a
    method until the returned event is set.
    """

    def __init__(self, viewer_id: str = "coach-1") -> None:
        self.viewer_id = viewer_id
        self.conversations: List[Conversation] = []
        self.messages: Dict[str, List[Message]] = {}
        self.unread: Dict[str, int] = {}
        self.notifications: Dict[str, NotificationEvent] = {}
        self.calls: List[Tuple[Any, ...]] = []
        self.offline = False
        self._failures: Dict[str, List[BaseException]] = {}
        self._lost_responses = 0
        self._gates: Dict[str, asyncio.Event] = {}
        self._ticks = 0

    # test controls

    def now(self) -> datetime:
        self._ticks += 1
        return START + timedelta(seconds=self._ticks)

    def fail_next(self, method: str, exc: Optional[BaseException] = None) -> None:
        self._failures.setdefault(method, []).append(exc or TransientNetworkError(f"{method} failed"))

    def lose_next_response(self) -> None:
        self._lost_responses += 1

    def hold(self, method: str) -> asyncio.Event:
        gate = asyncio.Event()
        self._gates[method] = gate
        return gate

    def count(self, method: str) -> int:
        return sum(1 for call in self.calls if call[0] == method)

    def add_conversation(self, conversation_id: str, other_id: str = "client-1", other_name: str = "Client One", unread: int = 0) -> Conversation:
        created = self.now()
        conversation = Conversation(
            id=conversation_id,
            kind="coach_client",
            participants=[
                Participant(user_id=self.viewer_id, display_name="Coach"),
                Participant(user_id=other_id, display_name=other_name),
            ],
            created_at=created,
            updated_at=created,
        )
        self.conversations.append(conversation)
        self.messages.setdefault(conversation_id, [])
        if unread:
            self.unread[conversation_id] = unread
        return conversation

    def add_message(self, conversation_id: str, sender_id: str, content: str, client_message_id: Optional[str] = None) -> Message:
        messages = self.messages.setdefault(conversation_id, [])
        message = Message(
            id=f"m{sum(len(items) for items in self.messages.values()) + 1}",
            conversation_id=conversation_id,
            sender_id=sender_id,
            content=content,
            created_at=self.now(),
            client_message_id=client_message_id,
        )
        messages.append(message)
        return message

    def add_notification(self, notification_id: str, type: str, data: Optional[Dict[str, Any]] = None, is_read: bool = False) -> NotificationEvent:
        event = NotificationEvent(
            id=notification_id,
            type=type,
            title=type.title(),
            data=data or {},
            is_read=is_read,
            created_at=self.now(),
        )
        self.notifications[notification_id] = event
        return event

    def canonical(self, conversation_id: str) -> List[str]:
        return [message.content for message in self.messages.get(conversation_id, [])]

    async def _enter(self, method: str, *args: Any) -> None:
        self.calls.append((method,) + args)
        gate = self._gates.pop(method, None)
        if gate is not None:
            await gate.wait()
        else:
            await asyncio.sleep(0)
        if self.offline:
            raise TransientNetworkError("Network unavailable")
        queued = self._failures.get(method)
        if queued:
            raise queued.pop(0)

    def _conversation(self, conversation_id: str) -> Conversation:
        for conversation in self.conversations:
            if conversation.id == conversation_id:
                return conversation
        raise AuthorizationError(f"Conversation {conversation_id} not found")

    # ConversationBackend

    async def list_conversations(self, limit: int, offset: int, search: Optional[str] = None) -> ConversationPage:
        await self._enter("list_conversations", limit, offset, search)
        items = self.conversations
        if search:
            term = search.lower()
            items = [
                c for c in items
                if any(term in p.display_name.lower() for p in c.participants)
                or (c.last_message is not None and term in c.last_message.content.lower())
            ]
        return ConversationPage(
            items=items[offset:offset + limit],
            has_more=offset + limit < len(items),
            total_count=len(items),
        )

    async def get_messages(self, conversation_id: str) -> List[Message]:
        await self._enter("get_messages", conversation_id)
        self._conversation(conversation_id)
        return list(self.messages.get(conversation_id, []))

    async def send_message(
        self,
        conversation_id: str,
        content: str,
        attachment: Optional[Attachment] = None,
        client_message_id: Optional[str] = None,
    ) -> Message:
        await self._enter("send_message", conversation_id, content, client_message_id)
        conversation = self._conversation(conversation_id)
        for message in self.messages.get(conversation_id, []):
            if client_message_id and message.client_message_id == client_message_id:
                return message
        message = self.add_message(conversation_id, self.viewer_id, content, client_message_id)
        if attachment is not None:
            message = message.model_copy(update={"attachment": attachment})
            self.messages[conversation_id][-1] = message
        snapshot = LastMessage(id=message.id, content=content, sender_id=self.viewer_id, created_at=message.created_at)
        index = self.conversations.index(conversation)
        self.conversations[index] = conversation.model_copy(update={"last_message": snapshot, "updated_at": message.created_at})
        if self._lost_responses:
            self._lost_responses -= 1
            raise TransientNetworkError("Connection reset after send")
        return message

    async def mark_as_read(self, conversation_id: str) -> None:
        await self._enter("mark_as_read", conversation_id)
        self._conversation(conversation_id)
        self.unread.pop(conversation_id, None)

    async def get_unread_count(self) -> int:
        await self._enter("get_unread_count")
        return sum(self.unread.values())

    async def get_conversation_unread_counts(self) -> Dict[str, int]:
        await self._enter("get_conversation_unread_counts")
        return {key: value for key, value in self.unread.items() if value > 0}

    async def get_notifications(self, filter: NotificationFilter) -> List[NotificationEvent]:
        await self._enter("get_notifications", filter.limit, filter.unread_only)
        items = sorted(self.notifications.values(), key=lambda n: n.created_at, reverse=True)
        if filter.unread_only:
            items = [n for n in items if not n.is_read]
        return items[:filter.limit]

    async def get_notification_unread_count(self) -> int:
        await self._enter("get_notification_unread_count")
        return sum(1 for n in self.notifications.values() if not n.is_read)

    async def mark_notification_read(self, notification_id: str) -> None:
        await self._enter("mark_notification_read", notification_id)
        event = self.notifications.get(notification_id)
        if event is None:
            raise AuthorizationError(f"Notification {notification_id} not found")
        self.notifications[notification_id] = event.model_copy(update={"is_read": True})


@pytest.fixture
def backend() -> FakeBackend:
    return FakeBackend()


# in-memory stand-ins for the Mongo repositories, same method surface

def _new_id() -> str:
    return str(ObjectId())


class InMemoryConversationRepository:

    def __init__(self) -> None:
        self.docs: Dict[str, Dict[str, Any]] = {}

    async def ensure_indexes(self) -> None:
        return None

    async def get_or_create(self, kind: str, participants: List[Dict[str, str]]) -> Dict[str, Any]:
        participant_ids = sorted(p["user_id"] for p in participants)
        for doc in self.docs.values():
            if doc["participant_ids"] == participant_ids:
                return dict(doc)
        now = datetime.now(timezone.utc)
        doc = {
            "_id": _new_id(),
            "kind": kind,
            "participants": sorted(participants, key=lambda p: p["user_id"]),
            "participant_ids": participant_ids,
            "last_message": None,
            "created_at": now,
            "updated_at": now,
        }
        self.docs[doc["_id"]] = doc
        return dict(doc)

    async def get_for_member(self, conversation_id: str, user_id: str) -> Optional[Dict[str, Any]]:
        doc = self.docs.get(conversation_id)
        if doc is None or user_id not in doc["participant_ids"]:
            return None
        return dict(doc)

    async def list_ids_for_user(self, user_id: str) -> List[str]:
        return [cid for cid, doc in self.docs.items() if user_id in doc["participant_ids"]]

    async def list_for_user(self, user_id: str, limit: int = 8, offset: int = 0, search: Optional[str] = None):
        docs = [doc for doc in self.docs.values() if user_id in doc["participant_ids"]]
        if search and search.strip():
            term = search.strip().lower()
            docs = [
                doc for doc in docs
                if any(term in p.get("display_name", "").lower() for p in doc["participants"])
                or term in ((doc.get("last_message") or {}).get("content") or "").lower()
            ]
        docs.sort(key=lambda doc: (doc["updated_at"], doc["_id"]), reverse=True)
        return [dict(doc) for doc in docs[offset:offset + limit]], len(docs)

    async def update_on_new_message(self, conversation_id: str, message: Dict[str, Any]) -> None:
        doc = self.docs[conversation_id]
        doc["updated_at"] = message["created_at"]
        doc["last_message"] = {
            "id": message["_id"],
            "content": message.get("content", "")[:200],
            "sender_id": message["sender_id"],
            "created_at": message["created_at"],
        }


class InMemoryMessageRepository:

    def __init__(self) -> None:
        self.docs: List[Dict[str, Any]] = []
        self._ticks = 0

    async def ensure_indexes(self) -> None:
        return None

    async def find_by_client_message_id(self, conversation_id: str, sender_id: str, client_message_id: str):
        for doc in self.docs:
            if (doc["conversation_id"], doc["sender_id"], doc["client_message_id"]) == (conversation_id, sender_id, client_message_id):
                return dict(doc)
        return None

    async def save_message(self, conversation_id, sender_id, content, attachment=None, client_message_id=None, requires_acknowledgment=False):
        # same uniqueness as the partial index on client_message_id
        if client_message_id is not None:
            for doc in self.docs:
                if (doc["conversation_id"], doc["sender_id"], doc["client_message_id"]) == (conversation_id, sender_id, client_message_id):
                    return dict(doc), False
        self._ticks += 1
        doc = {
            "_id": _new_id(),
            "conversation_id": conversation_id,
            "sender_id": sender_id,
            "content": content,
            "attachment": attachment,
            "created_at": START + timedelta(seconds=self._ticks),
            "is_read": False,
            "read_at": None,
            "requires_acknowledgment": requires_acknowledgment,
            "acknowledged_at": None,
            "acknowledged_by": None,
            "client_message_id": client_message_id,
        }
        self.docs.append(doc)
        return dict(doc), True

    async def get_message(self, message_id: str):
        for doc in self.docs:
            if doc["_id"] == message_id:
                return dict(doc)
        return None

    async def get_messages_by_conversation(self, conversation_id: str):
        docs = [dict(doc) for doc in self.docs if doc["conversation_id"] == conversation_id]
        return sorted(docs, key=lambda doc: (doc["created_at"], doc["_id"]))

    async def mark_read(self, conversation_id: str, reader_id: str) -> int:
        updated = 0
        for doc in self.docs:
            if doc["conversation_id"] == conversation_id and doc["sender_id"] != reader_id and not doc["is_read"]:
                doc["is_read"] = True
                updated += 1
        return updated

    def _unread(self, user_id: str, conversation_ids):
        ids = {str(cid) for cid in conversation_ids}
        return [doc for doc in self.docs if doc["conversation_id"] in ids and doc["sender_id"] != user_id and not doc["is_read"]]

    async def count_unread(self, user_id: str, conversation_ids) -> int:
        return len(self._unread(user_id, conversation_ids))

    async def unread_by_conversation(self, user_id: str, conversation_ids) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        for doc in self._unread(user_id, conversation_ids):
            counts[doc["conversation_id"]] = counts.get(doc["conversation_id"], 0) + 1
        return counts

    async def acknowledge(self, message_id: str, user_id: str):
        for doc in self.docs:
            if doc["_id"] == message_id:
                doc["acknowledged_at"] = datetime.now(timezone.utc)
                doc["acknowledged_by"] = user_id
                return dict(doc)
        return None


class InMemoryNotificationRepository:

    def __init__(self) -> None:
        self.docs: List[Dict[str, Any]] = []

    async def ensure_indexes(self) -> None:
        return None

    async def create(self, user_id, type, title, message, data=None):
        doc = {
            "_id": _new_id(),
            "user_id": user_id,
            "type": type,
            "title": title,
            "message": message,
            "data": data or {},
            "is_read": False,
            "created_at": datetime.now(timezone.utc),
        }
        self.docs.append(doc)
        return dict(doc)

    async def list_for_user(self, user_id, limit=20, unread_only=False):
        docs = [dict(doc) for doc in reversed(self.docs) if doc["user_id"] == user_id]
        if unread_only:
            docs = [doc for doc in docs if not doc["is_read"]]
        return docs[:limit]

    async def count_unread(self, user_id) -> int:
        return sum(1 for doc in self.docs if doc["user_id"] == user_id and not doc["is_read"])

    async def mark_read(self, notification_id, user_id) -> bool:
        for doc in self.docs:
            if doc["_id"] == notification_id and doc["user_id"] == user_id:
                doc["is_read"] = True
                return True
        return False

    async def mark_all_read(self, user_id) -> int:
        updated = 0
        for doc in self.docs:
            if doc["user_id"] == user_id and not doc["is_read"]:
                doc["is_read"] = True
                updated += 1
        return updated


class InMemoryDeviceRepository:

    def __init__(self) -> None:
        self.devices: List[Dict[str, str]] = []

    async def ensure_indexes(self) -> None:
        return None

    async def register(self, user_id, registration):
        self.devices = [d for d in self.devices if d["token"] != registration.token or d["user_id"] == user_id]
        device = {"user_id": user_id, "platform": registration.platform, "token": registration.token}
        if device not in self.devices:
            self.devices.append(device)
        return device

    async def tokens_for(self, user_id, platform="fcm"):
        return [d["token"] for d in self.devices if d["user_id"] == user_id and d["platform"] == platform]


@pytest.fixture
def repos() -> SimpleNamespace:
    return SimpleNamespace(
        conversations=InMemoryConversationRepository(),
        messages=InMemoryMessageRepository(),
        notifications=InMemoryNotificationRepository(),
        devices=InMemoryDeviceRepository(),
    )


@pytest.fixture
def service(repos) -> ChatService:
    notifications = NotificationService(repos.notifications, repos.devices)
    return ChatService(repos.messages, repos.conversations, notifications)


@pytest.fixture
def app(repos):
    from coach_messaging.main import app

    notifications = NotificationService(repos.notifications, repos.devices)
    app.dependency_overrides[get_notification_service] = lambda: notifications
    app.dependency_overrides[get_chat_service] = lambda: ChatService(repos.messages, repos.conversations, notifications)
    app.dependency_overrides[get_device_repository] = lambda: repos.devices
    yield app
    app.dependency_overrides.clear()


@pytest.fixture
def api_client(app) -> TestClient:
    # no context manager: lifespan (the Mongo connection) is not started
    return TestClient(app)


def user_headers(user_id: str, role: str = "coach", name: str = "") -> Dict[str, str]:
    headers = {"X-User-Id": user_id, "X-User-Role": role}
    if name:
        headers["X-User-Name"] = name
    return headers
