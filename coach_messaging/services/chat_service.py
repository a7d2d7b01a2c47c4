import logging
from typing import Dict, List, Optional

from coach_messaging.repositories.conversation_repository import ConversationRepository
from coach_messaging.repositories.message_repository import MessageRepository
from coach_messaging.schemas.messaging import (
    MAX_MESSAGE_LENGTH,
    Conversation,
    ConversationPage,
    Message,
    SendMessageRequest,
    StartConversationRequest,
)
from coach_messaging.schemas.notification import NotificationType
from coach_messaging.services.notification_service import NotificationService
from coach_messaging.utils.errors import AuthorizationError, ValidationError


logger = logging.getLogger(__name__)


class ChatService:

    def __init__(
        self,
        message_repo: MessageRepository,
        conversation_repo: ConversationRepository,
        notification_service: Optional[NotificationService] = None,
    ) -> None:
        self._message_repo = message_repo
        self._conversation_repo = conversation_repo
        self._notification_service = notification_service

    async def start_conversation(self, current_user: dict, request: StartConversationRequest) -> Conversation:
        if request.participant_id == current_user["_id"]:
            raise ValidationError("Cannot start a conversation with yourself")
        participants = [
            {"user_id": current_user["_id"], "display_name": current_user.get("name") or ""},
            {"user_id": request.participant_id, "display_name": request.participant_name},
        ]
        doc = await self._conversation_repo.get_or_create(request.kind, participants)
        return Conversation.from_document(doc)

    async def list_conversations(self, user_id: str, limit: int = 8, offset: int = 0, search: Optional[str] = None) -> ConversationPage:
        items, total = await self._conversation_repo.list_for_user(user_id, limit=limit, offset=offset, search=search)
        return ConversationPage(
            items=[Conversation.from_document(doc) for doc in items],
            has_more=offset + limit < total,
            total_count=total,
        )

    async def _require_membership(self, conversation_id: str, user_id: str) -> dict:
        convo = await self._conversation_repo.get_for_member(conversation_id, user_id)
        if convo is None:
            raise AuthorizationError(f"Conversation {conversation_id} not found")
        return convo

    async def get_messages(self, conversation_id: str, user_id: str) -> List[Message]:
        await self._require_membership(conversation_id, user_id)
        docs = await self._message_repo.get_messages_by_conversation(conversation_id)
        return [Message.from_document(doc) for doc in docs]

    async def send_message(self, conversation_id: str, sender: dict, request: SendMessageRequest) -> Message:
        content = request.content.strip()
        if not content and request.attachment is None:
            raise ValidationError("Message must contain either text content or a file attachment")
        if len(content) > MAX_MESSAGE_LENGTH:
            raise ValidationError(f"Message must be at most {MAX_MESSAGE_LENGTH} characters")
        convo = await self._require_membership(conversation_id, sender["_id"])

        if request.client_message_id:
            existing = await self._message_repo.find_by_client_message_id(
                conversation_id, sender["_id"], request.client_message_id
            )
            if existing:
                logger.info("Duplicate send %s in conversation %s; returning stored message",
                            request.client_message_id, conversation_id)
                return Message.from_document(existing)

        saved, created = await self._message_repo.save_message(
            conversation_id=conversation_id,
            sender_id=sender["_id"],
            content=content,
            attachment=request.attachment.model_dump() if request.attachment else None,
            client_message_id=request.client_message_id,
            requires_acknowledgment=request.requires_acknowledgment,
        )
        if not created:
            logger.info("Concurrent send %s in conversation %s lost the insert; returning stored message",
                        request.client_message_id, conversation_id)
            return Message.from_document(saved)
        await self._conversation_repo.update_on_new_message(conversation_id, saved)
        await self._notify_recipient(convo, sender, saved)
        return Message.from_document(saved)

    async def _notify_recipient(self, convo: dict, sender: dict, message: dict) -> None:
        if self._notification_service is None:
            return
        recipients = [pid for pid in convo["participant_ids"] if pid != sender["_id"]]
        preview = message.get("content") or (message.get("attachment") or {}).get("name", "")
        for recipient_id in recipients:
            await self._notification_service.notify(
                recipient_id,
                NotificationType.MESSAGE.value,
                f"New message from {sender.get('name') or 'your coach'}",
                preview[:100],
                {"conversationId": convo["_id"], "messageId": message["_id"]},
            )

    async def mark_read(self, conversation_id: str, user_id: str) -> int:
        await self._require_membership(conversation_id, user_id)
        return await self._message_repo.mark_read(conversation_id, user_id)

    async def get_unread_count(self, user_id: str) -> int:
        ids = await self._conversation_repo.list_ids_for_user(user_id)
        return await self._message_repo.count_unread(user_id, ids)

    async def get_conversation_unread_counts(self, user_id: str) -> Dict[str, int]:
        ids = await self._conversation_repo.list_ids_for_user(user_id)
        return await self._message_repo.unread_by_conversation(user_id, ids)

    async def acknowledge_message(self, message_id: str, user_id: str) -> Message:
        message = await self._message_repo.get_message(message_id)
        if message is None:
            raise AuthorizationError(f"Message {message_id} not found")
        await self._require_membership(message["conversation_id"], user_id)
        if not message.get("requires_acknowledgment"):
            raise ValidationError("Message does not require acknowledgment")
        updated = await self._message_repo.acknowledge(message_id, user_id)
        return Message.from_document(updated)
