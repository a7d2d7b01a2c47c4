from fastapi import Depends

from coach_messaging.database.connection import mongo_db_dependency
from coach_messaging.repositories.conversation_repository import ConversationRepository
from coach_messaging.repositories.device_repository import DeviceRepository
from coach_messaging.repositories.message_repository import MessageRepository
from coach_messaging.repositories.notification_repository import NotificationRepository
from coach_messaging.services.chat_service import ChatService
from coach_messaging.services.notification_service import NotificationService


def get_notification_service(db = Depends(mongo_db_dependency)) -> NotificationService:
    return NotificationService(NotificationRepository(db), DeviceRepository(db))


def get_chat_service(
    db = Depends(mongo_db_dependency),
    notifications: NotificationService = Depends(get_notification_service),
) -> ChatService:
    msg_repo = MessageRepository(db)
    convo_repo = ConversationRepository(db)
    return ChatService(msg_repo, convo_repo, notifications)


def get_device_repository(db = Depends(mongo_db_dependency)) -> DeviceRepository:
    return DeviceRepository(db)
