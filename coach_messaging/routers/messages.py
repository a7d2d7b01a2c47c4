from fastapi import APIRouter, Depends

from coach_messaging.routers.dependencies import get_chat_service
from coach_messaging.schemas.messaging import Message
from coach_messaging.services.chat_service import ChatService
from coach_messaging.utils.dependencies import get_current_user


router = APIRouter(prefix="/messages", tags=["chat"])


@router.get("/unread-count")
async def unread_count(current_user: dict = Depends(get_current_user), service: ChatService = Depends(get_chat_service)):
    count = await service.get_unread_count(current_user["_id"])
    return {"count": count}


@router.post("/{message_id}/acknowledge", response_model=Message)
async def acknowledge(message_id: str, current_user: dict = Depends(get_current_user), service: ChatService = Depends(get_chat_service)):
    return await service.acknowledge_message(message_id, current_user["_id"])
