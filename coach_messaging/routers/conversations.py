from typing import Dict, List, Optional

from fastapi import APIRouter, Depends, Query, status

from coach_messaging.routers.dependencies import get_chat_service
from coach_messaging.schemas.messaging import (
    Conversation,
    ConversationPage,
    Message,
    SendMessageRequest,
    StartConversationRequest,
)
from coach_messaging.services.chat_service import ChatService
from coach_messaging.utils.dependencies import get_current_user


router = APIRouter(prefix="/conversations", tags=["chat"])


@router.get("", response_model=ConversationPage)
async def list_conversations(
    limit: int = Query(8, ge=1, le=100),
    offset: int = Query(0, ge=0),
    search: Optional[str] = Query(None, max_length=100),
    current_user: dict = Depends(get_current_user),
    service: ChatService = Depends(get_chat_service),
):
    return await service.list_conversations(current_user["_id"], limit=limit, offset=offset, search=search)


@router.post("", response_model=Conversation)
async def start_conversation(body: StartConversationRequest, current_user: dict = Depends(get_current_user), service: ChatService = Depends(get_chat_service)):
    return await service.start_conversation(current_user, body)


@router.get("/unread-counts", response_model=Dict[str, int])
async def conversation_unread_counts(current_user: dict = Depends(get_current_user), service: ChatService = Depends(get_chat_service)):
    return await service.get_conversation_unread_counts(current_user["_id"])


@router.get("/{conversation_id}/messages", response_model=List[Message])
async def list_messages(conversation_id: str, current_user: dict = Depends(get_current_user), service: ChatService = Depends(get_chat_service)):
    return await service.get_messages(conversation_id, current_user["_id"])


@router.post("/{conversation_id}/messages", response_model=Message, status_code=status.HTTP_201_CREATED)
async def send_message(conversation_id: str, body: SendMessageRequest, current_user: dict = Depends(get_current_user), service: ChatService = Depends(get_chat_service)):
    return await service.send_message(conversation_id, current_user, body)


@router.post("/{conversation_id}/read")
async def mark_read(conversation_id: str, current_user: dict = Depends(get_current_user), service: ChatService = Depends(get_chat_service)):
    updated = await service.mark_read(conversation_id, current_user["_id"])
    return {"updated": updated}
