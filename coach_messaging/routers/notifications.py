from typing import List

from fastapi import APIRouter, Depends, HTTPException, Query, status

from coach_messaging.routers.dependencies import get_notification_service
from coach_messaging.schemas.notification import CreateNotificationRequest, NotificationEvent, NotificationFilter
from coach_messaging.services.notification_service import NotificationService
from coach_messaging.utils.dependencies import get_current_user
from coach_messaging.utils.errors import AuthorizationError


router = APIRouter(prefix="/notifications", tags=["notifications"])


@router.get("", response_model=List[NotificationEvent])
async def list_notifications(
    limit: int = Query(20, ge=1, le=100),
    unread_only: bool = False,
    current_user: dict = Depends(get_current_user),
    service: NotificationService = Depends(get_notification_service),
):
    return await service.list_notifications(current_user["_id"], NotificationFilter(limit=limit, unread_only=unread_only))


@router.get("/unread-count")
async def unread_count(current_user: dict = Depends(get_current_user), service: NotificationService = Depends(get_notification_service)):
    return {"count": await service.unread_count(current_user["_id"])}


@router.post("/read-all")
async def mark_all_read(current_user: dict = Depends(get_current_user), service: NotificationService = Depends(get_notification_service)):
    return {"updated": await service.mark_all_read(current_user["_id"])}


@router.post("/{notification_id}/read")
async def mark_read(notification_id: str, current_user: dict = Depends(get_current_user), service: NotificationService = Depends(get_notification_service)):
    try:
        await service.mark_read(notification_id, current_user["_id"])
    except AuthorizationError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
    return {"ok": True}


@router.post("", response_model=NotificationEvent, status_code=status.HTTP_201_CREATED)
async def create_notification(body: CreateNotificationRequest, current_user: dict = Depends(get_current_user), service: NotificationService = Depends(get_notification_service)):
    if current_user["role"] != "coach":
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Only coaches can create notifications")
    return await service.notify(body.user_id, body.type.value, body.title, body.message, body.data)
