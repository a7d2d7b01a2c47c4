from fastapi import APIRouter, Depends

from coach_messaging.repositories.device_repository import DeviceRepository
from coach_messaging.routers.dependencies import get_device_repository
from coach_messaging.schemas.notification import DeviceRegistration
from coach_messaging.utils.dependencies import get_current_user


router = APIRouter(prefix="/devices", tags=["push"])


@router.post("/register")
async def register_device(payload: DeviceRegistration, current_user: dict = Depends(get_current_user), repo: DeviceRepository = Depends(get_device_repository)):
    device = await repo.register(current_user["_id"], payload)
    return {"ok": True, "device": {"platform": device["platform"], "token": device["token"]}}
