import asyncio
import logging
from typing import Any, Dict, List, Optional

from pyfcm import FCMNotification

from coach_messaging.core.config import get_settings


logger = logging.getLogger(__name__)


class NoopPush:

    enabled = False

    async def send_fcm(self, tokens: List[str], title: str, body: str, data: Optional[Dict[str, Any]] = None) -> int:
        return 0


class FcmPush:

    enabled = True

    def __init__(self, service_account_file: str, project_id: str) -> None:
        self._client = FCMNotification(service_account_file=service_account_file, project_id=project_id)

    async def send_fcm(self, tokens: List[str], title: str, body: str, data: Optional[Dict[str, Any]] = None) -> int:
        # FCM data payloads only carry string values
        payload = {key: str(value) for key, value in (data or {}).items() if value is not None}
        delivered = 0
        for token in tokens:
            try:
                await asyncio.to_thread(
                    self._client.notify,
                    fcm_token=token,
                    notification_title=title,
                    notification_body=body,
                    data_payload=payload,
                )
                delivered += 1
            except Exception:
                logger.warning("FCM delivery failed for token %s...", token[:8], exc_info=True)
        return delivered


_push = None


async def get_push():
    global _push
    if _push is not None:
        return _push
    settings = get_settings()
    if not (settings.fcm_service_account_file and settings.fcm_project_id):
        _push = NoopPush()
        return _push
    _push = FcmPush(settings.fcm_service_account_file, settings.fcm_project_id)
    logger.info("FCM push enabled for project %s", settings.fcm_project_id)
    return _push
