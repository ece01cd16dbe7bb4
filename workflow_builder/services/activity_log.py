import asyncio
from typing import Any, Dict, Optional, Set

import httpx

from workflow_builder.core.config import settings
from workflow_builder.core.logging import get_logger

logger = get_logger(__name__)


class ActivityLogClient:
    """
    Fire-and-forget publisher for admin activity events.
    Delivery failures are logged and never reach the caller.
    """

    def __init__(self, base_url: Optional[str] = None, enabled: Optional[bool] = None):
        self.activity_log_url = base_url or settings.ACTIVITY_LOG_URL
        self.enabled = settings.ENABLE_ACTIVITY_LOG if enabled is None else enabled
        self.headers = {
            "X-Internal-Key": settings.INTERNAL_SERVICE_KEY,
            "Content-Type": "application/json"
        }
        self.timeout = 5.0
        self._pending: Set[asyncio.Task] = set()

    def publish(self, user_id: str, entity_type: str, action_name: str, entity_id: Any) -> None:
        if not self.enabled:
            return
        event = {
            "admin_user_id": user_id,
            "entity_type": entity_type,
            "action_name": action_name,
            "entity_id": str(entity_id),
        }
        task = asyncio.create_task(self._send(event))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _send(self, event: Dict[str, Any]) -> None:
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(self.activity_log_url, headers=self.headers, json=event)
                if response.status_code >= 400:
                    logger.warning(f"Activity log rejected event {event['entity_type']}/{event['action_name']}: {response.status_code}")
        except httpx.HTTPError as e:
            logger.warning(f"Failed to publish activity event {event['entity_type']}/{event['action_name']}: {e}")


activity_log_client = ActivityLogClient()
