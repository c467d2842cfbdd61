from __future__ import annotations

import json
from typing import Optional

from sessionguard.config import DAY_SECONDS
from sessionguard.logging import get_logger
from sessionguard.storage.kv import KVStore
from sessionguard.storage.models import LoginContext, now_ms

logger = get_logger(__name__)

NOTIFICATION_QUEUE_KEY = "notification_queue"


def notification_enabled_key(actor_id: int) -> str:
    return f"notification_enabled:{actor_id}"


class LoginNotifier:
    """Queues a login notification for actors who opted in.

    Delivery (mail, SMS, push) is done by whatever consumes the queue.
    """

    def __init__(self, store: KVStore) -> None:
        self.store = store
        self.logger = logger

    async def set_enabled(self, actor_id: int, enabled: bool) -> None:
        await self.store.set(notification_enabled_key(actor_id), "true" if enabled else "false")

    async def is_enabled(self, actor_id: int) -> bool:
        return await self.store.get(notification_enabled_key(actor_id)) == "true"

    async def notify_login(
        self, actor_id: int, actor_name: str, context: Optional[LoginContext] = None
    ) -> bool:
        """Returns True when a notification was queued."""
        if not await self.is_enabled(actor_id):
            return False
        ctx = context or LoginContext()
        sent_at = now_ms()
        notification = {
            "userId": actor_id,
            "username": actor_name,
            "type": "login_notification",
            "message": f"{actor_name} signed in",
            "timestamp": sent_at,
            "details": {
                "ip": ctx.ip_or_default,
                "userAgent": ctx.user_agent_or_default,
                "location": ctx.location_or_default,
            },
        }
        await self.store.list_push(NOTIFICATION_QUEUE_KEY, json.dumps(notification))
        await self.store.set(f"notification_sent:{actor_id}:{sent_at}", "pending", DAY_SECONDS)
        self.logger.info("login_notification_queued", actor_id=actor_id)
        return True
