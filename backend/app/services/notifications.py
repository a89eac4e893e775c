import asyncio
import json
from typing import Any, Dict, Optional, Protocol, Set

from redis.asyncio import Redis
from redis.exceptions import RedisError

from app.core.config import settings
from app.core.logging import get_logger

logger = get_logger("notifications")


class NotificationPublisher(Protocol):
    """Fire-and-forget hand-off to the push/email gateway"""

    def notify_new_message(self, user_id: str, chat_id: str, message: Dict[str, Any]) -> None:
        ...


def build_notification(user_id: str, chat_id: str, message: Dict[str, Any]) -> Dict[str, Any]:
    content = message.get("content", "")
    return {
        "type": "message.new",
        "user_id": user_id,
        "chat_id": chat_id,
        "message_id": message.get("id"),
        "preview": content[:140],
    }


class LoggingNotificationPublisher:
    """Used when Redis is not configured"""

    def notify_new_message(self, user_id: str, chat_id: str, message: Dict[str, Any]) -> None:
        payload = build_notification(user_id, chat_id, message)
        logger.info("Notification (log only)", user_id=user_id, chat_id=chat_id, message_id=payload["message_id"])


class RedisNotificationPublisher:
    """Publishes on a Redis channel without holding up the caller"""

    def __init__(self, redis_client: Redis, channel: Optional[str] = None):
        self.redis = redis_client
        self.channel = channel or settings.notification_channel
        self._pending: Set[asyncio.Task] = set()

    def notify_new_message(self, user_id: str, chat_id: str, message: Dict[str, Any]) -> None:
        payload = build_notification(user_id, chat_id, message)
        task = asyncio.get_running_loop().create_task(self._publish(payload))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _publish(self, payload: Dict[str, Any]) -> None:
        try:
            await self.redis.publish(self.channel, json.dumps(payload))
        except RedisError as e:
            # Notification failures never reach the chat core
            logger.error("Failed to publish notification", error=str(e), chat_id=payload["chat_id"])

    async def drain(self) -> None:
        """Wait for publishes still in flight"""
        if self._pending:
            await asyncio.wait(set(self._pending))


def create_notification_publisher() -> NotificationPublisher:
    if not settings.notifications_enabled or not settings.redis_url:
        return LoggingNotificationPublisher()
    try:
        redis_client = Redis.from_url(settings.redis_url, decode_responses=True)
        logger.info("Redis notification publisher configured", channel=settings.notification_channel)
        return RedisNotificationPublisher(redis_client)
    except (RedisError, ValueError) as e:
        logger.warning("Failed to setup Redis notifications, logging instead", error=str(e))
        return LoggingNotificationPublisher()
