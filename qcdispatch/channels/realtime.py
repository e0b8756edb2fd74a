"""Realtime broadcast channel.

Messages go to the ``broadcasts`` outbox table; the web tier tails it and
forwards each row to subscribers of the stream.
"""

import logging
from typing import Any

from qcdispatch.channels.gateway import DeliveryChannel
from qcdispatch.db.models import Notification, User
from qcdispatch.db.repository import Repository
from qcdispatch.utils.constants import CHANNEL_REALTIME
from qcdispatch.utils.time_utils import to_storage

logger = logging.getLogger(__name__)


def user_stream(user_id: int) -> str:
    return f"user_{user_id}_notifications"


def couple_milestone_stream(couple_id: int) -> str:
    return f"couple_{couple_id}_milestones"


def notification_payload(notification: Notification) -> dict[str, Any]:
    """Serialize a notification for realtime subscribers."""
    return {
        "type": "new_notification",
        "notification": {
            "id": notification.id,
            "type": notification.notification_type,
            "title": notification.title,
            "body": notification.body,
            "priority": notification.priority,
            "data": notification.data,
            "created_at": to_storage(notification.created_at),
        },
    }


class OutboxRealtimeChannel(DeliveryChannel):
    """Realtime delivery through the broadcast outbox."""

    name = CHANNEL_REALTIME

    def __init__(self, repo: Repository):
        self.repo = repo

    async def send(self, notification: Notification, user: User | None) -> None:
        message_id = await self.repo.append_broadcast(
            user_stream(notification.user_id), notification_payload(notification)
        )
        logger.debug(f"Broadcast notification {notification.id} as message {message_id}")

    async def broadcast(self, stream: str, payload: dict[str, Any]) -> None:
        """Publish an arbitrary payload on a stream."""
        await self.repo.append_broadcast(stream, payload)
