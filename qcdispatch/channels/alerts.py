"""Admin alert sinks for operational escalations."""

import logging
from abc import ABC, abstractmethod

from telegram import Bot
from telegram.error import TelegramError

from qcdispatch.channels.formatters import format_admin_alert
from qcdispatch.db.models import Notification

logger = logging.getLogger(__name__)


class AdminAlertSink(ABC):
    """Receives escalations about notifications that could not be delivered."""

    @abstractmethod
    async def alert(self, notification: Notification, reason: str) -> None:
        """Report a notification that reached the retry limit."""


class LogAdminAlertSink(AdminAlertSink):
    """Writes escalations to the log when no admin chat is configured."""

    async def alert(self, notification: Notification, reason: str) -> None:
        logger.critical(
            f"ADMIN ALERT: notification {notification.id} "
            f"(user {notification.user_id}, type {notification.notification_type}, "
            f"priority {notification.priority}): {reason}"
        )


class TelegramAdminAlertSink(AdminAlertSink):
    """Sends escalations to an admin Telegram chat."""

    def __init__(self, bot: Bot, chat_id: int):
        self.bot = bot
        self.chat_id = chat_id

    async def alert(self, notification: Notification, reason: str) -> None:
        try:
            await self.bot.send_message(
                chat_id=self.chat_id,
                text=format_admin_alert(notification, reason),
                parse_mode="HTML",
            )
        except TelegramError as e:
            # The alert is best effort; the failure is already recorded on the notification
            logger.error(f"Failed to send admin alert for notification {notification.id}: {e}")
