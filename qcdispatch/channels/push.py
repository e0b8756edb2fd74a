"""Push channel over the Telegram Bot API."""

import logging

from telegram import Bot
from telegram.error import TelegramError

from qcdispatch.channels.formatters import format_push_message
from qcdispatch.channels.gateway import DeliveryChannel
from qcdispatch.channels.keyboards import notification_keyboard
from qcdispatch.db.models import Notification, User
from qcdispatch.utils.constants import CHANNEL_PUSH
from qcdispatch.utils.errors import DeliveryChannelError

logger = logging.getLogger(__name__)


class TelegramPushChannel(DeliveryChannel):
    """Sends notifications to the recipient's Telegram chat."""

    name = CHANNEL_PUSH

    def __init__(self, bot: Bot, app_base_url: str = ""):
        self.bot = bot
        self.app_base_url = app_base_url

    async def send(self, notification: Notification, user: User | None) -> None:
        if user is None or not user.telegram_chat_id:
            raise DeliveryChannelError(self.name, f"no push token for user {notification.user_id}")

        try:
            await self.bot.send_message(
                chat_id=user.telegram_chat_id,
                text=format_push_message(notification),
                parse_mode="HTML",
                reply_markup=notification_keyboard(notification, self.app_base_url),
            )
        except TelegramError as e:
            raise DeliveryChannelError(self.name, str(e)) from e

        logger.debug(f"Pushed notification {notification.id} to user {user.id}")
