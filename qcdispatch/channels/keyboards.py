"""Inline keyboard builders."""

from telegram import InlineKeyboardButton, InlineKeyboardMarkup

from qcdispatch.db.models import Notification


def notification_keyboard(notification: Notification, base_url: str) -> InlineKeyboardMarkup | None:
    """Keyboard for push messages: an "Open" button for the suggested action.

    Returns None when the notification has no action or no base URL is set.
    """
    action_url = notification.data.get("action_url")
    if not action_url or not base_url:
        return None

    label = "Respond" if notification.action_required else "Open"
    return InlineKeyboardMarkup(
        [[InlineKeyboardButton(label, url=f"{base_url.rstrip('/')}{action_url}")]]
    )
