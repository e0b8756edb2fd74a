"""Message text formatters."""

from html import escape

from qcdispatch.db.models import Milestone, Notification

PRIORITY_EMOJI = {
    "low": "💬",
    "normal": "🔔",
    "high": "⚠️",
    "urgent": "🚨",
}


def format_push_message(notification: Notification) -> str:
    """Format a notification as a push message."""
    emoji = PRIORITY_EMOJI.get(notification.priority, "🔔")
    lines = [f"{emoji} <b>{escape(notification.title)}</b>"]

    if notification.body:
        lines.append(escape(notification.body))

    if notification.action_required:
        lines.append("\n<i>Action needed</i>")

    return "\n".join(lines)


def format_admin_alert(notification: Notification, reason: str) -> str:
    """Format an operational alert about a notification that could not be delivered."""
    metadata = notification.metadata
    lines = [
        "🚨 <b>Notification delivery failed</b>",
        f"Notification: {notification.id}",
        f"Recipient: {notification.user_id}",
        f"Type: {notification.notification_type}",
        f"Priority: {notification.priority}",
        f"Reason: {escape(reason)}",
    ]

    if metadata.get("delivery_attempts"):
        lines.append(f"Attempts: {metadata['delivery_attempts']}")

    if metadata.get("last_delivery_error"):
        lines.append(f"Last error: {escape(str(metadata['last_delivery_error']))}")

    return "\n".join(lines)


def format_milestone_body(milestone: Milestone) -> str:
    """Notification body announcing a new milestone."""
    return f"🏆 {milestone.title}: {milestone.description}"
