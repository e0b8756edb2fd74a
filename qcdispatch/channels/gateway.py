"""Delivery channel gateway - "send to user via channel X"."""

import logging
from abc import ABC, abstractmethod

from qcdispatch.db.models import Notification, User
from qcdispatch.utils.errors import DeliveryChannelError

logger = logging.getLogger(__name__)


class DeliveryChannel(ABC):
    """A single transport (realtime broadcast, push, email)."""

    name: str = ""

    @abstractmethod
    async def send(self, notification: Notification, user: User | None) -> None:
        """Send a notification.

        Raises:
            DeliveryChannelError: if the transport rejected the message
        """


class DeliveryChannelGateway:
    """Routes sends to registered channels by name."""

    def __init__(self, channels: list[DeliveryChannel] | None = None):
        self._channels: dict[str, DeliveryChannel] = {}
        for channel in channels or []:
            self.register(channel)

    def register(self, channel: DeliveryChannel) -> None:
        self._channels[channel.name] = channel
        logger.info(f"Registered delivery channel: {channel.name}")

    def has_channel(self, name: str) -> bool:
        return name in self._channels

    async def send(self, channel: str, notification: Notification, user: User | None = None) -> None:
        """Send a notification through the named channel.

        Any failure, including an unexpected transport exception, surfaces as
        DeliveryChannelError so callers deal with a single error type.
        """
        transport = self._channels.get(channel)
        if transport is None:
            raise DeliveryChannelError(channel, "channel not registered")

        try:
            await transport.send(notification, user)
        except DeliveryChannelError:
            raise
        except Exception as e:
            raise DeliveryChannelError(channel, str(e)) from e
