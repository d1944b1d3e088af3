"""Notifier that records lifecycle notifications in the structured log."""

from __future__ import annotations

from deal_kernel.domain.ports import Notification
from deal_kernel.logging_config import get_logger

logger = get_logger("services.notifications")


class LoggingNotifier:
    """
    Notifier port for deployments without a push channel.

    Each notification becomes one ``notification_dispatched`` log entry
    that a log shipper can fan out.
    """

    def notify(self, notification: Notification) -> None:
        logger.info(
            "notification_dispatched",
            extra={
                "event": notification.event,
                "recipient_id": str(notification.recipient_id)
                if notification.recipient_id
                else None,
                "payload": notification.payload,
            },
        )
