"""Notification sink -- in-app notifications for portal users.

Notifications are fire-and-forget for the reconciliation engine: callers log
a failed notify() and carry on, the record change it describes stands.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any

import structlog

logger = structlog.get_logger(__name__)


class NotificationSink(ABC):
    @abstractmethod
    async def notify(self, user_id: str, message: str, metadata: dict[str, Any]) -> None:
        ...


class RepositoryNotificationSink(NotificationSink):
    """Persists notifications to the notifications table.

    Args:
        repository: PortalRepository (or any object with insert_notification).
    """

    def __init__(self, repository: Any) -> None:
        self._repository = repository

    async def notify(self, user_id: str, message: str, metadata: dict[str, Any]) -> None:
        notification_id = await self._repository.insert_notification(user_id, message, metadata)
        logger.info(
            "notification.created",
            notification_id=notification_id,
            user_id=user_id,
            kind=metadata.get("type"),
        )
