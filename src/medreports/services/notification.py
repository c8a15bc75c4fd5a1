"""
Notification sink.

Writes in-app notifications for report owners and schedule recipients.
Delivery is best-effort: a failing notification never fails the caller.
"""

from typing import Any, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from medreports.core.logging import get_logger
from medreports.db.base import dump_json
from medreports.models.notification import Notification

logger = get_logger(__name__)


class NotificationService:
    """Service for writing user notifications."""

    async def notify(
        self,
        db: AsyncSession,
        user_id: str,
        title: str,
        message: str,
        type: str = "REPORT",
        data: Optional[dict[str, Any]] = None,
    ) -> Optional[Notification]:
        """
        Write one notification.

        Runs inside a savepoint so a failed insert leaves the caller's
        transaction usable.

        Returns:
            The notification, or None when it could not be written
        """
        try:
            async with db.begin_nested():
                notification = Notification(
                    user_id=user_id,
                    title=title,
                    message=message,
                    type=type,
                    data=dump_json(data or {}),
                )
                db.add(notification)
            return notification
        except SQLAlchemyError as e:
            logger.warning(
                f"Failed to notify user {user_id}: {e}",
                extra={"user_id": user_id, "title": title},
            )
            return None

    async def notify_many(
        self,
        db: AsyncSession,
        user_ids: list[str],
        title: str,
        message: str,
        type: str = "REPORT",
        data: Optional[dict[str, Any]] = None,
    ) -> int:
        """Notify several users; returns how many notifications were written."""
        sent = 0
        for user_id in dict.fromkeys(user_ids):
            if await self.notify(db, user_id, title, message, type=type, data=data):
                sent += 1
        return sent
