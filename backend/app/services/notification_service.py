"""
Notification Service.

Handles creation and state management of notifications, and the
fire-and-forget sink domain services publish through after they commit.
"""

import logging
from dataclasses import dataclass, field
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy import update
from datetime import datetime
from typing import Optional, Dict, Any, Iterable

from backend.app.models.notification import Notification, NotificationType

logger = logging.getLogger("loyalty.notifications")


@dataclass
class NotificationEvent:
    user_id: int
    title: str
    message: str
    type: NotificationType = NotificationType.INFO
    metadata: Dict[str, Any] = field(default_factory=dict)


class NotificationService:

    @staticmethod
    async def create_notification(
        db: AsyncSession,
        user_id: int,
        title: str,
        message: str,
        type: NotificationType = NotificationType.INFO,
        metadata: Optional[Dict[str, Any]] = None
    ) -> Notification:
        """Create a single notification."""
        notif = Notification(
            user_id=user_id,
            type=type,
            title=title,
            message=message,
            metadata_payload=metadata
        )
        db.add(notif)
        await db.flush()  # Caller commits usually
        return notif

    @staticmethod
    async def mark_read(db: AsyncSession, notification_id: int, user_id: int) -> bool:
        """Mark a notification as read."""
        stmt = update(Notification).where(
            Notification.id == notification_id,
            Notification.user_id == user_id
        ).values(
            is_read=True,
            read_at=datetime.utcnow()
        )
        result = await db.execute(stmt)
        return result.rowcount > 0

    @staticmethod
    async def mark_all_read(db: AsyncSession, user_id: int) -> int:
        """Mark all notifications for user as read."""
        stmt = update(Notification).where(
            Notification.user_id == user_id,
            Notification.is_read == False
        ).values(
            is_read=True,
            read_at=datetime.utcnow()
        )
        result = await db.execute(stmt)
        return result.rowcount


class DatabaseNotificationSink:
    """
    Persists notifications in their own session.

    Called only after the originating operation has committed. A delivery
    failure is logged and dropped; it never reaches the caller.
    """

    def __init__(self, session_factory: async_sessionmaker):
        self.session_factory = session_factory

    async def publish(self, event: NotificationEvent) -> None:
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    await NotificationService.create_notification(
                        session,
                        user_id=event.user_id,
                        title=event.title,
                        message=event.message,
                        type=event.type,
                        metadata=event.metadata or None
                    )
        except Exception:
            logger.exception("Failed to deliver notification '%s' to user %s", event.title, event.user_id)

    async def publish_all(self, events: Iterable[NotificationEvent]) -> None:
        for event in events:
            await self.publish(event)
