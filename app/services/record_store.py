# file: services/record_store.py

import logging
from typing import List, Optional, Sequence

from sqlalchemy import select, update, case, func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker

from app.database.models import (
    Notification, NotificationProcessingError, STATUS_PROCESSING, STATUS_COMPLETED, STATUS_FAILED,
)
from app.utils.errors import RecordStoreError, NotificationNotFound

logger = logging.getLogger(__name__)

# Most failure lines returned with a status; the oldest are kept
MAX_PROCESSING_ERRORS = 50


class NotificationRecordStore:
    """
    Persists the aggregate delivery record of one logical notification.
    Counter updates are single UPDATE statements evaluated by the database,
    so concurrent batches never overwrite each other's increments. Failure
    detail is appended as separate rows for the same reason.
    """

    def __init__(self, session_factory: async_sessionmaker):
        self.session_factory = session_factory

    async def create(self, title: str, body: str, recipient_summary: str, total: int,
                     created_by: Optional[str] = None, type: str = "announcement",
                     priority: str = "medium") -> Notification:
        record = Notification(
            title=title,
            body=body,
            recipient_summary=recipient_summary,
            created_by=created_by,
            type=type,
            priority=priority,
            total=total,
            sent=0,
            failed=0,
            remaining=total,
            status=STATUS_PROCESSING if total > 0 else STATUS_COMPLETED,
        )
        try:
            async with self.session_factory() as db:
                db.add(record)
                await db.commit()
                await db.refresh(record)
        except SQLAlchemyError as e:
            raise RecordStoreError("Failed to create notification record", details=str(e)) from e
        return record

    async def increment_stats(self, notification_id: int, sent_delta: int, failed_delta: int,
                              errors: Sequence[str] = ()) -> None:
        processed = sent_delta + failed_delta
        new_remaining = Notification.remaining - processed
        stmt = (
            update(Notification)
            .where(Notification.id == notification_id, Notification.status == STATUS_PROCESSING)
            .values(
                sent=Notification.sent + sent_delta,
                failed=Notification.failed + failed_delta,
                remaining=new_remaining,
                status=case((new_remaining <= 0, STATUS_COMPLETED), else_=Notification.status),
                completed_at=case((new_remaining <= 0, func.now()), else_=Notification.completed_at),
            )
        )
        try:
            async with self.session_factory() as db:
                result = await db.execute(stmt)
                if result.rowcount and errors:
                    db.add_all(
                        NotificationProcessingError(notification_id=notification_id, message=message)
                        for message in errors
                    )
                await db.commit()
        except SQLAlchemyError as e:
            raise RecordStoreError("Failed to update notification stats", details=str(e)) from e

        if result.rowcount == 0:
            logger.warning(f"Stats update for notification {notification_id} matched no processing record")

    async def mark_failed(self, notification_id: int, reason: Optional[str] = None) -> None:
        """Terminates a dispatch that could not finish; the outstanding remainder counts as failed."""
        stmt = (
            update(Notification)
            .where(Notification.id == notification_id, Notification.status == STATUS_PROCESSING)
            .values(
                failed=Notification.failed + Notification.remaining,
                remaining=0,
                status=STATUS_FAILED,
                completed_at=func.now(),
            )
        )
        try:
            async with self.session_factory() as db:
                result = await db.execute(stmt)
                if result.rowcount and reason:
                    db.add(NotificationProcessingError(notification_id=notification_id, message=reason))
                await db.commit()
        except SQLAlchemyError as e:
            raise RecordStoreError("Failed to mark notification as failed", details=str(e)) from e

    async def get(self, notification_id: int) -> Notification:
        try:
            async with self.session_factory() as db:
                result = await db.execute(select(Notification).where(Notification.id == notification_id))
                record = result.scalars().first()
        except SQLAlchemyError as e:
            raise RecordStoreError("Failed to read notification record", details=str(e)) from e

        if record is None:
            raise NotificationNotFound(notification_id)
        return record

    async def processing_errors(self, notification_id: int, limit: int = MAX_PROCESSING_ERRORS) -> List[str]:
        stmt = (
            select(NotificationProcessingError.message)
            .where(NotificationProcessingError.notification_id == notification_id)
            .order_by(NotificationProcessingError.id)
            .limit(limit)
        )
        try:
            async with self.session_factory() as db:
                result = await db.execute(stmt)
                return list(result.scalars().all())
        except SQLAlchemyError as e:
            raise RecordStoreError("Failed to read notification errors", details=str(e)) from e
