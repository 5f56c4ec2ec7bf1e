# file: services/notification_service.py

import logging
import time
from dataclasses import dataclass
from typing import List, Optional

from app.config import get_settings
from app.database.connection import AsyncSessionLocal
from app.database.models import Notification, STATUS_COMPLETED
from app.models.notification import (
    AllUsers, BatchNotificationRequest, NotificationStats, NotificationStatus, PushPayload, RecipientSpec,
    UnifiedResults, summarize_recipients,
)
from app.services.delivery import DeliveryAdapter
from app.services.dispatcher import BatchDispatcher
from app.services.recipient_resolver import RecipientResolver, CHANNEL_WEBPUSH
from app.services.record_store import NotificationRecordStore
from app.services.task_supervisor import TaskSupervisor

logger = logging.getLogger(__name__)


def stats_of(record: Notification) -> NotificationStats:
    return NotificationStats(total=record.total, sent=record.sent, failed=record.failed, remaining=record.remaining)


def compute_progress(total: int, sent: int, failed: int) -> int:
    if total <= 0:
        return 100
    return max(0, min(100, round(100 * (sent + failed) / total)))


def status_of(record: Notification, processing_errors: Optional[List[str]] = None) -> NotificationStatus:
    status = record.status
    if record.total == 0:
        status = STATUS_COMPLETED
    return NotificationStatus(
        id=record.id,
        status=status,
        progress=compute_progress(record.total, record.sent, record.failed),
        stats=stats_of(record),
        type=record.type,
        priority=record.priority,
        processingErrors=processing_errors or [],
    )


@dataclass
class SubmissionResult:
    record: Notification
    stats: NotificationStats
    processing_ms: int


class NotificationService:
    """
    Entry point for the notification routes: resolve, record, hand the fan-out
    to the supervisor and answer straight away.
    """

    def __init__(
        self,
        resolver: RecipientResolver,
        store: NotificationRecordStore,
        dispatcher: BatchDispatcher,
        adapter,
        supervisor: TaskSupervisor,
    ):
        self.resolver = resolver
        self.store = store
        self.dispatcher = dispatcher
        self.adapter = adapter
        self.supervisor = supervisor

    async def submit(self, request: BatchNotificationRequest, created_by: Optional[str] = None) -> SubmissionResult:
        start = time.monotonic()
        logger.info(f"Starting batch notification '{request.title}' for {len(request.recipients)} recipient groups")

        recipients = await self.resolver.resolve(request.recipients)
        record = await self.store.create(
            title=request.title,
            body=request.body,
            recipient_summary=summarize_recipients(request.recipients),
            total=len(recipients),
            created_by=created_by,
            type=request.type,
            priority=request.priority,
        )

        if recipients:
            self.supervisor.spawn(
                self.dispatcher.dispatch(record.id, recipients, request.to_payload()),
                name=f"notification-{record.id}",
            )

        processing_ms = int((time.monotonic() - start) * 1000)
        logger.info(f"Batch notification {record.id} queued in {processing_ms}ms for {len(recipients)} recipients")
        return SubmissionResult(record=record, stats=stats_of(record), processing_ms=processing_ms)

    async def get_status(self, notification_id: int) -> NotificationStatus:
        record = await self.store.get(notification_id)
        errors = await self.store.processing_errors(notification_id)
        return status_of(record, errors)

    async def send_unified(self, specs: Optional[List[RecipientSpec]], payload: PushPayload) -> UnifiedResults:
        """
        Sends once to each resolved target and tallies by channel. No record
        is kept; use submit() for tracked sends.
        """
        if specs is None:
            specs = [AllUsers(kind="all_users")]
        recipients = await self.resolver.resolve(specs)

        results = UnifiedResults()
        for recipient in recipients:
            channel = results.webPush if recipient.channel == CHANNEL_WEBPUSH else results.fcm
            outcome = await self.adapter.send(recipient, payload)
            if outcome.ok:
                channel.success += 1
                results.total.success += 1
            else:
                channel.failed += 1
                results.total.failed += 1
                channel.errors.append(f"{recipient.id}: {outcome.result}")
                if outcome.should_remove_subscription:
                    await self.resolver.deactivate(recipient)

        logger.info(
            f"Unified notification results: {results.total.success} success, {results.total.failed} failed"
        )
        return results


def build_notification_service(settings, session_factory) -> NotificationService:
    resolver = RecipientResolver(session_factory)
    store = NotificationRecordStore(session_factory)
    adapter = DeliveryAdapter(settings)
    dispatcher = BatchDispatcher(
        adapter,
        store,
        batch_size=settings.batch_size,
        max_concurrent_batches=settings.max_concurrent_batches,
        retry_attempts=settings.retry_attempts,
        retry_backoff_seconds=settings.retry_backoff_seconds,
        on_expired=resolver.deactivate,
    )
    return NotificationService(resolver, store, dispatcher, adapter, TaskSupervisor())


_service: Optional[NotificationService] = None


def get_notification_service() -> NotificationService:
    global _service
    if _service is None:
        _service = build_notification_service(get_settings(), AsyncSessionLocal)
    return _service
