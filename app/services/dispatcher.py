# file: services/dispatcher.py

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, List, Optional, Sequence

from app.models.notification import PushPayload
from app.services.delivery import DeliveryOutcome, RATE_LIMITED, UNKNOWN_ERROR
from app.services.recipient_resolver import Recipient
from app.services.record_store import NotificationRecordStore
from app.utils.errors import RecordStoreError

logger = logging.getLogger(__name__)

RETRYABLE_RESULTS = {RATE_LIMITED, UNKNOWN_ERROR}

# Failure lines kept per batch; the rest are folded into one summary line
MAX_ERRORS_PER_BATCH = 10


def partition(recipients: Sequence[Recipient], batch_size: int) -> List[List[Recipient]]:
    """Contiguous fixed-size slices; the last one may be shorter."""
    if batch_size < 1:
        raise ValueError("batch_size must be at least 1")
    return [list(recipients[i:i + batch_size]) for i in range(0, len(recipients), batch_size)]


def describe_failures(index: int, outcomes: Sequence[DeliveryOutcome]) -> List[str]:
    failures = [o for o in outcomes if not o.ok]
    lines = []
    for outcome in failures[:MAX_ERRORS_PER_BATCH]:
        line = f"{outcome.recipient_id}: {outcome.result}"
        if outcome.detail:
            line += f" ({outcome.detail})"
        lines.append(line)
    if len(failures) > MAX_ERRORS_PER_BATCH:
        lines.append(f"Batch {index}: {len(failures) - MAX_ERRORS_PER_BATCH} more failures not listed")
    return lines


@dataclass
class BatchResult:
    index: int
    size: int
    sent: int
    failed: int


@dataclass
class DispatchSummary:
    sent: int = 0
    failed: int = 0
    batches: int = 0
    elapsed_ms: int = 0


class BatchDispatcher:
    """
    Fans one payload out to many recipients: fixed-size batches, at most
    `max_concurrent_batches` in flight, every send inside a batch concurrent.
    Each finished batch is folded into the notification record right away.
    """

    def __init__(
        self,
        adapter,
        store: NotificationRecordStore,
        batch_size: int = 50,
        max_concurrent_batches: int = 10,
        retry_attempts: int = 0,
        retry_backoff_seconds: float = 0.5,
        on_expired: Optional[Callable[[Recipient], Awaitable[None]]] = None,
    ):
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        if max_concurrent_batches < 1:
            raise ValueError("max_concurrent_batches must be at least 1")
        if retry_attempts < 0:
            raise ValueError("retry_attempts cannot be negative")
        self.adapter = adapter
        self.store = store
        self.batch_size = batch_size
        self.max_concurrent_batches = max_concurrent_batches
        self.retry_attempts = retry_attempts
        self.retry_backoff_seconds = retry_backoff_seconds
        self.on_expired = on_expired

    async def dispatch(self, notification_id: int, recipients: Sequence[Recipient],
                       payload: PushPayload) -> DispatchSummary:
        start = time.monotonic()
        batches = partition(recipients, self.batch_size)
        summary = DispatchSummary(batches=len(batches))
        if not batches:
            return summary

        logger.info(f"Processing {len(recipients)} recipients in {len(batches)} batches of {self.batch_size}")
        semaphore = asyncio.Semaphore(self.max_concurrent_batches)

        async def run(index: int, batch: List[Recipient]) -> BatchResult:
            async with semaphore:
                return await self._process_batch(notification_id, index, batch, payload)

        # Every batch runs to the end even if a sibling blew up
        results = await asyncio.gather(*(run(i, b) for i, b in enumerate(batches)), return_exceptions=True)
        errors = [r for r in results if isinstance(r, Exception)]
        if errors:
            logger.error(f"Dispatch of notification {notification_id} aborted: {errors[0]!r}", exc_info=errors[0])
            try:
                await self.store.mark_failed(notification_id, reason=f"Dispatch aborted: {errors[0]!r}")
            except RecordStoreError as e:
                logger.error(f"Could not mark notification {notification_id} as failed: {e.details}")
            raise errors[0]

        for result in results:
            summary.sent += result.sent
            summary.failed += result.failed
        summary.elapsed_ms = int((time.monotonic() - start) * 1000)
        logger.info(
            f"Notification {notification_id} finished in {summary.elapsed_ms}ms: "
            f"{summary.sent} sent, {summary.failed} failed"
        )
        return summary

    async def _process_batch(self, notification_id: int, index: int, batch: List[Recipient],
                             payload: PushPayload) -> BatchResult:
        batch_start = time.monotonic()
        outcomes = await asyncio.gather(*(self._deliver(r, payload) for r in batch))

        sent = sum(1 for o in outcomes if o.ok)
        failed = len(outcomes) - sent
        await self.store.increment_stats(
            notification_id, sent_delta=sent, failed_delta=failed, errors=describe_failures(index, outcomes)
        )

        if self.on_expired is not None:
            by_id = {r.id: r for r in batch}
            for outcome in outcomes:
                if outcome.should_remove_subscription:
                    await self.on_expired(by_id[outcome.recipient_id])

        batch_ms = int((time.monotonic() - batch_start) * 1000)
        logger.info(f"Batch {index} completed in {batch_ms}ms: {sent} sent, {failed} failed")
        return BatchResult(index=index, size=len(batch), sent=sent, failed=failed)

    async def _deliver(self, recipient: Recipient, payload: PushPayload) -> DeliveryOutcome:
        outcome = await self._send_once(recipient, payload)
        attempt = 0
        while outcome.result in RETRYABLE_RESULTS and attempt < self.retry_attempts:
            await asyncio.sleep(self.retry_backoff_seconds * (2 ** attempt))
            attempt += 1
            logger.info(f"Retrying {recipient.id} (attempt {attempt}/{self.retry_attempts})")
            outcome = await self._send_once(recipient, payload)
        return outcome

    async def _send_once(self, recipient: Recipient, payload: PushPayload) -> DeliveryOutcome:
        try:
            return await self.adapter.send(recipient, payload)
        except Exception as e:
            # A misbehaving adapter still only costs this one recipient
            logger.error(f"Delivery to {recipient.id} raised: {e}")
            return DeliveryOutcome(recipient.id, UNKNOWN_ERROR, detail=str(e))
