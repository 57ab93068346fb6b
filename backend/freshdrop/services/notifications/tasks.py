"""
Celery tasks for background notification processing.

The outbox is drained by ``notifications.drain_outbox``. The API nudges it
after each commit that enqueued an event, and Celery beat runs it on an
interval so nothing waits on a lost nudge.
"""

import asyncio
from typing import Any, Optional

from celery import Task
from sqlalchemy.ext.asyncio import AsyncSession

from freshdrop.core.config import get_settings
from freshdrop.core.logging import get_logger
from freshdrop.database.connection import close_database_connections, get_session
from freshdrop.database.models.notification import OutboxState
from freshdrop.services.notifications.outbox import OutboxError, OutboxRepository
from freshdrop.services.notifications.service import (
    NotificationService,
    NotificationServiceError,
)
from freshdrop.worker import celery_app

logger = get_logger(__name__)


class NotificationTask(Task):
    """
    Base task class for notification tasks with retry logic.

    Only infrastructure failures (the outbox itself unreachable) are retried
    by Celery; per-event failures are rescheduled inside the outbox.
    """

    autoretry_for = (OutboxError,)
    retry_kwargs = {"max_retries": 3}
    retry_backoff = True
    retry_backoff_max = 600
    retry_jitter = True

    def on_failure(
        self,
        exc: Exception,
        task_id: str,
        args: tuple,
        kwargs: dict,
        einfo: Any,
    ) -> None:
        logger.error(
            "Notification task failed",
            task_id=task_id,
            exception=str(exc),
            args=args,
            kwargs=kwargs,
        )

    def on_retry(
        self,
        exc: Exception,
        task_id: str,
        args: tuple,
        kwargs: dict,
        einfo: Any,
    ) -> None:
        logger.warning(
            "Notification task retrying",
            task_id=task_id,
            exception=str(exc),
            retry_count=self.request.retries,
            max_retries=self.max_retries,
        )


async def drain_outbox_once(
    session: AsyncSession,
    service: Optional[NotificationService] = None,
    batch_size: Optional[int] = None,
    max_attempts: Optional[int] = None,
) -> dict[str, int]:
    """
    Deliver one batch of due outbox events.

    Args:
        session: Session whose transaction holds the claimed rows
        service: Notification service (defaults to one bound to ``session``)
        batch_size: Maximum events to claim
        max_attempts: Attempts before an event is marked failed

    Returns:
        Counts of claimed, sent, rescheduled and failed events
    """
    settings = get_settings()
    batch_size = batch_size or settings.outbox_batch_size
    max_attempts = max_attempts or settings.notification_max_attempts
    service = service or NotificationService(session)
    outbox = OutboxRepository(session)

    events = await outbox.claim_batch(batch_size)
    stats = {"claimed": len(events), "sent": 0, "rescheduled": 0, "failed": 0}

    for event in events:
        try:
            await service.dispatch(event)
        except NotificationServiceError as e:
            outbox.mark_attempt_failed(
                event, str(e), max_attempts=max_attempts, permanent=e.permanent
            )
            if event.state == OutboxState.FAILED:
                stats["failed"] += 1
            else:
                stats["rescheduled"] += 1
            continue

        outbox.mark_sent(event)
        stats["sent"] += 1

    return stats


@celery_app.task(
    bind=True,
    base=NotificationTask,
    name="notifications.drain_outbox",
    time_limit=300,
    soft_time_limit=240,
)
def drain_outbox(self: Task, batch_size: Optional[int] = None) -> dict[str, int]:
    """Drain due notification events from the outbox."""

    async def run() -> dict[str, int]:
        # Pooled connections belong to this event loop; drop them with it
        try:
            async with get_session() as session:
                return await drain_outbox_once(session, batch_size=batch_size)
        finally:
            await close_database_connections()

    result = asyncio.run(run())

    if result["claimed"]:
        logger.info(
            "Outbox drained",
            task_id=self.request.id,
            **result,
        )
    return result


async def request_outbox_drain() -> None:
    """Ask the worker to drain now. Broker failures are logged, not raised."""
    try:
        # Publishing blocks on the broker connection; keep it off the event loop
        await asyncio.to_thread(drain_outbox.apply_async, retry=False)
    except Exception as e:
        logger.warning("Failed to enqueue outbox drain", error=str(e))
