"""
Durable notification outbox.

Events are enqueued inside the transaction that changes the order, so a
committed state change always has its notification recorded. The worker
claims due rows, delivers them and reschedules failures with exponential
backoff until the attempt budget runs out.
"""

from datetime import datetime, timedelta, timezone
from typing import Optional, Sequence
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from freshdrop.core.logging import get_logger
from freshdrop.database.models.notification import (
    NotificationOutbox,
    NotificationType,
    OutboxState,
)
from freshdrop.services.notifications.triggers import format_order_number

logger = get_logger(__name__)

BASE_BACKOFF_SECONDS = 30
MAX_BACKOFF_SECONDS = 3600


class OutboxError(Exception):
    """Raised when the outbox cannot be read or written."""

    def __init__(self, message: str, **context):
        super().__init__(message)
        self.context = context


def backoff_delay(attempts: int) -> timedelta:
    """Delay before the next attempt after ``attempts`` failures."""
    seconds = BASE_BACKOFF_SECONDS * (2 ** max(attempts - 1, 0))
    return timedelta(seconds=min(seconds, MAX_BACKOFF_SECONDS))


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class OutboxRepository:
    """Data access for ``notification_outbox`` rows."""

    def __init__(self, session: AsyncSession):
        self.session = session

    def enqueue(
        self,
        order_id: UUID,
        customer_id: UUID,
        notification_type: NotificationType,
        current_step: Optional[int] = None,
    ) -> NotificationOutbox:
        """
        Add an event to the caller's transaction.

        Nothing is flushed here; the row commits or rolls back with the order
        change that produced it.
        """
        event = NotificationOutbox(
            order_id=order_id,
            customer_id=customer_id,
            notification_type=notification_type,
            order_number=format_order_number(order_id),
            current_step=current_step,
            state=OutboxState.PENDING,
            attempts=0,
            available_at=_utcnow(),
        )
        self.session.add(event)

        logger.debug(
            "Notification enqueued",
            order_id=str(order_id),
            notification_type=notification_type.value,
        )
        return event

    async def claim_batch(
        self, limit: int, now: Optional[datetime] = None
    ) -> Sequence[NotificationOutbox]:
        """Pending events that are due, oldest first.

        On PostgreSQL the rows are locked with SKIP LOCKED so concurrent
        workers never deliver the same event.
        """
        now = now or _utcnow()
        stmt = (
            select(NotificationOutbox)
            .where(
                NotificationOutbox.state == OutboxState.PENDING,
                NotificationOutbox.available_at <= now,
            )
            .order_by(NotificationOutbox.available_at, NotificationOutbox.created_at)
            .limit(limit)
        )
        if self.session.get_bind().dialect.name == "postgresql":
            stmt = stmt.with_for_update(skip_locked=True)

        try:
            result = await self.session.execute(stmt)
            return result.scalars().all()
        except SQLAlchemyError as e:
            logger.error("Failed to claim outbox batch", error=str(e))
            raise OutboxError("Failed to claim outbox batch", error=str(e)) from e

    def mark_sent(self, event: NotificationOutbox, now: Optional[datetime] = None) -> None:
        event.attempts += 1
        event.state = OutboxState.SENT
        event.sent_at = now or _utcnow()
        event.last_error = None

    def mark_attempt_failed(
        self,
        event: NotificationOutbox,
        error: str,
        max_attempts: int,
        permanent: bool = False,
        now: Optional[datetime] = None,
    ) -> None:
        """Record a failed attempt and reschedule or give up."""
        now = now or _utcnow()
        event.attempts += 1
        event.last_error = error[:2000]

        if permanent or event.attempts >= max_attempts:
            event.state = OutboxState.FAILED
            logger.error(
                "Notification permanently failed",
                outbox_id=str(event.id),
                order_id=str(event.order_id),
                attempts=event.attempts,
                error=error,
            )
            return

        event.available_at = now + backoff_delay(event.attempts)
        logger.warning(
            "Notification attempt failed, rescheduled",
            outbox_id=str(event.id),
            attempts=event.attempts,
            next_attempt_at=event.available_at.isoformat(),
        )

    async def count_by_state(self) -> dict[str, int]:
        stmt = select(NotificationOutbox.state, func.count(NotificationOutbox.id)).group_by(
            NotificationOutbox.state
        )
        result = await self.session.execute(stmt)
        return {state.value: count for state, count in result.all()}
