"""
Operator earnings.

An earnings row is written in the same transaction that completes an order,
so a committed completion always carries its payout. ``order_id`` is unique
and the service checks for an existing row first, making the write
idempotent.
"""

import uuid
from typing import Any, Optional

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from freshdrop.core.config import get_settings
from freshdrop.core.logging import get_logger
from freshdrop.database.models.earnings import EarningStatus, OperatorEarning
from freshdrop.database.models.order import Order

logger = get_logger(__name__)


class EarningsServiceError(Exception):
    """Base exception for earnings errors."""

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.context = context


def revenue_split(total_cents: int, share_percent: int) -> tuple[int, int]:
    """Split a total into ``(operator_payout, business_cut)``; payout rounds down."""
    payout = total_cents * share_percent // 100
    return payout, total_cents - payout


class EarningsService:
    def __init__(self, session: AsyncSession, revenue_share_percent: Optional[int] = None):
        self.session = session
        self.revenue_share_percent = (
            revenue_share_percent
            if revenue_share_percent is not None
            else get_settings().operator_revenue_share_percent
        )

    async def get_for_order(self, order_id: uuid.UUID) -> Optional[OperatorEarning]:
        result = await self.session.execute(
            select(OperatorEarning).where(OperatorEarning.order_id == order_id)
        )
        return result.scalar_one_or_none()

    async def record_for_order(self, order: Order) -> OperatorEarning:
        """
        Record the operator's payout for a completed order.

        Uses the payout fixed at placement when there is one, otherwise the
        configured revenue share of the total before tip. The tip is owed to
        the operator in full.

        Raises:
            EarningsServiceError: If the order has no operator or the write fails
        """
        if order.washer_id is None:
            raise EarningsServiceError(
                "Completed order has no operator", order_id=str(order.id)
            )

        existing = await self.get_for_order(order.id)
        if existing is not None:
            return existing

        tip = order.tip_cents or 0
        if order.operator_payout_cents:
            payout = order.operator_payout_cents
        else:
            payout, _ = revenue_split(
                order.total_amount_cents - tip, self.revenue_share_percent
            )

        earning = OperatorEarning(
            order_id=order.id,
            operator_id=order.washer_id,
            gross_amount_cents=order.total_amount_cents,
            payout_amount_cents=payout,
            tip_cents=tip,
            revenue_share_percent=self.revenue_share_percent,
            status=EarningStatus.PENDING,
        )
        self.session.add(earning)

        try:
            await self.session.flush()
        except SQLAlchemyError as e:
            logger.error(
                "Failed to record operator earnings",
                order_id=str(order.id),
                error=str(e),
            )
            raise EarningsServiceError(
                "Failed to record operator earnings",
                order_id=str(order.id),
                error=str(e),
            ) from e

        logger.info(
            "Operator earnings recorded",
            order_id=str(order.id),
            operator_id=str(order.washer_id),
            payout_cents=payout,
            tip_cents=tip,
        )
        return earning

    async def operator_summary(
        self, operator_id: uuid.UUID, limit: int = 50
    ) -> dict[str, Any]:
        """Recent earnings rows and lifetime totals for one operator."""
        rows = await self.session.execute(
            select(OperatorEarning)
            .where(OperatorEarning.operator_id == operator_id)
            .order_by(OperatorEarning.created_at.desc())
            .limit(limit)
        )
        totals = await self.session.execute(
            select(
                OperatorEarning.status,
                func.count(OperatorEarning.id),
                func.coalesce(func.sum(OperatorEarning.payout_amount_cents), 0),
                func.coalesce(func.sum(OperatorEarning.tip_cents), 0),
            )
            .where(OperatorEarning.operator_id == operator_id)
            .group_by(OperatorEarning.status)
        )

        by_status = {
            status.value: {"orders": count, "total_cents": int(payout) + int(tips)}
            for status, count, payout, tips in totals.all()
        }
        return {
            "operator_id": str(operator_id),
            "completed_orders": sum(v["orders"] for v in by_status.values()),
            "total_cents": sum(v["total_cents"] for v in by_status.values()),
            "pending_cents": by_status.get(EarningStatus.PENDING.value, {}).get("total_cents", 0),
            "paid_cents": by_status.get(EarningStatus.PAID.value, {}).get("total_cents", 0),
            "earnings": [
                {
                    "order_id": str(earning.order_id),
                    "order_number": str(earning.order_id)[-8:].upper(),
                    "payout_cents": earning.payout_amount_cents,
                    "tip_cents": earning.tip_cents,
                    "total_cents": earning.total_cents,
                    "status": earning.status.value,
                    "created_at": earning.created_at.isoformat(),
                }
                for earning in rows.scalars().all()
            ],
        }
