"""
Promo code resolution and redemption.

A code is checked and priced when an order is placed. Its use is recorded
once the order is paid, or at placement when the discount makes the order
free, so an abandoned checkout never spends a one-time code.
"""

import uuid
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from freshdrop.core.logging import get_logger
from freshdrop.database.models.order import Order
from freshdrop.database.models.promo import PromoCode, PromoCodeUsage, PromoDiscountType

logger = get_logger(__name__)


class PromoCodeError(Exception):
    """Base exception for promo code errors."""

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.context = context


class InvalidPromoCodeError(PromoCodeError):
    """Raised when a code is unknown, inactive, expired or already used."""

    pass


def normalize_code(code: str) -> str:
    return code.strip().upper()


def promo_discount(promo: PromoCode, subtotal_cents: int) -> int:
    """Discount in cents, never more than the subtotal."""
    if promo.discount_type == PromoDiscountType.PERCENTAGE:
        discount = subtotal_cents * min(promo.discount_value, 100) // 100
    else:
        discount = promo.discount_value
    return max(0, min(discount, subtotal_cents))


class PromoCodeService:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_by_code(self, code: str) -> Optional[PromoCode]:
        result = await self.session.execute(
            select(PromoCode).where(PromoCode.code == normalize_code(code))
        )
        return result.scalar_one_or_none()

    async def create_code(
        self,
        code: str,
        discount_type: PromoDiscountType,
        discount_value: int,
        description: Optional[str] = None,
        one_time_use_per_user: bool = False,
        valid_from: Optional[datetime] = None,
        valid_until: Optional[datetime] = None,
    ) -> PromoCode:
        """
        Add a promo code.

        Raises:
            PromoCodeError: If the code exists or the discount is out of range
        """
        if discount_value <= 0 or (
            discount_type == PromoDiscountType.PERCENTAGE and discount_value > 100
        ):
            raise PromoCodeError(
                "Discount value out of range",
                discount_type=discount_type.value,
                discount_value=discount_value,
            )

        promo = PromoCode(
            code=normalize_code(code),
            discount_type=discount_type,
            discount_value=discount_value,
            description=description,
            is_active=True,
            one_time_use_per_user=one_time_use_per_user,
            valid_from=valid_from,
            valid_until=valid_until,
        )
        self.session.add(promo)
        try:
            await self.session.commit()
        except IntegrityError as e:
            await self.session.rollback()
            raise PromoCodeError("Promo code already exists", code=promo.code) from e

        logger.info("Promo code created", code=promo.code, discount_type=discount_type.value)
        return promo

    async def list_codes(self) -> list[PromoCode]:
        result = await self.session.execute(select(PromoCode).order_by(PromoCode.code))
        return list(result.scalars().all())

    async def resolve(
        self,
        code: str,
        customer_id: uuid.UUID,
        subtotal_cents: int,
        now: Optional[datetime] = None,
    ) -> tuple[PromoCode, int]:
        """
        Check ``code`` for ``customer_id`` and price it against the subtotal.

        Returns:
            The promo code and the discount in cents

        Raises:
            InvalidPromoCodeError: If the code cannot be applied
        """
        now = now or datetime.now(timezone.utc)
        promo = await self.get_by_code(code)
        if promo is None or not promo.is_active:
            raise InvalidPromoCodeError("Promo code is not valid", code=normalize_code(code))

        if (promo.valid_from and _aware(promo.valid_from) > now) or (
            promo.valid_until and _aware(promo.valid_until) < now
        ):
            raise InvalidPromoCodeError("Promo code has expired", code=promo.code)

        if promo.one_time_use_per_user:
            used = await self.session.scalar(
                select(func.count(PromoCodeUsage.id)).where(
                    PromoCodeUsage.promo_code_id == promo.id,
                    PromoCodeUsage.customer_id == customer_id,
                )
            )
            if used:
                raise InvalidPromoCodeError(
                    "Promo code has already been used", code=promo.code
                )

        return promo, promo_discount(promo, subtotal_cents)

    async def record_usage(self, order: Order) -> Optional[PromoCodeUsage]:
        """
        Record that ``order`` redeemed its promo code; repeat calls are no-ops.

        Raises:
            PromoCodeError: If the write fails
        """
        if not order.promo_code:
            return None

        existing = await self.session.execute(
            select(PromoCodeUsage).where(PromoCodeUsage.order_id == order.id)
        )
        usage = existing.scalar_one_or_none()
        if usage is not None:
            return usage

        promo = await self.get_by_code(order.promo_code)
        if promo is None:
            logger.warning(
                "Promo code removed before redemption",
                order_id=str(order.id),
                code=order.promo_code,
            )
            return None

        usage = PromoCodeUsage(
            promo_code_id=promo.id,
            customer_id=order.customer_id,
            order_id=order.id,
            discount_amount_cents=order.discount_amount_cents,
        )
        self.session.add(usage)
        try:
            await self.session.flush()
        except SQLAlchemyError as e:
            raise PromoCodeError(
                "Failed to record promo code usage", order_id=str(order.id), error=str(e)
            ) from e

        logger.info(
            "Promo code redeemed",
            order_id=str(order.id),
            code=promo.code,
            discount_cents=order.discount_amount_cents,
        )
        return usage


def _aware(value: datetime) -> datetime:
    # SQLite hands back naive datetimes
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
