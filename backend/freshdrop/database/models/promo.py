"""Promo codes customers apply at placement, and the record of each use."""

import enum
import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import Boolean, CheckConstraint, DateTime, Index, Integer, String, Uuid
from sqlalchemy import Enum as SQLEnum
from sqlalchemy.orm import Mapped, mapped_column

from freshdrop.database.base import BaseModel
from freshdrop.database.models.order import enum_values


class PromoDiscountType(str, enum.Enum):
    PERCENTAGE = "percentage"
    FIXED_AMOUNT = "fixed_amount"


class PromoCode(BaseModel):
    """
    Discount offered under a code.

    Attributes:
        code: Upper-cased code customers type
        discount_type: Percentage of the subtotal or a fixed amount in cents
        discount_value: Percent (1-100) or cents, depending on the type
        one_time_use_per_user: Each customer may use the code once
        valid_from: Start of the validity window, open when NULL
        valid_until: End of the validity window, open when NULL
    """

    __tablename__ = "promo_codes"

    code: Mapped[str] = mapped_column(String(50), nullable=False, unique=True)
    discount_type: Mapped[PromoDiscountType] = mapped_column(
        SQLEnum(PromoDiscountType, name="promo_discount_type", values_callable=enum_values),
        nullable=False,
    )
    discount_value: Mapped[int] = mapped_column(Integer, nullable=False)
    description: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    one_time_use_per_user: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False
    )
    valid_from: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    valid_until: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    __table_args__ = (
        CheckConstraint("discount_value > 0", name="ck_promo_codes_value_positive"),
    )


class PromoCodeUsage(BaseModel):
    """One redemption of a promo code; unique per order."""

    __tablename__ = "promo_code_usage"

    promo_code_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), nullable=False)
    customer_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), nullable=False)
    order_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), nullable=False, unique=True
    )
    discount_amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)

    __table_args__ = (
        Index("ix_promo_code_usage_code_customer", "promo_code_id", "customer_id"),
    )
