"""Operator earnings recorded when an order completes."""

import enum
import uuid
from typing import Optional

from sqlalchemy import Index, Integer, String, Uuid
from sqlalchemy import Enum as SQLEnum
from sqlalchemy.orm import Mapped, mapped_column

from freshdrop.database.base import BaseModel
from freshdrop.database.models.order import enum_values


class EarningStatus(str, enum.Enum):
    PENDING = "pending"
    PAID = "paid"


class OperatorEarning(BaseModel):
    """
    Payout owed to an operator for one completed order.

    ``order_id`` is unique, so recording earnings twice for an order is a
    no-op at the database level too.
    """

    __tablename__ = "operator_earnings"

    order_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), nullable=False, unique=True
    )
    operator_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), nullable=False)
    gross_amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    payout_amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    tip_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    revenue_share_percent: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[EarningStatus] = mapped_column(
        SQLEnum(EarningStatus, name="earning_status", values_callable=enum_values),
        nullable=False,
        default=EarningStatus.PENDING,
    )
    payout_reference: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    __table_args__ = (
        Index("ix_operator_earnings_operator_created", "operator_id", "created_at"),
    )

    @property
    def total_cents(self) -> int:
        return self.payout_amount_cents + (self.tip_cents or 0)
