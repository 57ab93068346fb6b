"""
Order model for laundry order fulfillment tracking.

This module defines the Order model: classification, assignment to an
operator, the persisted fulfillment state (``status`` and ``current_step``),
step evidence, commercial amounts and addressing.
"""

import uuid
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    Uuid,
)
from sqlalchemy import Enum as SQLEnum
from sqlalchemy.orm import Mapped, mapped_column

from freshdrop.database.base import BaseModel, JSONType
from freshdrop.services.orders.enums import (
    TOTAL_STEPS,
    OrderStatus,
    PickupType,
    ServiceType,
)
from freshdrop.services.orders.state_machine import FulfillmentState


def enum_values(enum_cls) -> list[str]:
    """Persist enum values rather than member names."""
    return [member.value for member in enum_cls]


class Order(BaseModel):
    """
    Customer laundry order.

    ``status`` and ``current_step`` are never assigned independently; use
    ``apply_state`` so both columns come from one ``FulfillmentState``.

    Attributes:
        customer_id: Customer who placed the order (immutable)
        washer_id: Operator holding the claim, NULL until claimed
        status: Coarse status projected from the fulfillment state
        current_step: Next checklist step to perform (1-13)
        step_photos: Step number to stored evidence reference
        step_completed_at: Step number to ISO completion timestamp
        bag_count: Declared at placement, confirmed at the bag-count step
        total_amount_cents: Amount charged to the customer, tip included
        discount_amount_cents: Promo discount taken off the subtotal
        tip_cents: Tip added before payment, owed to the operator
        operator_payout_cents: Operator share fixed at placement, tip excluded
        paid_at: Set once when the payment intent succeeds
    """

    __tablename__ = "orders"

    customer_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        nullable=False,
        index=True,
        comment="Customer who placed the order",
    )

    washer_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid(as_uuid=True),
        nullable=True,
        index=True,
        comment="Operator holding the claim",
    )

    pickup_type: Mapped[PickupType] = mapped_column(
        SQLEnum(PickupType, name="pickup_type", values_callable=enum_values),
        nullable=False,
    )

    service_type: Mapped[ServiceType] = mapped_column(
        SQLEnum(ServiceType, name="service_type", values_callable=enum_values),
        nullable=False,
    )

    is_express: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
    )

    status: Mapped[OrderStatus] = mapped_column(
        SQLEnum(OrderStatus, name="order_status", values_callable=enum_values),
        nullable=False,
        default=OrderStatus.PLACED,
        index=True,
        comment="Coarse status projected from the fulfillment state",
    )

    current_step: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=1,
        comment="Next checklist step to perform",
    )

    step_photos: Mapped[dict[str, Any]] = mapped_column(
        JSONType,
        nullable=False,
        default=dict,
        comment="Step number to stored evidence reference",
    )

    step_completed_at: Mapped[dict[str, Any]] = mapped_column(
        JSONType,
        nullable=False,
        default=dict,
        comment="Step number to completion timestamp",
    )

    bag_count: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=1,
    )

    # Commercial amounts, fixed at placement
    total_amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    discount_amount_cents: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0
    )
    business_cut_cents: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0
    )
    operator_payout_cents: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0
    )
    tip_cents: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, comment="Pre-payment tip, paid out in full"
    )
    promo_code: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)

    stripe_payment_intent_id: Mapped[Optional[str]] = mapped_column(
        String(255),
        nullable=True,
        unique=True,
    )

    # Addressing
    pickup_address: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    delivery_address: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    zip_code: Mapped[str] = mapped_column(String(10), nullable=False, index=True)
    locker_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid(as_uuid=True), nullable=True
    )
    special_instructions: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    pickup_window_start: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    pickup_window_end: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    delivery_window_start: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    delivery_window_end: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    # Lifecycle timestamps, each written once
    claimed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    completed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    paid_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True, comment="Payment confirmed by Stripe"
    )
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    __table_args__ = (
        CheckConstraint(
            f"current_step >= 1 AND current_step <= {TOTAL_STEPS}",
            name="ck_orders_current_step_range",
        ),
        CheckConstraint("bag_count >= 1", name="ck_orders_bag_count_positive"),
        CheckConstraint(
            "total_amount_cents >= 0", name="ck_orders_total_non_negative"
        ),
        CheckConstraint("tip_cents >= 0", name="ck_orders_tip_non_negative"),
        # Active orders per operator (claim capacity check)
        Index("ix_orders_washer_status", "washer_id", "status"),
        # Claimable orders by area
        Index("ix_orders_status_zip_created", "status", "zip_code", "created_at"),
        Index("ix_orders_customer_created", "customer_id", "created_at"),
    )

    @property
    def order_number(self) -> str:
        """Human-readable order number: last 8 characters of the id."""
        return str(self.id)[-8:].upper()

    @property
    def state(self) -> FulfillmentState:
        return FulfillmentState.from_columns(self.status, self.current_step)

    def apply_state(self, state: FulfillmentState) -> None:
        self.status, self.current_step = state.to_columns()
