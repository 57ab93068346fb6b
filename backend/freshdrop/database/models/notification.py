"""
Notification outbox and delivery log models.

Customer notifications are written to ``notification_outbox`` in the same
transaction as the order change that caused them. The worker drains the
outbox, delivers each event over email and SMS, and records one
``notification_logs`` row per channel attempt.
"""

import enum
import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import DateTime, Index, Integer, String, Text, Uuid
from sqlalchemy import Enum as SQLEnum
from sqlalchemy.orm import Mapped, mapped_column

from freshdrop.database.base import BaseModel
from freshdrop.database.models.order import enum_values


class NotificationType(str, enum.Enum):
    """Customer-facing status an event announces."""

    UNCLAIMED = "unclaimed"
    CLAIMED = "claimed"
    PICKED_UP = "picked_up"
    WASHING = "washing"
    DRYING = "drying"
    FOLDED = "folded"
    DELIVERED = "delivered"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class NotificationChannel(str, enum.Enum):
    EMAIL = "email"
    SMS = "sms"


class OutboxState(str, enum.Enum):
    """
    Outbox event lifecycle.

    PENDING: waiting for (another) delivery attempt
    SENT: delivered on at least one channel
    FAILED: attempt budget exhausted
    """

    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"


class DeliveryStatus(str, enum.Enum):
    SENT = "sent"
    FAILED = "failed"


class NotificationOutbox(BaseModel):
    """
    Durable notification event awaiting delivery.

    Attributes:
        order_id: Order the event is about
        customer_id: Recipient customer
        notification_type: Status being announced
        order_number: Human-readable order number at emission time
        current_step: Step pointer at emission time
        attempts: Delivery attempts made so far
        available_at: Earliest time the next attempt may run
    """

    __tablename__ = "notification_outbox"

    order_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), nullable=False)
    customer_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), nullable=False)
    notification_type: Mapped[NotificationType] = mapped_column(
        SQLEnum(NotificationType, name="notification_type", values_callable=enum_values),
        nullable=False,
    )
    order_number: Mapped[str] = mapped_column(String(16), nullable=False)
    current_step: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    state: Mapped[OutboxState] = mapped_column(
        SQLEnum(OutboxState, name="outbox_state", values_callable=enum_values),
        nullable=False,
        default=OutboxState.PENDING,
    )
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    available_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )
    sent_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    __table_args__ = (
        Index("ix_notification_outbox_state_available", "state", "available_at"),
        Index("ix_notification_outbox_order", "order_id"),
    )

    def to_payload(self) -> dict:
        """Payload handed to the dispatcher."""
        return {
            "order_id": str(self.order_id),
            "customer_id": str(self.customer_id),
            "status": self.notification_type.value,
            "order_number": self.order_number,
            "current_step": self.current_step,
        }


class NotificationLog(BaseModel):
    """One delivery attempt over one channel."""

    __tablename__ = "notification_logs"

    outbox_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid(as_uuid=True), nullable=True, index=True
    )
    order_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid(as_uuid=True), nullable=True, index=True
    )
    customer_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), nullable=False)
    notification_type: Mapped[NotificationType] = mapped_column(
        SQLEnum(NotificationType, name="notification_type", values_callable=enum_values),
        nullable=False,
    )
    channel: Mapped[NotificationChannel] = mapped_column(
        SQLEnum(NotificationChannel, name="notification_channel", values_callable=enum_values),
        nullable=False,
    )
    status: Mapped[DeliveryStatus] = mapped_column(
        SQLEnum(DeliveryStatus, name="delivery_status", values_callable=enum_values),
        nullable=False,
    )
    recipient: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    message_content: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    provider_message_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    sent_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
