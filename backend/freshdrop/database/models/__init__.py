"""
Database models package initialization.

Models are imported here so they register with the Base metadata for
Alembic autogeneration and ``Base.metadata.create_all``.
"""

from freshdrop.database.base import Base, BaseModel, TimestampMixin, UUIDMixin
from freshdrop.database.models.earnings import EarningStatus, OperatorEarning
from freshdrop.database.models.notification import (
    DeliveryStatus,
    NotificationChannel,
    NotificationLog,
    NotificationOutbox,
    NotificationType,
    OutboxState,
)
from freshdrop.database.models.order import Order
from freshdrop.database.models.profile import CustomerProfile
from freshdrop.database.models.promo import PromoCode, PromoCodeUsage, PromoDiscountType

__all__ = [
    "Base",
    "BaseModel",
    "TimestampMixin",
    "UUIDMixin",
    "CustomerProfile",
    "DeliveryStatus",
    "EarningStatus",
    "NotificationChannel",
    "NotificationLog",
    "NotificationOutbox",
    "NotificationType",
    "OperatorEarning",
    "Order",
    "OutboxState",
    "PromoCode",
    "PromoCodeUsage",
    "PromoDiscountType",
]
