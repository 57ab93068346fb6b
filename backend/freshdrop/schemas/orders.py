"""
Order Pydantic schemas for API request/response validation.

Covers customer order placement, the order representation shared by every
role, cancellation, the owner dashboard views and promo code management.
"""

from datetime import datetime
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from freshdrop.database.models.promo import PromoDiscountType
from freshdrop.services.orders.enums import OrderStatus, PickupType, ServiceType


class OrderCreateRequest(BaseModel):
    """Customer order placement."""

    model_config = ConfigDict(str_strip_whitespace=True)

    pickup_type: PickupType = Field(..., description="Locker drop or door pickup")
    service_type: ServiceType = Field(ServiceType.WASH_FOLD, description="Wash program")
    bag_count: int = Field(..., ge=1, le=20, description="Number of laundry bags")
    zip_code: str = Field(..., min_length=5, max_length=10, description="Service area ZIP")
    pickup_address: Optional[str] = Field(None, max_length=500)
    delivery_address: Optional[str] = Field(
        None, max_length=500, description="Defaults to the pickup address"
    )
    locker_id: Optional[UUID] = None
    is_express: bool = False
    special_instructions: Optional[str] = Field(None, max_length=1000)
    pickup_window_start: Optional[datetime] = None
    pickup_window_end: Optional[datetime] = None
    delivery_window_start: Optional[datetime] = None
    delivery_window_end: Optional[datetime] = None
    promo_code: Optional[str] = Field(None, max_length=50, description="Promo code to apply")
    tip_cents: int = Field(0, ge=0, description="Tip for the operator, added before payment")

    @field_validator("zip_code")
    @classmethod
    def validate_zip_code(cls, v: str) -> str:
        digits = v.replace("-", "")
        if not digits.isdigit():
            raise ValueError("ZIP code must be numeric")
        return v

    @model_validator(mode="after")
    def validate_pickup(self) -> "OrderCreateRequest":
        if self.pickup_type == PickupType.LOCKER and self.locker_id is None:
            raise ValueError("locker_id is required for locker orders")
        if self.pickup_type == PickupType.PICKUP_DELIVERY and not self.pickup_address:
            raise ValueError("pickup_address is required for pickup orders")
        for start, end in (
            (self.pickup_window_start, self.pickup_window_end),
            (self.delivery_window_start, self.delivery_window_end),
        ):
            if start and end and end <= start:
                raise ValueError("Time window must end after it starts")
        return self


class OrderResponse(BaseModel):
    """Order as returned to customers, operators and owners."""

    id: UUID
    order_number: str
    customer_id: UUID
    washer_id: Optional[UUID] = None
    status: OrderStatus
    current_step: int
    pickup_type: PickupType
    service_type: ServiceType
    is_express: bool
    bag_count: int
    step_photos: dict[str, str] = Field(default_factory=dict)
    step_completed_at: dict[str, str] = Field(default_factory=dict)
    total_amount_cents: int
    discount_amount_cents: int
    business_cut_cents: int
    operator_payout_cents: int
    tip_cents: int = 0
    promo_code: Optional[str] = None
    pickup_address: Optional[str] = None
    delivery_address: Optional[str] = None
    zip_code: str
    locker_id: Optional[UUID] = None
    special_instructions: Optional[str] = None
    pickup_window_start: Optional[datetime] = None
    pickup_window_end: Optional[datetime] = None
    delivery_window_start: Optional[datetime] = None
    delivery_window_end: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    paid_at: Optional[datetime] = None
    claimed_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    replayed: Optional[bool] = Field(
        None, description="Set on step completions; true when the step was already done"
    )


class OrderPlacedResponse(BaseModel):
    order: OrderResponse
    client_secret: Optional[str] = Field(
        None, description="Stripe client secret for confirming payment"
    )
    free_order: bool = False


class OrderListResponse(BaseModel):
    orders: list[OrderResponse]
    total: int
    skip: int
    limit: int


class OrderCancelRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    reason: Optional[str] = Field(None, max_length=500)


class StalledOrderResponse(OrderResponse):
    releasable: bool


class OrderStatisticsResponse(BaseModel):
    total_orders: int
    active_orders: int
    by_status: dict[str, int]
    completed_revenue_cents: int
    business_revenue_cents: int


class PromoCodeCreateRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    code: str = Field(..., min_length=2, max_length=50)
    discount_type: PromoDiscountType
    discount_value: int = Field(..., gt=0, description="Percent, or cents for fixed amounts")
    description: Optional[str] = Field(None, max_length=255)
    one_time_use_per_user: bool = False
    valid_from: Optional[datetime] = None
    valid_until: Optional[datetime] = None

    @model_validator(mode="after")
    def validate_discount(self) -> "PromoCodeCreateRequest":
        if self.discount_type == PromoDiscountType.PERCENTAGE and self.discount_value > 100:
            raise ValueError("Percentage discounts cannot exceed 100")
        if self.valid_from and self.valid_until and self.valid_until <= self.valid_from:
            raise ValueError("valid_until must be after valid_from")
        return self


class PromoCodeResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    code: str
    discount_type: PromoDiscountType
    discount_value: int
    description: Optional[str] = None
    is_active: bool
    one_time_use_per_user: bool
    valid_from: Optional[datetime] = None
    valid_until: Optional[datetime] = None
