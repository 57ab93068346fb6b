"""
Operator-facing Pydantic schemas: the step table, checklists and earnings.
"""

from typing import Optional

from pydantic import BaseModel, Field

from freshdrop.schemas.orders import OrderResponse
from freshdrop.services.orders.steps import FulfillmentPhase, NavigationTarget


class StepDefinitionResponse(BaseModel):
    number: int
    phase: FulfillmentPhase
    title: str
    description: str
    instructions: list[str]
    requires_photo: bool
    requires_bag_count: bool
    navigation: NavigationTarget


class ChecklistStepResponse(StepDefinitionResponse):
    completed: bool
    completed_at: Optional[str] = None
    photo: Optional[str] = None
    is_current: bool
    navigation_address: Optional[str] = Field(
        None, description="Resolved address for navigation steps"
    )


class ChecklistResponse(BaseModel):
    order: OrderResponse
    steps: list[ChecklistStepResponse]


class EarningResponse(BaseModel):
    order_id: str
    order_number: str
    payout_cents: int
    tip_cents: int
    total_cents: int
    status: str
    created_at: str


class EarningsSummaryResponse(BaseModel):
    operator_id: str
    completed_orders: int
    total_cents: int
    pending_cents: int
    paid_cents: int
    earnings: list[EarningResponse]
