"""
Operator API endpoints.

Washers and operators browse claimable orders, claim them, work through the
13-step checklist and review their earnings.
"""

from typing import Optional
from uuid import UUID

from fastapi import APIRouter, File, Form, Query, UploadFile

from freshdrop.api.deps import (
    CurrentFulfiller,
    EarningsServiceDep,
    OrderServiceDep,
)
from freshdrop.api.errors import to_http_exception
from freshdrop.core.logging import get_logger
from freshdrop.schemas.operator import (
    ChecklistResponse,
    EarningsSummaryResponse,
    StepDefinitionResponse,
)
from freshdrop.schemas.orders import OrderResponse
from freshdrop.services.orders.repository import OrderRepositoryError
from freshdrop.services.orders.service import OrderServiceError
from freshdrop.services.orders.steps import FULFILLMENT_STEPS, PhotoUpload, StepEvidence

logger = get_logger(__name__)

router = APIRouter(prefix="/operator", tags=["operator"])


@router.get(
    "/steps",
    response_model=list[StepDefinitionResponse],
    summary="Fulfillment checklist",
    description="The fixed 13-step checklist every order is worked through",
)
async def list_steps(operator: CurrentFulfiller) -> list[StepDefinitionResponse]:
    return [StepDefinitionResponse(**step.to_dict()) for step in FULFILLMENT_STEPS]


@router.get(
    "/orders/available",
    response_model=list[OrderResponse],
    summary="List claimable orders",
    description="Unclaimed orders, express first, optionally within one ZIP code",
)
async def list_available_orders(
    operator: CurrentFulfiller,
    order_service: OrderServiceDep,
    zip_code: Optional[str] = Query(None, min_length=5, max_length=10),
) -> list[OrderResponse]:
    try:
        orders = await order_service.list_available_orders(zip_code)
    except (OrderServiceError, OrderRepositoryError) as e:
        raise to_http_exception(
            e, "Available order listing", user_id=str(operator.user_id)
        ) from e

    return [OrderResponse(**order) for order in orders]


@router.get(
    "/orders",
    response_model=list[OrderResponse],
    summary="List own active orders",
)
async def list_my_orders(
    operator: CurrentFulfiller,
    order_service: OrderServiceDep,
) -> list[OrderResponse]:
    try:
        orders = await order_service.list_operator_orders(operator.user_id)
    except (OrderServiceError, OrderRepositoryError) as e:
        raise to_http_exception(e, "Operator order listing", user_id=str(operator.user_id)) from e

    return [OrderResponse(**order) for order in orders]


@router.post(
    "/orders/{order_id}/claim",
    response_model=OrderResponse,
    summary="Claim order",
    description="Take exclusive ownership of an unclaimed order",
)
async def claim_order(
    order_id: UUID,
    operator: CurrentFulfiller,
    order_service: OrderServiceDep,
) -> OrderResponse:
    """
    Claim an order.

    Raises:
        HTTPException: 404 if not found, 409 if the order is unavailable or
            the operator is at the active order limit
    """
    logger.info("Claiming order", order_id=str(order_id), user_id=str(operator.user_id))

    try:
        order = await order_service.claim_order(order_id, operator.user_id)
    except (OrderServiceError, OrderRepositoryError) as e:
        raise to_http_exception(
            e, "Order claim", order_id=str(order_id), user_id=str(operator.user_id)
        ) from e

    return OrderResponse(**order)


@router.get(
    "/orders/{order_id}/checklist",
    response_model=ChecklistResponse,
    summary="Order checklist",
    description="Steps with completion state and resolved navigation addresses",
)
async def get_checklist(
    order_id: UUID,
    operator: CurrentFulfiller,
    order_service: OrderServiceDep,
) -> ChecklistResponse:
    try:
        checklist = await order_service.get_checklist(order_id, operator)
    except (OrderServiceError, OrderRepositoryError) as e:
        raise to_http_exception(
            e, "Checklist retrieval", order_id=str(order_id), user_id=str(operator.user_id)
        ) from e

    return ChecklistResponse(**checklist)


@router.post(
    "/orders/{order_id}/steps/{step_number}/complete",
    response_model=OrderResponse,
    summary="Complete step",
    description="Complete the current checklist step with its evidence",
)
async def complete_step(
    order_id: UUID,
    step_number: int,
    operator: CurrentFulfiller,
    order_service: OrderServiceDep,
    photo: Optional[UploadFile] = File(None, description="Step evidence photo"),
    photo_reference: Optional[str] = Form(
        None, max_length=1000, description="URL of an already uploaded photo"
    ),
    bag_count: Optional[int] = Form(None, ge=1, le=20),
    notes: Optional[str] = Form(None, max_length=1000),
) -> OrderResponse:
    """
    Complete a checklist step.

    Steps 4 and 13 need a photo, either uploaded here or referenced by URL.
    Step 3 needs the confirmed bag count. Resubmitting a completed step
    returns the order unchanged with ``replayed`` set.

    Raises:
        HTTPException: 400 if evidence is missing or invalid, 403 if the
            order is not assigned to the caller, 409 if the step is out of
            order, 502 if the photo cannot be stored
    """
    upload = None
    if photo is not None:
        upload = PhotoUpload(
            content=await photo.read(),
            content_type=photo.content_type or "application/octet-stream",
            filename=photo.filename,
        )

    evidence = StepEvidence(
        photo=upload,
        photo_reference=photo_reference,
        bag_count=bag_count,
        notes=notes,
    )

    try:
        order = await order_service.complete_step(
            order_id, operator.user_id, step_number, evidence
        )
    except (OrderServiceError, OrderRepositoryError) as e:
        raise to_http_exception(
            e,
            "Step completion",
            order_id=str(order_id),
            step_number=step_number,
            user_id=str(operator.user_id),
        ) from e

    return OrderResponse(**order)


@router.get(
    "/earnings",
    response_model=EarningsSummaryResponse,
    summary="Own earnings",
)
async def get_earnings(
    operator: CurrentFulfiller,
    earnings_service: EarningsServiceDep,
    limit: int = Query(50, ge=1, le=200),
) -> EarningsSummaryResponse:
    summary = await earnings_service.operator_summary(operator.user_id, limit=limit)
    return EarningsSummaryResponse(**summary)
