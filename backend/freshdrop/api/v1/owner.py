"""
Owner API endpoints: dashboard statistics, stalled claim handling and promo
codes.
"""

from typing import Optional
from uuid import UUID

from fastapi import APIRouter, HTTPException, Query, status

from freshdrop.api.deps import CurrentOwner, OrderServiceDep, PromoCodeServiceDep
from freshdrop.api.errors import to_http_exception
from freshdrop.core.logging import get_logger
from freshdrop.schemas.orders import (
    OrderResponse,
    OrderStatisticsResponse,
    PromoCodeCreateRequest,
    PromoCodeResponse,
    StalledOrderResponse,
)
from freshdrop.services.orders.repository import OrderRepositoryError
from freshdrop.services.orders.service import OrderServiceError
from freshdrop.services.promotions.service import PromoCodeError

logger = get_logger(__name__)

router = APIRouter(prefix="/owner", tags=["owner"])


@router.get(
    "/orders/statistics",
    response_model=OrderStatisticsResponse,
    summary="Order statistics",
    description="Order counts by status and completed revenue",
)
async def get_statistics(
    owner: CurrentOwner,
    order_service: OrderServiceDep,
) -> OrderStatisticsResponse:
    try:
        stats = await order_service.get_statistics()
    except (OrderServiceError, OrderRepositoryError) as e:
        raise to_http_exception(e, "Statistics retrieval", user_id=str(owner.user_id)) from e

    return OrderStatisticsResponse(**stats)


@router.get(
    "/orders/stalled",
    response_model=list[StalledOrderResponse],
    summary="List stalled claims",
    description="Claimed orders with no progress for the given number of hours",
)
async def list_stalled_claims(
    owner: CurrentOwner,
    order_service: OrderServiceDep,
    hours: Optional[int] = Query(None, ge=1, le=24 * 30),
) -> list[StalledOrderResponse]:
    try:
        orders = await order_service.list_stalled_claims(hours)
    except (OrderServiceError, OrderRepositoryError) as e:
        raise to_http_exception(e, "Stalled claim listing", user_id=str(owner.user_id)) from e

    return [StalledOrderResponse(**order) for order in orders]


@router.post(
    "/orders/{order_id}/release",
    response_model=OrderResponse,
    summary="Release claim",
    description="Return a claimed order with no completed step to the pool",
)
async def release_claim(
    order_id: UUID,
    owner: CurrentOwner,
    order_service: OrderServiceDep,
) -> OrderResponse:
    """
    Release a stalled claim.

    Raises:
        HTTPException: 404 if not found, 409 if work has started
    """
    logger.info("Releasing claim", order_id=str(order_id), user_id=str(owner.user_id))

    try:
        order = await order_service.release_claim(order_id)
    except (OrderServiceError, OrderRepositoryError) as e:
        raise to_http_exception(
            e, "Claim release", order_id=str(order_id), user_id=str(owner.user_id)
        ) from e

    return OrderResponse(**order)


@router.post(
    "/promo-codes",
    response_model=PromoCodeResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create promo code",
)
async def create_promo_code(
    request: PromoCodeCreateRequest,
    owner: CurrentOwner,
    promo_service: PromoCodeServiceDep,
) -> PromoCodeResponse:
    """
    Create a promo code customers can apply at placement.

    Raises:
        HTTPException: 409 if the code already exists
    """
    try:
        promo = await promo_service.create_code(
            code=request.code,
            discount_type=request.discount_type,
            discount_value=request.discount_value,
            description=request.description,
            one_time_use_per_user=request.one_time_use_per_user,
            valid_from=request.valid_from,
            valid_until=request.valid_until,
        )
    except PromoCodeError as e:
        logger.warning(
            "Promo code creation failed",
            code=request.code,
            user_id=str(owner.user_id),
            error=str(e),
        )
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e)) from e

    return PromoCodeResponse.model_validate(promo)


@router.get(
    "/promo-codes",
    response_model=list[PromoCodeResponse],
    summary="List promo codes",
)
async def list_promo_codes(
    owner: CurrentOwner,
    promo_service: PromoCodeServiceDep,
) -> list[PromoCodeResponse]:
    codes = await promo_service.list_codes()
    return [PromoCodeResponse.model_validate(promo) for promo in codes]
