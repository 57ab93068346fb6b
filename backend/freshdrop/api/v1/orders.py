"""
Customer order API endpoints.

This module implements the FastAPI router for the customer side of the
order lifecycle: placement, history, detail, cancellation and the live
change feed an order's customer and assigned operator can subscribe to.
"""

import asyncio
from typing import Any, Optional
from uuid import UUID

from fastapi import (
    APIRouter,
    Query,
    WebSocket,
    WebSocketDisconnect,
    status,
)

from freshdrop.api.deps import (
    CurrentCustomer,
    CurrentPrincipal,
    EventChannelDep,
    OrderServiceDep,
)
from freshdrop.api.errors import to_http_exception
from freshdrop.core.logging import get_logger
from freshdrop.core.security import TokenError, authenticate_token
from freshdrop.schemas.orders import (
    OrderCancelRequest,
    OrderCreateRequest,
    OrderListResponse,
    OrderPlacedResponse,
    OrderResponse,
)
from freshdrop.services.events.channel import Subscription
from freshdrop.services.orders.enums import TERMINAL_STATUSES
from freshdrop.services.orders.repository import OrderNotFoundError, OrderRepositoryError
from freshdrop.services.orders.service import OrderPermissionError, OrderServiceError

logger = get_logger(__name__)

router = APIRouter(prefix="/orders", tags=["orders"])

EVENT_HEARTBEAT_SECONDS = 25.0
_FINAL_STATUSES = {s.value for s in TERMINAL_STATUSES}


@router.post(
    "",
    response_model=OrderPlacedResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Place order",
    description="Create an order and the payment intent the client confirms",
)
async def place_order(
    request: OrderCreateRequest,
    customer: CurrentCustomer,
    order_service: OrderServiceDep,
) -> OrderPlacedResponse:
    """
    Place a laundry order.

    Args:
        request: Order placement request
        customer: Authenticated customer placing the order
        order_service: Order service

    Returns:
        OrderPlacedResponse: Created order with the Stripe client secret

    Raises:
        HTTPException: 400 if validation fails, 502 if payment cannot start
    """
    logger.info(
        "Placing order",
        user_id=str(customer.user_id),
        bag_count=request.bag_count,
        pickup_type=request.pickup_type.value,
    )

    try:
        result = await order_service.place_order(
            customer_id=customer.user_id,
            pickup_type=request.pickup_type,
            service_type=request.service_type,
            bag_count=request.bag_count,
            zip_code=request.zip_code,
            pickup_address=request.pickup_address,
            delivery_address=request.delivery_address,
            locker_id=request.locker_id,
            is_express=request.is_express,
            special_instructions=request.special_instructions,
            pickup_window_start=request.pickup_window_start,
            pickup_window_end=request.pickup_window_end,
            delivery_window_start=request.delivery_window_start,
            delivery_window_end=request.delivery_window_end,
            customer_email=customer.email,
            promo_code=request.promo_code,
            tip_cents=request.tip_cents,
        )
    except (OrderServiceError, OrderRepositoryError) as e:
        raise to_http_exception(e, "Order placement", user_id=str(customer.user_id)) from e

    return OrderPlacedResponse(**result)


@router.get(
    "",
    response_model=OrderListResponse,
    summary="List own orders",
    description="Paginated order history for the authenticated customer",
)
async def list_orders(
    customer: CurrentCustomer,
    order_service: OrderServiceDep,
    skip: int = Query(0, ge=0, description="Number of records to skip"),
    limit: int = Query(20, ge=1, le=100, description="Maximum number of records to return"),
) -> OrderListResponse:
    try:
        result = await order_service.list_customer_orders(
            customer.user_id, skip=skip, limit=limit
        )
    except (OrderServiceError, OrderRepositoryError) as e:
        raise to_http_exception(e, "Order listing", user_id=str(customer.user_id)) from e

    return OrderListResponse(**result)


@router.get(
    "/{order_id}",
    response_model=OrderResponse,
    summary="Get order",
    description="Order detail for its customer, its assigned operator or an owner",
)
async def get_order(
    order_id: UUID,
    principal: CurrentPrincipal,
    order_service: OrderServiceDep,
) -> OrderResponse:
    """
    Get order details.

    Raises:
        HTTPException: 404 if not found, 403 if the caller may not see it
    """
    try:
        order = await order_service.get_order(order_id, principal)
    except (OrderServiceError, OrderRepositoryError) as e:
        raise to_http_exception(
            e, "Order retrieval", order_id=str(order_id), user_id=str(principal.user_id)
        ) from e

    return OrderResponse(**order)


@router.post(
    "/{order_id}/cancel",
    response_model=OrderResponse,
    summary="Cancel order",
    description="Cancel an order before the operator starts on it",
)
async def cancel_order(
    order_id: UUID,
    customer: CurrentCustomer,
    order_service: OrderServiceDep,
    request: Optional[OrderCancelRequest] = None,
) -> OrderResponse:
    """
    Cancel an order.

    Raises:
        HTTPException: 404 if not found, 403 if not the customer's order,
            409 if fulfillment has started
    """
    reason = request.reason if request else None
    logger.info(
        "Cancelling order",
        order_id=str(order_id),
        user_id=str(customer.user_id),
        reason=reason,
    )

    try:
        order = await order_service.cancel_order(order_id, customer.user_id, reason=reason)
    except (OrderServiceError, OrderRepositoryError) as e:
        raise to_http_exception(
            e, "Order cancellation", order_id=str(order_id), user_id=str(customer.user_id)
        ) from e

    return OrderResponse(**order)


@router.websocket("/{order_id}/events")
async def order_events(
    websocket: WebSocket,
    order_id: UUID,
    order_service: OrderServiceDep,
    channel: EventChannelDep,
    token: Optional[str] = Query(None),
) -> None:
    """
    Stream change events for one order.

    Browsers cannot set headers on a WebSocket handshake, so the bearer
    token travels as the ``token`` query parameter. The first message is a
    snapshot of the order; every committed change follows as an event. The
    socket closes after the order completes or is cancelled.
    """
    try:
        principal = authenticate_token(token or "")
    except TokenError as e:
        logger.warning("Event stream rejected", order_id=str(order_id), code=e.code)
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    # Subscribe before the snapshot read so no change falls between them
    async with channel.subscribe(order_id) as subscription:
        try:
            order = await order_service.get_order(order_id, principal)
        except (OrderNotFoundError, OrderPermissionError) as e:
            logger.warning(
                "Event stream rejected",
                order_id=str(order_id),
                user_id=str(principal.user_id),
                error=str(e),
            )
            await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
            return

        # The socket may stay open for hours; give the connection back now
        await order_service.session.close()

        await websocket.accept()
        logger.info(
            "Event stream opened",
            order_id=str(order_id),
            user_id=str(principal.user_id),
        )

        await websocket.send_json({"type": "snapshot", "order": order})
        if order["status"] in _FINAL_STATUSES:
            await websocket.close()
            return

        forward = asyncio.create_task(_forward_events(websocket, subscription))
        disconnect = asyncio.create_task(_wait_for_disconnect(websocket))
        done, pending = await asyncio.wait(
            {forward, disconnect}, return_when=asyncio.FIRST_COMPLETED
        )
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)

        if forward in done:
            error = forward.exception()
            if error is None:
                await websocket.close()
            elif not isinstance(error, WebSocketDisconnect):
                logger.warning(
                    "Event stream failed",
                    order_id=str(order_id),
                    error=str(error),
                    error_type=type(error).__name__,
                )

    logger.info(
        "Event stream closed",
        order_id=str(order_id),
        user_id=str(principal.user_id),
        dropped_events=subscription.dropped,
    )


async def _forward_events(websocket: WebSocket, subscription: Subscription) -> None:
    """Send events until the order reaches a final status."""
    while True:
        try:
            event = await subscription.get(timeout=EVENT_HEARTBEAT_SECONDS)
        except asyncio.TimeoutError:
            await websocket.send_json({"type": "ping"})
            continue

        message: dict[str, Any] = {"type": "event", **event.to_dict()}
        await websocket.send_json(message)
        if event.status in _FINAL_STATUSES:
            return


async def _wait_for_disconnect(websocket: WebSocket) -> None:
    try:
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        return
