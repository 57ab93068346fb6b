"""
Stripe webhook endpoint.

Payment confirmation arrives asynchronously from Stripe. A verified
``payment_intent.succeeded`` event opens the matching order for claims.
"""

from typing import Annotated, Optional

from fastapi import APIRouter, Header, HTTPException, Request, status
from fastapi.responses import JSONResponse

from freshdrop.api.deps import OrderServiceDep, StripeClientDep
from freshdrop.api.errors import to_http_exception
from freshdrop.core.logging import get_logger
from freshdrop.services.orders.repository import OrderRepositoryError
from freshdrop.services.orders.service import OrderServiceError
from freshdrop.services.payments.stripe_client import StripeClientError

logger = get_logger(__name__)

router = APIRouter(prefix="/payments", tags=["payments"])

PAYMENT_SUCCEEDED = "payment_intent.succeeded"
PAYMENT_FAILED = "payment_intent.payment_failed"


@router.post(
    "/webhook",
    status_code=status.HTTP_200_OK,
    summary="Handle Stripe webhook",
    description="Verify and process Stripe payment events",
)
async def handle_webhook(
    request: Request,
    stripe_client: StripeClientDep,
    order_service: OrderServiceDep,
    stripe_signature: Annotated[Optional[str], Header(alias="stripe-signature")] = None,
) -> JSONResponse:
    """
    Handle a Stripe webhook event.

    Events for unknown payment intents and event types this service does
    not act on are acknowledged so Stripe stops redelivering them.

    Raises:
        HTTPException: 400 for a missing or invalid signature
    """
    if not stripe_signature:
        logger.warning("Webhook received without signature")
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Missing Stripe signature",
        )

    payload = await request.body()
    try:
        event = stripe_client.construct_webhook_event(payload, stripe_signature)
    except StripeClientError as e:
        logger.warning("Webhook rejected", error=str(e), error_code=e.code)
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"message": "Invalid webhook signature", "code": e.code},
        ) from e

    event_type = event["type"]
    handled = False

    if event_type == PAYMENT_SUCCEEDED:
        payment_intent_id = event["data"]["object"]["id"]
        try:
            order = await order_service.confirm_payment(payment_intent_id)
        except (OrderServiceError, OrderRepositoryError) as e:
            raise to_http_exception(
                e, "Payment confirmation", payment_intent_id=payment_intent_id
            ) from e
        handled = order is not None
    elif event_type == PAYMENT_FAILED:
        intent = event["data"]["object"]
        last_error = intent.get("last_payment_error") or {}
        logger.warning(
            "Payment failed",
            payment_intent_id=intent["id"],
            order_id=(intent.get("metadata") or {}).get("order_id"),
            error=last_error.get("message"),
        )
    else:
        logger.debug("Webhook event ignored", event_type=event_type)

    logger.info(
        "Webhook processed",
        event_id=event["id"],
        event_type=event_type,
        handled=handled,
    )
    return JSONResponse(
        status_code=status.HTTP_200_OK,
        content={"received": True, "event_id": event["id"], "handled": handled},
    )
