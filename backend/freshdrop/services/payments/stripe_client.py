"""
Stripe API client wrapper with error handling and retry logic.

Covers the three calls the order flow needs: a payment intent at placement,
a refund at cancellation and webhook signature verification.
"""

import time
from typing import Any, Optional
from uuid import UUID

import stripe
from stripe import (
    APIConnectionError,
    APIError,
    AuthenticationError,
    CardError,
    InvalidRequestError,
    RateLimitError,
    SignatureVerificationError,
    StripeError,
)

from freshdrop.core.config import get_settings
from freshdrop.core.logging import get_logger

logger = get_logger(__name__)


class StripeClientError(Exception):
    """Base exception for Stripe client errors."""

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        stripe_error: Optional[StripeError] = None,
        **context: Any,
    ):
        super().__init__(message)
        self.code = code
        self.stripe_error = stripe_error
        self.context = context


class StripePaymentError(StripeClientError):
    """Exception for payment processing errors."""

    pass


class StripeAuthenticationError(StripeClientError):
    """Exception for authentication errors."""

    pass


class StripeClient:
    """
    Stripe API client with exponential backoff on transient errors.

    Rate limits, connection errors and 5xx API errors are retried; every
    other Stripe error is raised as ``StripeClientError`` at once.
    """

    RETRYABLE_ERRORS = (APIConnectionError, RateLimitError, APIError)

    def __init__(
        self,
        api_key: Optional[str] = None,
        webhook_secret: Optional[str] = None,
        max_retries: int = 3,
        initial_backoff: float = 1.0,
        max_backoff: float = 32.0,
        backoff_multiplier: float = 2.0,
    ):
        """
        Initialize Stripe client with configuration.

        Args:
            api_key: Stripe secret API key (defaults to settings)
            webhook_secret: Stripe webhook signing secret (defaults to settings)
            max_retries: Maximum number of retry attempts
            initial_backoff: Initial backoff delay in seconds
            max_backoff: Maximum backoff delay in seconds
            backoff_multiplier: Backoff multiplier for exponential backoff
        """
        settings = get_settings()
        self.api_key = api_key or settings.stripe_secret_key
        self.webhook_secret = webhook_secret or settings.stripe_webhook_secret
        self.max_retries = max_retries
        self.initial_backoff = initial_backoff
        self.max_backoff = max_backoff
        self.backoff_multiplier = backoff_multiplier

        stripe.api_key = self.api_key
        stripe.max_network_retries = 0

    def _calculate_backoff(self, attempt: int) -> float:
        return min(
            self.initial_backoff * (self.backoff_multiplier**attempt),
            self.max_backoff,
        )

    def _execute_with_retry(
        self,
        operation: str,
        func: Any,
        *args: Any,
        **kwargs: Any,
    ) -> Any:
        """
        Execute Stripe API call with exponential backoff retry logic.

        Args:
            operation: Operation name for logging
            func: Stripe API function to execute
            *args: Positional arguments for the function
            **kwargs: Keyword arguments for the function

        Returns:
            Result from Stripe API call

        Raises:
            StripeClientError: If operation fails after all retries
        """
        last_error: Optional[StripeError] = None

        for attempt in range(self.max_retries + 1):
            try:
                result = func(*args, **kwargs)
                if attempt > 0:
                    logger.info(
                        f"Stripe operation succeeded after retry: {operation}",
                        attempt=attempt,
                    )
                return result

            except AuthenticationError as e:
                logger.error(
                    f"Stripe authentication error: {operation}",
                    error=str(e),
                    code=e.code,
                )
                raise StripeAuthenticationError(
                    f"Authentication failed: {e.user_message or str(e)}",
                    code=e.code,
                    stripe_error=e,
                ) from e

            except CardError as e:
                logger.warning(
                    f"Stripe card error: {operation}",
                    error=str(e),
                    code=e.code,
                )
                raise StripePaymentError(
                    f"Card error: {e.user_message or str(e)}",
                    code=e.code,
                    stripe_error=e,
                ) from e

            except InvalidRequestError as e:
                logger.error(
                    f"Stripe invalid request: {operation}",
                    error=str(e),
                    code=e.code,
                    param=e.param,
                )
                raise StripeClientError(
                    f"Invalid request: {e.user_message or str(e)}",
                    code=e.code,
                    stripe_error=e,
                    param=e.param,
                ) from e

            except self.RETRYABLE_ERRORS as e:
                last_error = e
                if attempt >= self.max_retries:
                    break

                backoff = self._calculate_backoff(attempt)
                logger.warning(
                    f"Transient Stripe error, retrying: {operation}",
                    error_type=type(e).__name__,
                    attempt=attempt,
                    backoff_seconds=backoff,
                )
                time.sleep(backoff)

            except StripeError as e:
                logger.error(
                    f"Unexpected Stripe error: {operation}",
                    error=str(e),
                    error_type=type(e).__name__,
                )
                raise StripeClientError(
                    f"Stripe error: {e.user_message or str(e)}",
                    code=getattr(e, "code", None),
                    stripe_error=e,
                ) from e

        logger.error(
            f"Stripe operation failed after all retries: {operation}",
            max_retries=self.max_retries,
            last_error=str(last_error),
        )
        raise StripeClientError(
            f"Operation failed after {self.max_retries} retries",
            stripe_error=last_error,
        )

    def create_payment_intent(
        self,
        amount: int,
        currency: str,
        order_id: UUID,
        customer_id: Optional[UUID] = None,
        customer_email: Optional[str] = None,
    ) -> stripe.PaymentIntent:
        """
        Create a payment intent for an order.

        The order id doubles as the idempotency key, so a retried placement
        never creates a second intent.

        Args:
            amount: Payment amount in cents
            currency: Three-letter ISO currency code
            order_id: Order being paid for
            customer_id: Paying customer
            customer_email: Receipt address

        Raises:
            StripeClientError: If payment intent creation fails
        """
        params: dict[str, Any] = {
            "amount": amount,
            "currency": currency.lower(),
            "automatic_payment_methods": {"enabled": True},
            "metadata": {"order_id": str(order_id)},
            "idempotency_key": f"order-{order_id}",
        }
        if customer_id:
            params["metadata"]["customer_id"] = str(customer_id)
        if customer_email:
            params["receipt_email"] = customer_email

        payment_intent = self._execute_with_retry(
            "create_payment_intent",
            stripe.PaymentIntent.create,
            **params,
        )

        logger.info(
            "Payment intent created",
            payment_intent_id=payment_intent.id,
            order_id=str(order_id),
            amount=amount,
        )
        return payment_intent

    def create_refund(
        self,
        payment_intent_id: str,
        reason: str = "requested_by_customer",
    ) -> stripe.Refund:
        """
        Refund a payment intent in full.

        Raises:
            StripeClientError: If the refund fails
        """
        refund = self._execute_with_retry(
            "create_refund",
            stripe.Refund.create,
            payment_intent=payment_intent_id,
            reason=reason,
            idempotency_key=f"refund-{payment_intent_id}",
        )

        logger.info(
            "Refund created",
            payment_intent_id=payment_intent_id,
            refund_id=refund.id,
            status=refund.status,
        )
        return refund

    def construct_webhook_event(
        self,
        payload: bytes,
        signature: str,
    ) -> stripe.Event:
        """
        Construct and verify a webhook event from Stripe.

        Args:
            payload: Raw webhook payload bytes
            signature: Stripe signature header value

        Raises:
            StripeClientError: If webhook verification fails
        """
        try:
            event = stripe.Webhook.construct_event(
                payload,
                signature,
                self.webhook_secret,
            )
        except ValueError as e:
            logger.error("Invalid webhook payload", error=str(e))
            raise StripeClientError(
                "Invalid webhook payload",
                code="INVALID_PAYLOAD",
            ) from e
        except SignatureVerificationError as e:
            logger.error("Webhook signature verification failed", error=str(e))
            raise StripeClientError(
                "Webhook signature verification failed",
                code="INVALID_SIGNATURE",
                stripe_error=e,
            ) from e

        logger.info(
            "Webhook event verified",
            event_id=event.id,
            event_type=event.type,
        )
        return event


def get_stripe_client() -> StripeClient:
    return StripeClient()
