"""
Order service orchestrating the fulfillment flow.

This module implements the OrderService class: order placement and payment
confirmation, claim arbitration, the step workflow, cancellation and owner
tools. Each mutation follows the same shape: validate against the
fulfillment state machine, write conditionally through the repository,
enqueue any customer notification in the same transaction, commit, then
publish a change event and nudge the notification worker.
"""

import asyncio
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from freshdrop.core.config import Settings, get_settings
from freshdrop.core.logging import get_logger, log_performance
from freshdrop.core.security import Principal, UserRole
from freshdrop.database.models.notification import NotificationType
from freshdrop.database.models.order import Order
from freshdrop.services.earnings.service import (
    EarningsService,
    EarningsServiceError,
    revenue_split,
)
from freshdrop.services.events.channel import (
    EventKind,
    OrderChangeEvent,
    OrderEventChannel,
    get_event_channel,
)
from freshdrop.services.notifications.outbox import OutboxRepository
from freshdrop.services.notifications.tasks import request_outbox_drain
from freshdrop.services.notifications.triggers import notification_for_transition
from freshdrop.services.orders.enums import PickupType, ServiceType
from freshdrop.services.orders.repository import OrderRepository
from freshdrop.services.orders.state_machine import (
    FulfillmentState,
    InconsistentStateError,
    OrderStateMachine,
    StateTag,
    StateTransitionError,
)
from freshdrop.services.orders.steps import (
    FULFILLMENT_STEPS,
    StepEvidence,
    get_step,
    missing_evidence,
    resolve_navigation_address,
)
from freshdrop.services.payments.stripe_client import StripeClient, StripeClientError
from freshdrop.services.promotions.service import PromoCodeError, PromoCodeService
from freshdrop.services.storage.evidence import (
    EvidenceStorage,
    EvidenceUploadError,
    InvalidEvidenceError,
)

logger = get_logger(__name__)


class OrderServiceError(Exception):
    """Base exception for order service errors."""

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.context = context


class OrderValidationError(OrderServiceError):
    """Raised when a request is malformed for the order's rules."""

    pass


class EvidenceRequiredError(OrderValidationError):
    """Raised when a gated step is submitted without its evidence."""

    def __init__(self, message: str, missing: list[str], **context: Any):
        super().__init__(message, missing=missing, **context)
        self.missing = missing


class OrderPermissionError(OrderServiceError):
    """Raised when the caller may not act on the order."""

    pass


class OrderConflictError(OrderServiceError):
    """Raised when the order's state does not allow the operation."""

    pass


class OrderUnavailableError(OrderConflictError):
    """Raised when the order can no longer be claimed."""

    pass


class OperatorCapacityError(OrderConflictError):
    """Raised when the operator already holds the maximum active orders."""

    pass


class StepOutOfOrderError(OrderConflictError):
    """Raised when a step is submitted ahead of the order's pointer."""

    pass


class OrderProcessingError(OrderServiceError):
    """Raised when an upstream dependency fails the operation."""

    pass


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _read_state(order: Order) -> FulfillmentState:
    try:
        return order.state
    except InconsistentStateError as e:
        logger.error(
            "Order has inconsistent persisted state",
            order_id=str(order.id),
            status=str(e.status),
            current_step=e.current_step,
        )
        raise OrderProcessingError(
            "Order state is inconsistent", order_id=str(order.id)
        ) from e


class OrderService:
    """
    Order service orchestrating business logic and integrations.

    Attributes:
        repository: Order repository for data access
        state_machine: Legal fulfillment moves
        outbox: Notification outbox sharing the service's transaction
        earnings: Operator earnings recorder
        promotions: Promo code resolution and redemption
    """

    def __init__(
        self,
        session: AsyncSession,
        stripe_client: Optional[StripeClient] = None,
        evidence_storage: Optional[EvidenceStorage] = None,
        event_channel: Optional[OrderEventChannel] = None,
        request_drain: Callable[[], Awaitable[None]] = request_outbox_drain,
        settings: Optional[Settings] = None,
    ):
        """
        Initialize order service.

        Args:
            session: Async database session
            stripe_client: Payment client, created on first use
            evidence_storage: Photo storage, created on first use
            event_channel: Live change channel (process-wide by default)
            request_drain: Callable that nudges the notification worker
            settings: Application settings
        """
        self.session = session
        self.settings = settings or get_settings()
        self.repository = OrderRepository(session)
        self.state_machine = OrderStateMachine()
        self.outbox = OutboxRepository(session)
        self.earnings = EarningsService(
            session, self.settings.operator_revenue_share_percent
        )
        self.promotions = PromoCodeService(session)
        self.event_channel = event_channel or get_event_channel()
        self.request_drain = request_drain
        self._stripe_client = stripe_client
        self._evidence_storage = evidence_storage

    @property
    def stripe_client(self) -> StripeClient:
        if self._stripe_client is None:
            self._stripe_client = StripeClient()
        return self._stripe_client

    @property
    def evidence_storage(self) -> EvidenceStorage:
        if self._evidence_storage is None:
            self._evidence_storage = EvidenceStorage()
        return self._evidence_storage

    # Placement and payment

    def calculate_subtotal(self, bag_count: int, is_express: bool) -> int:
        subtotal = bag_count * self.settings.price_per_bag_cents
        if is_express:
            subtotal += self.settings.express_fee_cents
        return subtotal

    def calculate_pricing(
        self,
        bag_count: int,
        is_express: bool,
        discount_cents: int = 0,
        tip_cents: int = 0,
    ) -> dict[str, int]:
        """
        Amounts in cents for an order.

        The revenue split applies to the discounted subtotal; the tip is
        charged on top and goes to the operator in full.
        """
        subtotal = self.calculate_subtotal(bag_count, is_express)
        discount = min(max(discount_cents, 0), subtotal)
        payout, business_cut = revenue_split(
            subtotal - discount, self.settings.operator_revenue_share_percent
        )
        return {
            "total_amount_cents": subtotal - discount + tip_cents,
            "discount_amount_cents": discount,
            "tip_cents": tip_cents,
            "operator_payout_cents": payout,
            "business_cut_cents": business_cut,
        }

    def _validate_placement(
        self,
        pickup_type: PickupType,
        bag_count: int,
        zip_code: str,
        pickup_address: Optional[str],
        locker_id: Optional[uuid.UUID],
        tip_cents: int = 0,
    ) -> None:
        errors = []
        if bag_count < 1:
            errors.append("bag_count must be at least 1")
        if not zip_code or not zip_code.strip():
            errors.append("zip_code is required")
        if pickup_type == PickupType.LOCKER and locker_id is None:
            errors.append("locker_id is required for locker orders")
        if pickup_type == PickupType.PICKUP_DELIVERY and not pickup_address:
            errors.append("pickup_address is required for pickup orders")
        if tip_cents < 0:
            errors.append("tip_cents must not be negative")
        elif tip_cents > self.settings.max_tip_cents:
            errors.append(f"tip_cents must not exceed {self.settings.max_tip_cents}")

        if errors:
            raise OrderValidationError("Invalid order", errors=errors)

    async def place_order(
        self,
        customer_id: uuid.UUID,
        pickup_type: PickupType,
        service_type: ServiceType,
        bag_count: int,
        zip_code: str,
        pickup_address: Optional[str] = None,
        delivery_address: Optional[str] = None,
        locker_id: Optional[uuid.UUID] = None,
        is_express: bool = False,
        special_instructions: Optional[str] = None,
        pickup_window_start: Optional[datetime] = None,
        pickup_window_end: Optional[datetime] = None,
        delivery_window_start: Optional[datetime] = None,
        delivery_window_end: Optional[datetime] = None,
        customer_email: Optional[str] = None,
        promo_code: Optional[str] = None,
        tip_cents: int = 0,
    ) -> dict[str, Any]:
        """
        Create an order and its payment intent.

        A zero total skips payment: the order is created open for claims.
        A promo code discounts the subtotal and a tip is added on top.

        Returns:
            Dictionary with the order, the payment ``client_secret`` and a
            ``free_order`` flag

        Raises:
            OrderValidationError: If the request is invalid
            OrderProcessingError: If the payment intent cannot be created
        """
        self._validate_placement(
            pickup_type, bag_count, zip_code, pickup_address, locker_id, tip_cents
        )

        is_express = is_express or service_type == ServiceType.EXPRESS
        discount = 0
        if promo_code and promo_code.strip():
            try:
                promo, discount = await self.promotions.resolve(
                    promo_code, customer_id, self.calculate_subtotal(bag_count, is_express)
                )
            except PromoCodeError as e:
                raise OrderValidationError(str(e), **e.context) from e
            promo_code = promo.code
        else:
            promo_code = None
        pricing = self.calculate_pricing(bag_count, is_express, discount, tip_cents)
        free_order = pricing["total_amount_cents"] == 0
        state = FulfillmentState.open() if free_order else FulfillmentState.awaiting_payment()
        order_id = uuid.uuid4()

        payment_intent_id = client_secret = None
        if not free_order:
            try:
                intent = await asyncio.to_thread(
                    self.stripe_client.create_payment_intent,
                    amount=pricing["total_amount_cents"],
                    currency=self.settings.currency,
                    order_id=order_id,
                    customer_id=customer_id,
                    customer_email=customer_email,
                )
            except StripeClientError as e:
                logger.error(
                    "Payment intent creation failed",
                    customer_id=str(customer_id),
                    error=str(e),
                )
                raise OrderProcessingError(
                    "Payment could not be initiated", error=str(e)
                ) from e
            payment_intent_id, client_secret = intent.id, intent.client_secret

        order = await self.repository.create_order(
            state=state,
            id=order_id,
            customer_id=customer_id,
            pickup_type=pickup_type,
            service_type=service_type,
            is_express=is_express,
            bag_count=bag_count,
            zip_code=zip_code.strip(),
            pickup_address=pickup_address,
            delivery_address=delivery_address,
            locker_id=locker_id,
            special_instructions=special_instructions,
            pickup_window_start=pickup_window_start,
            pickup_window_end=pickup_window_end,
            delivery_window_start=delivery_window_start,
            delivery_window_end=delivery_window_end,
            stripe_payment_intent_id=payment_intent_id,
            promo_code=promo_code,
            **pricing,
        )
        if free_order:
            await self._redeem_promo(order)
            self.outbox.enqueue(order.id, customer_id, NotificationType.UNCLAIMED)

        await self.session.commit()

        logger.info(
            "Order placed",
            order_id=str(order.id),
            customer_id=str(customer_id),
            total_amount_cents=order.total_amount_cents,
            free_order=free_order,
            promo_code=promo_code,
        )
        await self._publish(order, EventKind.PLACED)
        if free_order:
            await self.request_drain()

        return {
            "order": self._format_order_response(order),
            "client_secret": client_secret,
            "free_order": free_order,
        }

    async def confirm_payment(self, payment_intent_id: str) -> Optional[dict[str, Any]]:
        """
        Open a paid order for claims.

        Replays of the same payment are no-ops.

        Returns:
            The order, or None if no order carries the payment intent
        """
        order = await self.repository.get_order_by_payment_intent(payment_intent_id)
        if order is None:
            logger.warning(
                "Payment confirmed for unknown order",
                payment_intent_id=payment_intent_id,
            )
            return None

        state = _read_state(order)
        if state.tag != StateTag.AWAITING_PAYMENT:
            logger.info(
                "Payment confirmation replayed",
                order_id=str(order.id),
                status=order.status.value,
            )
            return self._format_order_response(order)

        target = self.state_machine.confirm_payment(state)
        order_id, customer_id = order.id, order.customer_id
        if not await self.repository.compare_and_set_state(
            order, target, paid_at=_utcnow()
        ):
            await self.session.rollback()
            order = await self.repository.require_order(order_id, refresh=True)
            return self._format_order_response(order)

        self.outbox.enqueue(order_id, customer_id, NotificationType.UNCLAIMED)
        order = await self.repository.require_order(order_id, refresh=True)
        await self._redeem_promo(order)
        await self.session.commit()

        logger.info("Order payment confirmed", order_id=str(order_id))
        await self._publish(order, EventKind.PAYMENT_CONFIRMED)
        await self.request_drain()
        return self._format_order_response(order)

    async def _redeem_promo(self, order: Order) -> None:
        try:
            await self.promotions.record_usage(order)
        except PromoCodeError as e:
            raise OrderProcessingError(
                "Promo code redemption failed", order_id=str(order.id)
            ) from e

    # Claim arbitration

    async def claim_order(
        self, order_id: uuid.UUID, operator_id: uuid.UUID
    ) -> dict[str, Any]:
        """
        Claim an open order for an operator.

        Raises:
            OrderNotFoundError: If the order does not exist
            OrderUnavailableError: If another operator got there first
            OperatorCapacityError: If the operator is at the active order limit
        """
        cap = self.settings.max_active_orders_per_operator
        order = await self.repository.require_order(order_id)

        if not _read_state(order).is_claimable or order.washer_id is not None:
            raise OrderUnavailableError("Order unavailable", order_id=str(order_id))

        active = await self.repository.count_active_orders(operator_id)
        if active >= cap:
            logger.info(
                "Claim rejected at capacity",
                order_id=str(order_id),
                operator_id=str(operator_id),
                active_orders=active,
            )
            raise OperatorCapacityError(
                f"Active order limit reached ({cap})",
                operator_id=str(operator_id),
                active_orders=active,
            )

        won = await self.repository.claim_order(order_id, operator_id, cap)
        if not won:
            await self.session.rollback()
            current = await self.repository.require_order(order_id, refresh=True)
            if current.washer_id is None and _read_state(current).is_claimable:
                raise OperatorCapacityError(
                    f"Active order limit reached ({cap})",
                    operator_id=str(operator_id),
                )
            raise OrderUnavailableError("Order unavailable", order_id=str(order_id))

        order = await self.repository.require_order(order_id, refresh=True)
        self.outbox.enqueue(order.id, order.customer_id, NotificationType.CLAIMED)
        await self.session.commit()

        logger.info(
            "Order claimed",
            order_id=str(order_id),
            operator_id=str(operator_id),
        )
        await self._publish(order, EventKind.CLAIMED)
        await self.request_drain()
        return self._format_order_response(order)

    # Step workflow

    async def complete_step(
        self,
        order_id: uuid.UUID,
        operator_id: uuid.UUID,
        step_number: int,
        evidence: Optional[StepEvidence] = None,
    ) -> dict[str, Any]:
        """
        Complete the order's current checklist step.

        Resubmitting a step that is already behind the pointer returns the
        order unchanged with ``replayed`` set and emits nothing.

        Raises:
            OrderValidationError: If the step number is outside the checklist
            EvidenceRequiredError: If the step's photo or bag count is missing
            OrderPermissionError: If the operator does not hold the claim
            StepOutOfOrderError: If the step is ahead of the pointer
            OrderConflictError: If the order is not in fulfillment
            OrderProcessingError: If the photo cannot be stored
        """
        evidence = evidence or StepEvidence()
        try:
            step = get_step(step_number)
        except ValueError as e:
            raise OrderValidationError(str(e), step_number=step_number) from e

        with log_performance(
            logger, "complete_step", order_id=str(order_id), step_number=step_number
        ):
            order = await self.repository.require_order(order_id)
            if order.washer_id != operator_id:
                raise OrderPermissionError(
                    "Order is not assigned to this operator",
                    order_id=str(order_id),
                )

            state = _read_state(order)
            if state.has_completed(step_number):
                logger.info(
                    "Step completion replayed",
                    order_id=str(order_id),
                    step_number=step_number,
                )
                return self._format_order_response(order, replayed=True)

            if state.tag != StateTag.IN_FULFILLMENT:
                raise OrderConflictError(
                    f"Order is {state.status.value}",
                    order_id=str(order_id),
                )
            if step_number != state.step:
                raise StepOutOfOrderError(
                    f"Step {step_number} cannot be completed before step {state.step}",
                    order_id=str(order_id),
                    step_number=step_number,
                    current_step=state.step,
                )

            missing = missing_evidence(step, evidence)
            if missing:
                raise EvidenceRequiredError(
                    f"Step {step_number} requires {', '.join(missing)}",
                    missing=missing,
                    step_number=step_number,
                )

            try:
                transition = self.state_machine.complete_step(state, step_number)
            except StateTransitionError as e:
                raise OrderConflictError(str(e), order_id=str(order_id)) from e

            photo_reference = await self._store_photo(order_id, step_number, evidence)

            won = await self.repository.advance_step(
                order,
                transition.current,
                step_number,
                operator_id,
                photo_reference=photo_reference,
                bag_count=evidence.bag_count if step.requires_bag_count else None,
            )
            if not won:
                return await self._resolve_lost_step(order_id, operator_id, step_number)

            order = await self.repository.require_order(order_id, refresh=True)
            if transition.completes_order:
                try:
                    await self.earnings.record_for_order(order)
                except EarningsServiceError as e:
                    await self.session.rollback()
                    raise OrderProcessingError(
                        "Operator earnings could not be recorded", order_id=str(order_id)
                    ) from e

            notification = notification_for_transition(transition)
            if notification is not None:
                self.outbox.enqueue(
                    order.id,
                    order.customer_id,
                    notification,
                    current_step=transition.current.step,
                )

            await self.session.commit()

        logger.info(
            "Step completed",
            order_id=str(order_id),
            step_number=step_number,
            status=order.status.value,
            current_step=order.current_step,
            notification=notification.value if notification else None,
            has_notes=bool(evidence.notes),
        )
        await self._publish(order, EventKind.STEP_COMPLETED, step_number=step_number)
        if notification is not None:
            await self.request_drain()
        return self._format_order_response(order, replayed=False)

    async def _store_photo(
        self, order_id: uuid.UUID, step_number: int, evidence: StepEvidence
    ) -> Optional[str]:
        if evidence.photo is None:
            reference = evidence.reference
            if reference is None:
                return None
            try:
                stored = await self.evidence_storage.reference_exists(
                    order_id, step_number, reference
                )
            except EvidenceUploadError as e:
                raise OrderProcessingError(
                    "Photo lookup failed", order_id=str(order_id), step_number=step_number
                ) from e
            if not stored:
                raise EvidenceRequiredError(
                    f"Step {step_number} photo reference is not a stored evidence photo",
                    missing=["photo"],
                    step_number=step_number,
                )
            return reference

        try:
            return await self.evidence_storage.store_step_photo(
                order_id, step_number, evidence.photo
            )
        except InvalidEvidenceError as e:
            raise OrderValidationError(str(e), **e.context) from e
        except EvidenceUploadError as e:
            raise OrderProcessingError(
                "Photo upload failed", order_id=str(order_id), step_number=step_number
            ) from e

    async def _resolve_lost_step(
        self, order_id: uuid.UUID, operator_id: uuid.UUID, step_number: int
    ) -> dict[str, Any]:
        """Explain a step write whose guard no longer matched."""
        await self.session.rollback()
        current = await self.repository.require_order(order_id, refresh=True)

        if current.washer_id != operator_id:
            raise OrderPermissionError(
                "Order is not assigned to this operator",
                order_id=str(order_id),
            )
        if _read_state(current).has_completed(step_number):
            logger.info(
                "Concurrent step completion lost the race",
                order_id=str(order_id),
                step_number=step_number,
            )
            return self._format_order_response(current, replayed=True)

        raise OrderConflictError(
            "Order changed while completing the step",
            order_id=str(order_id),
            step_number=step_number,
        )

    async def get_checklist(
        self, order_id: uuid.UUID, principal: Principal
    ) -> dict[str, Any]:
        """The step table annotated with this order's progress."""
        order = await self.repository.require_order(order_id)
        if principal.role != UserRole.OWNER and order.washer_id != principal.user_id:
            raise OrderPermissionError(
                "Order is not assigned to this operator", order_id=str(order_id)
            )

        state = _read_state(order)
        photos = order.step_photos or {}
        completed_at = order.step_completed_at or {}

        steps = []
        for definition in FULFILLMENT_STEPS:
            key = str(definition.number)
            steps.append(
                {
                    **definition.to_dict(),
                    "completed": state.has_completed(definition.number),
                    "completed_at": completed_at.get(key),
                    "photo": photos.get(key),
                    "is_current": state.tag == StateTag.IN_FULFILLMENT
                    and state.step == definition.number,
                    "navigation_address": resolve_navigation_address(
                        definition, order.pickup_address, order.delivery_address
                    ),
                }
            )

        return {"order": self._format_order_response(order), "steps": steps}

    # Cancellation and owner tools

    async def cancel_order(
        self,
        order_id: uuid.UUID,
        customer_id: uuid.UUID,
        reason: Optional[str] = None,
    ) -> dict[str, Any]:
        """
        Cancel an order that no operator has started on.

        Raises:
            OrderPermissionError: If the caller did not place the order
            OrderConflictError: If work has already started
        """
        order = await self.repository.require_order(order_id)
        if order.customer_id != customer_id:
            raise OrderPermissionError(
                "Only the customer who placed the order can cancel it",
                order_id=str(order_id),
            )

        state = _read_state(order)
        try:
            target = self.state_machine.cancel(state)
        except StateTransitionError as e:
            raise OrderConflictError(str(e), order_id=str(order_id)) from e

        instructions = order.special_instructions
        if reason:
            note = f"Cancellation reason: {reason}"
            instructions = f"{instructions}\n{note}" if instructions else note

        payment_intent_id = order.stripe_payment_intent_id
        was_paid = bool(payment_intent_id) and order.paid_at is not None

        won = await self.repository.compare_and_set_state(
            order,
            target,
            cancelled_at=_utcnow(),
            special_instructions=instructions,
        )
        if not won:
            await self.session.rollback()
            raise OrderConflictError(
                "Order changed while cancelling", order_id=str(order_id)
            )

        order = await self.repository.require_order(order_id, refresh=True)
        self.outbox.enqueue(order.id, order.customer_id, NotificationType.CANCELLED)
        await self.session.commit()

        logger.info("Order cancelled", order_id=str(order_id), reason=reason)

        if was_paid:
            try:
                await asyncio.to_thread(self.stripe_client.create_refund, payment_intent_id)
            except StripeClientError as e:
                logger.warning(
                    "Refund failed for cancelled order",
                    order_id=str(order_id),
                    payment_intent_id=payment_intent_id,
                    error=str(e),
                )

        await self._publish(order, EventKind.CANCELLED)
        await self.request_drain()
        return self._format_order_response(order)

    async def release_claim(self, order_id: uuid.UUID) -> dict[str, Any]:
        """
        Return a claimed order to the pool.

        Only claims with no completed step can be released.

        Raises:
            OrderConflictError: If work has started or the order is not claimed
        """
        order = await self.repository.require_order(order_id)
        previous_operator = order.washer_id
        try:
            self.state_machine.release(_read_state(order))
        except StateTransitionError as e:
            raise OrderConflictError(str(e), order_id=str(order_id)) from e

        if not await self.repository.release_claim(order):
            await self.session.rollback()
            raise OrderConflictError(
                "Order changed while releasing", order_id=str(order_id)
            )

        order = await self.repository.require_order(order_id, refresh=True)
        await self.session.commit()

        logger.info(
            "Claim released",
            order_id=str(order_id),
            operator_id=str(previous_operator),
        )
        await self._publish(order, EventKind.RELEASED)
        return self._format_order_response(order)

    async def list_stalled_claims(self, hours: Optional[int] = None) -> list[dict[str, Any]]:
        hours = hours or self.settings.stalled_claim_hours
        cutoff = _utcnow() - timedelta(hours=hours)
        orders = await self.repository.list_stalled_claims(cutoff)
        return [
            {
                **self._format_order_response(order),
                "releasable": _read_state(order).step == 1,
            }
            for order in orders
        ]

    async def get_statistics(self) -> dict[str, Any]:
        return await self.repository.get_order_statistics()

    # Reads

    async def get_order(self, order_id: uuid.UUID, principal: Principal) -> dict[str, Any]:
        """
        Fetch an order the caller may see.

        Customers see their own orders, operators the orders they hold and
        owners every order.

        Raises:
            OrderNotFoundError: If the order does not exist
            OrderPermissionError: If the caller may not see it
        """
        order = await self.repository.require_order(order_id)
        if not self.can_view(order, principal):
            raise OrderPermissionError("Access denied", order_id=str(order_id))
        return self._format_order_response(order)

    @staticmethod
    def can_view(order: Order, principal: Principal) -> bool:
        return (
            principal.role == UserRole.OWNER
            or order.customer_id == principal.user_id
            or order.washer_id == principal.user_id
        )

    async def list_customer_orders(
        self, customer_id: uuid.UUID, skip: int = 0, limit: int = 20
    ) -> dict[str, Any]:
        orders, total = await self.repository.list_customer_orders(
            customer_id, skip=skip, limit=limit
        )
        return {
            "orders": [self._format_order_response(order) for order in orders],
            "total": total,
            "skip": skip,
            "limit": limit,
        }

    async def list_available_orders(self, zip_code: Optional[str] = None) -> list[dict[str, Any]]:
        orders = await self.repository.list_available_orders(zip_code)
        return [self._format_order_response(order) for order in orders]

    async def list_operator_orders(self, operator_id: uuid.UUID) -> list[dict[str, Any]]:
        orders = await self.repository.list_operator_active_orders(operator_id)
        return [self._format_order_response(order) for order in orders]

    async def _publish(
        self, order: Order, kind: EventKind, step_number: Optional[int] = None
    ) -> None:
        event = OrderChangeEvent(
            order_id=order.id,
            kind=kind,
            status=order.status.value,
            current_step=order.current_step,
            step_number=step_number,
        )
        await self.event_channel.publish(event)

    def _format_order_response(
        self, order: Order, replayed: Optional[bool] = None
    ) -> dict[str, Any]:
        """
        Format order for API response.

        Args:
            order: Order model instance
            replayed: Set on step completions; True when nothing changed
        """

        def iso(value: Optional[datetime]) -> Optional[str]:
            return value.isoformat() if value else None

        response = {
            "id": str(order.id),
            "order_number": order.order_number,
            "customer_id": str(order.customer_id),
            "washer_id": str(order.washer_id) if order.washer_id else None,
            "status": order.status.value,
            "current_step": order.current_step,
            "pickup_type": order.pickup_type.value,
            "service_type": order.service_type.value,
            "is_express": order.is_express,
            "bag_count": order.bag_count,
            "step_photos": dict(order.step_photos or {}),
            "step_completed_at": dict(order.step_completed_at or {}),
            "total_amount_cents": order.total_amount_cents,
            "discount_amount_cents": order.discount_amount_cents,
            "business_cut_cents": order.business_cut_cents,
            "operator_payout_cents": order.operator_payout_cents,
            "tip_cents": order.tip_cents or 0,
            "promo_code": order.promo_code,
            "pickup_address": order.pickup_address,
            "delivery_address": order.delivery_address,
            "zip_code": order.zip_code,
            "locker_id": str(order.locker_id) if order.locker_id else None,
            "special_instructions": order.special_instructions,
            "pickup_window_start": iso(order.pickup_window_start),
            "pickup_window_end": iso(order.pickup_window_end),
            "delivery_window_start": iso(order.delivery_window_start),
            "delivery_window_end": iso(order.delivery_window_end),
            "created_at": iso(order.created_at),
            "updated_at": iso(order.updated_at),
            "claimed_at": iso(order.claimed_at),
            "paid_at": iso(order.paid_at),
            "completed_at": iso(order.completed_at),
            "cancelled_at": iso(order.cancelled_at),
        }
        if replayed is not None:
            response["replayed"] = replayed
        return response
