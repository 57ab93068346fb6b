"""
Order data access repository.

This module implements the OrderRepository class providing async methods for
creating and querying orders and for the conditional writes the fulfillment
flow depends on. Every state change is a single ``UPDATE ... WHERE`` guarded
on the state the caller read, so concurrent writers can never both win.
"""

import uuid
from datetime import datetime, timezone
from typing import Any, Optional, Sequence

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import aliased

from freshdrop.core.logging import get_logger
from freshdrop.database.models.order import Order
from freshdrop.services.orders.enums import (
    CLAIMABLE_STATUSES,
    FIRST_STEP,
    TERMINAL_STATUSES,
    OrderStatus,
)
from freshdrop.services.orders.state_machine import FulfillmentState

logger = get_logger(__name__)


class OrderRepositoryError(Exception):
    """Base exception for order repository errors."""

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.context = context


class OrderNotFoundError(OrderRepositoryError):
    """Raised when order is not found."""

    pass


class OrderCreationError(OrderRepositoryError):
    """Raised when order creation fails."""

    pass


class OrderUpdateError(OrderRepositoryError):
    """Raised when order update fails."""

    pass


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _non_terminal():
    return Order.status.not_in(list(TERMINAL_STATUSES))


class OrderRepository:
    """
    Repository for order data access operations.

    Reads return ORM objects; conditional writes return whether the guard
    matched and leave reloading to ``get_order_by_id(..., refresh=True)``.
    """

    def __init__(self, session: AsyncSession):
        """
        Initialize order repository.

        Args:
            session: Async database session
        """
        self.session = session

    @property
    def _dialect(self) -> str:
        return self.session.get_bind().dialect.name

    async def create_order(self, **fields: Any) -> Order:
        """
        Insert a new order.

        Args:
            **fields: Column values; ``status`` and ``current_step`` are
                taken from the ``state`` keyword

        Returns:
            Created order, refreshed with server defaults

        Raises:
            OrderCreationError: If the insert fails
        """
        state: FulfillmentState = fields.pop("state", FulfillmentState.awaiting_payment())
        order = Order(**fields)
        order.apply_state(state)
        order.step_photos = order.step_photos or {}
        order.step_completed_at = order.step_completed_at or {}

        try:
            self.session.add(order)
            await self.session.flush()
            await self.session.refresh(order)
        except IntegrityError as e:
            logger.error(
                "Order creation failed - integrity error",
                customer_id=str(fields.get("customer_id")),
                error=str(e),
            )
            raise OrderCreationError(
                "Order creation failed due to data integrity violation",
                error=str(e),
            ) from e
        except SQLAlchemyError as e:
            logger.error(
                "Order creation failed - database error",
                customer_id=str(fields.get("customer_id")),
                error=str(e),
            )
            raise OrderCreationError(
                "Order creation failed due to database error",
                error=str(e),
            ) from e

        logger.info(
            "Order created",
            order_id=str(order.id),
            customer_id=str(order.customer_id),
            status=order.status.value,
        )
        return order

    async def get_order_by_id(
        self, order_id: uuid.UUID, refresh: bool = False
    ) -> Optional[Order]:
        """
        Get order by ID.

        Args:
            order_id: Order identifier
            refresh: Overwrite any stale copy in the identity map

        Raises:
            OrderRepositoryError: If query fails
        """
        try:
            return await self.session.get(Order, order_id, populate_existing=refresh)
        except SQLAlchemyError as e:
            logger.error("Failed to fetch order", order_id=str(order_id), error=str(e))
            raise OrderRepositoryError(
                "Failed to fetch order",
                order_id=str(order_id),
                error=str(e),
            ) from e

    async def require_order(self, order_id: uuid.UUID, refresh: bool = False) -> Order:
        order = await self.get_order_by_id(order_id, refresh=refresh)
        if order is None:
            raise OrderNotFoundError("Order not found", order_id=str(order_id))
        return order

    async def get_order_by_payment_intent(self, payment_intent_id: str) -> Optional[Order]:
        try:
            result = await self.session.execute(
                select(Order).where(Order.stripe_payment_intent_id == payment_intent_id)
            )
            return result.scalar_one_or_none()
        except SQLAlchemyError as e:
            logger.error(
                "Failed to fetch order by payment intent",
                payment_intent_id=payment_intent_id,
                error=str(e),
            )
            raise OrderRepositoryError(
                "Failed to fetch order by payment intent",
                payment_intent_id=payment_intent_id,
                error=str(e),
            ) from e

    async def _fetch_all(self, stmt, description: str, **context: Any) -> Sequence[Order]:
        try:
            result = await self.session.execute(stmt)
            return result.scalars().all()
        except SQLAlchemyError as e:
            logger.error(f"Failed to fetch {description}", error=str(e), **context)
            raise OrderRepositoryError(
                f"Failed to fetch {description}", error=str(e), **context
            ) from e

    async def list_customer_orders(
        self,
        customer_id: uuid.UUID,
        status: Optional[OrderStatus] = None,
        skip: int = 0,
        limit: int = 20,
    ) -> tuple[Sequence[Order], int]:
        """
        Get a customer's orders, newest first, with the total count.

        Raises:
            OrderRepositoryError: If query fails
        """
        conditions = [Order.customer_id == customer_id]
        if status:
            conditions.append(Order.status == status)

        stmt = (
            select(Order)
            .where(*conditions)
            .order_by(Order.created_at.desc())
            .offset(skip)
            .limit(limit)
        )
        orders = await self._fetch_all(
            stmt, "customer orders", customer_id=str(customer_id)
        )

        try:
            count_result = await self.session.execute(
                select(func.count()).select_from(Order).where(*conditions)
            )
        except SQLAlchemyError as e:
            raise OrderRepositoryError(
                "Failed to count customer orders",
                customer_id=str(customer_id),
                error=str(e),
            ) from e
        return orders, count_result.scalar_one()

    async def list_available_orders(
        self, zip_code: Optional[str] = None, limit: int = 50
    ) -> Sequence[Order]:
        """Claimable orders, oldest first, optionally limited to one area."""
        conditions = [
            Order.status.in_(list(CLAIMABLE_STATUSES)),
            Order.washer_id.is_(None),
        ]
        if zip_code:
            conditions.append(Order.zip_code == zip_code)

        stmt = (
            select(Order)
            .where(*conditions)
            .order_by(Order.is_express.desc(), Order.created_at)
            .limit(limit)
        )
        return await self._fetch_all(stmt, "available orders", zip_code=zip_code)

    async def list_operator_active_orders(self, operator_id: uuid.UUID) -> Sequence[Order]:
        stmt = (
            select(Order)
            .where(Order.washer_id == operator_id, _non_terminal())
            .order_by(Order.claimed_at)
        )
        return await self._fetch_all(
            stmt, "operator orders", operator_id=str(operator_id)
        )

    async def count_active_orders(self, operator_id: uuid.UUID) -> int:
        """Orders the operator holds in a non-terminal status."""
        try:
            result = await self.session.execute(
                select(func.count())
                .select_from(Order)
                .where(Order.washer_id == operator_id, _non_terminal())
            )
            return result.scalar_one()
        except SQLAlchemyError as e:
            logger.error(
                "Failed to count active orders",
                operator_id=str(operator_id),
                error=str(e),
            )
            raise OrderRepositoryError(
                "Failed to count active orders",
                operator_id=str(operator_id),
                error=str(e),
            ) from e

    async def _execute_guarded(self, stmt, description: str, **context: Any) -> bool:
        try:
            result = await self.session.execute(
                stmt.execution_options(synchronize_session=False)
            )
        except SQLAlchemyError as e:
            logger.error(f"Failed to {description}", error=str(e), **context)
            raise OrderUpdateError(f"Failed to {description}", error=str(e), **context) from e
        return result.rowcount == 1

    async def claim_order(
        self, order_id: uuid.UUID, operator_id: uuid.UUID, max_active: int
    ) -> bool:
        """
        Assign an unclaimed order to an operator.

        The order must still be claimable and the operator must hold fewer
        than ``max_active`` non-terminal orders, both checked by the same
        statement that writes the claim.

        Returns:
            True if this call won the claim
        """
        if self._dialect == "postgresql":
            # Serialize one operator's concurrent claims so the capacity
            # count cannot be read stale by a parallel claim
            await self.session.execute(
                select(func.pg_advisory_xact_lock(func.hashtext(str(operator_id))))
            )

        held = aliased(Order)
        active_count = (
            select(func.count(held.id))
            .where(
                held.washer_id == operator_id,
                held.status.not_in(list(TERMINAL_STATUSES)),
            )
            .scalar_subquery()
        )
        claimed = FulfillmentState.at_step(FIRST_STEP)
        status, step = claimed.to_columns()

        stmt = (
            update(Order)
            .where(
                Order.id == order_id,
                Order.status.in_(list(CLAIMABLE_STATUSES)),
                Order.washer_id.is_(None),
                active_count < max_active,
            )
            .values(
                washer_id=operator_id,
                status=status,
                current_step=step,
                claimed_at=_utcnow(),
            )
        )
        won = await self._execute_guarded(
            stmt,
            "claim order",
            order_id=str(order_id),
            operator_id=str(operator_id),
        )

        logger.info(
            "Claim attempted",
            order_id=str(order_id),
            operator_id=str(operator_id),
            won=won,
        )
        return won

    async def compare_and_set_state(
        self,
        order: Order,
        target: FulfillmentState,
        conditions: Sequence[Any] = (),
        **values: Any,
    ) -> bool:
        """
        Move ``order`` to ``target`` if its row still holds what was read.

        The guard is the persisted ``(status, current_step)`` pair of the
        loaded order plus any extra ``conditions``.

        Args:
            order: Order as read by the caller
            target: State to write
            conditions: Additional WHERE clauses
            **values: Other columns to write with the state

        Returns:
            True if the row matched and was updated
        """
        status, step = target.to_columns()
        stmt = (
            update(Order)
            .where(
                Order.id == order.id,
                Order.status == order.status,
                Order.current_step == order.current_step,
                *conditions,
            )
            .values(status=status, current_step=step, **values)
        )
        return await self._execute_guarded(
            stmt,
            "update order state",
            order_id=str(order.id),
            from_status=order.status.value,
            to_status=status.value,
        )

    async def advance_step(
        self,
        order: Order,
        target: FulfillmentState,
        step_number: int,
        operator_id: uuid.UUID,
        photo_reference: Optional[str] = None,
        bag_count: Optional[int] = None,
    ) -> bool:
        """
        Record a completed step and move the pointer.

        Evidence maps only ever gain entries. The write is conditional on the
        pointer still being at ``step_number`` and on ``operator_id`` still
        holding the claim.
        """
        now = _utcnow()
        key = str(step_number)

        completed_at = dict(order.step_completed_at or {})
        completed_at[key] = now.isoformat()
        values: dict[str, Any] = {"step_completed_at": completed_at}

        if photo_reference:
            photos = dict(order.step_photos or {})
            photos.setdefault(key, photo_reference)
            values["step_photos"] = photos
        if bag_count is not None:
            values["bag_count"] = bag_count
        if target.is_terminal:
            values["completed_at"] = now

        return await self.compare_and_set_state(
            order,
            target,
            conditions=[Order.washer_id == operator_id],
            **values,
        )

    async def release_claim(self, order: Order) -> bool:
        """Return a step-1 claim to the pool."""
        return await self.compare_and_set_state(
            order,
            FulfillmentState.open(),
            washer_id=None,
            claimed_at=None,
        )

    async def get_order_statistics(self) -> dict[str, Any]:
        """Counts per status plus completed revenue."""
        try:
            by_status = await self.session.execute(
                select(Order.status, func.count(Order.id)).group_by(Order.status)
            )
            revenue = await self.session.execute(
                select(
                    func.coalesce(func.sum(Order.total_amount_cents), 0),
                    func.coalesce(func.sum(Order.business_cut_cents), 0),
                ).where(Order.status == OrderStatus.COMPLETED)
            )
        except SQLAlchemyError as e:
            logger.error("Failed to compute order statistics", error=str(e))
            raise OrderRepositoryError(
                "Failed to compute order statistics", error=str(e)
            ) from e

        counts = {status.value: count for status, count in by_status.all()}
        total_revenue, business_revenue = revenue.one()
        active = sum(
            count
            for status, count in counts.items()
            if OrderStatus(status) not in TERMINAL_STATUSES
        )
        return {
            "total_orders": sum(counts.values()),
            "active_orders": active,
            "by_status": counts,
            "completed_revenue_cents": int(total_revenue),
            "business_revenue_cents": int(business_revenue),
        }

    async def list_stalled_claims(self, older_than: datetime) -> Sequence[Order]:
        """Claimed, unfinished orders with no progress since ``older_than``."""
        stmt = (
            select(Order)
            .where(
                Order.washer_id.is_not(None),
                _non_terminal(),
                Order.updated_at < older_than,
            )
            .order_by(Order.updated_at)
        )
        return await self._fetch_all(stmt, "stalled claims", older_than=older_than.isoformat())
