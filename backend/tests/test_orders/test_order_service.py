"""
Test suite for OrderService business logic.

Runs the service against a real SQLite database with Stripe, evidence
storage and the worker nudge mocked, covering placement, payment
confirmation, claim arbitration, the step workflow, cancellation and the
owner tools.
"""

import asyncio
import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional
from unittest.mock import patch

import pytest
from sqlalchemy import func, select

from freshdrop.core.config import Settings
from freshdrop.core.security import Principal, UserRole
from freshdrop.database.models.notification import NotificationOutbox, NotificationType
from freshdrop.database.models.promo import PromoCodeUsage, PromoDiscountType
from freshdrop.services.earnings.service import EarningsService, EarningsServiceError
from freshdrop.services.events.channel import EventKind
from freshdrop.services.orders.enums import OrderStatus, PickupType, ServiceType
from freshdrop.services.orders.repository import OrderNotFoundError
from freshdrop.services.orders.service import (
    EvidenceRequiredError,
    OperatorCapacityError,
    OrderConflictError,
    OrderPermissionError,
    OrderProcessingError,
    OrderService,
    OrderUnavailableError,
    OrderValidationError,
    StepOutOfOrderError,
)
from freshdrop.services.orders.state_machine import FulfillmentState
from freshdrop.services.orders.steps import PhotoUpload, StepEvidence
from freshdrop.services.payments.stripe_client import StripeClientError
from freshdrop.services.storage.evidence import EvidenceUploadError, InvalidEvidenceError


# ============================================================================
# Helpers
# ============================================================================


JPEG = PhotoUpload(content=b"\xff\xd8\xff\xe0fake-jpeg", content_type="image/jpeg")
PAID_AT = datetime(2026, 10, 19, 9, 30, tzinfo=timezone.utc)


def handoff_photo(order_id) -> str:
    """A step 13 photo already uploaded for ``order_id``."""
    return f"https://evidence.test/orders/{order_id}/step-13/handoff.jpg"


def evidence_for(step: int, order_id: Optional[uuid.UUID] = None) -> StepEvidence:
    """Minimal evidence that satisfies ``step``'s gate."""
    if step == 3:
        return StepEvidence(bag_count=2)
    if step == 4:
        return StepEvidence(photo=JPEG)
    if step == 13:
        return StepEvidence(photo_reference=handoff_photo(order_id))
    return StepEvidence()


async def outbox_types(session_factory, order_id: uuid.UUID) -> list[NotificationType]:
    async with session_factory() as session:
        result = await session.execute(
            select(NotificationOutbox).where(NotificationOutbox.order_id == order_id)
        )
        events = sorted(result.scalars().all(), key=lambda e: e.current_step or 0)
    return [event.notification_type for event in events]


async def usage_count(session_factory) -> int:
    async with session_factory() as session:
        return await session.scalar(select(func.count(PromoCodeUsage.id)))


def build_service(
    session,
    stripe_client,
    evidence_storage,
    event_channel,
    drain,
    settings: Optional[Settings] = None,
) -> OrderService:
    return OrderService(
        session,
        stripe_client=stripe_client,
        evidence_storage=evidence_storage,
        event_channel=event_channel,
        request_drain=drain,
        settings=settings,
    )


# ============================================================================
# Placement and payment
# ============================================================================


class TestPlaceOrder:
    async def test_creates_order_awaiting_payment(self, order_service, stripe_client) -> None:
        customer_id = uuid.uuid4()
        result = await order_service.place_order(
            customer_id=customer_id,
            pickup_type=PickupType.PICKUP_DELIVERY,
            service_type=ServiceType.WASH_FOLD,
            bag_count=2,
            zip_code=" 94110 ",
            pickup_address="100 Valencia St",
            customer_email="jordan@example.com",
        )

        order = result["order"]
        assert order["status"] == OrderStatus.PLACED.value
        assert order["current_step"] == 1
        assert order["zip_code"] == "94110"
        assert order["total_amount_cents"] == 7000
        assert order["operator_payout_cents"] == 3500
        assert order["business_cut_cents"] == 3500
        assert result["client_secret"] == "pi_test_123_secret_abc"
        assert result["free_order"] is False

        kwargs = stripe_client.create_payment_intent.call_args.kwargs
        assert kwargs["amount"] == 7000
        assert kwargs["customer_email"] == "jordan@example.com"
        assert str(kwargs["order_id"]) == order["id"]

    async def test_express_surcharge(self, order_service) -> None:
        result = await order_service.place_order(
            customer_id=uuid.uuid4(),
            pickup_type=PickupType.PICKUP_DELIVERY,
            service_type=ServiceType.EXPRESS,
            bag_count=1,
            zip_code="94110",
            pickup_address="100 Valencia St",
        )
        assert result["order"]["is_express"] is True
        assert result["order"]["total_amount_cents"] == 4500

    async def test_locker_order_needs_locker(self, order_service) -> None:
        with pytest.raises(OrderValidationError) as exc_info:
            await order_service.place_order(
                customer_id=uuid.uuid4(),
                pickup_type=PickupType.LOCKER,
                service_type=ServiceType.WASH_FOLD,
                bag_count=0,
                zip_code="94110",
            )
        errors = exc_info.value.context["errors"]
        assert "locker_id is required for locker orders" in errors
        assert "bag_count must be at least 1" in errors

    async def test_payment_failure(self, order_service, stripe_client, session_factory) -> None:
        stripe_client.create_payment_intent.side_effect = StripeClientError("card network down")

        with pytest.raises(OrderProcessingError):
            await order_service.place_order(
                customer_id=uuid.uuid4(),
                pickup_type=PickupType.PICKUP_DELIVERY,
                service_type=ServiceType.WASH_FOLD,
                bag_count=1,
                zip_code="94110",
                pickup_address="100 Valencia St",
            )

    async def test_free_order_opens_immediately(
        self, db_session, stripe_client, evidence_storage, event_channel, drain_requests,
        session_factory,
    ) -> None:
        service = build_service(
            db_session, stripe_client, evidence_storage, event_channel, drain_requests,
            settings=Settings(price_per_bag_cents=0, express_fee_cents=0),
        )
        result = await service.place_order(
            customer_id=uuid.uuid4(),
            pickup_type=PickupType.PICKUP_DELIVERY,
            service_type=ServiceType.WASH_FOLD,
            bag_count=1,
            zip_code="94110",
            pickup_address="100 Valencia St",
        )

        assert result["free_order"] is True
        assert result["client_secret"] is None
        assert result["order"]["status"] == OrderStatus.UNCLAIMED.value
        stripe_client.create_payment_intent.assert_not_called()
        drain_requests.assert_awaited_once()
        order_id = uuid.UUID(result["order"]["id"])
        assert await outbox_types(session_factory, order_id) == [NotificationType.UNCLAIMED]


class TestPromoCodesAndTips:
    async def place(self, service, customer_id=None, **kwargs):
        fields = {
            "customer_id": customer_id or uuid.uuid4(),
            "pickup_type": PickupType.PICKUP_DELIVERY,
            "service_type": ServiceType.WASH_FOLD,
            "bag_count": 2,
            "zip_code": "94110",
            "pickup_address": "100 Valencia St",
        }
        fields.update(kwargs)
        return await service.place_order(**fields)

    async def test_percentage_promo(
        self, order_service, create_promo, stripe_client, session_factory
    ) -> None:
        await create_promo("SPRING20", PromoDiscountType.PERCENTAGE, 20)

        result = await self.place(order_service, promo_code=" spring20 ")

        order = result["order"]
        assert order["discount_amount_cents"] == 1400
        assert order["total_amount_cents"] == 5600
        assert order["operator_payout_cents"] == 2800
        assert order["business_cut_cents"] == 2800
        assert order["promo_code"] == "SPRING20"
        assert stripe_client.create_payment_intent.call_args.kwargs["amount"] == 5600
        # Redeemed only once payment is confirmed
        assert await usage_count(session_factory) == 0

    async def test_tip_added_on_top(self, order_service, stripe_client) -> None:
        result = await self.place(order_service, tip_cents=1000)

        order = result["order"]
        assert order["tip_cents"] == 1000
        assert order["total_amount_cents"] == 8000
        assert order["operator_payout_cents"] == 3500
        assert order["business_cut_cents"] == 3500
        assert stripe_client.create_payment_intent.call_args.kwargs["amount"] == 8000

    async def test_full_discount_is_free_order(
        self, order_service, create_promo, stripe_client, session_factory, drain_requests
    ) -> None:
        await create_promo("TEST", PromoDiscountType.FIXED_AMOUNT, 10000)

        result = await self.place(order_service, promo_code="TEST")

        assert result["free_order"] is True
        assert result["client_secret"] is None
        order = result["order"]
        assert order["status"] == OrderStatus.UNCLAIMED.value
        assert order["total_amount_cents"] == 0
        assert order["discount_amount_cents"] == 7000
        assert order["operator_payout_cents"] == 0
        stripe_client.create_payment_intent.assert_not_called()
        drain_requests.assert_awaited_once()
        assert await usage_count(session_factory) == 1

    async def test_tip_on_free_order_is_charged(
        self, order_service, create_promo, stripe_client
    ) -> None:
        await create_promo("TEST", PromoDiscountType.FIXED_AMOUNT, 10000)

        result = await self.place(order_service, promo_code="TEST", tip_cents=500)

        assert result["free_order"] is False
        assert result["order"]["status"] == OrderStatus.PLACED.value
        assert stripe_client.create_payment_intent.call_args.kwargs["amount"] == 500

    @pytest.mark.parametrize(
        "overrides",
        [
            {"is_active": False},
            {"valid_until": datetime.now(timezone.utc) - timedelta(days=1)},
            {"valid_from": datetime.now(timezone.utc) + timedelta(days=1)},
        ],
    )
    async def test_unusable_promo_rejected(
        self, order_service, create_promo, stripe_client, overrides
    ) -> None:
        await create_promo("SPRING20", PromoDiscountType.PERCENTAGE, 20, **overrides)

        with pytest.raises(OrderValidationError):
            await self.place(order_service, promo_code="SPRING20")
        stripe_client.create_payment_intent.assert_not_called()

    async def test_unknown_promo_rejected(self, order_service) -> None:
        with pytest.raises(OrderValidationError) as exc_info:
            await self.place(order_service, promo_code="NOPE")
        assert exc_info.value.context["code"] == "NOPE"

    async def test_one_time_promo_reused(
        self, order_service, create_promo, db_session
    ) -> None:
        await create_promo(
            "WELCOME", PromoDiscountType.FIXED_AMOUNT, 10000, one_time_use_per_user=True
        )
        customer_id = uuid.uuid4()
        await self.place(order_service, customer_id=customer_id, promo_code="WELCOME")

        with pytest.raises(OrderValidationError, match="already been used"):
            await self.place(order_service, customer_id=customer_id, promo_code="WELCOME")

        other = await self.place(order_service, promo_code="WELCOME")
        assert other["free_order"] is True

    @pytest.mark.parametrize("tip_cents", [-1, 50001])
    async def test_tip_out_of_range(self, order_service, tip_cents) -> None:
        with pytest.raises(OrderValidationError) as exc_info:
            await self.place(order_service, tip_cents=tip_cents)
        assert any("tip_cents" in error for error in exc_info.value.context["errors"])

    async def test_promo_redeemed_on_payment(
        self, order_service, create_order, create_promo, session_factory
    ) -> None:
        await create_promo("SPRING20", PromoDiscountType.PERCENTAGE, 20)
        await create_order(
            state=FulfillmentState.awaiting_payment(),
            stripe_payment_intent_id="pi_promo",
            promo_code="SPRING20",
            discount_amount_cents=1400,
            total_amount_cents=5600,
        )

        await order_service.confirm_payment("pi_promo")
        await order_service.confirm_payment("pi_promo")

        async with session_factory() as session:
            usage = (await session.execute(select(PromoCodeUsage))).scalar_one()
        assert usage.discount_amount_cents == 1400

    async def test_tip_reaches_operator_earnings(
        self, order_service, create_order, session_factory
    ) -> None:
        operator_id = uuid.uuid4()
        order = await create_order(
            state=FulfillmentState.at_step(13),
            washer_id=operator_id,
            tip_cents=600,
            total_amount_cents=7600,
        )

        await order_service.complete_step(
            order.id, operator_id, 13, evidence_for(13, order.id)
        )

        earning = await EarningsService(order_service.session).get_for_order(order.id)
        assert earning.payout_amount_cents == 3500
        assert earning.tip_cents == 600
        assert earning.total_cents == 4100


class TestConfirmPayment:
    async def test_opens_order(
        self, order_service, create_order, session_factory, drain_requests
    ) -> None:
        order = await create_order(
            state=FulfillmentState.awaiting_payment(), stripe_payment_intent_id="pi_confirm"
        )

        result = await order_service.confirm_payment("pi_confirm")

        assert result["status"] == OrderStatus.UNCLAIMED.value
        assert await outbox_types(session_factory, order.id) == [NotificationType.UNCLAIMED]
        drain_requests.assert_awaited_once()

    async def test_replay_is_noop(self, order_service, create_order, session_factory) -> None:
        order = await create_order(
            state=FulfillmentState.awaiting_payment(), stripe_payment_intent_id="pi_twice"
        )
        await order_service.confirm_payment("pi_twice")
        result = await order_service.confirm_payment("pi_twice")

        assert result["status"] == OrderStatus.UNCLAIMED.value
        assert len(await outbox_types(session_factory, order.id)) == 1

    async def test_claimed_before_payment_stays_claimed(
        self, order_service, create_order
    ) -> None:
        await create_order(
            state=FulfillmentState.at_step(1),
            washer_id=uuid.uuid4(),
            stripe_payment_intent_id="pi_late",
        )
        result = await order_service.confirm_payment("pi_late")
        assert result["status"] == OrderStatus.CLAIMED.value

    async def test_unknown_intent(self, order_service) -> None:
        assert await order_service.confirm_payment("pi_unknown") is None


# ============================================================================
# Claim arbitration
# ============================================================================


class TestClaimOrder:
    async def test_claim_assigns_operator(
        self, order_service, create_order, event_channel, session_factory
    ) -> None:
        order = await create_order()
        operator_id = uuid.uuid4()
        subscription = event_channel.subscribe(order.id)

        result = await order_service.claim_order(order.id, operator_id)

        assert result["status"] == OrderStatus.CLAIMED.value
        assert result["washer_id"] == str(operator_id)
        assert result["claimed_at"] is not None
        assert await outbox_types(session_factory, order.id) == [NotificationType.CLAIMED]
        event = subscription.queue.get_nowait()
        assert event.kind == EventKind.CLAIMED
        assert event.status == "claimed"

    async def test_placed_order_is_claimable(self, order_service, create_order) -> None:
        order = await create_order(state=FulfillmentState.awaiting_payment())
        result = await order_service.claim_order(order.id, uuid.uuid4())
        assert result["status"] == OrderStatus.CLAIMED.value

    async def test_already_claimed(self, order_service, create_order) -> None:
        order = await create_order(state=FulfillmentState.at_step(1), washer_id=uuid.uuid4())
        with pytest.raises(OrderUnavailableError):
            await order_service.claim_order(order.id, uuid.uuid4())

    async def test_cancelled_order(self, order_service, create_order) -> None:
        order = await create_order(state=FulfillmentState.cancelled())
        with pytest.raises(OrderUnavailableError):
            await order_service.claim_order(order.id, uuid.uuid4())

    async def test_missing_order(self, order_service) -> None:
        with pytest.raises(OrderNotFoundError):
            await order_service.claim_order(uuid.uuid4(), uuid.uuid4())

    async def test_capacity_limit(
        self, order_service, create_order, session_factory, event_channel, drain_requests
    ) -> None:
        operator_id = uuid.uuid4()
        for _ in range(order_service.settings.max_active_orders_per_operator):
            await create_order(state=FulfillmentState.at_step(2), washer_id=operator_id)
        order = await create_order()
        subscription = event_channel.subscribe(order.id)

        with pytest.raises(OperatorCapacityError) as exc_info:
            await order_service.claim_order(order.id, operator_id)
        assert exc_info.value.context["active_orders"] == 5

        async with session_factory() as session:
            stored = await session.get(type(order), order.id)
        assert stored.washer_id is None
        assert stored.status == OrderStatus.UNCLAIMED
        assert stored.claimed_at is None
        assert await outbox_types(session_factory, order.id) == []
        assert subscription.queue.empty()
        drain_requests.assert_not_awaited()

    async def test_concurrent_claims_single_winner(
        self, session_factory, create_order, stripe_client, evidence_storage,
        event_channel, drain_requests,
    ) -> None:
        order = await create_order()

        async def attempt(operator_id: uuid.UUID):
            async with session_factory() as session:
                service = build_service(
                    session, stripe_client, evidence_storage, event_channel, drain_requests
                )
                return await service.claim_order(order.id, operator_id)

        results = await asyncio.gather(
            attempt(uuid.uuid4()), attempt(uuid.uuid4()), return_exceptions=True
        )

        winners = [r for r in results if isinstance(r, dict)]
        losers = [r for r in results if isinstance(r, Exception)]
        assert len(winners) == 1
        assert len(losers) == 1
        assert isinstance(losers[0], OrderUnavailableError)
        assert await outbox_types(session_factory, order.id) == [NotificationType.CLAIMED]


# ============================================================================
# Step workflow
# ============================================================================


class TestCompleteStep:
    async def test_full_walk(
        self, order_service, create_order, session_factory, evidence_storage, event_channel
    ) -> None:
        order = await create_order()
        operator_id = uuid.uuid4()
        subscription = event_channel.subscribe(order.id)
        await order_service.claim_order(order.id, operator_id)

        for step in range(1, 14):
            result = await order_service.complete_step(
                order.id, operator_id, step, evidence_for(step, order.id)
            )
            assert result["replayed"] is False

        assert result["status"] == OrderStatus.COMPLETED.value
        assert result["current_step"] == 13
        assert result["completed_at"] is not None
        assert result["bag_count"] == 2
        assert set(result["step_photos"]) == {"4", "13"}
        assert result["step_photos"]["13"] == handoff_photo(order.id)
        assert len(result["step_completed_at"]) == 13
        evidence_storage.store_step_photo.assert_awaited_once()

        assert await outbox_types(session_factory, order.id) == [
            NotificationType.CLAIMED,
            NotificationType.PICKED_UP,
            NotificationType.WASHING,
            NotificationType.DRYING,
            NotificationType.FOLDED,
            NotificationType.DELIVERED,
            NotificationType.COMPLETED,
        ]

        earning = await EarningsService(order_service.session).get_for_order(order.id)
        assert earning is not None
        assert earning.operator_id == operator_id
        assert earning.payout_amount_cents == 3500

        assert subscription.queue.qsize() == 14

    async def test_status_follows_pointer(self, order_service, create_order) -> None:
        operator_id = uuid.uuid4()
        order = await create_order(state=FulfillmentState.at_step(7), washer_id=operator_id)

        result = await order_service.complete_step(order.id, operator_id, 7)

        assert result["current_step"] == 8
        assert result["status"] == OrderStatus.WASHING.value

    async def test_other_operator_rejected(self, order_service, create_order) -> None:
        order = await create_order(state=FulfillmentState.at_step(2), washer_id=uuid.uuid4())
        with pytest.raises(OrderPermissionError):
            await order_service.complete_step(order.id, uuid.uuid4(), 2)

    async def test_out_of_order_rejected(self, order_service, create_order) -> None:
        operator_id = uuid.uuid4()
        order = await create_order(state=FulfillmentState.at_step(2), washer_id=operator_id)

        with pytest.raises(StepOutOfOrderError) as exc_info:
            await order_service.complete_step(order.id, operator_id, 5)
        assert exc_info.value.context["current_step"] == 2

    async def test_replayed_step_changes_nothing(
        self, order_service, create_order, session_factory, event_channel, drain_requests
    ) -> None:
        operator_id = uuid.uuid4()
        order = await create_order(state=FulfillmentState.at_step(8), washer_id=operator_id)
        subscription = event_channel.subscribe(order.id)

        result = await order_service.complete_step(order.id, operator_id, 7)

        assert result["replayed"] is True
        assert result["current_step"] == 8
        assert await outbox_types(session_factory, order.id) == []
        assert subscription.queue.empty()
        drain_requests.assert_not_awaited()

    async def test_photo_required(self, order_service, create_order) -> None:
        operator_id = uuid.uuid4()
        order = await create_order(state=FulfillmentState.at_step(4), washer_id=operator_id)

        with pytest.raises(EvidenceRequiredError) as exc_info:
            await order_service.complete_step(order.id, operator_id, 4, StepEvidence())
        assert exc_info.value.missing == ["photo"]

    @pytest.mark.parametrize(
        "reference",
        [
            "   ",
            "https://cdn.example/handoff.jpg",
            "https://evidence.test/orders/{other}/step-4/photo.jpg",
            "https://evidence.test/orders/{order}/step-3/photo.jpg",
        ],
    )
    async def test_unstored_photo_reference_rejected(
        self, order_service, create_order, session_factory, evidence_storage, reference
    ) -> None:
        operator_id = uuid.uuid4()
        order = await create_order(state=FulfillmentState.at_step(4), washer_id=operator_id)
        reference = reference.format(order=order.id, other=uuid.uuid4())

        with pytest.raises(EvidenceRequiredError) as exc_info:
            await order_service.complete_step(
                order.id, operator_id, 4, StepEvidence(photo_reference=reference)
            )
        assert exc_info.value.missing == ["photo"]

        async with session_factory() as session:
            stored = await session.get(type(order), order.id)
        assert stored.current_step == 4
        assert not stored.step_photos
        evidence_storage.store_step_photo.assert_not_awaited()

    async def test_stored_photo_reference_accepted(self, order_service, create_order) -> None:
        operator_id = uuid.uuid4()
        order = await create_order(state=FulfillmentState.at_step(4), washer_id=operator_id)
        reference = f" https://evidence.test/orders/{order.id}/step-4/abc.jpg "

        result = await order_service.complete_step(
            order.id, operator_id, 4, StepEvidence(photo_reference=reference)
        )

        assert result["current_step"] == 5
        assert result["step_photos"]["4"] == reference.strip()

    async def test_photo_lookup_failure(self, order_service, create_order, evidence_storage) -> None:
        operator_id = uuid.uuid4()
        order = await create_order(state=FulfillmentState.at_step(4), washer_id=operator_id)
        evidence_storage.reference_exists.side_effect = EvidenceUploadError("S3 down")

        with pytest.raises(OrderProcessingError):
            await order_service.complete_step(
                order.id,
                operator_id,
                4,
                StepEvidence(photo_reference=f"https://evidence.test/orders/{order.id}/step-4/a.jpg"),
            )

    async def test_earnings_failure_leaves_step_open(
        self, order_service, create_order, session_factory, event_channel, drain_requests
    ) -> None:
        operator_id = uuid.uuid4()
        order = await create_order(state=FulfillmentState.at_step(13), washer_id=operator_id)
        subscription = event_channel.subscribe(order.id)

        with patch.object(
            order_service.earnings,
            "record_for_order",
            side_effect=EarningsServiceError("write failed"),
        ):
            with pytest.raises(OrderProcessingError):
                await order_service.complete_step(
                    order.id, operator_id, 13, evidence_for(13, order.id)
                )

        async with session_factory() as session:
            stored = await session.get(type(order), order.id)
        assert stored.current_step == 13
        assert stored.status == OrderStatus.RETURNED
        assert stored.completed_at is None
        assert await outbox_types(session_factory, order.id) == []
        assert subscription.queue.empty()
        drain_requests.assert_not_awaited()

    async def test_bag_count_required(self, order_service, create_order) -> None:
        operator_id = uuid.uuid4()
        order = await create_order(state=FulfillmentState.at_step(3), washer_id=operator_id)

        with pytest.raises(EvidenceRequiredError) as exc_info:
            await order_service.complete_step(order.id, operator_id, 3)
        assert exc_info.value.missing == ["bag_count"]

    @pytest.mark.parametrize("step_number", [0, 14])
    async def test_invalid_step_number(self, order_service, create_order, step_number) -> None:
        operator_id = uuid.uuid4()
        order = await create_order(state=FulfillmentState.at_step(2), washer_id=operator_id)
        with pytest.raises(OrderValidationError):
            await order_service.complete_step(order.id, operator_id, step_number)

    async def test_unclaimed_order(self, order_service, create_order) -> None:
        operator_id = uuid.uuid4()
        order = await create_order(state=FulfillmentState.cancelled(), washer_id=operator_id)
        with pytest.raises(OrderConflictError):
            await order_service.complete_step(order.id, operator_id, 1)

    async def test_rejected_photo(self, order_service, create_order, evidence_storage) -> None:
        operator_id = uuid.uuid4()
        order = await create_order(state=FulfillmentState.at_step(4), washer_id=operator_id)
        evidence_storage.store_step_photo.side_effect = InvalidEvidenceError(
            "Unsupported photo type text/plain", content_type="text/plain"
        )

        with pytest.raises(OrderValidationError):
            await order_service.complete_step(order.id, operator_id, 4, evidence_for(4))

    async def test_upload_failure(self, order_service, create_order, evidence_storage) -> None:
        operator_id = uuid.uuid4()
        order = await create_order(state=FulfillmentState.at_step(4), washer_id=operator_id)
        evidence_storage.store_step_photo.side_effect = EvidenceUploadError("S3 down")

        with pytest.raises(OrderProcessingError):
            await order_service.complete_step(order.id, operator_id, 4, evidence_for(4))

    async def test_concurrent_submissions_apply_once(
        self, session_factory, create_order, stripe_client, evidence_storage,
        event_channel, drain_requests,
    ) -> None:
        operator_id = uuid.uuid4()
        order = await create_order(state=FulfillmentState.at_step(6), washer_id=operator_id)

        async def submit():
            async with session_factory() as session:
                service = build_service(
                    session, stripe_client, evidence_storage, event_channel, drain_requests
                )
                return await service.complete_step(order.id, operator_id, 6)

        results = await asyncio.gather(submit(), submit())

        assert sorted(r["replayed"] for r in results) == [False, True]
        assert all(r["current_step"] == 7 for r in results)
        assert await outbox_types(session_factory, order.id) == [NotificationType.PICKED_UP]


class TestChecklist:
    async def test_checklist_marks_progress(self, order_service, create_order) -> None:
        operator_id = uuid.uuid4()
        order = await create_order(
            state=FulfillmentState.at_step(11),
            washer_id=operator_id,
            delivery_address="200 Mission St",
        )

        checklist = await order_service.get_checklist(
            order.id, Principal(user_id=operator_id, role=UserRole.WASHER)
        )

        steps = checklist["steps"]
        assert len(steps) == 13
        assert steps[9]["completed"] is True
        assert steps[10]["is_current"] is True
        assert steps[10]["navigation_address"] == "200 Mission St"
        assert steps[0]["navigation_address"] == "100 Valencia St, San Francisco"
        assert steps[12]["requires_photo"] is True

    async def test_other_operator_denied(self, order_service, create_order) -> None:
        order = await create_order(state=FulfillmentState.at_step(3), washer_id=uuid.uuid4())
        with pytest.raises(OrderPermissionError):
            await order_service.get_checklist(
                order.id, Principal(user_id=uuid.uuid4(), role=UserRole.OPERATOR)
            )

    async def test_owner_sees_any(self, order_service, create_order) -> None:
        order = await create_order(state=FulfillmentState.at_step(3), washer_id=uuid.uuid4())
        checklist = await order_service.get_checklist(
            order.id, Principal(user_id=uuid.uuid4(), role=UserRole.OWNER)
        )
        assert checklist["order"]["id"] == str(order.id)


# ============================================================================
# Cancellation and owner tools
# ============================================================================


class TestCancelOrder:
    async def test_cancel_open_order(
        self, order_service, create_order, stripe_client, session_factory
    ) -> None:
        customer_id = uuid.uuid4()
        order = await create_order(
            customer_id=customer_id, stripe_payment_intent_id="pi_paid", paid_at=PAID_AT
        )

        result = await order_service.cancel_order(order.id, customer_id, reason="Plans changed")

        assert result["status"] == OrderStatus.CANCELLED.value
        assert result["cancelled_at"] is not None
        assert "Cancellation reason: Plans changed" in result["special_instructions"]
        stripe_client.create_refund.assert_called_once_with("pi_paid")
        assert await outbox_types(session_factory, order.id) == [NotificationType.CANCELLED]

    async def test_unpaid_order_not_refunded(
        self, order_service, create_order, stripe_client
    ) -> None:
        customer_id = uuid.uuid4()
        order = await create_order(
            state=FulfillmentState.awaiting_payment(),
            customer_id=customer_id,
            stripe_payment_intent_id="pi_unpaid",
        )
        await order_service.cancel_order(order.id, customer_id)
        stripe_client.create_refund.assert_not_called()

    async def test_claimed_before_payment_not_refunded(
        self, order_service, create_order, stripe_client
    ) -> None:
        customer_id = uuid.uuid4()
        order = await create_order(
            state=FulfillmentState.at_step(1),
            customer_id=customer_id,
            washer_id=uuid.uuid4(),
            stripe_payment_intent_id="pi_never_paid",
        )

        result = await order_service.cancel_order(order.id, customer_id)

        assert result["status"] == OrderStatus.CANCELLED.value
        assert result["paid_at"] is None
        stripe_client.create_refund.assert_not_called()

    async def test_confirmed_then_claimed_is_refunded(
        self, order_service, create_order, stripe_client
    ) -> None:
        customer_id = uuid.uuid4()
        order = await create_order(
            state=FulfillmentState.awaiting_payment(),
            customer_id=customer_id,
            stripe_payment_intent_id="pi_then_claimed",
        )
        await order_service.confirm_payment("pi_then_claimed")
        await order_service.claim_order(order.id, uuid.uuid4())

        await order_service.cancel_order(order.id, customer_id)

        stripe_client.create_refund.assert_called_once_with("pi_then_claimed")

    async def test_refund_failure_does_not_undo_cancel(
        self, order_service, create_order, stripe_client
    ) -> None:
        customer_id = uuid.uuid4()
        order = await create_order(
            customer_id=customer_id, stripe_payment_intent_id="pi_x", paid_at=PAID_AT
        )
        stripe_client.create_refund.side_effect = StripeClientError("refund failed")

        result = await order_service.cancel_order(order.id, customer_id)
        assert result["status"] == OrderStatus.CANCELLED.value

    async def test_claimed_before_work_is_cancellable(self, order_service, create_order) -> None:
        customer_id = uuid.uuid4()
        order = await create_order(
            state=FulfillmentState.at_step(1), customer_id=customer_id, washer_id=uuid.uuid4()
        )
        result = await order_service.cancel_order(order.id, customer_id)
        assert result["status"] == OrderStatus.CANCELLED.value

    async def test_work_started(self, order_service, create_order) -> None:
        customer_id = uuid.uuid4()
        order = await create_order(
            state=FulfillmentState.at_step(2), customer_id=customer_id, washer_id=uuid.uuid4()
        )
        with pytest.raises(OrderConflictError):
            await order_service.cancel_order(order.id, customer_id)

    async def test_other_customer(self, order_service, create_order) -> None:
        order = await create_order()
        with pytest.raises(OrderPermissionError):
            await order_service.cancel_order(order.id, uuid.uuid4())


class TestOwnerTools:
    async def test_release_claim(self, order_service, create_order, event_channel) -> None:
        order = await create_order(state=FulfillmentState.at_step(1), washer_id=uuid.uuid4())
        subscription = event_channel.subscribe(order.id)

        result = await order_service.release_claim(order.id)

        assert result["status"] == OrderStatus.UNCLAIMED.value
        assert result["washer_id"] is None
        assert subscription.queue.get_nowait().kind == EventKind.RELEASED

    async def test_release_after_work_started(self, order_service, create_order) -> None:
        order = await create_order(state=FulfillmentState.at_step(3), washer_id=uuid.uuid4())
        with pytest.raises(OrderConflictError):
            await order_service.release_claim(order.id)

    async def test_statistics(self, order_service, create_order) -> None:
        await create_order()
        stats = await order_service.get_statistics()
        assert stats["total_orders"] == 1
        assert stats["by_status"] == {"unclaimed": 1}


# ============================================================================
# Reads
# ============================================================================


class TestReads:
    async def test_customer_sees_own_order(self, order_service, create_order) -> None:
        customer_id = uuid.uuid4()
        order = await create_order(customer_id=customer_id)
        result = await order_service.get_order(
            order.id, Principal(user_id=customer_id, role=UserRole.CUSTOMER)
        )
        assert result["order_number"] == str(order.id)[-8:].upper()

    async def test_stranger_denied(self, order_service, create_order) -> None:
        order = await create_order()
        with pytest.raises(OrderPermissionError):
            await order_service.get_order(
                order.id, Principal(user_id=uuid.uuid4(), role=UserRole.CUSTOMER)
            )

    async def test_operator_lists(self, order_service, create_order) -> None:
        operator_id = uuid.uuid4()
        await create_order(state=FulfillmentState.at_step(2), washer_id=operator_id)
        await create_order()

        mine = await order_service.list_operator_orders(operator_id)
        available = await order_service.list_available_orders("94110")

        assert len(mine) == 1
        assert len(available) == 1
        assert available[0]["status"] == OrderStatus.UNCLAIMED.value
