"""Order fulfillment state machine.

An order's progress is a single tagged value, ``FulfillmentState``. The
persisted ``status`` and ``current_step`` columns are both derived from it
and are only ever read back through ``FulfillmentState.from_columns``, which
refuses pairs that disagree.

``OrderStateMachine`` holds the legal moves between states. It is pure: it
neither touches the database nor emits events, the service layer does both
with the transitions it returns.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from freshdrop.core.logging import get_logger
from freshdrop.services.orders.enums import (
    FIRST_STEP,
    TOTAL_STEPS,
    OrderStatus,
    validate_order_status_transition,
)

logger = get_logger(__name__)


class StateTransitionError(Exception):
    """Raised when an invalid state transition is attempted."""

    def __init__(
        self,
        message: str,
        current_state: "FulfillmentState",
        target_state: Optional[OrderStatus] = None,
        **context: Any
    ):
        super().__init__(message)
        self.current_state = current_state
        self.target_state = target_state
        self.context = context


class InconsistentStateError(Exception):
    """Raised when persisted status and step disagree."""

    def __init__(self, message: str, status: Any, current_step: Any):
        super().__init__(message)
        self.status = status
        self.current_step = current_step


class StateTag(str, Enum):
    AWAITING_PAYMENT = "awaiting_payment"
    OPEN = "open"
    IN_FULFILLMENT = "in_fulfillment"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


# Status projection of the in-fulfillment pointer (the next step to perform)
_STEP_STATUS: Dict[int, OrderStatus] = {
    1: OrderStatus.CLAIMED,
    2: OrderStatus.IN_PROGRESS,
    3: OrderStatus.IN_PROGRESS,
    4: OrderStatus.IN_PROGRESS,
    5: OrderStatus.IN_PROGRESS,
    6: OrderStatus.IN_PROGRESS,
    7: OrderStatus.PICKED_UP,
    8: OrderStatus.WASHING,
    9: OrderStatus.DRYING,
    10: OrderStatus.FOLDED,
    11: OrderStatus.DELIVERING,
    12: OrderStatus.RETURNED,
    13: OrderStatus.RETURNED,
}

# Older clients wrote "washed" between the wash and dry steps
_LEGACY_STEP_STATUS: Dict[OrderStatus, Tuple[int, ...]] = {
    OrderStatus.WASHED: (8, 9),
}


def status_for_step(step: int) -> OrderStatus:
    """Status shown to dashboards while ``step`` is the next step to perform."""
    return _STEP_STATUS[step]


@dataclass(frozen=True)
class FulfillmentState:
    """Single source of truth for an order's position in its lifecycle.

    ``step`` is meaningful for ``IN_FULFILLMENT`` (the next step to perform)
    and ``COMPLETED`` (always the last step). Other tags carry the first step
    except ``CANCELLED``, which keeps the pointer it was cancelled at.
    """

    tag: StateTag
    step: int = FIRST_STEP

    def __post_init__(self) -> None:
        if not FIRST_STEP <= self.step <= TOTAL_STEPS:
            raise ValueError(f"Step {self.step} is outside {FIRST_STEP}-{TOTAL_STEPS}")
        if self.tag == StateTag.COMPLETED and self.step != TOTAL_STEPS:
            raise ValueError("A completed order sits on the last step")
        if self.tag in (StateTag.AWAITING_PAYMENT, StateTag.OPEN) and self.step != FIRST_STEP:
            raise ValueError(f"An unclaimed order sits on step {FIRST_STEP}")

    @classmethod
    def awaiting_payment(cls) -> "FulfillmentState":
        return cls(StateTag.AWAITING_PAYMENT)

    @classmethod
    def open(cls) -> "FulfillmentState":
        return cls(StateTag.OPEN)

    @classmethod
    def at_step(cls, step: int) -> "FulfillmentState":
        return cls(StateTag.IN_FULFILLMENT, step)

    @classmethod
    def completed(cls) -> "FulfillmentState":
        return cls(StateTag.COMPLETED, TOTAL_STEPS)

    @classmethod
    def cancelled(cls, step: int = FIRST_STEP) -> "FulfillmentState":
        return cls(StateTag.CANCELLED, step)

    @property
    def status(self) -> OrderStatus:
        """Coarse status projected from the state."""
        if self.tag == StateTag.AWAITING_PAYMENT:
            return OrderStatus.PLACED
        if self.tag == StateTag.OPEN:
            return OrderStatus.UNCLAIMED
        if self.tag == StateTag.COMPLETED:
            return OrderStatus.COMPLETED
        if self.tag == StateTag.CANCELLED:
            return OrderStatus.CANCELLED
        return status_for_step(self.step)

    @property
    def is_claimable(self) -> bool:
        return self.tag in (StateTag.AWAITING_PAYMENT, StateTag.OPEN)

    @property
    def is_terminal(self) -> bool:
        return self.tag in (StateTag.COMPLETED, StateTag.CANCELLED)

    def has_completed(self, step_number: int) -> bool:
        """Whether ``step_number`` is already behind the pointer."""
        if self.tag == StateTag.COMPLETED:
            return step_number <= TOTAL_STEPS
        if self.tag == StateTag.IN_FULFILLMENT:
            return step_number < self.step
        return False

    def to_columns(self) -> Tuple[OrderStatus, int]:
        """The ``(status, current_step)`` pair to persist."""
        return self.status, self.step

    @classmethod
    def from_columns(
        cls, status: Any, current_step: Optional[int]
    ) -> "FulfillmentState":
        """Rebuild the state from persisted columns.

        Raises:
            InconsistentStateError: If the pair cannot describe one state
        """
        step = current_step or FIRST_STEP
        try:
            status = OrderStatus(status)
        except ValueError:
            raise InconsistentStateError(
                f"Unknown order status {status!r}", status, current_step
            )

        try:
            if status == OrderStatus.PLACED:
                return cls(StateTag.AWAITING_PAYMENT, step)
            if status == OrderStatus.UNCLAIMED:
                return cls(StateTag.OPEN, step)
            if status == OrderStatus.COMPLETED:
                return cls(StateTag.COMPLETED, step)
            if status == OrderStatus.CANCELLED:
                return cls(StateTag.CANCELLED, step)
        except ValueError as e:
            raise InconsistentStateError(str(e), status, current_step) from e

        if step in _LEGACY_STEP_STATUS.get(status, ()):
            return cls.at_step(step)

        if _STEP_STATUS.get(step) != status:
            raise InconsistentStateError(
                f"Status {status.value} does not match step {step}",
                status,
                current_step,
            )
        return cls.at_step(step)


@dataclass(frozen=True)
class StepTransition:
    """Result of completing one step."""

    step_number: int
    previous: FulfillmentState
    current: FulfillmentState

    @property
    def pointer_moved(self) -> bool:
        return self.current.step != self.previous.step

    @property
    def status_changed(self) -> bool:
        return self.current.status != self.previous.status

    @property
    def completes_order(self) -> bool:
        return self.current.tag == StateTag.COMPLETED


class OrderStateMachine:
    """Legal moves between fulfillment states.

    Every move validates the coarse status change against the transition
    table as a second line of defence.
    """

    def confirm_payment(self, state: FulfillmentState) -> FulfillmentState:
        if state.tag != StateTag.AWAITING_PAYMENT:
            raise StateTransitionError(
                "Only orders awaiting payment can be confirmed",
                current_state=state,
                target_state=OrderStatus.UNCLAIMED,
            )
        return self._checked(state, FulfillmentState.open())

    def claim(self, state: FulfillmentState) -> FulfillmentState:
        if not state.is_claimable:
            raise StateTransitionError(
                "Order is no longer available to claim",
                current_state=state,
                target_state=OrderStatus.CLAIMED,
            )
        return self._checked(state, FulfillmentState.at_step(FIRST_STEP))

    def release(self, state: FulfillmentState) -> FulfillmentState:
        """Return a claimed order to the pool before any work was done."""
        if state.tag != StateTag.IN_FULFILLMENT or state.step != FIRST_STEP:
            raise StateTransitionError(
                "Only claims with no completed steps can be released",
                current_state=state,
                target_state=OrderStatus.UNCLAIMED,
            )
        return self._checked(state, FulfillmentState.open())

    def cancel(self, state: FulfillmentState) -> FulfillmentState:
        if not state.status.is_cancellable():
            raise StateTransitionError(
                f"Order cannot be cancelled while {state.status.value}",
                current_state=state,
                target_state=OrderStatus.CANCELLED,
            )
        return self._checked(state, FulfillmentState.cancelled(state.step))

    def complete_step(self, state: FulfillmentState, step_number: int) -> StepTransition:
        """Advance past ``step_number``.

        Raises:
            StateTransitionError: If the order is not in fulfillment or the
                step is not the one the pointer is on
        """
        if state.tag != StateTag.IN_FULFILLMENT:
            raise StateTransitionError(
                "Steps can only be completed on a claimed, unfinished order",
                current_state=state,
                step_number=step_number,
            )
        if step_number != state.step:
            raise StateTransitionError(
                f"Step {step_number} cannot be completed while on step {state.step}",
                current_state=state,
                step_number=step_number,
                expected_step=state.step,
            )

        if step_number == TOTAL_STEPS:
            target = FulfillmentState.completed()
        else:
            target = FulfillmentState.at_step(step_number + 1)

        transition = StepTransition(
            step_number=step_number,
            previous=state,
            current=self._checked(state, target),
        )

        logger.debug(
            "Step transition computed",
            step_number=step_number,
            from_status=state.status.value,
            to_status=transition.current.status.value,
            to_step=transition.current.step,
        )
        return transition

    def _checked(
        self, current: FulfillmentState, target: FulfillmentState
    ) -> FulfillmentState:
        if not validate_order_status_transition(current.status, target.status):
            raise StateTransitionError(
                f"Invalid transition from {current.status.value} to {target.status.value}",
                current_state=current,
                target_state=target.status,
            )
        return target
