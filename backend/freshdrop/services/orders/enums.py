"""Order status and classification enums for the laundry order lifecycle.

This module defines the order status vocabulary, the pickup and service
classifications, and the coarse status transition rules that the fulfillment
state machine projects onto.
"""

from enum import Enum
from typing import Dict, Set


TOTAL_STEPS = 13
FIRST_STEP = 1


class OrderStatus(str, Enum):
    """Order lifecycle status.

    Valid transitions:
    - PLACED -> UNCLAIMED (payment confirmed), CLAIMED, CANCELLED
    - UNCLAIMED -> CLAIMED, CANCELLED
    - CLAIMED -> IN_PROGRESS, UNCLAIMED (claim released), CANCELLED
    - IN_PROGRESS -> PICKED_UP
    - PICKED_UP -> WASHING
    - WASHING -> DRYING, WASHED
    - WASHED -> DRYING, FOLDED
    - DRYING -> FOLDED
    - FOLDED -> DELIVERING
    - DELIVERING -> RETURNED
    - RETURNED -> COMPLETED
    - COMPLETED, CANCELLED -> (terminal)
    """

    PLACED = "placed"
    UNCLAIMED = "unclaimed"
    CLAIMED = "claimed"
    IN_PROGRESS = "in_progress"
    PICKED_UP = "picked_up"
    WASHING = "washing"
    WASHED = "washed"
    DRYING = "drying"
    FOLDED = "folded"
    DELIVERING = "delivering"
    RETURNED = "returned"
    COMPLETED = "completed"
    CANCELLED = "cancelled"

    @classmethod
    def from_string(cls, value: str) -> "OrderStatus":
        """Convert string to OrderStatus enum.

        Args:
            value: String representation of status

        Returns:
            OrderStatus enum value

        Raises:
            ValueError: If value is not a valid status
        """
        try:
            return cls(value.lower())
        except ValueError:
            valid_values = ", ".join([s.value for s in cls])
            raise ValueError(
                f"Invalid order status: {value}. "
                f"Valid values are: {valid_values}"
            )

    def is_terminal(self) -> bool:
        """Check if status is a terminal state."""
        return self in TERMINAL_STATUSES

    def is_claimable(self) -> bool:
        """Check if an operator may claim an order in this status."""
        return self in CLAIMABLE_STATUSES

    def is_cancellable(self) -> bool:
        """Check if the customer may still cancel the order."""
        return self in CANCELLABLE_STATUSES

    @property
    def display_name(self) -> str:
        """Customer-facing label."""
        return STATUS_DISPLAY_NAMES[self]


class PickupType(str, Enum):
    """How the laundry reaches the operator."""

    LOCKER = "locker"
    PICKUP_DELIVERY = "pickup_delivery"


class ServiceType(str, Enum):
    """Wash program requested by the customer."""

    WASH_FOLD = "wash_fold"
    DELICATES_AIRDRY = "delicates_airdry"
    WASH_HANG_DRY = "wash_hang_dry"
    EXPRESS = "express"


TERMINAL_STATUSES: Set[OrderStatus] = {
    OrderStatus.COMPLETED,
    OrderStatus.CANCELLED,
}

CLAIMABLE_STATUSES: Set[OrderStatus] = {
    OrderStatus.PLACED,
    OrderStatus.UNCLAIMED,
}

CANCELLABLE_STATUSES: Set[OrderStatus] = {
    OrderStatus.PLACED,
    OrderStatus.UNCLAIMED,
    OrderStatus.CLAIMED,
}

STATUS_DISPLAY_NAMES: Dict[OrderStatus, str] = {
    OrderStatus.PLACED: "Awaiting payment",
    OrderStatus.UNCLAIMED: "Looking for an operator",
    OrderStatus.CLAIMED: "Operator assigned",
    OrderStatus.IN_PROGRESS: "Pickup in progress",
    OrderStatus.PICKED_UP: "Picked up",
    OrderStatus.WASHING: "Washing",
    OrderStatus.WASHED: "Washed",
    OrderStatus.DRYING: "Drying",
    OrderStatus.FOLDED: "Folded",
    OrderStatus.DELIVERING: "Out for delivery",
    OrderStatus.RETURNED: "Delivered, awaiting handoff",
    OrderStatus.COMPLETED: "Completed",
    OrderStatus.CANCELLED: "Cancelled",
}


ORDER_STATUS_TRANSITIONS: Dict[OrderStatus, Set[OrderStatus]] = {
    OrderStatus.PLACED: {
        OrderStatus.UNCLAIMED,
        OrderStatus.CLAIMED,
        OrderStatus.CANCELLED,
    },
    OrderStatus.UNCLAIMED: {
        OrderStatus.CLAIMED,
        OrderStatus.CANCELLED,
    },
    OrderStatus.CLAIMED: {
        OrderStatus.IN_PROGRESS,
        OrderStatus.UNCLAIMED,
        OrderStatus.CANCELLED,
    },
    OrderStatus.IN_PROGRESS: {OrderStatus.PICKED_UP},
    OrderStatus.PICKED_UP: {OrderStatus.WASHING},
    OrderStatus.WASHING: {OrderStatus.DRYING, OrderStatus.WASHED},
    OrderStatus.WASHED: {OrderStatus.DRYING, OrderStatus.FOLDED},
    OrderStatus.DRYING: {OrderStatus.FOLDED},
    OrderStatus.FOLDED: {OrderStatus.DELIVERING},
    OrderStatus.DELIVERING: {OrderStatus.RETURNED},
    OrderStatus.RETURNED: {OrderStatus.COMPLETED},
    OrderStatus.COMPLETED: set(),
    OrderStatus.CANCELLED: set(),
}


def validate_order_status_transition(
    current: OrderStatus,
    new: OrderStatus
) -> bool:
    """Validate if a status change is allowed.

    A status staying the same is always valid; several steps share a
    status.
    """
    if current == new:
        return True
    return new in ORDER_STATUS_TRANSITIONS.get(current, set())


def get_allowed_order_transitions(current: OrderStatus) -> Set[OrderStatus]:
    return set(ORDER_STATUS_TRANSITIONS.get(current, set()))
