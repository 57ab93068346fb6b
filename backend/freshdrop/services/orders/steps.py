"""Canonical 13-step fulfillment checklist.

Each claimed order is worked through the same ordered list of steps. A step
may gate completion on a photo, on a confirmed bag count, and may point the
operator at the pickup or delivery address. Only the label step and the
final handoff are photo-gated.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional, Tuple

from freshdrop.services.orders.enums import FIRST_STEP, TOTAL_STEPS


class FulfillmentPhase(str, Enum):
    """Coarse grouping of steps for dashboards."""

    PICKUP = "pickup"
    WASH = "wash"
    DRY_FOLD = "dry_fold"
    DELIVERY = "delivery"
    HANDOFF = "handoff"


class NavigationTarget(str, Enum):
    NONE = "none"
    PICKUP = "pickup"
    DELIVERY = "delivery"


@dataclass(frozen=True)
class StepDefinition:
    """One entry of the fulfillment checklist."""

    number: int
    phase: FulfillmentPhase
    title: str
    description: str
    instructions: Tuple[str, ...] = ()
    requires_photo: bool = False
    requires_bag_count: bool = False
    navigation: NavigationTarget = NavigationTarget.NONE

    @property
    def is_terminal(self) -> bool:
        return self.number == TOTAL_STEPS

    def to_dict(self) -> Dict[str, object]:
        return {
            "number": self.number,
            "phase": self.phase.value,
            "title": self.title,
            "description": self.description,
            "instructions": list(self.instructions),
            "requires_photo": self.requires_photo,
            "requires_bag_count": self.requires_bag_count,
            "navigation": self.navigation.value,
        }


@dataclass(frozen=True)
class PhotoUpload:
    """Raw photo bytes submitted with a step."""

    content: bytes
    content_type: str
    filename: Optional[str] = None


@dataclass
class StepEvidence:
    """Evidence an operator submits when completing a step.

    ``photo`` is uploaded by the engine; ``photo_reference`` is the URL of an
    evidence image already stored for this order and step. Either satisfies a
    photo-gated step once the reference is verified against storage.
    """

    photo: Optional[PhotoUpload] = None
    photo_reference: Optional[str] = None
    bag_count: Optional[int] = None
    notes: Optional[str] = None

    @property
    def has_photo(self) -> bool:
        return self.photo is not None or bool(self.reference)

    @property
    def reference(self) -> Optional[str]:
        if self.photo_reference is None:
            return None
        return self.photo_reference.strip() or None


FULFILLMENT_STEPS: Tuple[StepDefinition, ...] = (
    StepDefinition(
        number=1,
        phase=FulfillmentPhase.PICKUP,
        title="Head to pickup",
        description="Drive to the customer's pickup location.",
        instructions=(
            "Open the map and start navigation",
            "Check the pickup window before leaving",
        ),
        navigation=NavigationTarget.PICKUP,
    ),
    StepDefinition(
        number=2,
        phase=FulfillmentPhase.PICKUP,
        title="Collect laundry",
        description="Find the bags at the door or in the assigned locker.",
        instructions=(
            "Read the special instructions",
            "Contact the customer if the bags are not where expected",
        ),
        navigation=NavigationTarget.PICKUP,
    ),
    StepDefinition(
        number=3,
        phase=FulfillmentPhase.PICKUP,
        title="Confirm bag count",
        description="Count the bags you collected.",
        instructions=("Enter the number of bags collected",),
        requires_bag_count=True,
    ),
    StepDefinition(
        number=4,
        phase=FulfillmentPhase.PICKUP,
        title="Label bags",
        description="Tag every bag with the order number and photograph them.",
        instructions=(
            "Attach a FreshDrop tag to each bag",
            "Take one photo showing all tagged bags",
        ),
        requires_photo=True,
    ),
    StepDefinition(
        number=5,
        phase=FulfillmentPhase.PICKUP,
        title="Depart pickup",
        description="Load the bags and leave the pickup location.",
    ),
    StepDefinition(
        number=6,
        phase=FulfillmentPhase.WASH,
        title="Drop off at wash facility",
        description="Bring the bags to your wash station and sort them.",
        instructions=("Sort by color and fabric",),
    ),
    StepDefinition(
        number=7,
        phase=FulfillmentPhase.WASH,
        title="Start wash cycle",
        description="Wash according to the requested service and preferences.",
        instructions=(
            "Use the customer's detergent preference",
            "Use the customer's water temperature preference",
        ),
    ),
    StepDefinition(
        number=8,
        phase=FulfillmentPhase.DRY_FOLD,
        title="Move to dryer",
        description="Dry the load, or hang items for air-dry services.",
    ),
    StepDefinition(
        number=9,
        phase=FulfillmentPhase.DRY_FOLD,
        title="Fold and package",
        description="Fold everything and pack it back into the bags.",
    ),
    StepDefinition(
        number=10,
        phase=FulfillmentPhase.DELIVERY,
        title="Relabel for delivery",
        description="Check the tags and attach the delivery label.",
    ),
    StepDefinition(
        number=11,
        phase=FulfillmentPhase.DELIVERY,
        title="Head to delivery",
        description="Drive to the delivery address.",
        navigation=NavigationTarget.DELIVERY,
    ),
    StepDefinition(
        number=12,
        phase=FulfillmentPhase.DELIVERY,
        title="Arrive at delivery",
        description="Drop the bags at the door or in the assigned locker.",
        navigation=NavigationTarget.DELIVERY,
    ),
    StepDefinition(
        number=13,
        phase=FulfillmentPhase.HANDOFF,
        title="Hand off and photograph",
        description="Photograph the delivered bags to close the order.",
        instructions=("Take one photo showing the bags at the drop-off point",),
        requires_photo=True,
    ),
)

_STEPS_BY_NUMBER: Dict[int, StepDefinition] = {
    step.number: step for step in FULFILLMENT_STEPS
}


def get_step(number: int) -> StepDefinition:
    """Look up a step definition.

    Raises:
        ValueError: If the number is outside the checklist
    """
    try:
        return _STEPS_BY_NUMBER[number]
    except KeyError:
        raise ValueError(
            f"Step {number} is outside the checklist ({FIRST_STEP}-{TOTAL_STEPS})"
        )


def photo_gated_steps() -> List[int]:
    return [step.number for step in FULFILLMENT_STEPS if step.requires_photo]


def missing_evidence(step: StepDefinition, evidence: Optional[StepEvidence]) -> List[str]:
    """List the evidence fields a submission lacks for ``step``.

    An empty list means the step may be completed.
    """
    evidence = evidence or StepEvidence()
    missing = []

    if step.requires_photo and not evidence.has_photo:
        missing.append("photo")

    if step.requires_bag_count:
        if evidence.bag_count is None or evidence.bag_count < 1:
            missing.append("bag_count")

    return missing


def resolve_navigation_address(
    step: StepDefinition,
    pickup_address: Optional[str],
    delivery_address: Optional[str],
) -> Optional[str]:
    """Address the operator's map should show for ``step``.

    Delivery steps fall back to the pickup address when the order has no
    separate delivery address.
    """
    if step.navigation == NavigationTarget.PICKUP:
        return pickup_address
    if step.navigation == NavigationTarget.DELIVERY:
        return delivery_address or pickup_address
    return None
