"""Step transition to customer notification mapping.

Only a handful of step transitions are worth telling the customer about.
The map is keyed on the step the order moves *into*; every other move is
silent.
"""

from typing import Dict, Optional
from uuid import UUID

from freshdrop.database.models.notification import NotificationType
from freshdrop.services.orders.state_machine import StepTransition

STEP_NOTIFICATIONS: Dict[int, NotificationType] = {
    7: NotificationType.PICKED_UP,
    8: NotificationType.WASHING,
    9: NotificationType.DRYING,
    10: NotificationType.FOLDED,
    12: NotificationType.DELIVERED,
    13: NotificationType.COMPLETED,
}


def format_order_number(order_id: UUID | str) -> str:
    """Last 8 characters of the order id, upper-cased."""
    return str(order_id)[-8:].upper()


def notification_for_step(new_step: int) -> Optional[NotificationType]:
    return STEP_NOTIFICATIONS.get(new_step)


def notification_for_transition(transition: StepTransition) -> Optional[NotificationType]:
    """Notification owed for a completed step, if any.

    Completing the last step leaves the pointer where it was, so it does not
    repeat the event already sent when the order entered that step.
    """
    if not transition.pointer_moved:
        return None
    return notification_for_step(transition.current.step)
