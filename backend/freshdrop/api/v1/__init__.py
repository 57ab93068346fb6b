"""
API v1 package initialization.
"""

from freshdrop.api.v1.operator import router as operator_router
from freshdrop.api.v1.orders import router as orders_router
from freshdrop.api.v1.owner import router as owner_router
from freshdrop.api.v1.payments import router as payments_router

__all__ = ["operator_router", "orders_router", "owner_router", "payments_router"]
