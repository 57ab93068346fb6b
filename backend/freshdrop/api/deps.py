"""
FastAPI dependencies for authentication, authorization and services.

Callers authenticate with the managed auth provider's bearer token; the
principal is resolved from its claims without a database lookup.
"""

from typing import Annotated, Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession

from freshdrop.core.logging import get_logger, set_actor
from freshdrop.core.security import Principal, TokenError, UserRole, authenticate_token
from freshdrop.database.connection import get_db
from freshdrop.services.earnings.service import EarningsService
from freshdrop.services.events.channel import OrderEventChannel, get_event_channel
from freshdrop.services.orders.service import OrderService
from freshdrop.services.payments.stripe_client import StripeClient, get_stripe_client
from freshdrop.services.promotions.service import PromoCodeService

logger = get_logger(__name__)

security = HTTPBearer(auto_error=False)


async def get_current_principal(
    credentials: Annotated[Optional[HTTPAuthorizationCredentials], Depends(security)],
) -> Principal:
    """
    Validate the bearer token and resolve the caller.

    Raises:
        HTTPException: 401 if the token is missing, expired or malformed
    """
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )

    if credentials is None:
        logger.warning("Authentication failed: No credentials provided")
        raise credentials_exception

    try:
        principal = authenticate_token(credentials.credentials)
    except TokenError as e:
        logger.warning("Authentication failed", code=e.code, error=str(e))
        raise credentials_exception

    set_actor(str(principal.user_id), principal.role.value)
    return principal


def require_role(*allowed_roles: UserRole):
    """
    Create a dependency that requires specific user roles.

    Example:
        @router.get("/owner/orders/statistics")
        async def statistics(principal: Annotated[Principal, Depends(require_role(UserRole.OWNER))]):
            ...
    """

    async def role_checker(
        principal: Annotated[Principal, Depends(get_current_principal)],
    ) -> Principal:
        if principal.role not in allowed_roles:
            logger.warning(
                "Access denied: Insufficient permissions",
                user_id=str(principal.user_id),
                user_role=principal.role.value,
                required_roles=[role.value for role in allowed_roles],
            )
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Insufficient permissions",
            )
        return principal

    return role_checker


DatabaseSession = Annotated[AsyncSession, Depends(get_db)]


EventChannelDep = Annotated[OrderEventChannel, Depends(get_event_channel)]


def get_order_service(db: DatabaseSession, channel: EventChannelDep) -> OrderService:
    return OrderService(db, event_channel=channel)


def get_earnings_service(db: DatabaseSession) -> EarningsService:
    return EarningsService(db)


def get_promo_code_service(db: DatabaseSession) -> PromoCodeService:
    return PromoCodeService(db)


CurrentPrincipal = Annotated[Principal, Depends(get_current_principal)]
CurrentCustomer = Annotated[Principal, Depends(require_role(UserRole.CUSTOMER))]
CurrentFulfiller = Annotated[
    Principal, Depends(require_role(UserRole.WASHER, UserRole.OPERATOR))
]
CurrentOwner = Annotated[Principal, Depends(require_role(UserRole.OWNER))]
OrderServiceDep = Annotated[OrderService, Depends(get_order_service)]
EarningsServiceDep = Annotated[EarningsService, Depends(get_earnings_service)]
PromoCodeServiceDep = Annotated[PromoCodeService, Depends(get_promo_code_service)]
StripeClientDep = Annotated[StripeClient, Depends(get_stripe_client)]
