"""Translation of service and repository errors into HTTP errors."""

from typing import Any, Union

from fastapi import HTTPException, status

from freshdrop.core.logging import get_logger
from freshdrop.services.orders.repository import OrderNotFoundError, OrderRepositoryError
from freshdrop.services.orders.service import (
    EvidenceRequiredError,
    OrderConflictError,
    OrderPermissionError,
    OrderProcessingError,
    OrderServiceError,
    OrderValidationError,
)

logger = get_logger(__name__)

_STATUS_BY_ERROR = (
    (OrderNotFoundError, status.HTTP_404_NOT_FOUND),
    (OrderValidationError, status.HTTP_400_BAD_REQUEST),
    (OrderPermissionError, status.HTTP_403_FORBIDDEN),
    (OrderConflictError, status.HTTP_409_CONFLICT),
    (OrderProcessingError, status.HTTP_502_BAD_GATEWAY),
)


def to_http_exception(
    error: Union[OrderServiceError, OrderRepositoryError],
    operation: str,
    **log_context: Any,
) -> HTTPException:
    """
    Map an order error to the HTTP error the API returns for it.

    Client errors log at warning, everything else at error.
    """
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    for error_class, code in _STATUS_BY_ERROR:
        if isinstance(error, error_class):
            status_code = code
            break

    log = logger.warning if status_code < 500 else logger.error
    log(
        f"{operation} failed",
        error=str(error),
        error_type=type(error).__name__,
        status_code=status_code,
        **log_context,
    )

    if isinstance(error, EvidenceRequiredError):
        detail: Any = {"message": str(error), "missing": error.missing}
    elif isinstance(error, OrderValidationError) and "errors" in error.context:
        detail = {"message": str(error), "errors": error.context["errors"]}
    elif status_code == status.HTTP_500_INTERNAL_SERVER_ERROR:
        detail = "Internal server error"
    else:
        detail = str(error)

    return HTTPException(status_code=status_code, detail=detail)
