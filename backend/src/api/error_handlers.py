"""
Exception handlers mapping domain errors to HTTP responses.

Store and platform outages return 503 so webhook senders redeliver.
"""

import logging

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from src.integrations.discord.exceptions import (
    GuildNotFoundError,
    PlatformError,
    PlatformUnavailableError,
)
from src.integrations.stripe.billing_client import BillingAPIError
from src.repositories.base_repo import StoreError
from src.services.role_reconciler import MemberNotFoundError, RolePermissionError

logger = logging.getLogger(__name__)

# Exception type -> (status code, public error label)
ERROR_STATUS = {
    StoreError: (status.HTTP_503_SERVICE_UNAVAILABLE, "store_unavailable"),
    PlatformUnavailableError: (status.HTTP_503_SERVICE_UNAVAILABLE, "platform_unavailable"),
    PlatformError: (status.HTTP_502_BAD_GATEWAY, "platform_request_failed"),
    RolePermissionError: (status.HTTP_403_FORBIDDEN, "missing_role_permission"),
    GuildNotFoundError: (status.HTTP_404_NOT_FOUND, "guild_not_found"),
    MemberNotFoundError: (status.HTTP_404_NOT_FOUND, "member_not_found"),
    BillingAPIError: (status.HTTP_502_BAD_GATEWAY, "billing_unavailable"),
}


async def domain_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    exc_class = next(cls for cls in type(exc).__mro__ if cls in ERROR_STATUS)
    status_code, label = ERROR_STATUS[exc_class]
    logger.warning("Request failed with domain error", extra={
        "path": request.url.path,
        "error_type": type(exc).__name__,
        "error": str(exc),
        "status_code": status_code
    })
    return JSONResponse(
        status_code=status_code,
        content={"error": label, "detail": str(exc)}
    )


def register_error_handlers(app: FastAPI) -> None:
    for exc_class in ERROR_STATUS:
        app.add_exception_handler(exc_class, domain_exception_handler)
