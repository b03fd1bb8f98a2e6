"""
Internal API key dependency.

Tracking and admin routes are called by the bot process and operator
tooling, not by end users. When INTERNAL_API_KEY is set, every such request
must carry it in the X-Internal-Api-Key header.
"""

import hmac
import logging
import os
from typing import Optional

from fastapi import Header, HTTPException, status

logger = logging.getLogger(__name__)


async def require_internal_api_key(
    x_internal_api_key: Optional[str] = Header(None, alias="X-Internal-Api-Key"),
) -> None:
    """Raises 401 if a key is configured and the header does not match."""
    expected = os.getenv("INTERNAL_API_KEY")
    if not expected:
        return

    if not x_internal_api_key or not hmac.compare_digest(x_internal_api_key, expected):
        logger.warning("Rejected internal request with missing or invalid API key")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid internal API key"
        )
