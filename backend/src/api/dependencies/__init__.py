"""
API Dependencies module.

Provides shared FastAPI dependencies for route handlers.
"""

from src.api.dependencies.internal_auth import require_internal_api_key
from src.api.dependencies.monetization import (
    get_monetization_runtime,
    get_monetization_service,
)

__all__ = [
    "require_internal_api_key",
    "get_monetization_runtime",
    "get_monetization_service",
]
