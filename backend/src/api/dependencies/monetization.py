"""
MonetizationService dependency.

Builds one service per request from the runtime stored on app.state by
the application lifespan.
"""

from fastapi import Depends, Request
from sqlalchemy.orm import Session

from src.database.session import get_db_session
from src.services.monetization_service import MonetizationRuntime, MonetizationService


def get_monetization_runtime(request: Request) -> MonetizationRuntime:
    runtime = getattr(request.app.state, "monetization_runtime", None)
    if runtime is None:
        runtime = MonetizationRuntime()
        request.app.state.monetization_runtime = runtime
    return runtime


def get_monetization_service(
    runtime: MonetizationRuntime = Depends(get_monetization_runtime),
    db_session: Session = Depends(get_db_session),
) -> MonetizationService:
    return runtime.service(db_session)
