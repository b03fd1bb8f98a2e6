"""
FastAPI application entry point for the Guild Monetization API.

Hosts the tracking, webhook and admin routes and, when DISCORD_BOT_TOKEN is
set, the Discord bot on the same event loop.
"""

import os
import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware

from src.api.error_handlers import register_error_handlers
from src.api.routes import health
from src.api.routes import tracking
from src.api.routes import servers
from src.api.routes import webhooks_stripe
from src.config.monetization import get_monetization_config
from src.database.session import get_session_factory
from src.integrations.discord.bot import bot_factory
from src.integrations.discord.exceptions import PlatformUnavailableError
from src.integrations.discord.platform_connection import PlatformConnection
from src.integrations.stripe.billing_client import StripeBillingClient
from src.services.monetization_service import MonetizationRuntime

# Configure structured logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


def _log_connect_result(task: asyncio.Task) -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if isinstance(exc, PlatformUnavailableError):
        logger.warning("Discord connection not ready at startup", extra={"error": str(exc)})
    elif exc is not None:
        logger.error("Discord connection failed at startup", extra={"error": str(exc)})


def build_runtime() -> MonetizationRuntime:
    """Wire the process-wide collaborators from the environment."""
    runtime = MonetizationRuntime(config=get_monetization_config())

    if os.getenv("STRIPE_SECRET_KEY"):
        runtime.billing_client = StripeBillingClient()
    else:
        logger.warning("STRIPE_SECRET_KEY not set; customer metadata lookups disabled")

    if os.getenv("DISCORD_BOT_TOKEN"):
        runtime.platform = PlatformConnection(
            client_factory=bot_factory(runtime, lambda: get_session_factory()())
        )
    else:
        logger.warning("DISCORD_BOT_TOKEN not set; role sync disabled")

    return runtime


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events."""
    # Startup
    logger.info("Starting Guild Monetization API")

    database_url = os.getenv("DATABASE_URL")
    if not database_url:
        logger.error("DATABASE_URL is not set. Tracking and webhook endpoints will return 503.")
        app.state.database_configured = False
    else:
        # Mask credentials for safe logging
        masked = database_url.split("@")[-1] if "@" in database_url else "(local)"
        logger.info("DATABASE_URL configured", extra={"host_db": masked})
        app.state.database_configured = True

    runtime = build_runtime()
    app.state.monetization_runtime = runtime

    if runtime.platform is not None:
        connect = asyncio.create_task(runtime.platform.ensure_ready())
        connect.add_done_callback(_log_connect_result)

    yield

    # Shutdown
    logger.info("Shutting down Guild Monetization API")
    if runtime.platform is not None:
        await runtime.platform.close()


# Create FastAPI app
app = FastAPI(
    title="Guild Monetization API",
    description="Referral attribution and paid-role reconciliation for Discord guilds",
    version="1.0.0",
    lifespan=lifespan
)

cors_origins = os.getenv("CORS_ORIGINS", "http://localhost:3000").split(",")

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

register_error_handlers(app)

# Include health route (bypasses authentication)
app.include_router(health.router)

# Include tracking routes (internal API key)
app.include_router(tracking.router)

# Include server aggregate and reconcile routes (internal API key)
app.include_router(servers.router)

# Include Stripe webhook routes (uses signature verification, not the API key)
app.include_router(webhooks_stripe.router)


# Global exception handler
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Handle unhandled exceptions with proper logging."""
    logger.error(
        "Unhandled exception",
        extra={
            "error": str(exc),
            "error_type": type(exc).__name__,
            "path": request.url.path
        },
        exc_info=True
    )

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "error": "Internal server error",
            "detail": "An unexpected error occurred"
        }
    )


if __name__ == "__main__":
    import uvicorn

    port = int(os.getenv("PORT", 8000))
    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=port,
        reload=os.getenv("ENV") == "development"
    )
