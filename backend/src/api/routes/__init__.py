# API routes
from src.api.routes import health
from src.api.routes import tracking
from src.api.routes import servers
from src.api.routes import webhooks_stripe

__all__ = ["health", "tracking", "servers", "webhooks_stripe"]
