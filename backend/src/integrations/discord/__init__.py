"""
Discord integration for role management.

Provides the lazily connected platform client and the guild gateway the
role reconciler drives.
"""

from src.integrations.discord.exceptions import (
    PlatformError,
    PlatformRequestError,
    PlatformUnavailableError,
    GuildNotFoundError,
)
from src.integrations.discord.gateway import DiscordGuildGateway
from src.integrations.discord.platform_connection import (
    ConnectionState,
    PlatformClient,
    PlatformConnection,
    build_intents,
)

__all__ = [
    # Connection
    "ConnectionState",
    "PlatformClient",
    "PlatformConnection",
    "build_intents",
    # Gateway
    "DiscordGuildGateway",
    # Exceptions
    "PlatformError",
    "PlatformRequestError",
    "PlatformUnavailableError",
    "GuildNotFoundError",
]
