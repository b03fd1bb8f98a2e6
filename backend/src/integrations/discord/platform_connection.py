"""
Discord platform connection.

Owns the discord.py client explicitly instead of a module global. The
client is created lazily on first use and the connection moves through:

    DISCONNECTED -> CONNECTING -> READY
                        |          |
                        v          v
                     DEGRADED <----+   (gateway dropped, start failed, timeout)

ensure_ready() starts (or restarts after the client task died) and waits
for READY. Services get a GuildGateway through get_guild().
"""

import asyncio
import logging
import math
import os
from enum import Enum
from typing import Callable, Dict, Any, List, Optional

import discord

from src.integrations.discord.exceptions import GuildNotFoundError, PlatformUnavailableError
from src.integrations.discord.gateway import DiscordGuildGateway

logger = logging.getLogger(__name__)

DEFAULT_READY_TIMEOUT_SECONDS = 30.0


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    READY = "ready"
    DEGRADED = "degraded"


def build_intents() -> discord.Intents:
    """Members for join/leave and sweeps, message content for admin commands."""
    intents = discord.Intents.default()
    intents.members = True
    intents.guilds = True
    intents.message_content = True
    return intents


class PlatformClient(discord.Client):
    """discord.Client that reports gateway state to its PlatformConnection."""

    def __init__(self, connection: "PlatformConnection", **kwargs):
        kwargs.setdefault("intents", build_intents())
        super().__init__(**kwargs)
        self.connection = connection

    async def on_ready(self):
        logger.info("Discord client ready", extra={
            "bot_user": str(self.user),
            "guild_count": len(self.guilds)
        })
        self.connection.mark_ready()

    async def on_resumed(self):
        self.connection.mark_ready()

    async def on_disconnect(self):
        self.connection.mark_degraded("gateway disconnected")


class PlatformConnection:
    """Lazily initialized, explicitly stateful Discord connection."""

    def __init__(
        self,
        token: Optional[str] = None,
        client_factory: Optional[Callable[["PlatformConnection"], discord.Client]] = None,
        ready_timeout: float = DEFAULT_READY_TIMEOUT_SECONDS,
    ):
        """
        Args:
            token: Bot token (default: DISCORD_BOT_TOKEN)
            client_factory: Builds the client; it must call mark_ready() once
                the gateway is up. Defaults to PlatformClient.
            ready_timeout: Seconds to wait for READY in ensure_ready()
        """
        self.token = token or os.getenv("DISCORD_BOT_TOKEN")
        self._client_factory = client_factory or PlatformClient
        self.ready_timeout = ready_timeout
        self.state = ConnectionState.DISCONNECTED
        self.last_error: Optional[str] = None
        self._client: Optional[discord.Client] = None
        self._runner: Optional[asyncio.Task] = None
        self._ready_event: Optional[asyncio.Event] = None
        self._lock: Optional[asyncio.Lock] = None
        self._closing = False

    @property
    def client(self) -> Optional[discord.Client]:
        return self._client

    @property
    def is_configured(self) -> bool:
        return bool(self.token)

    @property
    def is_ready(self) -> bool:
        return self.state == ConnectionState.READY

    def mark_ready(self) -> None:
        if self.state != ConnectionState.READY:
            logger.info("Platform connection ready", extra={"previous_state": self.state.value})
        self.state = ConnectionState.READY
        self.last_error = None
        if self._ready_event is not None:
            self._ready_event.set()

    def mark_degraded(self, reason: str) -> None:
        if self._closing:
            return
        logger.warning("Platform connection degraded", extra={
            "previous_state": self.state.value,
            "reason": reason
        })
        self.state = ConnectionState.DEGRADED
        self.last_error = reason
        if self._ready_event is not None:
            self._ready_event.clear()

    def _on_runner_done(self, task: asyncio.Task) -> None:
        if task is not self._runner:
            return
        if task.cancelled():
            reason = "client task cancelled"
        elif task.exception() is not None:
            reason = f"client stopped: {task.exception()}"
        else:
            reason = "client stopped"
        self.mark_degraded(reason)

    async def _start(self) -> None:
        if self._client is not None and not self._client.is_closed():
            await self._client.close()

        self._closing = False
        self.state = ConnectionState.CONNECTING
        self._ready_event = asyncio.Event()
        self._client = self._client_factory(self)
        self._runner = asyncio.create_task(self._client.start(self.token))
        self._runner.add_done_callback(self._on_runner_done)
        logger.info("Platform connection starting")

    async def ensure_ready(self) -> discord.Client:
        """
        Return a READY client, connecting or reconnecting as needed.

        Raises:
            PlatformUnavailableError: If no token is configured, the client
                fails to start, or READY is not reached within ready_timeout
        """
        if self.state == ConnectionState.READY and self._client is not None:
            return self._client

        if not self.token:
            raise PlatformUnavailableError("DISCORD_BOT_TOKEN is not configured")

        if self._lock is None:
            self._lock = asyncio.Lock()

        async with self._lock:
            if self.state == ConnectionState.READY and self._client is not None:
                return self._client

            if self._runner is None or self._runner.done():
                await self._start()

            waiter = asyncio.ensure_future(self._ready_event.wait())
            done, _ = await asyncio.wait(
                {waiter, self._runner},
                timeout=self.ready_timeout,
                return_when=asyncio.FIRST_COMPLETED
            )

            if waiter in done:
                return self._client

            waiter.cancel()
            if self._runner.done():
                reason = self.last_error or "client stopped before ready"
            else:
                reason = f"not ready after {self.ready_timeout}s"
            self.mark_degraded(reason)
            raise PlatformUnavailableError(f"Discord client unavailable: {reason}")

    async def get_guild(self, server_id: str) -> DiscordGuildGateway:
        """
        Raises:
            PlatformUnavailableError: If the client cannot become ready
            GuildNotFoundError: If the bot is not in the guild
        """
        client = await self.ensure_ready()
        try:
            guild = client.get_guild(int(server_id))
        except (TypeError, ValueError):
            guild = None
        if guild is None:
            raise GuildNotFoundError(str(server_id))
        return DiscordGuildGateway(guild)

    async def list_guild_ids(self) -> List[str]:
        client = await self.ensure_ready()
        return [str(g.id) for g in client.guilds]

    def health_check(self) -> Dict[str, Any]:
        latency_ms = None
        guild_count = None
        if self.state == ConnectionState.READY and self._client is not None:
            latency = self._client.latency
            if latency is not None and math.isfinite(latency):
                latency_ms = round(latency * 1000, 1)
            guild_count = len(self._client.guilds)

        return {
            "state": self.state.value,
            "configured": self.is_configured,
            "latency_ms": latency_ms,
            "guild_count": guild_count,
            "last_error": self.last_error,
        }

    async def close(self) -> None:
        self._closing = True
        if self._client is not None and not self._client.is_closed():
            await self._client.close()
        if self._runner is not None and not self._runner.done():
            self._runner.cancel()
            await asyncio.gather(self._runner, return_exceptions=True)
        self.state = ConnectionState.DISCONNECTED
        logger.info("Platform connection closed")
