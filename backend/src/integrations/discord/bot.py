"""
Discord bot event wiring.

Forwards guild events to MonetizationService, one database session per
event:
- on_member_join: record the join, assign the member's role
- on_member_remove: record the leave
- on_guild_join: create the standardized roles and sweep the guild
- "!assignroles" (administrators only): sweep and reply with the counts
"""

import logging
from contextlib import contextmanager
from typing import Callable, Iterator

import discord
from sqlalchemy.orm import Session

from src.integrations.discord.platform_connection import PlatformClient, PlatformConnection
from src.services.monetization_service import MonetizationRuntime, MonetizationService

logger = logging.getLogger(__name__)

ASSIGN_ROLES_COMMAND = "!assignroles"


class MonetizationBot(PlatformClient):
    """Platform client that also handles membership events."""

    def __init__(
        self,
        connection: PlatformConnection,
        runtime: MonetizationRuntime,
        session_factory: Callable[[], Session],
        **kwargs,
    ):
        super().__init__(connection, **kwargs)
        self.runtime = runtime
        self.session_factory = session_factory

    @contextmanager
    def _service(self) -> Iterator[MonetizationService]:
        db = self.session_factory()
        try:
            yield self.runtime.service(db)
        finally:
            db.close()

    async def on_ready(self):
        await super().on_ready()
        for guild in self.guilds:
            await self._prepare_guild(guild)

    async def _prepare_guild(self, guild: discord.Guild) -> None:
        with self._service() as service:
            try:
                gateway = await self.connection.get_guild(str(guild.id))
                await service.reconciler.ensure_roles(gateway)
            except Exception as e:
                logger.error("Failed to prepare guild roles", extra={
                    "server_id": str(guild.id),
                    "error": str(e)
                })

    async def on_member_join(self, member: discord.Member):
        if member.bot:
            return
        server_id, user_id = str(member.guild.id), str(member.id)
        with self._service() as service:
            try:
                outcome = await service.on_member_joined(server_id, user_id)
            except Exception:
                logger.error("Failed to handle member join", extra={
                    "server_id": server_id,
                    "user_id": user_id
                }, exc_info=True)
                return

        logger.info("Member join handled", extra={
            "server_id": server_id,
            "user_id": user_id,
            "invite_code": outcome.record.invite_code,
            "role": outcome.role.assigned_role if outcome.role else None
        })

    async def on_member_remove(self, member: discord.Member):
        if member.bot:
            return
        server_id, user_id = str(member.guild.id), str(member.id)
        with self._service() as service:
            try:
                await service.on_member_left(server_id, user_id)
            except Exception:
                logger.error("Failed to handle member leave", extra={
                    "server_id": server_id,
                    "user_id": user_id
                }, exc_info=True)

    async def on_guild_join(self, guild: discord.Guild):
        server_id = str(guild.id)
        logger.info("Joined guild", extra={"server_id": server_id, "guild_name": guild.name})
        with self._service() as service:
            try:
                summary = await service.reconcile_all_roles(server_id)
            except Exception:
                logger.error("Initial role sweep failed", extra={"server_id": server_id}, exc_info=True)
                return
        logger.info("Initial role sweep finished", extra=summary.to_dict())

    async def on_message(self, message: discord.Message):
        if message.author.bot or message.guild is None:
            return
        if message.content.strip() != ASSIGN_ROLES_COMMAND:
            return

        permissions = getattr(message.author, "guild_permissions", None)
        if permissions is None or not permissions.administrator:
            await message.reply("You need administrator permission to run this command.")
            return

        server_id = str(message.guild.id)
        await message.reply("Updating member roles...")
        with self._service() as service:
            try:
                summary = await service.reconcile_all_roles(server_id)
            except Exception as e:
                logger.error("Manual role sweep failed", extra={"server_id": server_id}, exc_info=True)
                await message.reply(f"Role update failed: {e}")
                return

        await message.reply(
            f"Role update complete: {summary.updated_count} updated, {summary.error_count} errors."
        )


def bot_factory(runtime: MonetizationRuntime, session_factory: Callable[[], Session]):
    """client_factory for PlatformConnection that builds a MonetizationBot."""
    def _build(connection: PlatformConnection) -> MonetizationBot:
        return MonetizationBot(connection, runtime, session_factory)
    return _build
