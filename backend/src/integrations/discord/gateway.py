"""
GuildGateway implementation over discord.py.

Translates discord.Forbidden into RolePermissionError, other HTTP failures
into PlatformRequestError, and keeps the discord.Member / discord.Role
objects behind plain PlatformMember / PlatformRole values.
"""

import logging
from typing import Dict, List, Optional

import discord

from src.integrations.discord.exceptions import PlatformRequestError
from src.services.role_reconciler import (
    GuildGateway,
    MemberNotFoundError,
    PlatformMember,
    PlatformRole,
    RolePermissionError,
)

logger = logging.getLogger(__name__)


def _to_member(member: discord.Member) -> PlatformMember:
    return PlatformMember(
        id=str(member.id),
        display_name=member.display_name,
        bot=member.bot,
        role_ids=frozenset(str(r.id) for r in member.roles),
    )


class DiscordGuildGateway(GuildGateway):
    """One guild, as seen by the bot."""

    def __init__(self, guild: discord.Guild):
        self._guild = guild
        self._members: Dict[str, discord.Member] = {}

    @property
    def guild_id(self) -> str:
        return str(self._guild.id)

    @property
    def name(self) -> str:
        return self._guild.name

    def _request_failed(self, action: str, error: discord.HTTPException) -> PlatformRequestError:
        logger.warning("Discord request failed", extra={
            "server_id": self.guild_id,
            "action": action,
            "status": error.status,
            "error": str(error)
        })
        return PlatformRequestError(
            f"Discord {action} failed with status {error.status}",
            status=error.status,
            server_id=self.guild_id,
        )

    async def list_members(self) -> List[PlatformMember]:
        try:
            members = [m async for m in self._guild.fetch_members(limit=None)]
        except discord.HTTPException as e:
            raise self._request_failed("member list", e) from e
        for member in members:
            self._members[str(member.id)] = member
        return [_to_member(m) for m in members]

    async def fetch_member(self, user_id: str) -> Optional[PlatformMember]:
        try:
            member = await self._resolve(user_id)
        except MemberNotFoundError:
            return None
        return _to_member(member)

    async def _resolve(self, user_id: str) -> discord.Member:
        member = self._members.get(user_id) or self._guild.get_member(int(user_id))
        if member is None:
            try:
                member = await self._guild.fetch_member(int(user_id))
            except discord.NotFound as e:
                raise MemberNotFoundError(self.guild_id, user_id) from e
            except discord.HTTPException as e:
                raise self._request_failed("member lookup", e) from e
        self._members[user_id] = member
        return member

    async def list_roles(self) -> List[PlatformRole]:
        return [PlatformRole(id=str(r.id), name=r.name) for r in self._guild.roles]

    async def create_role(self, name: str, color: int, reason: str) -> PlatformRole:
        try:
            role = await self._guild.create_role(
                name=name,
                colour=discord.Colour(color),
                mentionable=False,
                reason=reason,
            )
        except discord.Forbidden as e:
            raise RolePermissionError(self.guild_id, f"cannot create role {name!r}") from e
        except discord.HTTPException as e:
            raise self._request_failed("role create", e) from e
        return PlatformRole(id=str(role.id), name=role.name)

    def _role(self, role: PlatformRole) -> discord.Role:
        discord_role = self._guild.get_role(int(role.id))
        if discord_role is None:
            # Created moments ago and not cached yet
            discord_role = discord.Object(id=int(role.id))
        return discord_role

    async def add_role(self, member: PlatformMember, role: PlatformRole, reason: str) -> None:
        discord_member = await self._resolve(member.id)
        try:
            await discord_member.add_roles(self._role(role), reason=reason)
        except discord.Forbidden as e:
            raise RolePermissionError(self.guild_id, f"cannot add role {role.name!r}") from e
        except discord.NotFound as e:
            raise MemberNotFoundError(self.guild_id, member.id) from e
        except discord.HTTPException as e:
            raise self._request_failed("role add", e) from e

    async def remove_role(self, member: PlatformMember, role: PlatformRole, reason: str) -> None:
        discord_member = await self._resolve(member.id)
        try:
            await discord_member.remove_roles(self._role(role), reason=reason)
        except discord.Forbidden as e:
            raise RolePermissionError(self.guild_id, f"cannot remove role {role.name!r}") from e
        except discord.NotFound as e:
            raise MemberNotFoundError(self.guild_id, member.id) from e
        except discord.HTTPException as e:
            raise self._request_failed("role remove", e) from e

    def can_manage_roles(self) -> bool:
        me = self._guild.me
        return bool(me is not None and me.guild_permissions.manage_roles)
