"""
Role reconciler.

Drives a member's platform roles to match entitlement: exactly one of the
two standardized roles (Paid or Free) per member. The platform is the
source of truth for what IS assigned; EntitlementResolver for what SHOULD be.

Convergence is remove-both-then-add-correct rather than a diff, so members
holding both roles or neither end in the same state as everyone else.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional, Tuple

from src.config.monetization import MonetizationConfig, RoleSpec
from src.services.entitlement_resolver import EntitlementResolver

logger = logging.getLogger(__name__)

RECONCILE_REASON = "Subscription role reconciliation"


class RolePermissionError(Exception):
    """The bot lacks role-management permission in the guild."""

    def __init__(self, guild_id: str, message: str = "missing Manage Roles permission"):
        self.guild_id = guild_id
        super().__init__(f"Guild {guild_id}: {message}")


class MemberNotFoundError(Exception):
    """The member is not (or no longer) in the guild."""

    def __init__(self, guild_id: str, user_id: str):
        self.guild_id = guild_id
        self.user_id = user_id
        super().__init__(f"Member {user_id} not found in guild {guild_id}")


@dataclass(frozen=True)
class PlatformRole:
    id: str
    name: str


@dataclass
class PlatformMember:
    id: str
    display_name: str = ""
    bot: bool = False
    role_ids: frozenset = field(default_factory=frozenset)


class GuildGateway(ABC):
    """
    The slice of the chat platform the reconciler needs, for one guild.

    Implementations translate platform permission failures into
    RolePermissionError.
    """

    @property
    @abstractmethod
    def guild_id(self) -> str:
        pass

    @abstractmethod
    async def list_members(self) -> List[PlatformMember]:
        pass

    @abstractmethod
    async def fetch_member(self, user_id: str) -> Optional[PlatformMember]:
        """Return the member, or None if they are not in the guild."""
        pass

    @abstractmethod
    async def list_roles(self) -> List[PlatformRole]:
        pass

    @abstractmethod
    async def create_role(self, name: str, color: int, reason: str) -> PlatformRole:
        pass

    @abstractmethod
    async def add_role(self, member: PlatformMember, role: PlatformRole, reason: str) -> None:
        pass

    @abstractmethod
    async def remove_role(self, member: PlatformMember, role: PlatformRole, reason: str) -> None:
        """Removing a role the member does not hold is a no-op."""
        pass

    @abstractmethod
    def can_manage_roles(self) -> bool:
        pass


@dataclass
class MemberReconcileResult:
    user_id: str
    entitled: bool
    assigned_role: str


@dataclass
class ReconcileSummary:
    """Outcome of a full-guild sweep."""

    server_id: str
    total_members: int = 0
    updated_count: int = 0
    error_count: int = 0
    skipped_bots: int = 0
    cancelled: bool = False
    start_time: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict:
        duration = (datetime.now(timezone.utc) - self.start_time).total_seconds()
        return {
            "server_id": self.server_id,
            "total_members": self.total_members,
            "updated_count": self.updated_count,
            "error_count": self.error_count,
            "skipped_bots": self.skipped_bots,
            "cancelled": self.cancelled,
            "duration_seconds": round(duration, 2),
        }


class RoleReconciler:
    """Keeps Paid/Free roles in lockstep with entitlement."""

    def __init__(self, resolver: EntitlementResolver, config: MonetizationConfig):
        self.resolver = resolver
        self.config = config

    async def ensure_roles(self, guild: GuildGateway) -> Tuple[PlatformRole, PlatformRole]:
        """
        Make sure both standardized roles exist in the guild.

        Returns:
            (paid_role, free_role)

        Raises:
            RolePermissionError: Before any mutation, if the bot cannot manage roles
        """
        if not guild.can_manage_roles():
            logger.error("Missing role-management permission", extra={
                "server_id": guild.guild_id
            })
            raise RolePermissionError(guild.guild_id)

        existing = {role.name: role for role in await guild.list_roles()}
        paid = await self._ensure_role(guild, existing, self.config.paid_role)
        free = await self._ensure_role(guild, existing, self.config.free_role)
        return paid, free

    async def _ensure_role(self, guild: GuildGateway, existing: dict, spec: RoleSpec) -> PlatformRole:
        role = existing.get(spec.name)
        if role is not None:
            return role

        role = await guild.create_role(spec.name, spec.color, reason="Standardized membership role")
        existing[spec.name] = role
        logger.info("Created membership role", extra={
            "server_id": guild.guild_id,
            "role_name": spec.name,
            "role_id": role.id
        })
        return role

    async def reconcile_member(
        self,
        guild: GuildGateway,
        member: PlatformMember,
        server_id: str,
        roles: Optional[Tuple[PlatformRole, PlatformRole]] = None,
    ) -> MemberReconcileResult:
        """
        Leave the member holding exactly the role entitlement calls for.

        Args:
            guild: Guild the member belongs to
            member: Member to reconcile
            server_id: Server the entitlement is scoped to
            roles: Pre-resolved (paid, free) roles; resolved here when omitted

        Raises:
            RolePermissionError: If the bot cannot manage roles
            StoreError: If entitlement cannot be read
        """
        entitled = self.resolver.is_entitled(server_id, member.id)

        if roles is None:
            roles = await self.ensure_roles(guild)
        paid, free = roles
        target = paid if entitled else free

        await guild.remove_role(member, paid, reason=RECONCILE_REASON)
        await guild.remove_role(member, free, reason=RECONCILE_REASON)
        await guild.add_role(member, target, reason=RECONCILE_REASON)

        logger.info("Member role reconciled", extra={
            "server_id": server_id,
            "user_id": member.id,
            "entitled": entitled,
            "role": target.name
        })

        return MemberReconcileResult(user_id=member.id, entitled=entitled, assigned_role=target.name)

    async def reconcile_user(
        self,
        guild: GuildGateway,
        user_id: str,
        server_id: str,
    ) -> MemberReconcileResult:
        """
        Fetch a member by id and reconcile them.

        Raises:
            MemberNotFoundError: If the user is not in the guild
            RolePermissionError: If the bot cannot manage roles
        """
        member = await guild.fetch_member(user_id)
        if member is None:
            raise MemberNotFoundError(guild.guild_id, user_id)
        return await self.reconcile_member(guild, member, server_id)

    async def reconcile_all(
        self,
        guild: GuildGateway,
        server_id: str,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> ReconcileSummary:
        """
        Reconcile every non-bot member of a guild.

        Per-member failures are counted and the sweep continues. Permission
        loss stops the whole sweep. The sweep stops between members when
        cancel_event is set; if the task itself is cancelled, the member
        being processed finishes its role changes before CancelledError
        propagates.

        Raises:
            RolePermissionError: If the bot cannot manage roles
            PlatformRequestError: If the member list cannot be fetched
        """
        summary = ReconcileSummary(server_id=server_id)
        roles = await self.ensure_roles(guild)
        members = await guild.list_members()

        logger.info("Starting role sweep", extra={
            "server_id": server_id,
            "member_count": len(members)
        })

        first = True
        for member in members:
            if member.bot:
                summary.skipped_bots += 1
                continue

            if cancel_event is not None and cancel_event.is_set():
                summary.cancelled = True
                logger.info("Role sweep cancelled", extra=summary.to_dict())
                break

            if not first and self.config.sweep_delay_seconds > 0:
                await asyncio.sleep(self.config.sweep_delay_seconds)
            first = False

            summary.total_members += 1
            task = asyncio.ensure_future(self.reconcile_member(guild, member, server_id, roles))
            try:
                await asyncio.shield(task)
                summary.updated_count += 1
            except asyncio.CancelledError:
                logger.info("Role sweep interrupted, finishing current member", extra={
                    "server_id": server_id,
                    "user_id": member.id
                })
                await asyncio.wait([task])
                if not task.cancelled() and task.exception() is not None:
                    logger.error("Member reconcile failed during shutdown", extra={
                        "server_id": server_id,
                        "user_id": member.id,
                        "error": str(task.exception())
                    })
                raise
            except RolePermissionError:
                logger.error("Role sweep aborted: permission lost", extra=summary.to_dict())
                raise
            except Exception as e:
                summary.error_count += 1
                logger.error("Failed to reconcile member", extra={
                    "server_id": server_id,
                    "user_id": member.id,
                    "error": str(e)
                }, exc_info=True)

        logger.info("Role sweep completed", extra=summary.to_dict())
        return summary
