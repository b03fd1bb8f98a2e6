"""
Role reconciliation job.

Sweeps every guild the bot is in (or one guild) and drives each member's
Paid/Free role to match their subscription. Catches anything the
event-driven path missed: dropped webhooks, role changes made by hand,
members whose targeted sync failed.

Usage:
    python -m src.jobs.reconcile_roles
    python -m src.jobs.reconcile_roles --server-id 123456789012345678

SIGTERM/SIGINT stop the sweep between members; the member being processed
finishes first.
"""

import argparse
import asyncio
import logging
import signal
import sys
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

from src.config.monetization import get_monetization_config
from src.database.session import get_session_factory
from src.integrations.discord.exceptions import GuildNotFoundError
from src.integrations.discord.platform_connection import PlatformConnection
from src.services.monetization_service import MonetizationRuntime
from src.services.role_reconciler import RolePermissionError

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


@dataclass
class RoleSweepStats:
    """Track role sweep run statistics."""

    guilds_processed: int = 0
    guilds_failed: int = 0
    members_updated: int = 0
    member_errors: int = 0
    bots_skipped: int = 0
    cancelled: bool = False
    start_time: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict:
        duration = (datetime.now(timezone.utc) - self.start_time).total_seconds()
        return {
            "guilds_processed": self.guilds_processed,
            "guilds_failed": self.guilds_failed,
            "members_updated": self.members_updated,
            "member_errors": self.member_errors,
            "bots_skipped": self.bots_skipped,
            "cancelled": self.cancelled,
            "duration_seconds": round(duration, 2),
        }


async def run_role_sweep(
    platform: PlatformConnection,
    session_factory,
    server_id: Optional[str] = None,
    cancel_event: Optional[asyncio.Event] = None,
) -> RoleSweepStats:
    """
    Sweep one guild or every guild the bot can see.

    A guild the bot cannot manage is counted as failed and the run moves on
    to the next guild.
    """
    stats = RoleSweepStats()
    cancel_event = cancel_event or asyncio.Event()
    runtime = MonetizationRuntime(platform=platform, config=get_monetization_config())

    await platform.ensure_ready()
    server_ids = [server_id] if server_id else await platform.list_guild_ids()
    logger.info("Starting role sweep run", extra={"guild_count": len(server_ids)})

    session = session_factory()
    try:
        service = runtime.service(session)
        for sid in server_ids:
            if cancel_event.is_set():
                stats.cancelled = True
                break

            try:
                summary = await service.reconcile_all_roles(sid, cancel_event=cancel_event)
            except (RolePermissionError, GuildNotFoundError) as e:
                logger.error("Skipping guild", extra={"server_id": sid, "error": str(e)})
                stats.guilds_failed += 1
                continue

            stats.guilds_processed += 1
            stats.members_updated += summary.updated_count
            stats.member_errors += summary.error_count
            stats.bots_skipped += summary.skipped_bots
            if summary.cancelled:
                stats.cancelled = True
                break
    finally:
        session.close()

    logger.info("Role sweep run completed", extra=stats.to_dict())
    return stats


async def _main_async(server_id: Optional[str]) -> RoleSweepStats:
    cancel_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, cancel_event.set)

    platform = PlatformConnection()
    try:
        return await run_role_sweep(
            platform,
            get_session_factory(),
            server_id=server_id,
            cancel_event=cancel_event,
        )
    finally:
        await platform.close()


def main():
    """Entry point for running the role sweep from the command line."""
    parser = argparse.ArgumentParser(description="Reconcile Paid/Free roles with subscriptions")
    parser.add_argument("--server-id", help="Only sweep this guild")
    args = parser.parse_args()

    try:
        stats = asyncio.run(_main_async(args.server_id))
        print(f"Role sweep completed: {stats.to_dict()}")
        sys.exit(0)
    except Exception as e:
        print(f"Role sweep failed: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
