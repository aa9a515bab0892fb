"""
auth/maintenance.py -- Periodic cleanup of expired and stale token state.

Three independent schedules:
  refresh   hourly   delete refresh tokens past expires_at
  revoked   daily    delete revoked refresh tokens older than the retention window,
                     and lockout records that no longer lock or count anything
  blacklist 5 min    evict blacklist entries whose access token has expired

None of these affect correctness -- every read path already treats expired
state as absent. Sweeps only bound storage growth.

Each schedule is its own asyncio task started from the API lifespan. The
store calls are blocking SQLAlchemy I/O, so they run on a worker thread via
asyncio.to_thread and never stall the event loop. A failing sweep is logged
and retried on the next tick; it never takes the loop down.

run_sweeps() runs everything once, synchronously. The CLI `sweep` command
and the tests use it.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta

from auth.blacklist import TokenBlacklist
from auth.lockout import LockoutGuard
from auth.refresh_tokens import DEFAULT_REVOKED_RETENTION, RefreshTokenStore
from core.config import Settings

logger = logging.getLogger("sessionkeeper.maintenance")


@dataclass
class SweepReport:
    expired_refresh_tokens: int = 0
    revoked_refresh_tokens: int = 0
    blacklist_entries: int = 0
    lockout_records: int = 0

    @property
    def total(self) -> int:
        return (
            self.expired_refresh_tokens + self.revoked_refresh_tokens + self.blacklist_entries + self.lockout_records
        )


def run_sweeps(
    refresh_tokens: RefreshTokenStore,
    blacklist: TokenBlacklist | None = None,
    lockout: LockoutGuard | None = None,
    *,
    retention: timedelta = DEFAULT_REVOKED_RETENTION,
    now: datetime | None = None,
) -> SweepReport:
    """Run every sweep once and report how many items each removed."""
    report = SweepReport(
        expired_refresh_tokens=refresh_tokens.sweep_expired(now),
        revoked_refresh_tokens=refresh_tokens.sweep_old_revoked(now, retention),
    )
    if blacklist is not None:
        report.blacklist_entries = blacklist.sweep(now)
    if lockout is not None:
        report.lockout_records = lockout.sweep(now)
    return report


# ---------------------------------------------------------------------------
# Background scheduling
# ---------------------------------------------------------------------------


async def _sweep_loop(name: str, interval_seconds: int, sweep: Callable[[], int]) -> None:
    """Call sweep() every interval_seconds until cancelled.

    CancelledError from task.cancel() during shutdown propagates out of
    asyncio.sleep (or the awaited thread hand-off) and ends the task.
    """
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            await asyncio.to_thread(sweep)
        except Exception:
            logger.exception("%s sweep failed; retrying in %ds", name, interval_seconds)


def start_maintenance(
    settings: Settings,
    refresh_tokens: RefreshTokenStore,
    blacklist: TokenBlacklist,
    lockout: LockoutGuard,
) -> list[asyncio.Task]:
    """Start the three sweep tasks on the running event loop."""
    retention = timedelta(days=settings.revoked_token_retention_days)

    def sweep_revoked() -> int:
        return refresh_tokens.sweep_old_revoked(retention=retention) + lockout.sweep()

    schedule = (
        ("refresh", settings.refresh_sweep_interval_seconds, refresh_tokens.sweep_expired),
        ("revoked", settings.revoked_sweep_interval_seconds, sweep_revoked),
        ("blacklist", settings.blacklist_sweep_interval_seconds, blacklist.sweep),
    )
    tasks = [
        asyncio.create_task(_sweep_loop(name, interval, sweep), name=f"sweep-{name}")
        for name, interval, sweep in schedule
    ]
    logger.info(
        "Maintenance started (refresh=%ds, revoked=%ds, blacklist=%ds)",
        settings.refresh_sweep_interval_seconds,
        settings.revoked_sweep_interval_seconds,
        settings.blacklist_sweep_interval_seconds,
    )
    return tasks


async def stop_maintenance(tasks: list[asyncio.Task]) -> None:
    """Cancel the sweep tasks and wait for them to unwind."""
    for task in tasks:
        task.cancel()
    await asyncio.gather(*tasks, return_exceptions=True)
