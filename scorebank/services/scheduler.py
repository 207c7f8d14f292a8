"""
scorebank.services.scheduler — Periodic Background Tasks
=========================================================

Scheduled jobs that run as asyncio tasks inside the API process:

- **Presence expiry** — every ``presence_sweep_seconds`` (default 15),
  commits offline transitions for lapsed heartbeats.
- **Decay sweep** — every ``decay_sweep_seconds`` (default hourly), settles
  pending decay for offline accounts.
- **Ledger reconciliation** — every ``reconcile_interval_hours`` (default
  weekly), validates transfer aggregates against settlement records.

Each job runs its sync service function via ``run_db()`` to avoid blocking
the event loop.  A failing run is logged and the loop keeps going.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING

from scorebank.database.engine import run_db
from scorebank.services import reconciliation_service, sweep_service

if TYPE_CHECKING:
    from scorebank.config import ScorebankConfig
    from scorebank.services.context import ScoreContext

logger = logging.getLogger(__name__)


class PeriodicTasks:
    """Owns the background loops for one :class:`ScoreContext`."""

    def __init__(self, ctx: ScoreContext, cfg: ScorebankConfig) -> None:
        self.ctx = ctx
        self.cfg = cfg
        self._tasks: list[asyncio.Task] = []

    def start(self) -> None:
        """Start task loops.  Call from inside the running event loop."""
        if self._tasks:
            return
        self._tasks = [
            asyncio.create_task(
                self._loop("presence_expiry", self.cfg.presence_sweep_seconds, self.presence_expiry),
                name="presence-expiry",
            ),
            asyncio.create_task(
                self._loop("decay_sweep", self.cfg.decay_sweep_seconds, self.decay_sweep),
                name="decay-sweep",
            ),
            asyncio.create_task(
                self._loop(
                    "reconciliation", self.cfg.reconcile_interval_hours * 3600, self.reconciliation,
                ),
                name="ledger-reconciliation",
            ),
        ]
        logger.info("Periodic tasks started: %s", [t.get_name() for t in self._tasks])

    async def stop(self) -> None:
        """Cancel task loops and wait for them to exit."""
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks = []
        logger.info("Periodic tasks stopped")

    async def _loop(
        self, name: str, interval: float, job: Callable[[], Awaitable[None]],
    ) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                await job()
            except Exception:
                logger.exception("%s task failed", name, extra={"task": name})

    # -------------------------------------------------------------------
    # Jobs
    # -------------------------------------------------------------------
    async def presence_expiry(self) -> None:
        expired = await run_db(sweep_service.expire_stale_presence, self.ctx)
        if expired:
            logger.info("Presence expiry: %d sessions timed out", len(expired))

    async def decay_sweep(self) -> None:
        result = await run_db(sweep_service.sweep_decay, self.ctx)
        await run_db(
            sweep_service.prune_presence, self.ctx, self.cfg.presence_retention_hours,
        )
        logger.info(
            "Decay sweep complete: settled=%s skipped=%d",
            result["settled"], len(result["skipped"]),
        )

    async def reconciliation(self) -> None:
        result = await run_db(reconciliation_service.reconcile_accounts, self.ctx)
        logger.info(
            "Reconciliation task complete: checked=%d corrected=%d",
            result["checked"], result["corrected"],
        )
