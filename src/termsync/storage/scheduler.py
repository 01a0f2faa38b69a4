"""Scheduler for automatic storage sync.

This module provides:
- AutoSyncScheduler: runs sync_now on every READY endpoint at a fixed interval
- clamp_interval: keeps intervals within the allowed bounds
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from termsync.core.types import StorageStatus
from termsync.storage.constants import (
    DEFAULT_SYNC_INTERVAL_SECONDS,
    MAX_SYNC_INTERVAL_SECONDS,
    MIN_SYNC_INTERVAL_SECONDS,
)

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable

    from termsync.core.types import CommandExecutor, SetupResult
    from termsync.storage.integration import StorageIntegration

logger = logging.getLogger(__name__)

AUTO_SYNC_JOB_ID = "auto_sync"


def clamp_interval(seconds: int) -> int:
    """Clamp a sync interval to [MIN_SYNC_INTERVAL_SECONDS, MAX_SYNC_INTERVAL_SECONDS]."""
    return max(MIN_SYNC_INTERVAL_SECONDS, min(MAX_SYNC_INTERVAL_SECONDS, seconds))


class AutoSyncScheduler:
    """Periodic bidirectional sync of all READY endpoints.

    Endpoints in any other status are skipped; a run never overlaps the
    previous one.
    """

    def __init__(
        self,
        integration: StorageIntegration,
        executors: Callable[[], Iterable[CommandExecutor]],
        interval_seconds: int = DEFAULT_SYNC_INTERVAL_SECONDS,
    ) -> None:
        """Initialize the scheduler.

        Args:
            integration: Storage integration running the syncs.
            executors: Returns the executors of the current endpoints.
            interval_seconds: Seconds between runs (clamped).
        """
        self._integration = integration
        self._executors = executors
        self._interval = clamp_interval(interval_seconds)
        if self._interval != interval_seconds:
            logger.warning(
                "Sync interval %ds out of range, using %ds",
                interval_seconds,
                self._interval,
            )
        self._scheduler: AsyncIOScheduler | None = None

    @property
    def interval(self) -> int:
        """Seconds between runs."""
        return self._interval

    @property
    def is_running(self) -> bool:
        """Whether the scheduler has been started."""
        return self._scheduler is not None

    async def run_once(self) -> dict[str, SetupResult]:
        """Sync every READY endpoint once.

        Returns:
            Sync results keyed by endpoint id.
        """
        results: dict[str, SetupResult] = {}
        for executor in list(self._executors()):
            endpoint_id = executor.endpoint_id
            status = self._integration.get_status(endpoint_id)
            if status is not StorageStatus.READY:
                logger.debug("Skipping auto sync of %s (status: %s)", endpoint_id, status.value)
                continue

            result = await self._integration.sync_now(executor)
            results[endpoint_id] = result
            if not result.success:
                logger.warning("Auto sync of %s failed: %s", endpoint_id, result.error)
        return results

    async def _sync_job(self) -> None:
        """Job function for scheduled sync."""
        logger.info("Starting scheduled sync")
        try:
            results = await self.run_once()
        except Exception:
            logger.exception("Error during scheduled sync")
            return
        logger.info("Scheduled sync done: %d endpoint(s) synced", len(results))

    def start(self) -> None:
        """Start the scheduler. Must be called with a running event loop."""
        if self._scheduler is not None:
            return  # Already running

        self._scheduler = AsyncIOScheduler()
        self._scheduler.add_job(
            self._sync_job,
            trigger=IntervalTrigger(seconds=self._interval),
            id=AUTO_SYNC_JOB_ID,
            name="Automatic storage sync",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        self._scheduler.start()
        logger.info("Auto sync scheduler started (every %ds)", self._interval)

    def stop(self) -> None:
        """Stop the scheduler."""
        if self._scheduler is not None:
            self._scheduler.shutdown(wait=False)
            self._scheduler = None
            logger.info("Auto sync scheduler stopped")
