"""
Location Capture Service: one position point per hour from the best available provider.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import tzinfo
from typing import Callable, Optional, Protocol

from .heartbeat import Heartbeat
from .location_log import LocationLog
from .location_sync import LocationSyncWorker
from .models import LocationFix, PositionPoint, now_ms

logger = logging.getLogger("devicelock.location")

GPS = "gps"
NETWORK = "network"


class LocationSource(Protocol):
    def last_fix(self, provider: str) -> Optional[LocationFix]: ...


class FixedLocationSource:
    """Reports preset fixes per provider; an empty source never has a fix."""

    def __init__(self, fixes: Optional[dict[str, LocationFix]] = None):
        self.fixes = dict(fixes or {})

    def last_fix(self, provider: str) -> Optional[LocationFix]:
        return self.fixes.get(provider)


def select_best_fix(gps: Optional[LocationFix], network: Optional[LocationFix]) -> Optional[LocationFix]:
    """Smaller accuracy radius wins when both providers have a fix."""
    if gps is not None and network is not None:
        return gps if gps.accuracy <= network.accuracy else network
    return gps or network


class LocationCapture:
    def __init__(
        self,
        log: LocationLog,
        source: LocationSource,
        device_id: str,
        heartbeat: Heartbeat,
        sync_worker: Optional[LocationSyncWorker] = None,
        retention_days: int = 30,
        tz: tzinfo | None = None,
        clock: Callable[[], int] = now_ms,
    ):
        self.log = log
        self.source = source
        self.device_id = device_id
        self.heartbeat = heartbeat
        self.sync_worker = sync_worker
        self.retention_days = retention_days
        self.tz = tz
        self.clock = clock
        self._sync_tasks: set[asyncio.Task] = set()

    def _kick_sync(self) -> None:
        if self.sync_worker is None:
            return
        task = asyncio.create_task(self.sync_worker.run_once(), name="location-sync-kick")
        self._sync_tasks.add(task)
        task.add_done_callback(self._sync_done)

    def _sync_done(self, task: asyncio.Task) -> None:
        self._sync_tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"LOCATION | kicked sync failed: {task.exception()!r}")

    async def drain(self) -> None:
        """Wait for kicked sync runs to finish."""
        if self._sync_tasks:
            await asyncio.gather(*list(self._sync_tasks), return_exceptions=True)

    async def capture(self) -> Optional[PositionPoint]:
        fix = select_best_fix(self.source.last_fix(GPS), self.source.last_fix(NETWORK))
        if fix is None:
            logger.info("LOCATION | no fix available, skipping sample")
            return None

        point = PositionPoint.at(
            self.device_id, fix.latitude, fix.longitude, fix.accuracy, self.clock(), self.tz
        )
        point.id = self.log.insert(point)
        logger.info(
            f"LOCATION | captured id={point.id} provider={fix.provider} "
            f"acc={fix.accuracy:.0f}m date={point.date} time={point.time}"
        )
        self._kick_sync()
        await self.heartbeat.beat()
        self.log.enforce_retention(self.retention_days)
        return point
