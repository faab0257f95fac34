"""
Location Sync Worker: uploads unsynced position points, one document per date.

    device_locations/{deviceId}/location_history/{DD-MM-YYYY}
        { date, deviceId, lastUpdated, totalEntries, "<h_mm_AM>": {latitude, longitude, accuracy, timestamp, time}, ... }
"""

from __future__ import annotations

import logging
from typing import Any, Callable

import httpx

from .control_plane import ControlPlaneClient
from .errors import RemoteUnavailable
from .location_log import LocationLog
from .models import PositionPoint, SyncOutcome, now_ms, slot_key

logger = logging.getLogger("devicelock.location_sync")


def build_day_document(device_id: str, date: str, points: list[PositionPoint], updated_at: int) -> dict[str, Any]:
    doc: dict[str, Any] = {}
    for p in points:
        doc[slot_key(p.time)] = p.slot()
    doc["date"] = date
    doc["deviceId"] = device_id
    doc["lastUpdated"] = updated_at
    doc["totalEntries"] = len(points)
    return doc


class LocationSyncWorker:
    def __init__(
        self,
        log: LocationLog,
        client: ControlPlaneClient,
        device_id: str,
        retention_days: int = 30,
        is_online: Callable[[], bool] = lambda: True,
        clock: Callable[[], int] = now_ms,
    ):
        self.log = log
        self.client = client
        self.device_id = device_id
        self.retention_days = retention_days
        self.is_online = is_online
        self.clock = clock

    async def run_once(self) -> SyncOutcome:
        try:
            return await self._sync()
        finally:
            self.log.enforce_retention(self.retention_days)

    async def _sync(self) -> SyncOutcome:
        if not self.is_online():
            logger.info("LOCATION_SYNC | no network, will retry")
            return SyncOutcome.RETRY

        pending = self.log.unsynced()
        if not pending:
            logger.debug("LOCATION_SYNC | nothing to upload")
            return SyncOutcome.SUCCESS

        by_date: dict[str, list[PositionPoint]] = {}
        for p in pending:
            by_date.setdefault(p.date, []).append(p)

        synced_dates, failed_dates = [], []
        for date, points in by_date.items():
            # The set replaces the whole day, so upload every point held for it.
            day = self.log.by_date(date)
            doc = build_day_document(self.device_id, date, day, self.clock())
            try:
                await self.client.put_location_history(self.device_id, date, doc)
            except (RemoteUnavailable, httpx.HTTPStatusError) as e:
                logger.warning(f"LOCATION_SYNC | date={date} failed: {e}")
                failed_dates.append(date)
                continue
            self.log.mark_synced(p.id for p in points)
            synced_dates.append(date)

        logger.info(
            f"LOCATION_SYNC | device={self.device_id} points={len(pending)} "
            f"dates_ok={len(synced_dates)} dates_failed={len(failed_dates)}"
        )
        if not synced_dates:
            return SyncOutcome.RETRY
        return SyncOutcome.SUCCESS
