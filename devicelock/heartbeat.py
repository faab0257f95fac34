"""
Heartbeat: periodic lastSeenTimestamp patch so an offline device can be told
apart from an uninstalled one.
"""

from __future__ import annotations

import logging
from typing import Callable

import httpx

from .control_plane import ControlPlaneClient
from .errors import RemoteUnavailable
from .models import now_ms
from .secret_store import SecretStore

logger = logging.getLogger("devicelock.heartbeat")


class Heartbeat:
    def __init__(
        self,
        client: ControlPlaneClient,
        store: SecretStore,
        device_id: str,
        clock: Callable[[], int] = now_ms,
    ):
        self.client = client
        self.store = store
        self.device_id = device_id
        self.clock = clock

    async def beat(self) -> bool:
        # Not retried: the next tick supersedes a failed one.
        seen = self.clock()
        self.store.put("lastSeenTimestamp", seen)
        try:
            await self.client.patch_device(self.device_id, {"lastSeenTimestamp": seen})
        except (RemoteUnavailable, httpx.HTTPStatusError) as e:
            logger.warning(f"HEARTBEAT | device={self.device_id} failed: {e}")
            return False
        logger.debug(f"HEARTBEAT | device={self.device_id} lastSeen={seen}")
        return True
