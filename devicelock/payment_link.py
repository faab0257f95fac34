"""
Payment-Link Cache/Sync.

The link lives in the Secret Store (`paymentLink`, `paymentLinkLastUpdated`).
Reads serve the cached value while it is younger than the max age, refresh it
from the Device Record otherwise, and fall back to the default link whenever
the remote cannot be read.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Optional

from .config import DEFAULT_PAYMENT_LINK
from .control_plane import ControlPlaneClient, Subscription
from .errors import RemoteUnavailable
from .models import DeviceRecord, now_ms
from .secret_store import SecretStore

logger = logging.getLogger("devicelock.payment_link")


class PaymentLinkCache:
    def __init__(
        self,
        store: SecretStore,
        client: ControlPlaneClient,
        device_id: str,
        default_link: str = DEFAULT_PAYMENT_LINK,
        max_age: float = 86400.0,
        clock: Callable[[], int] = now_ms,
    ):
        self.store = store
        self.client = client
        self.device_id = device_id
        self.default_link = default_link
        self.max_age_ms = int(max_age * 1000)
        self.clock = clock

    def _write(self, link: str) -> None:
        with self.store.edit() as e:
            e.put("paymentLink", link)
            e.put("paymentLinkLastUpdated", self.clock())

    def cached(self) -> Optional[str]:
        """The stored link when it is still fresh, else None."""
        snap = self.store.snapshot()
        link = snap.get("paymentLink")
        updated = snap.get("paymentLinkLastUpdated")
        if not link or updated is None:
            return None
        if self.clock() - updated >= self.max_age_ms:
            return None
        return link

    async def get_payment_link(self) -> str:
        link = self.cached()
        if link is not None:
            return link
        try:
            return await self.refresh()
        except RemoteUnavailable as e:
            logger.warning(f"PAYMENT_LINK | refresh failed ({e}), using default")
            return self.default_link

    async def refresh(self) -> str:
        record = await self.client.get_device(self.device_id)
        link = record.payment_link if record is not None and record.payment_link else None
        if link is None:
            logger.info(f"PAYMENT_LINK | device={self.device_id} has no paymentLink, storing default")
            link = self.default_link
        self._write(link)
        logger.info(f"PAYMENT_LINK | refreshed device={self.device_id} link={link}")
        return link

    async def sync(self) -> bool:
        """Periodic job body: refresh when the remote is reachable."""
        try:
            await self.refresh()
        except RemoteUnavailable as e:
            logger.info(f"PAYMENT_LINK | sync skipped, remote unavailable: {e}")
            return False
        return True

    async def on_remote_change(self, value: Any, record: Optional[DeviceRecord] = None, fresh: bool = False) -> None:
        if not value:
            return
        changed = value != self.store.get("paymentLink")
        self._write(value)
        if changed:
            logger.info(f"PAYMENT_LINK | updated from remote device={self.device_id} link={value}")

    def subscribe(self) -> Subscription:
        return self.client.subscribe(self.device_id, "paymentLink", self.on_remote_change)
