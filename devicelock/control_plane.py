"""
Control-Plane Client: thin async client for the remote device registry.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional

import httpx

from .errors import AlreadySubscribed, DocumentMissing, RemoteUnavailable
from .models import DeviceRecord
from .safety import Backoff

logger = logging.getLogger("devicelock.control_plane")

# cb(value, record, fresh): fresh is True for the first snapshot of each connection.
SnapshotCallback = Callable[[Any, DeviceRecord, bool], Awaitable[None]]


class ControlPlaneClient:
    def __init__(
        self,
        base_url: str,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = 10.0,
        watch_timeout: float = 25.0,
        backoff_base: float = 1.0,
        backoff_cap: float = 60.0,
    ):
        self.watch_timeout = watch_timeout
        self.backoff_base = backoff_base
        self.backoff_cap = backoff_cap
        self._http = httpx.AsyncClient(base_url=base_url, transport=transport, timeout=timeout)
        self._subscriptions: dict[tuple[str, str], "Subscription"] = {}

    async def close(self) -> None:
        for sub in list(self._subscriptions.values()):
            await sub.cancel()
        await self._http.aclose()

    def new_backoff(self) -> Backoff:
        return Backoff(base=self.backoff_base, cap=self.backoff_cap)

    async def _request(self, method: str, url: str, **kwargs) -> httpx.Response:
        try:
            resp = await self._http.request(method, url, **kwargs)
        except httpx.HTTPError as e:
            raise RemoteUnavailable(f"{method} {url}: {e.__class__.__name__}: {e}") from e
        if resp.status_code >= 500:
            raise RemoteUnavailable(f"{method} {url}: HTTP {resp.status_code}")
        return resp

    # ── documents ──────────────────────────────────────────────────────

    async def get_device(self, device_id: str) -> Optional[DeviceRecord]:
        resp = await self._request("GET", f"/devices/{device_id}")
        if resp.status_code == 404:
            return None
        resp.raise_for_status()
        return DeviceRecord.from_document(device_id, resp.json())

    async def set_device(self, device_id: str, fields: dict[str, Any], merge: bool = True) -> dict[str, Any]:
        resp = await self._request("PUT", f"/devices/{device_id}", params={"merge": str(merge).lower()}, json=fields)
        resp.raise_for_status()
        return resp.json()

    async def patch_device(self, device_id: str, fields: dict[str, Any]) -> dict[str, Any]:
        """Unconditional patch; a missing document falls back to set-with-merge."""
        try:
            return await self._patch_existing(device_id, fields)
        except DocumentMissing:
            logger.info(f"PATCH | device={device_id} missing, creating with set")
            return await self.set_device(device_id, fields, merge=True)

    async def _patch_existing(self, device_id: str, fields: dict[str, Any]) -> dict[str, Any]:
        resp = await self._request("PATCH", f"/devices/{device_id}", json=fields)
        if resp.status_code == 404:
            raise DocumentMissing(device_id)
        resp.raise_for_status()
        return resp.json()

    async def patch_with_retry(
        self,
        device_id: str,
        fields: dict[str, Any] | Callable[[], Awaitable[dict[str, Any]]],
        label: str = "patch",
    ) -> dict[str, Any]:
        """
        Retry a patch forever with bounded exponential backoff until it lands
        or the calling task is cancelled. `fields` may be a coroutine factory so
        each attempt can recompute its payload.
        """
        backoff = self.new_backoff()
        while True:
            try:
                payload = await fields() if callable(fields) else fields
                result = await self.patch_device(device_id, payload)
                logger.info(f"RETRY_PATCH | {label} device={device_id} landed fields={sorted(payload)}")
                return result
            except RemoteUnavailable as e:
                delay = backoff.next_delay()
                logger.warning(f"RETRY_PATCH | {label} device={device_id} failed ({e}); retry in {delay:.0f}s")
                await asyncio.sleep(delay)

    async def list_devices(self) -> list[dict[str, Any]]:
        resp = await self._request("GET", "/devices")
        resp.raise_for_status()
        return resp.json()["devices"]

    async def batch_patch_all(self, fields: dict[str, Any], actor: str = "operator") -> int:
        """Apply `fields` to every device. Any failure fails the whole batch."""
        resp = await self._request("POST", "/admin/batch-patch", json={"fields": fields, "actor": actor})
        resp.raise_for_status()
        return resp.json()["updated_count"]

    async def put_location_history(self, device_id: str, date: str, document: dict[str, Any]) -> None:
        resp = await self._request(
            "PUT", f"/device_locations/{device_id}/location_history/{date}", json=document
        )
        resp.raise_for_status()

    async def topic_messages(self, topic: str, after: int = 0) -> tuple[list[dict[str, Any]], int]:
        resp = await self._request("GET", f"/topics/{topic}/messages", params={"after": after})
        resp.raise_for_status()
        body = resp.json()
        return body["messages"], body["next"]

    async def watch(self, device_id: str, since: int) -> dict[str, Any]:
        resp = await self._request(
            "GET",
            f"/devices/{device_id}/watch",
            params={"since": since, "timeout": self.watch_timeout},
            timeout=self.watch_timeout + 10.0,
        )
        resp.raise_for_status()
        return resp.json()

    # ── subscriptions ──────────────────────────────────────────────────

    def subscribe(self, device_id: str, field: str, callback: SnapshotCallback) -> "Subscription":
        key = (device_id, field)
        existing = self._subscriptions.get(key)
        if existing is not None and not existing.done:
            raise AlreadySubscribed(f"{field} on {device_id} already has a live subscription")
        sub = Subscription(self, device_id, field, callback)
        self._subscriptions[key] = sub
        sub.start()
        return sub

    def _forget(self, sub: "Subscription") -> None:
        key = (sub.device_id, sub.field)
        if self._subscriptions.get(key) is sub:
            del self._subscriptions[key]


class Subscription:
    """
    Live field subscription over long-polling.

    Each (re)connection starts with one immediate fetch of the document; after
    that the loop waits for newer versions. On transport loss it reconnects
    with exponential backoff (1s, 2s, 4s, 8s, ... capped).
    """

    def __init__(self, client: ControlPlaneClient, device_id: str, field: str, callback: SnapshotCallback):
        self.client = client
        self.device_id = device_id
        self.field = field
        self.callback = callback
        self.backoff = client.new_backoff()
        self.connected = asyncio.Event()
        self.reconnects = 0
        self._connected_once = False
        self._task: Optional[asyncio.Task] = None

    def start(self) -> None:
        self._task = asyncio.create_task(self._run(), name=f"subscribe:{self.device_id}:{self.field}")

    @property
    def done(self) -> bool:
        return self._task is None or self._task.done()

    async def cancel(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self.client._forget(self)

    async def _run(self) -> None:
        version = -1
        connecting = True
        # True until the first existing document of the current connection is delivered
        fresh = True
        while True:
            try:
                snapshot = await self.client.watch(self.device_id, -1 if connecting else version)
            except RemoteUnavailable as e:
                self.connected.clear()
                connecting = fresh = True
                delay = self.backoff.next_delay()
                logger.warning(
                    f"SUBSCRIBE | device={self.device_id} field={self.field} lost ({e}); reconnect in {delay:.0f}s"
                )
                await asyncio.sleep(delay)
                continue

            if connecting:
                if self._connected_once:
                    self.reconnects += 1
                self._connected_once = True
                connecting = False
                self.backoff.reset()
                self.connected.set()
            elif snapshot["version"] == version:
                continue

            version = snapshot["version"]
            document = snapshot.get("document")
            if not snapshot.get("exists") or document is None:
                logger.debug(f"SUBSCRIBE | device={self.device_id} no document yet version={version}")
                continue

            record = DeviceRecord.from_document(self.device_id, document)
            try:
                await self.callback(document.get(self.field), record, fresh)
            except Exception:
                logger.exception(f"SUBSCRIBE | device={self.device_id} field={self.field} callback failed")
            fresh = False
