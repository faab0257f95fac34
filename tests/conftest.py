"""
Shared fixtures: in-process control plane, a switchable network, a recording host.
"""

import asyncio

import httpx
import pytest

from devicelock import main as backend
from devicelock.control_plane import ControlPlaneClient
from devicelock.errors import PrivilegeDenied
from devicelock.models import hash_pin
from devicelock.safety import circuit_breaker
from devicelock.secret_store import SecretStore

BASE_URL = "http://testserver"
DEVICE_ID = "dev-001"


def reset_backend():
    backend.devices.clear()
    backend.versions.clear()
    backend.location_history.clear()
    backend.audit_log.clear()
    backend.topic_messages.clear()
    backend._watchers.clear()
    circuit_breaker.reset()


class FlakyTransport(httpx.AsyncBaseTransport):
    """ASGI transport to the backend app that can be switched offline."""

    def __init__(self):
        self.inner = httpx.ASGITransport(app=backend.app)
        self.online = True
        self.refused = 0

    async def handle_async_request(self, request: httpx.Request) -> httpx.Response:
        if not self.online:
            self.refused += 1
            raise httpx.ConnectError("network is unreachable", request=request)
        return await self.inner.handle_async_request(request)

    async def aclose(self) -> None:
        await self.inner.aclose()


def make_client(transport, **overrides) -> ControlPlaneClient:
    options = {"watch_timeout": 0.3, "backoff_base": 0.01, "backoff_cap": 0.05}
    options.update(overrides)
    return ControlPlaneClient(BASE_URL, transport=transport, **options)


async def eventually(predicate, timeout: float = 3.0, interval: float = 0.01):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(interval)


def seed_registered(store: SecretStore, pin: str = "1234", **fields):
    """Put the store in the post-registration shape, plus any overrides."""
    with store.edit() as e:
        e.put("deviceId", DEVICE_ID)
        e.put("pinHash", hash_pin(pin))
        e.put("deviceModel", "Pixel 7")
        e.put("isRegistered", True)
        e.put("offlineUnlockCount", 0)
        e.put("locked", False)
        for key, value in fields.items():
            e.put(key, value)


class FakeHost:
    """PlatformHost that records every effect. Names in `denied` raise PrivilegeDenied."""

    def __init__(self, device_owner=False, device_admin=False, accessibility=True):
        self.device_owner = device_owner
        self.device_admin = device_admin or device_owner
        self.accessibility = accessibility
        self.denied: set[str] = set()
        self.calls: list[str] = []

    def _do(self, name, *args):
        if name in self.denied:
            raise PrivilegeDenied(name, "revoked")
        self.calls.append(name if not args else f"{name}:{args[0]}")

    def is_device_owner(self):
        return self.device_owner

    def is_device_admin(self):
        return self.device_admin

    def is_accessibility_enabled(self):
        return self.accessibility

    def lock_now(self):
        self._do("lock_now")

    def start_lock_task(self):
        self._do("start_lock_task")

    def stop_lock_task(self):
        self._do("stop_lock_task")

    def launch_lock_activity(self, flags):
        self._do("launch_lock_activity")

    def finish_lock_activity(self):
        self._do("finish_lock_activity")

    def clear_window_flags(self):
        self._do("clear_window_flags")

    def add_overlay(self):
        self._do("add_overlay")

    def remove_overlay(self):
        self._do("remove_overlay")

    def set_back_suppressed(self, suppressed):
        self._do("set_back_suppressed", suppressed)

    def set_keyguard_disabled(self, disabled):
        self._do("set_keyguard_disabled", disabled)

    def set_password_quality(self, quality):
        self._do("set_password_quality", quality)


@pytest.fixture
def transport():
    reset_backend()
    return FlakyTransport()


@pytest.fixture
def store(tmp_path):
    return SecretStore(tmp_path / "prefs")


@pytest.fixture
def host():
    return FakeHost(device_admin=True)
