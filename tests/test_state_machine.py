"""
Tests for the Lock State Machine: registration, boot recovery, offline unlock,
due-date lock, remote commands and the divergence tie-break.
"""

import asyncio
from datetime import date

import pytest

from devicelock import main as backend
from devicelock.due_date import DueDateEvaluator
from devicelock.errors import DeviceLockError, InvalidInput
from devicelock.listener import CommandListener
from devicelock.models import CommandType, DeviceRecord, LockSource, LockState, hash_pin
from devicelock.privilege import Privilege
from devicelock.state_machine import LockStateMachine

from conftest import DEVICE_ID, FakeHost, eventually, make_client, seed_registered


def _build(store, host, transport):
    client = make_client(transport)
    machine = LockStateMachine(store, Privilege(host, store=store), client, device_id=DEVICE_ID)
    return machine, client


async def _shutdown(machine, client):
    await machine.stop()
    await client.close()


def _remote(**fields):
    backend.devices[DEVICE_ID] = {"deviceId": DEVICE_ID, "pinHash": hash_pin("1234"), **fields}
    backend._notify(DEVICE_ID)


def _events(machine):
    out = []
    while not machine.ui_events.empty():
        out.append(machine.ui_events.get_nowait()["event"])
    return out


# ── Registration ───────────────────────────────────────────────────────

@pytest.mark.parametrize("pin", ["123", "12345", "12a4", "", "١٢٣٤"])
def test_register_rejects_bad_pin(store, host, transport, pin):
    async def scenario():
        machine, client = _build(store, host, transport)
        with pytest.raises(InvalidInput):
            await machine.register(pin, "Pixel 7")
        assert machine.state == LockState.UNREGISTERED
        await _shutdown(machine, client)

    asyncio.run(scenario())
    assert store.get("pinHash") is None


def test_register_rejects_empty_model(store, host, transport):
    async def scenario():
        machine, client = _build(store, host, transport)
        with pytest.raises(InvalidInput):
            await machine.register("1234", "   ")
        await _shutdown(machine, client)

    asyncio.run(scenario())
    assert store.get("isRegistered") is None


def test_register_writes_local_then_remote(store, host, transport):
    async def scenario():
        machine, client = _build(store, host, transport)
        assert await machine.register("0000", "Pixel 7") is True
        assert machine.state == LockState.UNLOCKED
        await asyncio.wait_for(machine.flush_remote(), 3)
        await _shutdown(machine, client)

    asyncio.run(scenario())
    snap = store.snapshot()
    assert snap["pinHash"] == hash_pin("0000")
    assert snap["isRegistered"] is True
    assert snap["locked"] is False
    assert snap["offlineUnlockCount"] == 0
    assert snap["paymentLink"].startswith("https://")
    assert snap["sequentialLockMode"] is True

    doc = backend.devices[DEVICE_ID]
    assert doc["pinHash"] == hash_pin("0000")
    assert doc["deviceModel"] == "Pixel 7"
    assert doc["locked"] is False


def test_register_is_idempotent(store, host, transport):
    async def scenario():
        machine, client = _build(store, host, transport)
        await machine.register("1234", "Pixel 7")
        await machine.flush_remote()
        # State moves on after registration
        with store.edit() as e:
            e.put("locked", True)
            e.put("offlineUnlockCount", 2)
        before = store.snapshot()

        assert await machine.register("1234", "Pixel 7") is False
        after = store.snapshot()
        for key in ("pinHash", "offlineUnlockCount", "locked"):
            assert after[key] == before[key]

        with pytest.raises(InvalidInput):
            await machine.register("9999", "Pixel 7")
        await _shutdown(machine, client)

    asyncio.run(scenario())


def test_register_offline_patches_when_back(store, host, transport):
    async def scenario():
        machine, client = _build(store, host, transport)
        transport.online = False
        await machine.register("1234", "Pixel 7")
        assert store.get("isRegistered") is True
        await eventually(lambda: transport.refused >= 2)
        transport.online = True
        await asyncio.wait_for(machine.flush_remote(), 3)
        await _shutdown(machine, client)

    asyncio.run(scenario())
    assert backend.devices[DEVICE_ID]["pinHash"] == hash_pin("1234")


# ── Boot recovery ──────────────────────────────────────────────────────

def test_boot_locked_drives_overlay(store, host, transport):
    seed_registered(store, locked=True)

    async def scenario():
        machine, client = _build(store, host, transport)
        assert await machine.boot() == LockState.LOCKED
        assert host.calls[:2] == ["lock_now", "launch_lock_activity"]
        await _shutdown(machine, client)

    asyncio.run(scenario())


def test_boot_unregistered_and_unlocked(store, host, transport):
    async def scenario():
        machine, client = _build(store, host, transport)
        assert await machine.boot() == LockState.UNREGISTERED
        seed_registered(store)
        assert await machine.boot() == LockState.UNLOCKED
        await _shutdown(machine, client)

    asyncio.run(scenario())
    assert host.calls == []


# ── Offline unlock ─────────────────────────────────────────────────────

def test_offline_unlock_while_network_down(store, host, transport):
    """Locked, PIN 1234, network down: unlocks now, remote catches up later."""
    seed_registered(store, locked=True)
    _remote(locked=True, offlineUnlockCount=0)

    async def scenario():
        machine, client = _build(store, host, transport)
        await machine.boot()
        transport.online = False

        assert await machine.offline_unlock("1234") is True
        assert machine.state == LockState.UNLOCKED
        assert store.get("offlineUnlockCount") == 1
        assert store.get("locked") is False
        assert "finish_lock_activity" in host.calls

        await eventually(lambda: transport.refused >= 2)
        assert backend.devices[DEVICE_ID]["locked"] is True

        transport.online = True
        await asyncio.wait_for(machine.flush_remote(), 3)
        await _shutdown(machine, client)

    asyncio.run(scenario())
    doc = backend.devices[DEVICE_ID]
    assert doc["offlineUnlockCount"] == 1
    assert doc["locked"] is False
    assert doc["lastOfflineUnlock"] == store.get("lastOfflineUnlock")


def test_offline_unlock_count_takes_max_of_remote(store, host, transport):
    seed_registered(store, locked=True)
    _remote(locked=True, offlineUnlockCount=3)

    async def scenario():
        machine, client = _build(store, host, transport)
        await machine.boot()
        await machine.offline_unlock("1234")
        await asyncio.wait_for(machine.flush_remote(), 3)
        await _shutdown(machine, client)

    asyncio.run(scenario())
    assert backend.devices[DEVICE_ID]["offlineUnlockCount"] == 3
    assert store.get("offlineUnlockCount") == 1


def test_wrong_pin_changes_nothing(store, host, transport):
    seed_registered(store, locked=True)

    async def scenario():
        machine, client = _build(store, host, transport)
        await machine.boot()
        _events(machine)
        assert await machine.offline_unlock("4321") is False
        assert machine.state == LockState.LOCKED
        assert _events(machine) == ["pin_incorrect"]
        with pytest.raises(InvalidInput):
            await machine.offline_unlock("12")
        await _shutdown(machine, client)

    asyncio.run(scenario())
    assert store.get("offlineUnlockCount") == 0
    assert store.get("locked") is True


# ── Due date ───────────────────────────────────────────────────────────

def test_due_date_auto_lock(store, host, transport):
    seed_registered(store, dueDate="2025-01-15")
    _remote(locked=False)

    async def scenario():
        machine, client = _build(store, host, transport)
        await machine.boot()
        evaluator = DueDateEvaluator(store, machine)

        assert await evaluator.run_once(date(2025, 1, 14)) is False
        assert machine.state == LockState.UNLOCKED

        assert await evaluator.run_once(date(2025, 1, 15)) is True
        assert machine.state == LockState.LOCKED
        assert host.calls[:2] == ["lock_now", "launch_lock_activity"]

        # Already locked: no-op
        assert await evaluator.run_once(date(2025, 1, 16)) is False
        # Clock stepped back: stays locked
        assert await evaluator.run_once(date(2025, 1, 1)) is False
        assert machine.state == LockState.LOCKED

        await asyncio.wait_for(machine.flush_remote(), 3)
        await _shutdown(machine, client)

    asyncio.run(scenario())
    assert store.get("locked") is True
    assert backend.devices[DEVICE_ID]["locked"] is True
    assert host.calls.count("launch_lock_activity") == 1


def test_malformed_due_date_ignored(store, host, transport):
    seed_registered(store, dueDate="15/01/2025")

    async def scenario():
        machine, client = _build(store, host, transport)
        await machine.boot()
        assert await DueDateEvaluator(store, machine).run_once(date(2030, 1, 1)) is False
        assert await machine.due_date_tick(date(2030, 1, 1)) is False
        await _shutdown(machine, client)

    asyncio.run(scenario())
    assert store.get("locked") is False


def test_due_date_ignored_before_registration(store, host, transport):
    store.put("dueDate", "2025-01-15")

    async def scenario():
        machine, client = _build(store, host, transport)
        await machine.boot()
        assert await DueDateEvaluator(store, machine).run_once(date(2025, 2, 1)) is False
        await _shutdown(machine, client)

    asyncio.run(scenario())


# ── Remote commands ────────────────────────────────────────────────────

def test_remote_unlock_wins_stale_local(store, host, transport):
    """Local locked, operator unlocked while offline, device comes online."""
    seed_registered(store, locked=True)
    _remote(locked=False, offlineUnlockCount=0)

    async def scenario():
        machine, client = _build(store, host, transport)
        await machine.boot()
        listener = CommandListener(client)
        listener.subscribe(DEVICE_ID, machine.remote_lock_changed, machine.reconnected)
        await eventually(lambda: machine.inbox.empty() and machine.state == LockState.UNLOCKED)
        await listener.cancel()
        events = _events(machine)
        await _shutdown(machine, client)
        return events

    events = asyncio.run(scenario())
    assert events == ["locked", "unlocked"]
    assert host.calls.count("finish_lock_activity") == 1
    assert store.get("locked") is False


def test_remote_lock_and_unlock(store, host, transport):
    seed_registered(store)

    async def scenario():
        machine, client = _build(store, host, transport)
        await machine.boot()
        record = DeviceRecord(device_id=DEVICE_ID, locked=True, offline_unlock_count=0)
        assert await machine.remote_lock_changed(True, record) == LockState.LOCKED
        assert await machine.remote_lock_changed(True, record) == LockState.LOCKED
        record.locked = False
        assert await machine.remote_lock_changed(False, record) == LockState.UNLOCKED
        events = _events(machine)
        await _shutdown(machine, client)
        return events

    assert asyncio.run(scenario()) == ["locked", "unlocked"]
    assert host.calls == ["lock_now", "launch_lock_activity", "finish_lock_activity", "clear_window_flags"]


def test_remote_ignored_when_unregistered(store, host, transport):
    async def scenario():
        machine, client = _build(store, host, transport)
        await machine.boot()
        assert await machine.remote_lock_changed(True) == LockState.UNREGISTERED
        await _shutdown(machine, client)

    asyncio.run(scenario())
    assert host.calls == []


def test_local_offline_unlock_wins_on_reconnect(store, host, transport):
    """Local saw an offline unlock the remote has not: local wins, remote is repaired."""
    seed_registered(store, locked=False, offlineUnlockCount=1, lastOfflineUnlock=1000)
    _remote(locked=True, offlineUnlockCount=0)

    async def scenario():
        machine, client = _build(store, host, transport)
        await machine.boot()
        listener = CommandListener(client)
        listener.subscribe(DEVICE_ID, machine.remote_lock_changed, machine.reconnected)
        await eventually(lambda: backend.devices[DEVICE_ID].get("offlineUnlockCount") == 1)
        await eventually(lambda: backend.devices[DEVICE_ID]["locked"] is False)
        assert machine.state == LockState.UNLOCKED

        # A later operator lock, once the counter has landed, is obeyed
        backend.devices[DEVICE_ID]["locked"] = True
        backend._notify(DEVICE_ID)
        await eventually(lambda: machine.state == LockState.LOCKED)
        await listener.cancel()
        await _shutdown(machine, client)

    asyncio.run(scenario())
    assert store.get("locked") is True
    assert store.get("offlineUnlockCount") == 1


def test_live_operator_lock_is_obeyed_despite_unseen_offline_unlock(store, host, transport):
    """An operator lock on a live connection wins even while an offline unlock is still syncing."""
    seed_registered(store, locked=True)
    _remote(locked=True, offlineUnlockCount=0)

    async def scenario():
        machine, client = _build(store, host, transport)
        await machine.boot()
        transport.online = False
        assert await machine.offline_unlock("1234") is True

        record = DeviceRecord(device_id=DEVICE_ID, locked=True, offline_unlock_count=0)
        assert await machine.remote_lock_changed(True, record) == LockState.LOCKED

        transport.online = True
        await asyncio.wait_for(machine.flush_remote(), 3)
        await _shutdown(machine, client)

    asyncio.run(scenario())
    assert store.get("locked") is True
    doc = backend.devices[DEVICE_ID]
    assert doc["locked"] is True
    assert doc["offlineUnlockCount"] == 1


def test_live_delivery_does_not_write_back(store, host, transport):
    seed_registered(store, locked=False, offlineUnlockCount=1)
    _remote(locked=True, offlineUnlockCount=0)

    async def scenario():
        machine, client = _build(store, host, transport)
        await machine.boot()
        record = DeviceRecord(device_id=DEVICE_ID, locked=True, offline_unlock_count=0)
        state = await machine.remote_lock_changed(True, record)
        await asyncio.wait_for(machine.flush_remote(), 3)
        assert machine._sync_task is None
        await _shutdown(machine, client)
        return state

    assert asyncio.run(scenario()) == LockState.LOCKED
    assert backend.devices[DEVICE_ID]["locked"] is True
    assert "launch_lock_activity" in host.calls


def test_push_command_only_writes_local(store, host, transport):
    seed_registered(store)

    async def scenario():
        machine, client = _build(store, host, transport)
        await machine.boot()
        await machine.push_command(CommandType.LOCK)
        assert store.get("locked") is True
        assert machine.state == LockState.UNLOCKED
        assert host.calls == []

        # The authoritative document change then applies the effects
        record = DeviceRecord(device_id=DEVICE_ID, locked=True)
        await machine.remote_lock_changed(True, record)
        assert machine.state == LockState.LOCKED
        await _shutdown(machine, client)

    asyncio.run(scenario())
    assert "launch_lock_activity" in host.calls


# ── UI + shutdown ──────────────────────────────────────────────────────

def test_lock_screen_info(store, host, transport):
    seed_registered(store, dueAmount="5000", dueDate="2025-01-15", customerName="Rahim", imei="356938035643809")

    async def scenario():
        machine, client = _build(store, host, transport)
        info = machine.lock_screen_info()
        await _shutdown(machine, client)
        return info

    info = asyncio.run(scenario())
    assert info["dueAmount"] == "5000"
    assert info["customerName"] == "Rahim"
    assert info["deviceModel"] == "Pixel 7"
    assert info["offlineUnlockCount"] == 0
    assert info["customerPhone"] is None


def test_privilege_warning_reaches_ui(store, transport):
    host = FakeHost(device_admin=True)
    host.denied.add("launch_lock_activity")
    seed_registered(store, locked=True)

    async def scenario():
        machine, client = _build(store, host, transport)
        await machine.boot()
        events = _events(machine)
        await _shutdown(machine, client)
        return events

    events = asyncio.run(scenario())
    assert "warning" in events
    assert "locked" in events
    assert "add_overlay" in host.calls


def test_stop_releases_and_rejects_new_work(store, host, transport):
    seed_registered(store, locked=True)

    async def scenario():
        machine, client = _build(store, host, transport)
        await machine.boot()
        transport.online = False
        await machine.offline_unlock("1234")
        await machine.stop()
        assert not machine._remote_tasks
        with pytest.raises(DeviceLockError):
            await machine.offline_unlock("1234")
        await client.close()

    asyncio.run(scenario())
    assert host.calls.count("clear_window_flags") == 1


# ── User present ───────────────────────────────────────────────────────

def test_user_present_redraws_overlay_when_locked(store, host, transport):
    seed_registered(store, locked=True)

    async def scenario():
        machine, client = _build(store, host, transport)
        await machine.boot()
        assert await machine.user_present() is True
        await _shutdown(machine, client)

    asyncio.run(scenario())
    assert host.calls.count("launch_lock_activity") == 2


def test_user_present_applies_stored_lock(store, host, transport):
    """A pushed lock only reached the store; the next unlock of the screen enforces it."""
    seed_registered(store)

    async def scenario():
        machine, client = _build(store, host, transport)
        await machine.boot()
        await machine.push_command(CommandType.LOCK)
        assert await machine.user_present() is True
        state = machine.state
        source = machine.history[-1].source
        await _shutdown(machine, client)
        return state, source

    state, source = asyncio.run(scenario())
    assert state == LockState.LOCKED
    assert source == LockSource.USER_PRESENT
    assert host.calls[:2] == ["lock_now", "launch_lock_activity"]


def test_user_present_closes_overlay_when_unlocked(store, host, transport):
    seed_registered(store, locked=True)

    async def scenario():
        machine, client = _build(store, host, transport)
        await machine.boot()
        await machine.push_command(CommandType.UNLOCK)
        assert await machine.user_present() is True
        assert machine.state == LockState.UNLOCKED
        # Nothing left to do on the next one
        assert await machine.user_present() is False
        await _shutdown(machine, client)

    asyncio.run(scenario())
    assert host.calls.count("finish_lock_activity") == 1


def test_user_present_ignored_before_registration(store, host, transport):
    async def scenario():
        machine, client = _build(store, host, transport)
        result = await machine.user_present()
        await _shutdown(machine, client)
        return result

    assert asyncio.run(scenario()) is False
    assert host.calls == []
