"""
Lock State Machine.

    Unregistered --register--> Unlocked
    Unlocked --remoteLock / dueDateTick--> Locked
    Locked --remoteUnlock / offlinePin--> Unlocked

Runs as a single cooperative actor: every operation is queued on `inbox` and
handled one at a time by `run()`. Within a transition the effects happen in a
fixed order: Secret Store, then Privilege Abstraction, then the remote patch.
Remote patches run as background retry tasks and never roll back local state.
"""

from __future__ import annotations

import asyncio
import hmac
import logging
from datetime import date
from typing import Any, Callable, Optional

from pydantic import ValidationError

from .config import DEFAULT_PAYMENT_LINK
from .control_plane import ControlPlaneClient
from .due_date import is_overdue
from .errors import DeviceLockError, InvalidInput
from .models import (
    CommandType,
    DeviceRecord,
    LockEvent,
    LockSource,
    LockState,
    LockTarget,
    PrivilegeTier,
    RegistrationInput,
    hash_pin,
    now_ms,
    validate_pin,
)
from .privilege import Privilege
from .secret_store import SecretStore

logger = logging.getLogger("devicelock.state_machine")

DISPLAY_FIELDS = (
    "dueAmount",
    "dueDate",
    "dueDetails",
    "customerName",
    "customerPhone",
    "deviceModel",
    "imei",
    "offlineUnlockCount",
)

_STOP = object()


class LockStateMachine:
    def __init__(
        self,
        store: SecretStore,
        privilege: Privilege,
        client: ControlPlaneClient,
        device_id: str = "",
        default_payment_link: str = DEFAULT_PAYMENT_LINK,
        clock: Callable[[], int] = now_ms,
    ):
        self.store = store
        self.privilege = privilege
        self.client = client
        self.device_id = device_id
        self.default_payment_link = default_payment_link
        self.clock = clock

        self.state = LockState.UNREGISTERED
        self.history: list[LockEvent] = []
        self.inbox: asyncio.Queue = asyncio.Queue()
        self.ui_events: asyncio.Queue = asyncio.Queue()

        self._runner: Optional[asyncio.Task] = None
        self._stopping = False
        self._sync_task: Optional[asyncio.Task] = None
        self._remote_tasks: set[asyncio.Task] = set()

        if privilege.on_warning is None:
            privilege.on_warning = self._on_privilege_warning

    # ── actor plumbing ─────────────────────────────────────────────────

    def start(self) -> None:
        if self._runner is None:
            self._runner = asyncio.create_task(self.run(), name="lock-state-machine")

    async def run(self) -> None:
        while True:
            item = await self.inbox.get()
            if item is _STOP:
                break
            handler, args, future = item
            if future.done():
                continue
            try:
                result = await handler(*args)
            except Exception as e:
                if not future.done():
                    future.set_exception(e)
            else:
                if not future.done():
                    future.set_result(result)

    async def _submit(self, handler, *args) -> Any:
        if self._stopping:
            raise DeviceLockError("lock state machine is stopped")
        self.start()
        future = asyncio.get_running_loop().create_future()
        await self.inbox.put((handler, args, future))
        return await future

    async def stop(self) -> None:
        """Drain the inbox, cancel pending remote retries, release the overlay."""
        if self._stopping:
            return
        self._stopping = True
        if self._runner is not None:
            await self.inbox.put(_STOP)
            await self._runner
        pending = list(self._remote_tasks)
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        self.privilege.release()
        logger.info(f"STATE_MACHINE | stopped device={self.device_id} state={self.state.value}")

    async def flush_remote(self) -> None:
        """Wait until every pending remote patch has landed."""
        while self._remote_tasks:
            await asyncio.gather(*list(self._remote_tasks), return_exceptions=True)

    # ── public operations ──────────────────────────────────────────────

    async def boot(self) -> LockState:
        return await self._submit(self._boot)

    async def register(self, pin: str, device_model: str, device_id: Optional[str] = None) -> bool:
        return await self._submit(self._register, pin, device_model, device_id)

    async def remote_lock_changed(self, locked: bool, record: Optional[DeviceRecord] = None) -> LockState:
        return await self._submit(self._reconcile, bool(locked), record, False)

    async def reconnected(self, record: DeviceRecord) -> LockState:
        return await self._submit(self._reconcile, record.is_locked, record, True)

    async def due_date_tick(self, today: date) -> bool:
        return await self._submit(self._due_date_tick, today)

    async def offline_unlock(self, pin: str) -> bool:
        return await self._submit(self._offline_unlock, pin)

    async def push_command(self, command: CommandType) -> None:
        return await self._submit(self._push_command, command)

    async def user_present(self) -> bool:
        return await self._submit(self._user_present)

    @property
    def is_locked(self) -> bool:
        return self.state == LockState.LOCKED

    def lock_screen_info(self) -> dict[str, Any]:
        snap = self.store.snapshot()
        info = {key: snap.get(key) for key in DISPLAY_FIELDS}
        info["offlineUnlockCount"] = info["offlineUnlockCount"] or 0
        return info

    # ── effects ────────────────────────────────────────────────────────

    def _emit(self, event: str, **detail: Any) -> None:
        self.ui_events.put_nowait({"event": event, **detail})

    def _on_privilege_warning(self, message: str) -> None:
        self._emit("warning", message=message)

    def _enter(self, locked: bool, source: LockSource) -> bool:
        """Drive local state to `locked`. Returns False when already there."""
        with self.store.edit() as e:
            if e.get("locked") is not locked:
                e.put("locked", locked)

        target = LockState.LOCKED if locked else LockState.UNLOCKED
        if self.state == target:
            return False
        previous, self.state = self.state, target

        if locked:
            self.privilege.lock_screen_now()
            self.privilege.show_lock_overlay()
        else:
            self.privilege.dismiss_lock_overlay()

        self.history.append(LockEvent(source=source, target=LockTarget.LOCKED if locked else LockTarget.UNLOCKED))
        logger.info(
            f"TRANSITION | device={self.device_id} {previous.value} -> {target.value} source={source.value}"
        )
        self._emit("locked" if locked else "unlocked", source=source.value)
        return True

    def _spawn_patch(self, label: str, fields) -> asyncio.Task:
        task = asyncio.create_task(
            self.client.patch_with_retry(self.device_id, fields, label=label), name=f"remote:{label}"
        )
        self._remote_tasks.add(task)
        task.add_done_callback(self._remote_done)
        return task

    def _remote_done(self, task: asyncio.Task) -> None:
        self._remote_tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(f"REMOTE | {task.get_name()} device={self.device_id} gave up: {exc!r}")

    def _schedule_sync(self, label: str) -> None:
        """Push the local lock state to the remote; a newer sync supersedes an older one."""
        if self._sync_task is not None and not self._sync_task.done():
            self._sync_task.cancel()
        self._sync_task = self._spawn_patch(label, self._sync_fields)

    async def _sync_fields(self) -> dict[str, Any]:
        snap = self.store.snapshot()
        fields: dict[str, Any] = {"locked": bool(snap.get("locked"))}
        local_count = snap.get("offlineUnlockCount") or 0
        if local_count:
            remote = await self.client.get_device(self.device_id)
            fields["offlineUnlockCount"] = max(local_count, remote.unlock_count if remote is not None else 0)
            if snap.get("lastOfflineUnlock") is not None:
                fields["lastOfflineUnlock"] = snap["lastOfflineUnlock"]
        return fields

    # ── handlers (run inside the actor) ────────────────────────────────

    async def _boot(self) -> LockState:
        snap = self.store.snapshot()
        if snap.get("deviceId"):
            self.device_id = snap["deviceId"]
        if not snap.get("isRegistered"):
            self.state = LockState.UNREGISTERED
        elif snap.get("locked"):
            self._enter(True, LockSource.BOOT)
        else:
            self.state = LockState.UNLOCKED
        logger.info(f"BOOT | device={self.device_id} state={self.state.value} tier={self.privilege.tier.value}")
        return self.state

    async def _register(self, pin: str, device_model: str, device_id: Optional[str]) -> bool:
        try:
            data = RegistrationInput(pin=pin, device_model=device_model)
        except ValidationError as e:
            raise InvalidInput(e.errors()[0]["msg"]) from e
        device_id = device_id or self.device_id
        if not device_id:
            raise InvalidInput("device id is required")
        pin_hash = hash_pin(data.pin)

        snap = self.store.snapshot()
        if snap.get("isRegistered"):
            if snap.get("pinHash") == pin_hash and snap.get("deviceId") == device_id:
                logger.info(f"REGISTER | device={device_id} already registered, unchanged")
                return False
            raise InvalidInput("device is already registered with a different PIN or device id")

        with self.store.edit() as e:
            e.put("pinHash", pin_hash)
            e.put("deviceId", device_id)
            e.put("deviceModel", data.device_model)
            e.put("isRegistered", True)
            e.put("offlineUnlockCount", 0)
            e.put("locked", False)
            if not e.get("paymentLink"):
                e.put("paymentLink", self.default_payment_link)
                e.put("paymentLinkLastUpdated", self.clock())
        self.device_id = device_id
        self.state = LockState.UNLOCKED
        logger.info(f"REGISTER | device={device_id} model={data.device_model} tier={self.privilege.tier.value}")

        if self.privilege.tier == PrivilegeTier.DEVICE_ADMIN:
            self.privilege.enable_sequential_lock_mode()

        self._spawn_patch("register", {
            "deviceId": device_id,
            "pinHash": pin_hash,
            "deviceModel": data.device_model,
            "locked": False,
            "offlineUnlockCount": 0,
        })
        return True

    async def _reconcile(self, remote_locked: bool, record: Optional[DeviceRecord], reconnect: bool) -> LockState:
        snap = self.store.snapshot()
        if not snap.get("isRegistered"):
            logger.debug(f"RECONCILE | device={self.device_id} not registered, ignoring remote locked={remote_locked}")
            return self.state

        local_locked = bool(snap.get("locked"))
        local_count = snap.get("offlineUnlockCount") or 0
        # Local wins only on a fresh connection.
        if reconnect and record is not None and local_count > record.unlock_count:
            logger.info(
                f"RECONCILE | device={self.device_id} local wins locked={local_locked} "
                f"count local={local_count} remote={record.unlock_count}"
            )
            self._enter(local_locked, LockSource.REMOTE)
            self._schedule_sync("reconcile")
            return self.state

        self._enter(remote_locked, LockSource.REMOTE)
        return self.state

    async def _due_date_tick(self, today: date) -> bool:
        snap = self.store.snapshot()
        due = snap.get("dueDate")
        if not snap.get("isRegistered") or not due:
            return False
        try:
            overdue = is_overdue(due, today)
        except ValueError:
            logger.warning(f"DUE_DATE | malformed dueDate={due!r}, ignoring")
            return False
        if not overdue or snap.get("locked"):
            return False
        self._enter(True, LockSource.DUE_DATE)
        self._schedule_sync("due-date")
        return True

    async def _offline_unlock(self, pin: str) -> bool:
        try:
            validate_pin(pin)
        except ValueError as e:
            raise InvalidInput(str(e)) from e

        snap = self.store.snapshot()
        stored = snap.get("pinHash")
        if not stored or not hmac.compare_digest(hash_pin(pin), stored):
            logger.warning(f"OFFLINE_UNLOCK | device={self.device_id} incorrect PIN")
            self._emit("pin_incorrect")
            return False
        if not snap.get("locked") and self.state != LockState.LOCKED:
            logger.info(f"OFFLINE_UNLOCK | device={self.device_id} already unlocked")
            return True

        with self.store.edit() as e:
            count = (e.get("offlineUnlockCount") or 0) + 1
            e.put("locked", False)
            e.put("offlineUnlockCount", count)
            e.put("lastOfflineUnlock", self.clock())
        self._enter(False, LockSource.OFFLINE_PIN)
        logger.info(f"OFFLINE_UNLOCK | device={self.device_id} count={count}")
        self._schedule_sync("offline-unlock")
        return True

    async def _push_command(self, command: CommandType) -> None:
        # Wake path only: the Device Record change drives the transition.
        if not self.store.get("isRegistered"):
            return
        self.store.put("locked", command == CommandType.LOCK)
        logger.info(f"PUSH | device={self.device_id} stored locked={command == CommandType.LOCK}")

    async def _user_present(self) -> bool:
        """
        The user got past the system keyguard. Re-read the stored lock flag and
        put the overlay back (or take it down), since the OS may have hidden it.
        """
        snap = self.store.snapshot()
        if not snap.get("isRegistered"):
            return False
        locked = bool(snap.get("locked"))
        if self._enter(locked, LockSource.USER_PRESENT):
            return True
        if locked:
            shown = self.privilege.show_lock_overlay(force=True)
        else:
            shown = self.privilege.dismiss_lock_overlay()
        logger.info(f"USER_PRESENT | device={self.device_id} locked={locked} reasserted={shown}")
        return shown
