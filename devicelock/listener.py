"""
Command Listener: turns remote `locked` snapshots into lock/unlock deliveries.

Snapshots that repeat the last delivered value are dropped here, so the state
machine only sees distinct changes. The first snapshot of each connection goes
to `on_reconnected` alone, which reconciles local and remote divergence.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Optional

from .control_plane import ControlPlaneClient, Subscription
from .errors import AlreadySubscribed, RemoteUnavailable
from .models import CommandType, DeviceRecord

if TYPE_CHECKING:
    from .state_machine import LockStateMachine

logger = logging.getLogger("devicelock.listener")

ALL_DEVICES_TOPIC = "all_devices"

LockCallback = Callable[[bool, DeviceRecord], Awaitable[Any]]
ReconnectCallback = Callable[[DeviceRecord], Awaitable[Any]]


class CommandListener:
    def __init__(self, client: ControlPlaneClient):
        self.client = client
        self.last_delivered: Optional[bool] = None
        self.deliveries = 0
        self.dropped = 0
        self.subscription: Optional[Subscription] = None

    def subscribe(
        self,
        device_id: str,
        on_lock_changed: LockCallback,
        on_reconnected: Optional[ReconnectCallback] = None,
    ) -> Subscription:
        if self.subscription is not None and not self.subscription.done:
            raise AlreadySubscribed(f"command listener already subscribed to {self.subscription.device_id}")

        async def _on_snapshot(value: Any, record: DeviceRecord, fresh: bool) -> None:
            locked = bool(value)
            if fresh and on_reconnected is not None:
                # The reconcile owns the first snapshot of a connection.
                self.last_delivered = locked
                logger.info(f"LISTENER | device={device_id} fresh snapshot locked={locked}, reconciling")
                await on_reconnected(record)
                return
            if locked == self.last_delivered:
                self.dropped += 1
                logger.debug(f"LISTENER | device={device_id} locked={locked} unchanged, dropped")
                return
            self.last_delivered = locked
            self.deliveries += 1
            logger.info(f"LISTENER | device={device_id} locked={locked} delivery={self.deliveries}")
            await on_lock_changed(locked, record)

        self.subscription = self.client.subscribe(device_id, "locked", _on_snapshot)
        logger.info(f"LISTENER | subscribed device={device_id}")
        return self.subscription

    async def cancel(self) -> None:
        if self.subscription is not None:
            await self.subscription.cancel()
            self.subscription = None


class PushReceiver:
    """
    Redundant wake path: `{command: 'lock'|'unlock'}` messages on the
    `all_devices` topic. An optional `deviceId` restricts a message to one device.
    """

    def __init__(self, machine: "LockStateMachine", device_id: str, client: Optional[ControlPlaneClient] = None):
        self.machine = machine
        self.device_id = device_id
        self.client = client
        self.cursor = 0
        self.primed = False

    async def handle(self, data: dict[str, Any]) -> bool:
        target = data.get("deviceId")
        if target and target != self.device_id:
            return False
        try:
            command = CommandType(data.get("command"))
        except ValueError:
            logger.warning(f"PUSH | ignoring message without a valid command: {data}")
            return False
        logger.info(f"PUSH | command={command.value} device={self.device_id}")
        await self.machine.push_command(command)
        return True

    async def poll(self) -> int:
        """Fetch and handle new topic messages. Returns how many were applied."""
        if self.client is None:
            return 0
        try:
            messages, cursor = await self.client.topic_messages(ALL_DEVICES_TOPIC, self.cursor)
        except RemoteUnavailable as e:
            logger.debug(f"PUSH | poll skipped: {e}")
            return 0
        self.cursor = cursor
        if not self.primed:
            # Backlog published before this process started is not replayed.
            self.primed = True
            return 0
        applied = 0
        for message in messages:
            if await self.handle(message):
                applied += 1
        return applied
