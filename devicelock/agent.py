"""
On-device enforcement agent: composition root and CLI.

    devicelock-agent run                          — boot, subscribe, run the periodic workers
    devicelock-agent register --pin 1234 --model  — register this device and exit
    devicelock-agent unlock --pin 1234            — offline unlock with the registration PIN
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys
import uuid
from typing import Any, Awaitable, Callable, Optional

import httpx

from .config import Settings, settings as default_settings
from .control_plane import ControlPlaneClient, Subscription
from .due_date import DueDateEvaluator
from .errors import InvalidInput
from .heartbeat import Heartbeat
from .listener import CommandListener, PushReceiver
from .location import FixedLocationSource, LocationCapture, LocationSource
from .location_log import LocationLog
from .location_sync import LocationSyncWorker
from .models import LockState
from .payment_link import PaymentLinkCache
from .privilege import HeadlessHost, PlatformHost, Privilege
from .scheduler import PeriodicTask
from .secret_store import SecretStore
from .state_machine import LockStateMachine

logger = logging.getLogger("devicelock.agent")


def resolve_device_id(store: SecretStore, configured: str = "") -> str:
    """Stored id first, then the configured one, else a new id persisted for next start."""
    stored = store.get("deviceId")
    if stored:
        return stored
    device_id = configured or uuid.uuid4().hex[:16]
    store.put("deviceId", device_id)
    logger.info(f"AGENT | device id assigned device={device_id}")
    return device_id


class Agent:
    def __init__(
        self,
        config: Settings = default_settings,
        host: Optional[PlatformHost] = None,
        location_source: Optional[LocationSource] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.config = config
        data_dir = config.data_dir.expanduser()
        self.store = SecretStore(data_dir, key=config.secret_key or None)
        self.device_id = resolve_device_id(self.store, config.device_id)
        self.location_log = LocationLog(config.location_db_path)
        self.client = ControlPlaneClient(
            config.api_base_url,
            transport=transport,
            timeout=config.request_timeout,
            watch_timeout=config.watch_timeout,
            backoff_base=config.backoff_base,
            backoff_cap=config.backoff_cap,
        )
        self.privilege = Privilege(host or HeadlessHost(), store=self.store)
        self.machine = LockStateMachine(
            self.store,
            self.privilege,
            self.client,
            device_id=self.device_id,
            default_payment_link=config.default_payment_link,
        )
        self.listener = CommandListener(self.client)
        self.push = PushReceiver(self.machine, self.device_id, self.client)
        self.heartbeat = Heartbeat(self.client, self.store, self.device_id)
        self.location_sync = LocationSyncWorker(
            self.location_log, self.client, self.device_id, retention_days=config.retention_days
        )
        self.location = LocationCapture(
            self.location_log,
            location_source or FixedLocationSource(),
            self.device_id,
            self.heartbeat,
            sync_worker=self.location_sync,
            retention_days=config.retention_days,
            tz=config.tz,
        )
        self.payment_link = PaymentLinkCache(
            self.store,
            self.client,
            self.device_id,
            default_link=config.default_payment_link,
            max_age=config.payment_link_max_age,
        )
        self.due_date = DueDateEvaluator(self.store, self.machine, tz=config.tz)

        self.stop_event: Optional[asyncio.Event] = None
        self.tasks: list[PeriodicTask] = []
        self._payment_subscription: Optional[Subscription] = None

    @property
    def registered(self) -> bool:
        return bool(self.store.get("isRegistered"))

    def _when_registered(self, job: Callable[[], Awaitable[Any]]) -> Callable[[], Awaitable[Any]]:
        async def _run():
            if not self.registered:
                return None
            return await job()
        return _run

    def _subscribe(self) -> None:
        if self.listener.subscription is not None:
            return
        self.listener.subscribe(self.device_id, self.machine.remote_lock_changed, self.machine.reconnected)
        self._payment_subscription = self.payment_link.subscribe()

    async def start(self) -> LockState:
        self.stop_event = asyncio.Event()
        # Boot recovery drives the overlay before any remote subscription exists.
        state = await self.machine.boot()
        if state != LockState.UNREGISTERED:
            self._subscribe()

        c = self.config
        jobs = [
            ("heartbeat", c.heartbeat_interval, self.heartbeat.beat),
            ("due-date", c.due_date_interval, self.due_date.run_once),
            ("location-capture", c.location_interval, self.location.capture),
            ("location-sync", c.location_sync_interval, self.location_sync.run_once),
            ("payment-link", c.payment_sync_interval, self.payment_link.sync),
            ("push-poll", c.heartbeat_interval, self.push.poll),
        ]
        self.tasks = [
            PeriodicTask(name, interval, self._when_registered(job), self.stop_event)
            for name, interval, job in jobs
        ]
        for task in self.tasks:
            task.start()
        logger.info(f"AGENT | started device={self.device_id} state={state.value} tier={self.privilege.tier.value}")
        return state

    async def register(self, pin: str, device_model: str) -> bool:
        created = await self.machine.register(pin, device_model, self.device_id)
        if self.stop_event is not None:
            self._subscribe()
        return created

    async def user_present(self) -> bool:
        """Host hook for the user-present (screen unlocked) broadcast."""
        return await self.machine.user_present()

    async def stop(self) -> None:
        if self.stop_event is not None:
            self.stop_event.set()
        await asyncio.gather(*(task.join() for task in self.tasks))
        await self.location.drain()
        await self.listener.cancel()
        if self._payment_subscription is not None:
            await self._payment_subscription.cancel()
        await self.machine.stop()
        await self.client.close()
        self.location_log.close()
        logger.info(f"AGENT | stopped device={self.device_id}")

    async def run_forever(self) -> None:
        await self.start()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self.stop_event.set)
            except NotImplementedError:
                # not available on Windows event loops
                pass
        try:
            await self.stop_event.wait()
        finally:
            await self.stop()


# ── CLI ────────────────────────────────────────────────────────────────

async def _register(agent: Agent, pin: str, model: str) -> int:
    try:
        await agent.machine.boot()
        created = await agent.register(pin, model)
        await asyncio.wait_for(agent.machine.flush_remote(), timeout=agent.config.request_timeout * 3)
    except InvalidInput as e:
        print(f"registration failed: {e}", file=sys.stderr)
        return 2
    except asyncio.TimeoutError:
        logger.warning("AGENT | registration stored locally, remote patch still pending")
    finally:
        await agent.stop()
    print(f"device {agent.device_id} {'registered' if created else 'already registered'}")
    return 0


async def _unlock(agent: Agent, pin: str) -> int:
    try:
        await agent.machine.boot()
        ok = await agent.machine.offline_unlock(pin)
        if ok:
            try:
                await asyncio.wait_for(agent.machine.flush_remote(), timeout=agent.config.request_timeout)
            except asyncio.TimeoutError:
                logger.info("AGENT | unlock stored locally, remote sync continues on next start")
    except InvalidInput as e:
        print(f"unlock failed: {e}", file=sys.stderr)
        return 2
    finally:
        await agent.stop()
    print("unlocked" if ok else "incorrect PIN")
    return 0 if ok else 1


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(prog="devicelock-agent", description="Device lock enforcement agent")
    parser.add_argument("--log-level", default="INFO")
    parser.add_argument("--device-owner", action="store_true", help="Host grants device-owner privilege")
    parser.add_argument("--device-admin", action="store_true", help="Host grants device-admin privilege")
    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("run", help="Run the agent until interrupted")
    reg = sub.add_parser("register", help="Register this device")
    reg.add_argument("--pin", required=True)
    reg.add_argument("--model", required=True)
    unl = sub.add_parser("unlock", help="Offline unlock with the registration PIN")
    unl.add_argument("--pin", required=True)
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=args.log_level.upper(),
        format="%(asctime)s | %(levelname)-5s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    async def _main() -> int:
        agent = Agent(host=HeadlessHost(device_owner=args.device_owner, device_admin=args.device_admin))
        if args.command == "register":
            return await _register(agent, args.pin, args.model)
        if args.command == "unlock":
            return await _unlock(agent, args.pin)
        await agent.run_forever()
        return 0

    return asyncio.run(_main())


if __name__ == "__main__":
    sys.exit(main())
