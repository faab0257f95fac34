"""
Privilege Abstraction: lock effects backed by the strongest tier the host grants.

    Device Owner   lockScreenNow → immediate screen lock
                   showLockOverlay → pin the agent task (kiosk)
                   blockKeyguardBypass → full
    Device Admin   lockScreenNow → policy-level screen lock
                   showLockOverlay → foreground lock activity with
                                     show-when-locked/dismiss-keyguard/fullscreen/secure flags
                   blockKeyguardBypass → partial (sequential lock mode)
    Accessibility  lockScreenNow → unavailable (overlay only)
                   showLockOverlay → system-alert overlay + back-button suppression
                   blockKeyguardBypass → none

The host OS integration sits behind PlatformHost. A PrivilegeDenied raised by
the host demotes to the next tier and the call is retried there.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Callable, Optional, Protocol

from .errors import PrivilegeDenied
from .models import TIER_ORDER, PrivilegeTier
from .secret_store import SecretStore

logger = logging.getLogger("devicelock.privilege")

# Returned by Privilege._call when every tier refused the effect.
UNAVAILABLE = object()

LOCK_WINDOW_FLAGS = frozenset({"show_when_locked", "dismiss_keyguard", "fullscreen", "secure"})


class KeyguardProtection(str, Enum):
    FULL = "full"
    PARTIAL = "partial"
    NONE = "none"


class PlatformHost(Protocol):
    """OS integration surface. Methods raise PrivilegeDenied when a capability is missing."""

    def is_device_owner(self) -> bool: ...
    def is_device_admin(self) -> bool: ...
    def is_accessibility_enabled(self) -> bool: ...

    def lock_now(self) -> None: ...
    def start_lock_task(self) -> None: ...
    def stop_lock_task(self) -> None: ...
    def launch_lock_activity(self, flags: frozenset[str]) -> None: ...
    def finish_lock_activity(self) -> None: ...
    def clear_window_flags(self) -> None: ...
    def add_overlay(self) -> None: ...
    def remove_overlay(self) -> None: ...
    def set_back_suppressed(self, suppressed: bool) -> None: ...
    def set_keyguard_disabled(self, disabled: bool) -> None: ...
    def set_password_quality(self, quality: str) -> None: ...


# ── Tier strategies ────────────────────────────────────────────────────

class _DeviceOwner:
    tier = PrivilegeTier.DEVICE_OWNER

    def __init__(self, host: PlatformHost):
        self.host = host

    def lock_screen_now(self) -> bool:
        self.host.lock_now()
        return True

    def show_lock_overlay(self) -> None:
        self.host.start_lock_task()

    def dismiss_lock_overlay(self) -> None:
        self.host.stop_lock_task()

    def block_keyguard_bypass(self) -> KeyguardProtection:
        self.host.set_keyguard_disabled(False)
        return KeyguardProtection.FULL


class _DeviceAdmin:
    tier = PrivilegeTier.DEVICE_ADMIN

    def __init__(self, host: PlatformHost):
        self.host = host

    def lock_screen_now(self) -> bool:
        self.host.lock_now()
        return True

    def show_lock_overlay(self) -> None:
        self.host.launch_lock_activity(LOCK_WINDOW_FLAGS)

    def dismiss_lock_overlay(self) -> None:
        self.host.finish_lock_activity()
        self.host.clear_window_flags()

    def block_keyguard_bypass(self) -> KeyguardProtection:
        # Native keyguard stays on underneath the overlay.
        self.host.set_keyguard_disabled(False)
        self.host.set_password_quality("something")
        return KeyguardProtection.PARTIAL


class _Accessibility:
    tier = PrivilegeTier.ACCESSIBILITY

    def __init__(self, host: PlatformHost):
        self.host = host

    def lock_screen_now(self) -> bool:
        return False

    def show_lock_overlay(self) -> None:
        self.host.add_overlay()
        self.host.set_back_suppressed(True)

    def dismiss_lock_overlay(self) -> None:
        self.host.remove_overlay()
        self.host.set_back_suppressed(False)

    def block_keyguard_bypass(self) -> KeyguardProtection:
        return KeyguardProtection.NONE


_STRATEGIES = {
    PrivilegeTier.DEVICE_OWNER: _DeviceOwner,
    PrivilegeTier.DEVICE_ADMIN: _DeviceAdmin,
    PrivilegeTier.ACCESSIBILITY: _Accessibility,
}


def probe(host: PlatformHost) -> PrivilegeTier:
    """Strongest tier the host currently grants."""
    if host.is_device_owner():
        return PrivilegeTier.DEVICE_OWNER
    if host.is_device_admin():
        return PrivilegeTier.DEVICE_ADMIN
    if not host.is_accessibility_enabled():
        logger.warning("PRIVILEGE | accessibility service not enabled, device control may be limited")
    return PrivilegeTier.ACCESSIBILITY


class Privilege:
    """
    Effector used by the lock state machine. No upward callbacks other than
    `on_warning`, which carries demotion notices to the UI channel.
    """

    def __init__(
        self,
        host: PlatformHost,
        store: Optional[SecretStore] = None,
        on_warning: Optional[Callable[[str], None]] = None,
        tier: Optional[PrivilegeTier] = None,
    ):
        self.host = host
        self.store = store
        self.on_warning = on_warning
        self.overlay_active = False
        self._strategy = _STRATEGIES[tier or probe(host)](host)
        logger.info(f"PRIVILEGE | tier={self.tier.value}")

    @property
    def tier(self) -> PrivilegeTier:
        return self._strategy.tier

    def _demote(self, err: PrivilegeDenied) -> bool:
        index = TIER_ORDER.index(self.tier)
        if index + 1 >= len(TIER_ORDER):
            logger.error(f"PRIVILEGE | {err} on weakest tier, no fallback")
            self._warn(f"Lock enforcement unavailable: {err}")
            return False
        previous = self.tier
        self._strategy = _STRATEGIES[TIER_ORDER[index + 1]](self.host)
        logger.warning(f"PRIVILEGE | DEMOTED {previous.value} -> {self.tier.value} ({err})")
        self._warn(f"Privilege reduced to {self.tier.value}: {err}")
        return True

    def _warn(self, message: str) -> None:
        if self.on_warning is not None:
            self.on_warning(message)

    def _call(self, name: str):
        """Run an effect on the current tier, demoting on denial. UNAVAILABLE when no tier can."""
        while True:
            try:
                return getattr(self._strategy, name)()
            except PrivilegeDenied as e:
                if not self._demote(e):
                    return UNAVAILABLE

    def _set_kiosk(self, enabled: bool) -> None:
        if self.store is not None and bool(self.store.get("kioskMode")) != enabled:
            self.store.put("kioskMode", enabled)

    # ── effects ────────────────────────────────────────────────────────

    def lock_screen_now(self) -> bool:
        done = self._call("lock_screen_now")
        if done is UNAVAILABLE or not done:
            logger.info(f"PRIVILEGE | lockScreenNow unavailable on {self.tier.value}, overlay only")
            return False
        return True

    def show_lock_overlay(self, force: bool = False) -> bool:
        """Show the overlay. `force` redraws it even when it is believed to be up."""
        if self.overlay_active and not force:
            logger.debug("PRIVILEGE | overlay already active, skipping")
            return False
        shown_on = self.tier
        if self._call("show_lock_overlay") is UNAVAILABLE:
            logger.error(f"PRIVILEGE | overlay could not be shown tier={self.tier.value}")
            return False
        self.overlay_active = True
        # The lock task is only pinned on the device-owner tier.
        self._set_kiosk(self.tier == PrivilegeTier.DEVICE_OWNER)
        logger.info(f"PRIVILEGE | overlay shown tier={shown_on.value}->{self.tier.value}")
        return True

    def dismiss_lock_overlay(self) -> bool:
        if not self.overlay_active:
            return False
        if self._call("dismiss_lock_overlay") is UNAVAILABLE:
            logger.error(f"PRIVILEGE | overlay could not be dismissed tier={self.tier.value}")
            return False
        self.overlay_active = False
        self._set_kiosk(False)
        logger.info(f"PRIVILEGE | overlay dismissed tier={self.tier.value}")
        return True

    def block_keyguard_bypass(self) -> KeyguardProtection:
        protection = self._call("block_keyguard_bypass")
        return KeyguardProtection.NONE if protection is UNAVAILABLE else protection

    def enable_sequential_lock_mode(self) -> bool:
        """Keep the native keyguard in front of the overlay. Requires device admin."""
        if self.tier != PrivilegeTier.DEVICE_ADMIN:
            return False
        protection = self.block_keyguard_bypass()
        if protection != KeyguardProtection.PARTIAL:
            return False
        if self.store is not None:
            with self.store.edit() as e:
                e.put("sequentialLockMode", True)
                e.put("nativeLockDisabled", False)
        logger.info("PRIVILEGE | sequential lock mode enabled")
        return True

    def release(self) -> None:
        self.dismiss_lock_overlay()


class HeadlessHost:
    """
    PlatformHost for running the agent without an OS integration: every
    effect is logged, capabilities come from the constructor.
    """

    def __init__(self, device_owner: bool = False, device_admin: bool = False, accessibility: bool = True):
        self._owner = device_owner
        self._admin = device_admin or device_owner
        self._accessibility = accessibility
        self.log = logging.getLogger("devicelock.host")

    def is_device_owner(self) -> bool:
        return self._owner

    def is_device_admin(self) -> bool:
        return self._admin

    def is_accessibility_enabled(self) -> bool:
        return self._accessibility

    def lock_now(self) -> None:
        self.log.info("HOST | lock_now")

    def start_lock_task(self) -> None:
        self.log.info("HOST | start_lock_task")

    def stop_lock_task(self) -> None:
        self.log.info("HOST | stop_lock_task")

    def launch_lock_activity(self, flags: frozenset[str]) -> None:
        self.log.info(f"HOST | launch_lock_activity flags={sorted(flags)}")

    def finish_lock_activity(self) -> None:
        self.log.info("HOST | finish_lock_activity")

    def clear_window_flags(self) -> None:
        self.log.info("HOST | clear_window_flags")

    def add_overlay(self) -> None:
        self.log.info("HOST | add_overlay")

    def remove_overlay(self) -> None:
        self.log.info("HOST | remove_overlay")

    def set_back_suppressed(self, suppressed: bool) -> None:
        self.log.info(f"HOST | set_back_suppressed {suppressed}")

    def set_keyguard_disabled(self, disabled: bool) -> None:
        self.log.info(f"HOST | set_keyguard_disabled {disabled}")

    def set_password_quality(self, quality: str) -> None:
        self.log.info(f"HOST | set_password_quality {quality}")
