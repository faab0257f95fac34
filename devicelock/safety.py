"""
Safety mechanisms

1. Circuit Breaker: prevents operator mass-lock scenarios
2. Backoff: bounded exponential delay schedule for reconnects and retries
3. Emergency Mass Unlock: see /admin/emergency-unlock in main.py
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Iterable, Optional

logger = logging.getLogger("devicelock.safety")


# ═══════════════════════════════════════════════════════════════════════
# 1. CIRCUIT BREAKER — Mass Lock Protection
# ═══════════════════════════════════════════════════════════════════════

class BreakerState(str, Enum):
    CLOSED = "CLOSED"
    OPEN = "OPEN"


@dataclass
class CircuitBreaker:
    """
    Mass-lock guard for the operator console.

    Remembers which devices were locked from the console during the last
    `window_seconds`. Once `max_locks_in_window` distinct devices are in the
    window the breaker opens and refuses every operator lock until `reset()`
    (emergency unlock does this) or until `cooldown_seconds` have passed.
    Due-date locks are raised on the device itself and never reach it.
    """

    max_locks_in_window: int = 50
    window_seconds: float = 300
    cooldown_seconds: float = 600   # 0 = manual reset only
    clock: Callable[[], float] = time.monotonic

    _recent: dict[str, float] = field(default_factory=dict)   # device_id -> lock time
    _opened_at: Optional[float] = None
    _state: BreakerState = BreakerState.CLOSED

    def allow_lock(self, device_ids: Iterable[str]) -> bool:
        """True when locking `device_ids` keeps the window under the threshold."""
        now = self.clock()
        self._expire_cooldown(now)
        if self._state is BreakerState.OPEN:
            logger.warning("CIRCUIT_BREAKER | OPEN, lock refused")
            return False
        self._prune(now)
        fresh = set(device_ids) - self._recent.keys()
        if len(self._recent) + len(fresh) > self.max_locks_in_window:
            logger.warning(
                f"CIRCUIT_BREAKER | {len(fresh)} more locks would pass "
                f"{self.max_locks_in_window} in {self.window_seconds:.0f}s, refused"
            )
            return False
        return True

    def record_lock(self, device_ids: Iterable[str]) -> None:
        now = self.clock()
        for device_id in device_ids:
            self._recent[device_id] = now
        self._prune(now)
        if len(self._recent) >= self.max_locks_in_window:
            self._open(now)

    def reset(self) -> None:
        self._state = BreakerState.CLOSED
        self._opened_at = None
        self._recent.clear()
        logger.info("CIRCUIT_BREAKER | reset to CLOSED")

    @property
    def state(self) -> BreakerState:
        self._expire_cooldown(self.clock())
        return self._state

    @property
    def current_count(self) -> int:
        self._prune(self.clock())
        return len(self._recent)

    def _prune(self, now: float) -> None:
        cutoff = now - self.window_seconds
        self._recent = {d: t for d, t in self._recent.items() if t > cutoff}

    def _open(self, now: float) -> None:
        self._state = BreakerState.OPEN
        self._opened_at = now
        logger.critical(
            f"CIRCUIT_BREAKER | OPEN devices={len(self._recent)} "
            f"window={self.window_seconds:.0f}s threshold={self.max_locks_in_window}"
        )

    def _expire_cooldown(self, now: float) -> None:
        if (
            self._state is BreakerState.OPEN
            and self.cooldown_seconds > 0
            and self._opened_at is not None
            and now - self._opened_at > self.cooldown_seconds
        ):
            logger.info("CIRCUIT_BREAKER | cooldown elapsed")
            self.reset()


# Shared by the operator routes
circuit_breaker = CircuitBreaker()


# ═══════════════════════════════════════════════════════════════════════
# 2. BACKOFF — Reconnect / Retry Schedule
# ═══════════════════════════════════════════════════════════════════════

@dataclass
class Backoff:
    """
    Exponential delay schedule: base, 2*base, 4*base, ... capped at `cap`.

    Used by the change subscriptions (transport loss → 1s, 2s, 4s, 8s, ... 60s)
    and by the retry-forever remote patches. `reset()` after a success.
    """

    base: float = 1.0
    cap: float = 60.0

    _attempt: int = field(default=0)

    def next_delay(self) -> float:
        # Stop growing the exponent once the cap is reached.
        delay = min(self.cap, self.base * (2 ** self._attempt))
        if delay < self.cap:
            self._attempt += 1
        return delay

    def reset(self) -> None:
        self._attempt = 0

    def schedule(self, n: int) -> list[float]:
        """The first `n` delays from a fresh schedule, without consuming state."""
        backoff = Backoff(base=self.base, cap=self.cap)
        return [backoff.next_delay() for _ in range(n)]
