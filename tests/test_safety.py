"""
Tests for the safety mechanisms: mass-lock circuit breaker and backoff schedule.
"""

from devicelock.safety import Backoff, BreakerState, CircuitBreaker


# ── Circuit Breaker Tests ──────────────────────────────────────────────

class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


def _devices(n, prefix="d"):
    return [f"{prefix}{i}" for i in range(n)]


def test_cb_allows_under_threshold():
    cb = CircuitBreaker(max_locks_in_window=5, window_seconds=60, clock=FakeClock())
    for device_id in _devices(4):
        assert cb.allow_lock([device_id]) is True
        cb.record_lock([device_id])
    assert cb.state == BreakerState.CLOSED
    assert cb.current_count == 4


def test_cb_trips_at_threshold():
    cb = CircuitBreaker(max_locks_in_window=3, window_seconds=60, clock=FakeClock())
    cb.record_lock(_devices(3))
    assert cb.state == BreakerState.OPEN
    assert cb.allow_lock(["other"]) is False


def test_cb_same_device_counts_once():
    cb = CircuitBreaker(max_locks_in_window=2, window_seconds=60, clock=FakeClock())
    for _ in range(5):
        cb.record_lock(["d0"])
    assert cb.state == BreakerState.CLOSED
    assert cb.current_count == 1


def test_cb_batch_over_limit_denied():
    cb = CircuitBreaker(max_locks_in_window=10, window_seconds=60, clock=FakeClock())
    cb.record_lock(_devices(8))
    assert cb.allow_lock(_devices(2, "x")) is True
    assert cb.allow_lock(_devices(3, "x")) is False
    # Devices already in the window do not count again
    assert cb.allow_lock(_devices(8) + ["x0"]) is True


def test_cb_manual_reset():
    cb = CircuitBreaker(max_locks_in_window=2, window_seconds=60, clock=FakeClock())
    cb.record_lock(["a", "b"])
    assert cb.state == BreakerState.OPEN
    cb.reset()
    assert cb.state == BreakerState.CLOSED
    assert cb.allow_lock(["c"]) is True


def test_cb_auto_reset_after_cooldown():
    clock = FakeClock()
    cb = CircuitBreaker(max_locks_in_window=1, window_seconds=60, cooldown_seconds=30, clock=clock)
    cb.record_lock(["a"])
    clock.now += 30
    assert cb.state == BreakerState.OPEN
    clock.now += 1
    assert cb.state == BreakerState.CLOSED


def test_cb_no_auto_reset_when_cooldown_disabled():
    clock = FakeClock()
    cb = CircuitBreaker(max_locks_in_window=1, window_seconds=60, cooldown_seconds=0, clock=clock)
    cb.record_lock(["a"])
    clock.now += 10_000
    assert cb.state == BreakerState.OPEN


def test_cb_window_slides():
    clock = FakeClock()
    cb = CircuitBreaker(max_locks_in_window=3, window_seconds=60, clock=clock)
    cb.record_lock(["a", "b"])
    clock.now += 61
    cb.record_lock(["c"])
    assert cb.state == BreakerState.CLOSED
    assert cb.current_count == 1


# ── Backoff Tests ──────────────────────────────────────────────────────

def test_backoff_doubles_then_caps():
    assert Backoff().schedule(8) == [1, 2, 4, 8, 16, 32, 60, 60]


def test_backoff_next_delay_and_reset():
    b = Backoff(base=1.0, cap=60.0)
    assert [b.next_delay() for _ in range(4)] == [1, 2, 4, 8]
    b.reset()
    assert b.next_delay() == 1


def test_backoff_stays_at_cap():
    b = Backoff(base=1.0, cap=60.0)
    delays = [b.next_delay() for _ in range(50)]
    assert max(delays) == 60
    assert delays[-1] == 60


def test_backoff_schedule_does_not_consume():
    b = Backoff(base=0.5, cap=4.0)
    assert b.schedule(5) == [0.5, 1.0, 2.0, 4.0, 4.0]
    assert b.next_delay() == 0.5
