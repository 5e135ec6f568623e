from concurrent.futures import ThreadPoolExecutor

import pytest

from backend.services.rate_limiter import RateLimiter


class _FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def test_first_request_always_admits():
    limiter = RateLimiter(per_minute=1, per_hour=1, clock=_FakeClock())
    decision = limiter.admit("alice")
    assert decision.allowed is True
    assert decision.retry_after_seconds is None


def test_admits_exactly_the_ceiling_then_rejects_with_retry_hint():
    clock = _FakeClock()
    limiter = RateLimiter(per_minute=20, per_hour=200, clock=clock)
    for _ in range(20):
        assert limiter.admit("42").allowed
    denied = limiter.admit("42")
    assert denied.allowed is False
    assert denied.scope == "minute"
    assert denied.retry_after_seconds == 60


def test_retry_hint_tracks_oldest_entry_in_minute_window():
    clock = _FakeClock()
    limiter = RateLimiter(per_minute=2, per_hour=100, clock=clock)
    limiter.admit("u")
    clock.advance(45)
    limiter.admit("u")
    denied = limiter.admit("u")
    assert denied.allowed is False
    assert denied.retry_after_seconds == 15


def test_window_slides():
    clock = _FakeClock()
    limiter = RateLimiter(per_minute=3, per_hour=100, clock=clock)
    for _ in range(3):
        limiter.admit("u")
    assert limiter.admit("u").allowed is False
    clock.advance(60)
    assert limiter.admit("u").allowed is True


def test_hourly_ceiling_is_a_secondary_gate():
    clock = _FakeClock()
    limiter = RateLimiter(per_minute=5, per_hour=8, clock=clock)
    for _ in range(5):
        assert limiter.admit("u").allowed
    clock.advance(61)
    for _ in range(3):
        assert limiter.admit("u").allowed
    denied = limiter.admit("u")
    assert denied.allowed is False
    assert denied.scope == "hour"
    assert denied.retry_after_seconds == 3600 - 61


def test_entries_older_than_an_hour_are_pruned():
    clock = _FakeClock()
    limiter = RateLimiter(per_minute=10, per_hour=10, clock=clock)
    for _ in range(4):
        limiter.admit("u")
    clock.advance(3601)
    assert limiter.counts("u") == {"minute": 0, "hour": 0}


def test_release_returns_the_slot():
    limiter = RateLimiter(per_minute=2, per_hour=10, clock=_FakeClock())
    limiter.admit("u")
    second = limiter.admit("u")
    assert limiter.admit("u").allowed is False
    assert limiter.release("u", second.stamp) is True
    assert limiter.counts("u")["minute"] == 1
    assert limiter.admit("u").allowed is True


def test_release_of_unknown_reservation_is_a_no_op():
    limiter = RateLimiter(clock=_FakeClock())
    assert limiter.release("nobody", 1.0) is False
    limiter.admit("u")
    assert limiter.release("u", 12345.0) is False
    assert limiter.release("u", None) is False
    assert limiter.counts("u")["minute"] == 1


def test_identities_are_independent():
    limiter = RateLimiter(per_minute=1, per_hour=10, clock=_FakeClock())
    assert limiter.admit("a").allowed
    assert limiter.admit("b").allowed
    assert limiter.admit(1).allowed
    assert limiter.admit("a").allowed is False


def test_concurrent_requests_never_exceed_ceiling():
    limiter = RateLimiter(per_minute=20, per_hour=200, clock=_FakeClock())
    with ThreadPoolExecutor(max_workers=16) as pool:
        decisions = list(pool.map(lambda _: limiter.admit("same"), range(200)))
    assert sum(1 for d in decisions if d.allowed) == 20
    assert limiter.counts("same")["minute"] == 20


def test_reset():
    limiter = RateLimiter(per_minute=1, per_hour=10, clock=_FakeClock())
    limiter.admit("u")
    limiter.reset("u")
    assert limiter.admit("u").allowed


def test_ceilings_must_be_positive():
    with pytest.raises(ValueError):
        RateLimiter(per_minute=0)


def test_idle_identities_are_dropped_after_the_hour_horizon():
    clock = _FakeClock()
    limiter = RateLimiter(per_minute=5, per_hour=50, clock=clock, sweep_interval_s=300)
    for phone in range(100):
        limiter.admit(f"+1555{phone:04d}")
    assert len(limiter._windows) == 100

    clock.advance(1800)
    limiter.admit("active")
    assert len(limiter._windows) == 101

    clock.advance(1801)
    assert limiter.sweep() == 100
    assert list(limiter._windows) == ["active"]


def test_admit_sweeps_on_its_own_schedule():
    clock = _FakeClock()
    limiter = RateLimiter(per_minute=5, per_hour=50, clock=clock, sweep_interval_s=300)
    for phone in range(10):
        limiter.admit(phone)
    clock.advance(3601)
    assert limiter.admit("next").allowed is True
    assert list(limiter._windows) == ["next"]


def test_swept_identity_starts_from_a_clean_window():
    clock = _FakeClock()
    limiter = RateLimiter(per_minute=1, per_hour=10, clock=clock)
    limiter.admit("u")
    clock.advance(3601)
    limiter.sweep()
    assert limiter.admit("u").allowed is True
    assert limiter.admit("u").allowed is False
