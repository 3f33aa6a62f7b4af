import threading

import pytest

from rate_limiter import ANONYMOUS_KEY, SlidingWindowRateLimiter, resolve_identity_key


class FakeClock:
    def __init__(self, start=1000.0):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def limiter(clock):
    return SlidingWindowRateLimiter(limit_per_minute=10, clock=clock)


def test_eleventh_call_in_window_is_denied(limiter):
    decisions = [limiter.admit("mgr-a") for _ in range(10)]
    assert all(d.admitted for d in decisions)
    assert [d.remaining for d in decisions] == list(range(9, -1, -1))

    denied = limiter.admit("mgr-a")
    assert denied.admitted is False
    assert denied.retry_after_seconds == 60
    assert denied.remaining == 0
    assert denied.limit == 10


def test_identities_are_limited_independently(limiter):
    for _ in range(10):
        limiter.admit("mgr-a")
    assert not limiter.admit("mgr-a").admitted
    assert limiter.admit("mgr-b").admitted


def test_denied_burst_extends_the_lockout(limiter, clock):
    for _ in range(10):
        limiter.admit("mgr-a")
    clock.advance(30)
    assert not any(limiter.admit("mgr-a").admitted for _ in range(10))

    # the ten admitted calls age out, the ten denied ones are still in the window
    clock.advance(30.5)
    assert not limiter.admit("mgr-a").admitted

    clock.advance(30)
    decision = limiter.admit("mgr-a")
    assert decision.admitted
    assert decision.remaining == 8


def test_window_record_stays_bounded(limiter):
    for _ in range(500):
        limiter.admit("mgr-a")
    assert len(limiter._windows["mgr-a"].timestamps) == 11


def test_window_slides(limiter, clock):
    for _ in range(5):
        limiter.admit("mgr-a")
    clock.advance(40)
    for _ in range(5):
        limiter.admit("mgr-a")
    assert not limiter.admit("mgr-a").admitted

    clock.advance(20.5)
    assert limiter.admit("mgr-a").admitted


def test_sweep_drops_idle_windows(limiter, clock):
    limiter.admit("mgr-a")
    limiter.admit("mgr-b")
    clock.advance(30)
    limiter.admit("mgr-b")
    clock.advance(31)

    assert limiter.sweep() == 1
    assert limiter.tracked_keys() == 1
    assert limiter.admit("mgr-a").remaining == 9


def test_sweep_runs_periodically(clock):
    limiter = SlidingWindowRateLimiter(limit_per_minute=10, sweep_interval=3, clock=clock)
    limiter.admit("a")
    limiter.admit("b")
    clock.advance(61)
    limiter.admit("c")
    assert limiter.tracked_keys() == 1


def test_concurrent_callers_never_exceed_limit():
    limiter = SlidingWindowRateLimiter(limit_per_minute=10)
    admitted = []
    barrier = threading.Barrier(20)

    def call():
        barrier.wait()
        admitted.append(limiter.admit("shared").admitted)

    threads = [threading.Thread(target=call) for _ in range(20)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert admitted.count(True) == 10
    assert admitted.count(False) == 10


def test_from_config():
    limiter = SlidingWindowRateLimiter.from_config(
        {"nlp_query": {"rate_limit_per_minute": 3}, "rate_limiter": {"retry_after_seconds": 15}}
    )
    assert limiter.limit == 3
    assert limiter.retry_after_seconds == 15
    assert limiter.window_seconds == 60.0


@pytest.mark.parametrize("claims,remote_addr,expected", [
    ({"manager_id": "mgr-1", "sub": "user-1"}, "10.0.0.1", "mgr-1"),
    ({"sub": "user-1"}, "10.0.0.1", "user-1"),
    ({}, "10.0.0.1", "10.0.0.1"),
    (None, None, ANONYMOUS_KEY),
])
def test_resolve_identity_key(claims, remote_addr, expected):
    assert resolve_identity_key(claims, remote_addr) == expected
