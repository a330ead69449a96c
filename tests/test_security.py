"""
Tests for the per-client rate limiter
"""

from types import SimpleNamespace

import pytest

from nutrivision import security
from nutrivision.security import RateLimiter


@pytest.fixture
def clock(monkeypatch):
    state = {"now": 1000.0}
    monkeypatch.setattr(security, "time", SimpleNamespace(time=lambda: state["now"]))
    return state


class TestRateLimiter:
    """Sliding window per client address"""

    def test_blocks_within_window_and_recovers_after(self, clock):
        limiter = RateLimiter(max_requests=2, window_seconds=60)

        assert limiter.is_allowed("10.0.0.1")[0] is True
        assert limiter.is_allowed("10.0.0.1")[0] is True
        allowed, message = limiter.is_allowed("10.0.0.1")
        assert allowed is False
        assert message
        assert limiter.is_allowed("10.0.0.2")[0] is True

        clock["now"] += 61
        assert limiter.is_allowed("10.0.0.1")[0] is True

    def test_idle_clients_are_forgotten(self, clock):
        limiter = RateLimiter(max_requests=5, window_seconds=60)
        for address in ("10.0.0.1", "10.0.0.2", "10.0.0.3"):
            limiter.is_allowed(address)

        clock["now"] += 30
        limiter.is_allowed("10.0.0.2")
        assert set(limiter.requests) == {"10.0.0.1", "10.0.0.2", "10.0.0.3"}

        clock["now"] += 45
        limiter.is_allowed("10.0.0.4")

        assert set(limiter.requests) == {"10.0.0.2", "10.0.0.4"}
