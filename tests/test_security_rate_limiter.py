from __future__ import annotations

from pathlib import Path

import pytest

from schoolgate.api.errors import PolicyViolation
from schoolgate.core.config import RateLimitPolicy
from schoolgate.security.rate_limiter import RateLimiter
from tests.factories import FakeClock


def test_fixed_window_allows_five_then_denies_until_window_passes(tmp_path: Path) -> None:
    clock = FakeClock()
    limiter = RateLimiter(database_path=tmp_path / "state.db", clock=clock)

    results = [limiter.allow("login", "10.0.0.1", 5, 900) for _ in range(6)]
    assert results == [True, True, True, True, True, False]

    clock.advance(900)
    assert not limiter.allow("login", "10.0.0.1", 5, 900)

    clock.advance(1)
    assert limiter.allow("login", "10.0.0.1", 5, 900)
    limiter.close()


def test_windows_are_scoped_by_action_and_identity(tmp_path: Path) -> None:
    limiter = RateLimiter(database_path=tmp_path / "state.db", clock=FakeClock())

    assert limiter.allow("login", "10.0.0.1", 1, 60)
    assert not limiter.allow("login", "10.0.0.1", 1, 60)
    assert limiter.allow("login", "10.0.0.2", 1, 60)
    assert limiter.allow("api_request", "10.0.0.1", 1, 60)
    limiter.close()


def test_counters_are_shared_between_limiter_instances(tmp_path: Path) -> None:
    clock = FakeClock()
    first = RateLimiter(database_path=tmp_path / "state.db", clock=clock)
    second = RateLimiter(database_path=tmp_path / "state.db", clock=clock)

    assert first.allow("general", "10.0.0.1", 2, 60)
    assert second.allow("general", "10.0.0.1", 2, 60)
    assert not first.allow("general", "10.0.0.1", 2, 60)
    first.close()
    second.close()


def test_violation_carries_remaining_window_as_retry_after(tmp_path: Path) -> None:
    clock = FakeClock()
    limiter = RateLimiter(database_path=tmp_path / "state.db", clock=clock)
    policy = RateLimitPolicy(requests=1, window_seconds=3600)

    assert limiter.allow("password_reset", "10.0.0.1", policy.requests, policy.window_seconds)
    clock.advance(600)
    assert not limiter.allow("password_reset", "10.0.0.1", policy.requests, policy.window_seconds)
    violation = limiter.violation("password_reset", "10.0.0.1", policy, message="Slow down")
    limiter.close()

    assert isinstance(violation, PolicyViolation)
    assert violation.status_code == 429
    assert violation.headers == {"Retry-After": "3000"}
    assert violation.detail["error_code"] == "RATE_LIMITED"
    assert violation.detail["message"] == "Slow down"


def test_assert_allowed_raises_once_the_ceiling_is_reached(tmp_path: Path) -> None:
    limiter = RateLimiter(database_path=tmp_path / "state.db", clock=FakeClock())
    policy = RateLimitPolicy(requests=2, window_seconds=60)

    limiter.assert_allowed("api_request", "10.0.0.1", policy)
    limiter.assert_allowed("api_request", "10.0.0.1", policy)
    with pytest.raises(PolicyViolation) as exc:
        limiter.assert_allowed("api_request", "10.0.0.1", policy)
    limiter.close()

    assert exc.value.headers == {"Retry-After": "60"}
