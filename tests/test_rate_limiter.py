"""
Tests for path normalization and per-endpoint concurrency limits.
"""

from __future__ import annotations

import asyncio

import pytest

from ncentral_migrator.rate_limiter import ConcurrencyLimiter, EndpointLimits, normalize_path


@pytest.mark.unit
class TestNormalizePath:
    """Test integer segment replacement."""

    @pytest.mark.parametrize(
        ("path", "expected"),
        [
            ("/api/devices/12345", "/api/devices/{id}"),
            ("/api/devices/12345/custom-properties", "/api/devices/{id}/custom-properties"),
            ("/api/org-units/1/users", "/api/org-units/{id}/users"),
            ("/api/customers", "/api/customers"),
            ("/api/devices/abc", "/api/devices/abc"),
            ("/api/devices/-3", "/api/devices/{id}"),
            ("/api/devices/+7", "/api/devices/{id}"),
            ("/api/devices/1_000", "/api/devices/1_000"),
            ("/api/devices/ 12", "/api/devices/ 12"),
            ("/api/devices/٣", "/api/devices/٣"),
            ("/api/devices/99999999999999999999", "/api/devices/99999999999999999999"),
        ],
    )
    def test_examples(self, path: str, expected: str) -> None:
        """Only purely numeric segments are replaced."""
        assert normalize_path(path) == expected

    def test_idempotent(self) -> None:
        """Normalizing twice changes nothing."""
        once = normalize_path("/api/org-units/42/custom-properties/7")
        assert normalize_path(once) == once


@pytest.mark.unit
class TestLimits:
    """Test limit resolution."""

    @pytest.mark.parametrize(
        ("path", "limit"),
        [
            ("/api/auth/authenticate", 50),
            ("/api/server-info", 50),
            ("/api/devices/99", 50),
            ("/api/devices", 5),
            ("/api/customers", 5),
            ("/api/org-units/3/active-issues", 3),
            ("/api/org-units/3/user-roles", 5),
            ("/api/something/else", 5),
        ],
    )
    def test_get_limit(self, path: str, limit: int) -> None:
        """Exact match, then normalized match, then the default."""
        assert ConcurrencyLimiter().get_limit(path) == limit

    def test_custom_limits(self) -> None:
        """Custom tables replace the built-in one."""
        limiter = ConcurrencyLimiter(EndpointLimits(default=2, endpoints={"/api/devices/{id}": 9}))

        assert limiter.get_limit("/api/devices/1") == 9
        assert limiter.get_limit("/api/customers") == 2

    def test_limits_must_be_positive(self) -> None:
        """A zero bound is rejected."""
        with pytest.raises(ValueError, match="must be >= 1"):
            EndpointLimits(default=0)
        with pytest.raises(ValueError, match="/api/x"):
            EndpointLimits(endpoints={"/api/x": 0})


@pytest.mark.unit
class TestAcquire:
    """Test permit accounting."""

    @pytest.mark.asyncio
    async def test_concurrent_holders_never_exceed_limit(self) -> None:
        """Ten tasks on a bound of three hold at most three permits."""
        limiter = ConcurrencyLimiter(EndpointLimits(default=3, endpoints={}))
        peak = 0

        async def call() -> None:
            nonlocal peak
            async with limiter.acquire("/api/customers"):
                peak = max(peak, limiter.in_flight("/api/customers"))
                await asyncio.sleep(0)

        await asyncio.gather(*(call() for _ in range(10)))

        assert peak == 3
        assert limiter.in_flight("/api/customers") == 0

    @pytest.mark.asyncio
    async def test_permit_released_on_error(self) -> None:
        """An exception inside the block still releases the permit."""
        limiter = ConcurrencyLimiter()

        with pytest.raises(RuntimeError):
            async with limiter.acquire("/api/devices/1"):
                msg = "boom"
                raise RuntimeError(msg)

        assert limiter.in_flight("/api/devices/1") == 0

    @pytest.mark.asyncio
    async def test_pools_are_separate(self) -> None:
        """Different patterns do not share permits."""
        limiter = ConcurrencyLimiter()

        async with limiter.acquire("/api/devices/1"), limiter.acquire("/api/devices/2"):
            assert limiter.in_flight("/api/devices/7") == 2
            assert limiter.in_flight("/api/customers") == 0
