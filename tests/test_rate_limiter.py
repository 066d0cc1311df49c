"""
Tests for fixed-window rate limiting.
"""
import asyncio
from unittest.mock import AsyncMock

import pytest

from models.rate_limit import DEFAULT_LIMIT_POLICIES, LimitPolicy, LimitSpec, RateLimitResult
from services.rate_limiter import CACHE_UNAVAILABLE, RateLimiter
from utils.exceptions import ConfigurationError, TransientStoreError


@pytest.mark.unit
class TestRateLimitCounter:

    async def test_allows_up_to_max_then_denies(self, counter):
        limit = LimitSpec(3, 60)

        results = [await counter.check("ip:1.2.3.4:login", limit) for _ in range(3)]
        assert all(r.allowed for r in results)
        assert [r.remaining for r in results] == [2, 1, 0]

        denied = await counter.check("ip:1.2.3.4:login", limit)
        assert not denied.allowed
        assert denied.remaining == 0
        assert denied.limit == 3

    async def test_denied_request_is_not_counted(self, counter):
        limit = LimitSpec(1, 60)
        await counter.check("k", limit)
        await counter.check("k", limit)
        await counter.check("k", limit)

        window = await counter.peek("k")
        assert window.count == 1

    async def test_window_resets_after_expiry(self, counter, fake_clock):
        limit = LimitSpec(2, 60)
        first = await counter.check("k", limit)
        await counter.check("k", limit)
        assert not (await counter.check("k", limit)).allowed

        fake_clock.advance(61)
        result = await counter.check("k", limit)

        assert result.allowed
        assert result.remaining == 1
        assert result.reset_at > first.reset_at
        assert (await counter.peek("k")).count == 1

    async def test_reset_at_is_fixed_for_the_window(self, counter, fake_clock):
        limit = LimitSpec(5, 60)
        first = await counter.check("k", limit)
        fake_clock.advance(30)
        second = await counter.check("k", limit)

        assert first.reset_at == second.reset_at == int(fake_clock.now) - 30 + 60
        assert second.retry_after(fake_clock.now) == 30

    async def test_zero_limit_denies_everything(self, counter):
        result = await counter.check("k", LimitSpec(0, 60))
        assert not result.allowed
        assert await counter.peek("k") is None

    async def test_store_outage_fails_open(self, counter, memory_store, metrics):
        memory_store.consume_fixed_window = AsyncMock(side_effect=TransientStoreError("timeout"))

        result = await counter.check("k", LimitSpec(1, 60), scope="ip")

        assert result.allowed
        assert result.error == CACHE_UNAVAILABLE
        assert result.failed_open
        assert metrics.get_sample_value("gatekeeper_fail_open_total", {"component": "rate_limiter"}) == 1.0

    async def test_reset_clears_counter(self, counter):
        limit = LimitSpec(1, 60)
        await counter.check("k", limit)
        assert await counter.reset("k")
        assert (await counter.check("k", limit)).allowed

    @pytest.mark.concurrency
    async def test_concurrent_checks_never_exceed_max(self, counter):
        limit = LimitSpec(10, 60)

        # One event loop per worker thread; checks contend for the store lock
        results = await asyncio.gather(*(
            asyncio.to_thread(asyncio.run, counter.check("ip:9.9.9.9:api", limit)) for _ in range(50)
        ))

        assert sum(1 for r in results if r.allowed) == 10
        assert (await counter.peek("ip:9.9.9.9:api")).count == 10


@pytest.mark.unit
class TestRateLimiter:

    async def test_unknown_action_uses_default_policy(self, rate_limiter):
        result = await rate_limiter.check_limit("1.2.3.4", "something_else")
        assert result.limit == DEFAULT_LIMIT_POLICIES["default"].ip_limit.max_requests
        assert result.scope == "ip"

    async def test_ip_scope_limit(self, rate_limiter):
        for _ in range(5):
            assert (await rate_limiter.check_limit("1.2.3.4", "login")).allowed
        denied = await rate_limiter.check_limit("1.2.3.4", "login")
        assert not denied.allowed
        assert denied.scope_key == "ip:1.2.3.4:login"

        # A different address and a different action have independent windows
        assert (await rate_limiter.check_limit("5.6.7.8", "login")).allowed
        assert (await rate_limiter.check_limit("1.2.3.4", "register")).allowed

    async def test_user_denial_short_circuits_ip_scope(self, rate_limiter):
        for _ in range(3):
            assert (await rate_limiter.check_limit("1.2.3.4", "login", user_id=42)).allowed

        denied = await rate_limiter.check_limit("1.2.3.4", "login", user_id=42)

        assert not denied.allowed
        assert denied.scope == "user"
        status = await rate_limiter.get_limit_status("1.2.3.4", "login", user_id=42)
        assert status["ip"]["count"] == 3
        assert status["user"]["count"] == 3
        assert status["user"]["remaining"] == 0

    async def test_get_limit_status_does_not_consume(self, rate_limiter):
        assert await rate_limiter.get_limit_status("1.2.3.4", "api") == {"ip": None, "user": None}

        await rate_limiter.check_limit("1.2.3.4", "api")
        await rate_limiter.get_limit_status("1.2.3.4", "api")
        status = await rate_limiter.get_limit_status("1.2.3.4", "api")

        assert status["ip"]["count"] == 1
        assert status["ip"]["remaining"] == 99

    async def test_clear_limit(self, rate_limiter):
        for _ in range(4):
            await rate_limiter.check_limit("1.2.3.4", "login", user_id=7)

        assert await rate_limiter.clear_limit("1.2.3.4", "login", user_id=7)

        assert await rate_limiter.get_limit_status("1.2.3.4", "login", user_id=7) == {"ip": None, "user": None}

    async def test_set_policy(self, rate_limiter):
        rate_limiter.set_policy("upload", LimitPolicy(LimitSpec(1, 30), LimitSpec(1, 30)))

        assert (await rate_limiter.check_limit("1.2.3.4", "upload")).allowed
        assert not (await rate_limiter.check_limit("1.2.3.4", "upload")).allowed
        assert "upload" in rate_limiter.policies()

    def test_policies_require_default(self, counter):
        with pytest.raises(ConfigurationError):
            RateLimiter(counter, policies={"login": DEFAULT_LIMIT_POLICIES["login"]})

    def test_invalid_limit_spec(self):
        with pytest.raises(ValueError):
            LimitSpec(-1, 60)
        with pytest.raises(ValueError):
            LimitSpec(1, 0)

    @pytest.mark.parametrize("path,method,action", [
        ("/auth/login", "POST", "login"),
        ("/api/v1/auth/login", "POST", "login"),
        ("/auth/register", "POST", "register"),
        ("/auth/password-reset", "POST", "password_reset"),
        ("/api/posts", "GET", "api"),
        ("/posts", "POST", "post_create"),
        ("/posts", "GET", "default"),
        ("/", "GET", "default"),
    ])
    def test_resolve_action(self, path, method, action):
        assert RateLimiter.resolve_action(path, method) == action

    def test_headers(self):
        result = RateLimitResult(False, 5, -1, 1_700_000_060, 60, "ip:x:login")
        assert result.to_headers() == {
            "X-RateLimit-Limit": "5",
            "X-RateLimit-Remaining": "0",
            "X-RateLimit-Reset": "1700000060",
        }
