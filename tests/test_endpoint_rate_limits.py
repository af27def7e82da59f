"""Tests for rate limiting, both the limiter itself and the endpoints using it."""

import asyncio
from collections import OrderedDict
from unittest.mock import AsyncMock, MagicMock, patch

import pytest


class TestCheckRateLimit:
    @pytest.fixture
    def mock_runtime(self):
        from storefront.service.runtime import Runtime

        runtime = MagicMock(spec=Runtime)
        runtime.cache = None
        runtime._local_rate_limits = OrderedDict()
        runtime._local_rate_limit_lock = asyncio.Lock()
        return runtime

    async def test_zero_limit_always_passes(self, mock_runtime):
        from storefront.service.runtime import check_rate_limit

        assert await check_rate_limit(mock_runtime, "k", 0, 60) is True
        assert await check_rate_limit(mock_runtime, "k", -1, 60) is True

    async def test_invalid_window_defaults_to_a_minute(self, mock_runtime):
        from storefront.service.runtime import check_rate_limit

        with patch("storefront.service.runtime.logger") as mock_logger:
            assert await check_rate_limit(mock_runtime, "k", 10, 0) is True
            mock_logger.warning.assert_called_once()
            assert mock_logger.warning.call_args[0][0] == "rate_limit_invalid_window"
            assert mock_logger.warning.call_args[1]["window_seconds"] == 0

    async def test_bucket_drains_and_reports_reset(self, mock_runtime):
        from storefront.service.runtime import check_rate_limit

        results = [
            await check_rate_limit(mock_runtime, "login:a@example.com", 3, 60, return_remaining=True)
            for _ in range(4)
        ]
        assert [allowed for allowed, _, _ in results] == [True, True, True, False]
        assert results[0][1] == 2
        assert results[-1][2] > 0

    async def test_keys_are_independent(self, mock_runtime):
        from storefront.service.runtime import check_rate_limit

        assert await check_rate_limit(mock_runtime, "a", 1, 60)
        assert not await check_rate_limit(mock_runtime, "a", 1, 60)
        assert await check_rate_limit(mock_runtime, "b", 1, 60)

    async def test_local_buckets_are_bounded(self, mock_runtime):
        from storefront.service.runtime import check_rate_limit

        with patch("storefront.service.runtime.LOCAL_RATE_LIMIT_MAX_KEYS", 3):
            for index in range(10):
                assert await check_rate_limit(mock_runtime, f"ip:{index}", 5, 60)
        assert list(mock_runtime._local_rate_limits) == ["ip:7", "ip:8", "ip:9"]

    async def test_refilled_buckets_evicted_before_recent_ones(self, mock_runtime):
        from storefront.service.runtime import check_rate_limit

        with patch("storefront.service.runtime.LOCAL_RATE_LIMIT_MAX_KEYS", 3), patch(
            "storefront.service.runtime.time"
        ) as clock:
            clock.monotonic.return_value = 100.0
            await check_rate_limit(mock_runtime, "slow", 1, 600)
            await check_rate_limit(mock_runtime, "fast", 1, 10)
            await check_rate_limit(mock_runtime, "other", 1, 600)
            clock.monotonic.return_value = 200.0
            await check_rate_limit(mock_runtime, "new", 1, 600)
            # the drained long-window bucket survives and still blocks
            assert not await check_rate_limit(mock_runtime, "slow", 1, 600)
        assert set(mock_runtime._local_rate_limits) == {"slow", "other", "new"}

    async def test_redis_cache_used_when_present(self):
        from storefront.service.runtime import Runtime, check_rate_limit

        runtime = MagicMock(spec=Runtime)
        runtime.cache = AsyncMock()
        runtime.cache.check_rate_limit = AsyncMock(return_value=False)
        assert await check_rate_limit(runtime, "k", 5, 30) is False
        runtime.cache.check_rate_limit.assert_awaited_once_with(
            "k", 5, 30, return_remaining=False, cost=1
        )


class TestEndpointRateLimits:
    def test_forgot_password_throttled_per_email(self, client, outbox):
        for _ in range(5):
            resp = client.post("/v1/auth/forgot-password", json={"email": "nobody@example.com"})
            assert resp.status_code == 200

        resp = client.post("/v1/auth/forgot-password", json={"email": "nobody@example.com"})
        assert resp.status_code == 429
        body = resp.json()
        assert body["error"]["code"] == "rate_limited"
        assert body["error"]["details"]["retryAfter"] >= 1
        assert int(resp.headers["Retry-After"]) >= 1

        # a different address has its own bucket
        resp = client.post("/v1/auth/forgot-password", json={"email": "someone@example.com"})
        assert resp.status_code == 200

    def test_login_throttled_per_email(self, client):
        statuses = [
            client.post(
                "/v1/auth/login", json={"email": "ghost@example.com", "password": "Whatever#123"}
            ).status_code
            for _ in range(11)
        ]
        assert statuses[:10] == [404] * 10
        assert statuses[10] == 429

    def test_payment_endpoints_report_remaining(self, client, make_account, khalti):
        shopper = make_account("limits@example.com")
        resp = client.post(
            "/v1/payments/khalti/initiate", headers=shopper["headers"], json={"amount": 1000}
        )
        assert resp.status_code == 200
        assert resp.headers["X-RateLimit-Limit"] == "20"
        assert resp.headers["X-RateLimit-Remaining"] == "19"

        resp = client.post(
            "/v1/payments/khalti/verify", headers=shopper["headers"], json={"pidx": "pidx-1"}
        )
        assert resp.status_code == 200
        assert resp.headers["X-RateLimit-Remaining"] == "18"
