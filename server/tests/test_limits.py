"""
Tests for per-principal order limits.
"""

import asyncio

from weshop import limits
from weshop.limits import RateLimiter

from conftest import CUSTOMER_INFO, SERVICE_KEY, add_product


def run(coro):
    return asyncio.run(coro)


class TestRateLimiter:
    """Unit tests for the in-memory limiter."""

    def test_rpm_window(self):
        limiter = RateLimiter(rpm_limit=2, daily_cap=100)
        assert run(limiter.check_rpm("key:a")).allowed
        assert run(limiter.check_rpm("key:a")).allowed

        result = run(limiter.check_rpm("key:a"))
        assert result.allowed is False
        assert result.reason == "rpm"
        assert 1 <= result.retry_after <= 60

        # Other principals are unaffected
        assert run(limiter.check_rpm("key:b")).allowed

    def test_daily_cap_counts_successes_only(self):
        limiter = RateLimiter(rpm_limit=100, daily_cap=1)
        assert run(limiter.check_daily_cap("ip:1.2.3.4")).allowed
        run(limiter.increment_daily("ip:1.2.3.4"))

        result = run(limiter.check_daily_cap("ip:1.2.3.4"))
        assert result.allowed is False
        assert result.reason == "daily_cap"
        assert result.reset_at_utc is not None

    def test_usage(self):
        limiter = RateLimiter(rpm_limit=5, daily_cap=10)
        run(limiter.check_rpm("key:a"))
        run(limiter.increment_daily("key:a"))
        usage = run(limiter.get_usage("key:a"))
        assert usage["rpm"] == {"used": 1, "limit": 5, "remaining": 4, "window_seconds": 60}
        assert usage["daily"]["remaining"] == 9

    def test_principal_ids(self):
        assert limits.get_principal_id("tok").startswith("key:")
        assert limits.get_principal_id(None, "10.0.0.1") == "ip:10.0.0.1"
        assert limits.get_principal_id() == "unknown"
        assert len(limits.hash_principal_for_logging("ip:10.0.0.1")) == 12

    def test_response_bodies(self):
        daily = limits.RateLimitResult(allowed=False, reason="daily_cap", current=3, limit=3, reset_at_utc="x")
        body = limits.make_rate_limit_response("daily_cap", daily, "req-1")
        assert body["detail"] == "Daily order limit reached. Please try again tomorrow."
        assert body["used_today"] == 3

        rpm = limits.RateLimitResult(allowed=False, reason="rpm", current=2, limit=2)
        assert limits.make_rate_limit_response("rpm", rpm, "req-2")["window_seconds"] == 60


class TestOrderLimitMiddleware:

    def test_rpm_limit_on_customization_requests(self, client):
        limits.set_limiter(RateLimiter(rpm_limit=1, daily_cap=100))
        body = {
            "product_id": "p1",
            "product_name": "Tote",
            "text": "Hi",
            "contact": {"name": "Asha", "email": "asha@example.com", "phone": "9876543210"},
        }
        assert client.post("/customization-requests", json=body).status_code == 201

        response = client.post("/customization-requests", json=body, headers={"X-Request-Id": "req-42"})
        assert response.status_code == 429
        assert response.json()["reason"] == "rpm"
        assert response.json()["request_id"] == "req-42"
        assert "Retry-After" in response.headers
        assert response.headers["X-Request-Id"] == "req-42"

    def test_daily_cap_ignores_failed_checkouts(self, client, database):
        limits.set_limiter(RateLimiter(rpm_limit=100, daily_cap=1))

        # Empty cart: rejected, does not count
        assert client.post("/checkout", json={"customer": CUSTOMER_INFO}).status_code == 400

        product = add_product(database)
        cart_id = client.post("/cart/items", json={"product_id": product["id"]}).json()["cart_id"]
        headers = {"X-Cart-Id": cart_id}
        assert client.post("/checkout", json={"customer": CUSTOMER_INFO}, headers=headers).status_code == 201

        response = client.post("/checkout", json={"customer": CUSTOMER_INFO}, headers=headers)
        assert response.status_code == 429
        assert response.json()["reason"] == "daily_cap"

    def test_unlimited_routes_untouched(self, client):
        limits.set_limiter(RateLimiter(rpm_limit=0, daily_cap=0))
        response = client.get("/products")
        assert response.status_code == 200
        assert "X-Request-Id" in response.headers

    def test_limits_endpoint(self, client):
        headers = {"X-API-Key": SERVICE_KEY}
        assert client.get("/limits", headers=headers).json()["enabled"] is False

        limits.set_limiter(RateLimiter(rpm_limit=3, daily_cap=7))
        data = client.get("/limits", headers=headers).json()
        assert data["enabled"] is True
        assert data["config"]["daily_cap"] == 7
        assert data["your_usage"]["rpm"]["remaining"] == 3
