"""Tests for origin validation and rate limiting."""

import threading

import pytest

from checkout_service.security import (
    InMemoryRateLimitStore,
    SlidingWindowRateLimiter,
    rate_limit_identifier,
    validate_origin,
)

ALLOWED = ("https://shop.example.com", "http://localhost:3000")


class TestValidateOrigin:
    @pytest.mark.parametrize("origin", ["https://shop.example.com", "https://shop.example.com/", "http://localhost:3000"])
    def test_allowed_origin(self, origin):
        assert validate_origin("POST", "/checkout", {"origin": origin}, ALLOWED)

    @pytest.mark.parametrize(
        "origin",
        ["https://evil.example.com", "https://shop.example.com.evil.io", "null", "http://localhost:30001"],
    )
    def test_foreign_origin(self, origin):
        assert not validate_origin("POST", "/checkout", {"origin": origin}, ALLOWED)

    def test_same_host_origin(self):
        headers = {"origin": "http://192.168.1.20:3000", "host": "192.168.1.20:3000"}
        assert validate_origin("POST", "/checkout", headers, ALLOWED)

    def test_origin_takes_precedence_over_referer(self):
        headers = {"origin": "https://evil.example.com", "referer": "https://shop.example.com/cart"}
        assert not validate_origin("POST", "/checkout", headers, ALLOWED)

    def test_allowed_referer(self):
        assert validate_origin("POST", "/checkout", {"referer": "https://shop.example.com/cart"}, ALLOWED)
        assert validate_origin("POST", "/checkout", {"referer": "https://shop.example.com"}, ALLOWED)

    def test_referer_prefix_trick(self):
        headers = {"referer": "https://shop.example.com.evil.io/cart"}
        assert not validate_origin("POST", "/checkout", headers, ALLOWED)

    @pytest.mark.parametrize("method", ["GET", "HEAD", "OPTIONS"])
    def test_safe_methods_without_headers(self, method):
        assert validate_origin(method, "/orders", {}, ALLOWED)

    @pytest.mark.parametrize("method", ["POST", "PUT", "DELETE"])
    def test_unsafe_methods_without_headers(self, method):
        assert not validate_origin(method, "/checkout", {}, ALLOWED)


class TestRateLimitIdentifier:
    def test_prefers_user_id(self):
        assert rate_limit_identifier({"x-real-ip": "1.2.3.4"}, "127.0.0.1", "alice") == "user:alice"

    def test_header_precedence(self):
        headers = {"x-forwarded-for": "5.6.7.8, 10.0.0.1", "cf-connecting-ip": "9.9.9.9"}
        assert rate_limit_identifier(headers, "127.0.0.1") == "ip:5.6.7.8"
        assert rate_limit_identifier({"x-real-ip": "1.2.3.4", **headers}, "127.0.0.1") == "ip:1.2.3.4"
        assert rate_limit_identifier({"cf-connecting-ip": "9.9.9.9"}, "127.0.0.1") == "ip:9.9.9.9"

    def test_falls_back_to_client_host(self):
        assert rate_limit_identifier({}, "127.0.0.1") == "ip:127.0.0.1"
        assert rate_limit_identifier({}, None) == "ip:anonymous"


class TestSlidingWindowRateLimiter:
    def limiter(self, clock, limit=3, window=60):
        return SlidingWindowRateLimiter(InMemoryRateLimitStore(), limit, window, "test", clock=lambda: clock["now"])

    def test_allows_up_to_limit(self):
        clock = {"now": 100.0}
        limiter = self.limiter(clock)

        decisions = [limiter.check("user:alice") for _ in range(4)]

        assert [d.allowed for d in decisions] == [True, True, True, False]
        assert [d.remaining for d in decisions] == [2, 1, 0, 0]
        assert decisions[3].retry_after == 60

    def test_window_slides(self):
        clock = {"now": 100.0}
        limiter = self.limiter(clock)
        limiter.check("user:alice")
        clock["now"] = 130.0
        limiter.check("user:alice")
        limiter.check("user:alice")

        clock["now"] = 150.0
        blocked = limiter.check("user:alice")
        assert not blocked.allowed
        assert blocked.retry_after == 10

        clock["now"] = 160.0
        assert limiter.check("user:alice").allowed

    def test_rejected_requests_do_not_extend_the_window(self):
        clock = {"now": 100.0}
        limiter = self.limiter(clock, limit=1)
        limiter.check("user:alice")
        for t in (110.0, 120.0, 150.0):
            clock["now"] = t
            assert not limiter.check("user:alice").allowed
        clock["now"] = 160.0
        assert limiter.check("user:alice").allowed

    def test_identifiers_are_independent(self):
        clock = {"now": 100.0}
        limiter = self.limiter(clock, limit=1)
        assert limiter.check("user:alice").allowed
        assert limiter.check("user:bob").allowed
        assert not limiter.check("user:alice").allowed

    def test_prefixes_share_a_store_without_colliding(self):
        store = InMemoryRateLimitStore()
        critical = SlidingWindowRateLimiter(store, 1, 60, "critical", clock=lambda: 100.0)
        webhook = SlidingWindowRateLimiter(store, 1, 60, "webhook", clock=lambda: 100.0)
        assert critical.check("ip:1.2.3.4").allowed
        assert webhook.check("ip:1.2.3.4").allowed

    def test_concurrent_hits_never_exceed_limit(self):
        limiter = SlidingWindowRateLimiter(InMemoryRateLimitStore(), 10, 60, "test")
        barrier = threading.Barrier(50)
        results = []
        lock = threading.Lock()

        def hit():
            barrier.wait()
            decision = limiter.check("user:alice")
            with lock:
                results.append(decision.allowed)

        threads = [threading.Thread(target=hit) for _ in range(50)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert results.count(True) == 10


class TestInMemoryRateLimitStore:
    def test_expired_identifiers_are_swept(self):
        store = InMemoryRateLimitStore()
        for i in range(500):
            store.hit(f"webhook:ip:10.0.{i // 256}.{i % 256}", 100.0, 60, 100)
        assert len(store) == 500

        store.hit("webhook:ip:1.2.3.4", 161.0, 60, 100)

        assert len(store) == 1

    def test_active_identifiers_survive_a_sweep(self):
        store = InMemoryRateLimitStore()
        store.hit("critical:user:alice", 100.0, 60, 1)
        store.hit("critical:user:bob", 150.0, 60, 1)

        store.hit("critical:user:carol", 170.0, 60, 1)

        assert len(store) == 2
        allowed, count, _ = store.hit("critical:user:bob", 171.0, 60, 1)
        assert not allowed
        assert count == 1
