"""Rate limiter and in-process metrics."""

from __future__ import annotations

from limits.storage import MemoryStorage

from marketplace.metrics import Metrics
from marketplace.ratelimit import RateLimiter


class TestRateLimiter:
    def test_allows_up_to_limit(self):
        limiter = RateLimiter()
        decisions = [limiter.hit("bids:u1", 3, 60).allowed for _ in range(4)]
        assert decisions == [True, True, True, False]

    def test_retry_after_within_window(self):
        limiter = RateLimiter()
        limiter.hit("k", 1, 60)
        decision = limiter.hit("k", 1, 60)
        assert not decision.allowed
        assert 0 < decision.retry_after <= 60

    def test_allowed_has_no_retry_after(self):
        assert RateLimiter().hit("k", 1, 60).retry_after == 0.0

    def test_keys_are_independent(self):
        limiter = RateLimiter()
        limiter.hit("bids:u1", 1, 60)
        assert limiter.hit("bids:u2", 1, 60).allowed

    def test_limits_are_independent_per_key_prefix(self):
        limiter = RateLimiter()
        limiter.hit("bids:u1", 1, 60)
        assert limiter.hit("order_actions:u1", 1, 60).allowed

    def test_reset(self):
        limiter = RateLimiter()
        limiter.hit("k", 1, 60)
        limiter.reset()
        assert limiter.hit("k", 1, 60).allowed

    def test_shared_storage(self):
        storage = MemoryStorage()
        RateLimiter(storage).hit("bids:u1", 1, 60)
        assert not RateLimiter(storage).hit("bids:u1", 1, 60).allowed

class TestMetrics:
    def test_counters_with_labels(self):
        metrics = Metrics()
        metrics.increment("webhook_processed", event_type="charge.refunded", outcome="applied")
        metrics.increment("webhook_processed", event_type="charge.refunded", outcome="applied")
        assert metrics.count("webhook_processed", outcome="applied", event_type="charge.refunded") == 2
        assert metrics.count("webhook_processed") == 0

    def test_timing_samples_are_capped(self):
        metrics = Metrics()
        for i in range(1500):
            metrics.observe("latency_ms", float(i))
        summary = metrics.snapshot()["timings"]["latency_ms"]
        assert summary["count"] == 1000
        assert summary["max_ms"] == 1499.0

    def test_empty_snapshot(self):
        assert Metrics().snapshot() == {"counters": {}, "timings": {}}

    def test_metrics_endpoint(self, client, metrics):
        metrics.increment("bid_placed")
        resp = client.get("/metrics")
        assert resp.status_code == 200
        assert resp.json()["counters"] == {"bid_placed": 1}

    def test_health(self, client):
        assert client.get("/health").json() == {"ok": True}
