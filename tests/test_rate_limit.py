"""Tests for services.tutor.rate_limit fixed-window limiter."""
from __future__ import annotations

import threading
import unittest

from services.tutor.rate_limit import FixedWindowRateLimiter, RateLimitResult, rate_limited_response


class _Clock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


class TestFixedWindow(unittest.TestCase):
    def setUp(self):
        self.clock = _Clock()
        self.limiter = FixedWindowRateLimiter(max_keys=100, clock=self.clock)

    def test_limit_calls_pass_then_next_is_limited(self):
        for _ in range(5):
            self.assertFalse(self.limiter.check("k", 5, 60_000).limited)
        result = self.limiter.check("k", 5, 60_000)
        self.assertTrue(result.limited)
        self.assertGreaterEqual(result.retry_after_seconds, 1)
        self.assertLessEqual(result.retry_after_seconds, 60)

    def test_every_call_after_limit_stays_limited(self):
        for _ in range(3):
            self.limiter.check("k", 2, 60_000)
        self.assertTrue(self.limiter.check("k", 2, 60_000).limited)
        self.assertTrue(self.limiter.check("k", 2, 60_000).limited)

    def test_retry_after_rounds_up_remaining_window(self):
        self.limiter.check("k", 1, 10_000)
        self.clock.now += 8.5
        result = self.limiter.check("k", 1, 10_000)
        self.assertTrue(result.limited)
        self.assertEqual(result.retry_after_seconds, 2)

    def test_window_elapse_resets_count(self):
        self.limiter.check("k", 1, 1_000)
        self.assertTrue(self.limiter.check("k", 1, 1_000).limited)
        self.clock.now += 1.0
        self.assertFalse(self.limiter.check("k", 1, 1_000).limited)
        self.assertTrue(self.limiter.check("k", 1, 1_000).limited)

    def test_keys_are_independent(self):
        self.limiter.check("a", 1, 60_000)
        self.assertTrue(self.limiter.check("a", 1, 60_000).limited)
        self.assertFalse(self.limiter.check("b", 1, 60_000).limited)

    def test_sweep_drops_expired_entries_past_high_water_mark(self):
        limiter = FixedWindowRateLimiter(max_keys=3, clock=self.clock)
        for i in range(4):
            limiter.check(f"old-{i}", 10, 1_000)
        self.assertEqual(len(limiter), 4)
        self.clock.now += 2.0
        limiter.check("fresh", 10, 1_000)
        self.assertEqual(len(limiter), 1)

    def test_concurrent_checks_count_exactly(self):
        limiter = FixedWindowRateLimiter(max_keys=100, clock=self.clock)
        results = []
        lock = threading.Lock()

        def _hit():
            r = limiter.check("shared", 50, 60_000)
            with lock:
                results.append(r.limited)

        threads = [threading.Thread(target=_hit) for _ in range(80)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        self.assertEqual(results.count(False), 50)
        self.assertEqual(results.count(True), 30)


def test_rate_limited_response_sets_retry_after_header():
    resp = rate_limited_response(RateLimitResult(limited=True, retry_after_seconds=7), "slow down")
    assert resp.status_code == 429
    assert resp.headers["Retry-After"] == "7"
    assert b'"retry_after":7' in resp.body
    assert b"slow down" in resp.body
