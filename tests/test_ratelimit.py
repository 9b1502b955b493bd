import unittest

from lanshare.ratelimit import FixedWindowRateLimiter, RateWindow, RateWindowStore


class FixedWindowRateLimiterTests(unittest.TestCase):
    def setUp(self):
        self.now = [1000.0]
        self.store = RateWindowStore()
        self.limiter = FixedWindowRateLimiter(
            self.store, clock=lambda: self.now[0], sweep_probability=0.0
        )

    def test_window_admits_up_to_limit_then_denies(self):
        results = [self.limiter.allow("client", 3, 60) for _ in range(4)]

        self.assertEqual([result.allowed for result in results], [True, True, True, False])
        self.assertEqual([result.remaining for result in results], [2, 1, 0, 0])
        self.assertTrue(all(result.reset_time == 1060.0 for result in results))

    def test_denial_keeps_reset_time_and_counter(self):
        for _ in range(3):
            self.limiter.allow("client", 3, 60)
        self.now[0] = 1030.0
        denied = self.limiter.allow("client", 3, 60)

        self.assertFalse(denied.allowed)
        self.assertEqual(denied.reset_time, 1060.0)
        self.assertEqual(self.store.get("client").count, 3)
        headers = denied.headers(now=1030.0)
        self.assertEqual(headers["Retry-After"], "30")
        self.assertEqual(headers["X-RateLimit-Remaining"], "0")

    def test_new_window_after_reset_time(self):
        for _ in range(4):
            self.limiter.allow("client", 3, 60)

        self.now[0] = 1060.0
        fresh = self.limiter.allow("client", 3, 60)

        self.assertTrue(fresh.allowed)
        self.assertEqual(fresh.remaining, 2)
        self.assertEqual(fresh.reset_time, 1120.0)
        window = self.store.get("client")
        self.assertEqual(window.count, 1)
        self.assertEqual(window.window_start, 1060.0)

    def test_callers_are_counted_independently(self):
        for _ in range(3):
            self.limiter.allow("upload:10.0.0.5", 3, 60)

        self.assertFalse(self.limiter.allow("upload:10.0.0.5", 3, 60).allowed)
        self.assertTrue(self.limiter.allow("upload:10.0.0.6", 3, 60).allowed)
        self.assertTrue(self.limiter.allow("read:10.0.0.5", 30, 60).allowed)

    def test_housekeeping_drops_only_expired_windows(self):
        limiter = FixedWindowRateLimiter(
            self.store, clock=lambda: self.now[0], rng=lambda: 0.0
        )
        self.store.put("stale", RateWindow(5, 900.0, 960.0))
        self.store.put("exhausted", RateWindow(3, 990.0, 1050.0))
        self.store.put("fresh", RateWindow(1, 999.0, 1059.0))

        limiter.allow("newcomer", 3, 60)

        self.assertNotIn("stale", self.store)
        self.assertIn("exhausted", self.store)
        self.assertIn("fresh", self.store)
        self.assertIn("newcomer", self.store)
        self.assertFalse(limiter.allow("exhausted", 3, 60).allowed)

    def test_housekeeping_is_probabilistic(self):
        limiter = FixedWindowRateLimiter(
            self.store, clock=lambda: self.now[0], rng=lambda: 0.5
        )
        self.store.put("stale", RateWindow(1, 900.0, 960.0))
        limiter.allow("other", 3, 60)
        self.assertIn("stale", self.store)

    def test_allowed_result_headers_omit_retry_after(self):
        result = self.limiter.allow("client", 5, 60)
        headers = result.headers()
        self.assertNotIn("Retry-After", headers)
        self.assertEqual(headers["X-RateLimit-Limit"], "5")
        self.assertEqual(headers["X-RateLimit-Remaining"], "4")


if __name__ == "__main__":
    unittest.main()
