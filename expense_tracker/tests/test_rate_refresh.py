import threading
import unittest
from datetime import datetime
from decimal import Decimal

from expense_tracker.currency_conversion import RateProviderUnavailable, RateSnapshot, get_rate
from expense_tracker.rate_refresh import RateRefreshScheduler
from expense_tracker.tests.support import make_engine


class CountingProvider:
    def __init__(self, fail_with=None) -> None:
        self.calls = 0
        self.fail_with = fail_with
        self.called = threading.Event()

    def fetch_snapshot(self) -> RateSnapshot:
        self.calls += 1
        self.called.set()
        if self.fail_with is not None:
            raise self.fail_with
        return RateSnapshot(
            base="USD",
            timestamp=datetime(2024, 3, 1, 8, 0, 0),
            rates={"USD": Decimal("1"), "EUR": Decimal("0.9")},
        )


class RateRefreshSchedulerTests(unittest.TestCase):
    def setUp(self) -> None:
        self.engine = make_engine()

    def test_interval_must_be_positive(self) -> None:
        with self.assertRaises(ValueError):
            RateRefreshScheduler(self.engine, CountingProvider(), interval_seconds=0)

    def test_run_once_stores_rates(self) -> None:
        scheduler = RateRefreshScheduler(self.engine, CountingProvider())

        self.assertTrue(scheduler.run_once())
        self.assertEqual(scheduler.completed_runs, 1)
        with self.engine.begin() as conn:
            self.assertEqual(get_rate(conn, "EUR"), Decimal("0.9"))

    def test_provider_outage_is_a_logged_no_op(self) -> None:
        provider = CountingProvider(fail_with=RateProviderUnavailable("down"))
        scheduler = RateRefreshScheduler(self.engine, provider)

        self.assertFalse(scheduler.run_once())
        with self.engine.begin() as conn:
            self.assertIsNone(get_rate(conn, "EUR"))

    def test_unexpected_error_does_not_escape_tick(self) -> None:
        scheduler = RateRefreshScheduler(self.engine, CountingProvider(fail_with=RuntimeError("boom")))

        self.assertFalse(scheduler.run_once())
        self.assertEqual(scheduler.completed_runs, 1)

    def test_thread_refreshes_immediately_and_stops(self) -> None:
        provider = CountingProvider()
        scheduler = RateRefreshScheduler(self.engine, provider, interval_seconds=3600)

        scheduler.start()
        try:
            self.assertTrue(provider.called.wait(timeout=5))
            self.assertTrue(scheduler.running)
        finally:
            scheduler.stop()

        self.assertFalse(scheduler.running)
        self.assertEqual(provider.calls, 1)


if __name__ == "__main__":
    unittest.main()
