"""
LeafScan Backend — Usage Tracker Unit Tests
=============================================

What we test:
    ✅ N=2 / W=60s sequence: allow, allow, deny, reset after the window
    ✅ Window boundary is strict (exactly W seconds later is still the same window)
    ✅ Clients are counted independently
    ✅ Expired records are swept without changing decisions
    ✅ Concurrent checks for one key never admit more than N
"""

import threading
from concurrent.futures import ThreadPoolExecutor

import pytest

from leafscan.services.usage_tracker import UsageTracker

from conftest import FakeClock


class TestFixedWindow:

    def setup_method(self):
        self.clock = FakeClock()
        self.tracker = UsageTracker(max_requests=2, window_seconds=60, clock=self.clock)

    def test_first_two_allowed_third_denied(self):
        first = self.tracker.check("10.0.0.1")
        second = self.tracker.check("10.0.0.1")
        third = self.tracker.check("10.0.0.1")

        assert first.allowed and first.remaining == 1
        assert second.allowed and second.remaining == 0
        assert not third.allowed
        assert third.message
        assert third.retry_after >= 1

    def test_denied_within_same_window(self):
        self.tracker.check("10.0.0.1")
        self.clock.advance(30)
        self.tracker.check("10.0.0.1")
        self.clock.advance(29)
        assert not self.tracker.check("10.0.0.1").allowed

    def test_window_elapsed_resets_counter(self):
        self.tracker.check("10.0.0.1")
        self.tracker.check("10.0.0.1")
        assert not self.tracker.check("10.0.0.1").allowed

        self.clock.advance(61)
        decision = self.tracker.check("10.0.0.1")

        assert decision.allowed
        record = self.tracker.get_record("10.0.0.1")
        assert record.count == 1
        assert record.window_start == self.clock.now

    def test_exactly_window_length_is_same_window(self):
        self.tracker.check("10.0.0.1")
        self.tracker.check("10.0.0.1")
        self.clock.advance(60)
        assert not self.tracker.check("10.0.0.1").allowed

    def test_denied_checks_do_not_extend_window(self):
        self.tracker.check("10.0.0.1")
        self.tracker.check("10.0.0.1")
        for _ in range(5):
            self.clock.advance(10)
            self.tracker.check("10.0.0.1")
        self.clock.advance(11)  # 61s after the first request
        assert self.tracker.check("10.0.0.1").allowed

    def test_retry_after_counts_down(self):
        self.tracker.check("10.0.0.1")
        self.tracker.check("10.0.0.1")
        self.clock.advance(45)
        decision = self.tracker.check("10.0.0.1")
        assert decision.retry_after == 16

    def test_boundary_burst_admits_up_to_twice_the_limit(self):
        """Fixed window approximation: 2N requests can land just around a boundary."""
        self.tracker.check("10.0.0.1")
        self.clock.advance(59.9)
        assert self.tracker.check("10.0.0.1").allowed
        self.clock.advance(0.2)
        assert self.tracker.check("10.0.0.1").allowed
        assert self.tracker.check("10.0.0.1").allowed
        assert not self.tracker.check("10.0.0.1").allowed

    def test_clients_are_independent(self):
        self.tracker.check("10.0.0.1")
        self.tracker.check("10.0.0.1")
        assert not self.tracker.check("10.0.0.1").allowed
        assert self.tracker.check("10.0.0.2").allowed

    def test_reset_forgets_client(self):
        self.tracker.check("10.0.0.1")
        self.tracker.check("10.0.0.1")
        self.tracker.reset("10.0.0.1")
        assert self.tracker.check("10.0.0.1").allowed
        assert self.tracker.get_record("10.0.0.1").count == 1

    def test_get_record_returns_copy(self):
        self.tracker.check("10.0.0.1")
        snapshot = self.tracker.get_record("10.0.0.1")
        snapshot.count = 99
        assert self.tracker.get_record("10.0.0.1").count == 1

    def test_unknown_client_has_no_record(self):
        assert self.tracker.get_record("nobody") is None


class TestSweep:

    def test_expired_records_are_swept(self):
        clock = FakeClock()
        tracker = UsageTracker(max_requests=2, window_seconds=60, clock=clock, sweep_interval=1)
        tracker.check("a")
        tracker.check("b")
        assert len(tracker) == 2

        clock.advance(61)
        tracker.check("c")

        assert len(tracker) == 1
        assert tracker.get_record("a") is None

    def test_sweep_keeps_live_records(self):
        clock = FakeClock()
        tracker = UsageTracker(max_requests=2, window_seconds=60, clock=clock, sweep_interval=1)
        tracker.check("a")
        tracker.check("a")
        clock.advance(30)
        tracker.check("b")

        assert len(tracker) == 2
        assert not tracker.check("a").allowed


class TestConcurrency:

    def test_same_key_never_admits_more_than_limit(self):
        tracker = UsageTracker(max_requests=2, window_seconds=60)
        workers = 32
        barrier = threading.Barrier(workers)

        def hit(_):
            barrier.wait()
            return tracker.check("203.0.113.9").allowed

        with ThreadPoolExecutor(max_workers=workers) as pool:
            results = list(pool.map(hit, range(workers)))

        assert results.count(True) == 2

    def test_distinct_keys_each_get_their_quota(self):
        tracker = UsageTracker(max_requests=2, window_seconds=60)
        keys = [f"client-{i}" for i in range(20)] * 3

        with ThreadPoolExecutor(max_workers=16) as pool:
            results = list(pool.map(lambda k: (k, tracker.check(k).allowed), keys))

        for i in range(20):
            allowed = [ok for key, ok in results if key == f"client-{i}"]
            assert allowed.count(True) == 2


class TestValidation:

    @pytest.mark.parametrize("kwargs", [
        {"max_requests": 0},
        {"window_seconds": 0},
        {"window_seconds": -5},
    ])
    def test_rejects_invalid_limits(self, kwargs):
        with pytest.raises(ValueError):
            UsageTracker(**kwargs)
