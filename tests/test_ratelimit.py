"""Unit tests for the per-client upload budget."""

import threading

import pytest

from filehost.config import MIB
from filehost.errors import RateLimitExceeded, RequestTooLarge
from filehost.ratelimit import RateLimiter, Verdict


class TestCheck:
    def test_fresh_client_allowed(self, limiter: RateLimiter):
        decision = limiter.check("10.0.0.1", 2 * MIB)

        assert decision.allowed
        assert decision.bytes_used == 0

    def test_request_at_size_limit_rejected_regardless_of_history(self, limiter: RateLimiter):
        assert limiter.check("10.0.0.1", 10 * MIB).verdict is Verdict.TOO_LARGE
        assert limiter.check("10.0.0.1", 10 * MIB - 1).allowed

    def test_budget_exceeded_reports_remaining_and_wait(self, limiter: RateLimiter, clock):
        for _ in range(5):
            limiter.record("10.0.0.1", 9 * MIB)
        clock.advance(minutes=20, seconds=30)

        decision = limiter.check("10.0.0.1", 5 * MIB)

        assert decision.verdict is Verdict.BUDGET_EXCEEDED
        assert decision.remaining_bytes == 5 * MIB
        # 39.5 minutes left in the window, rounded up
        assert decision.wait_minutes == 40

    def test_reaching_budget_exactly_is_rejected(self, limiter: RateLimiter):
        for _ in range(5):
            limiter.record("10.0.0.1", 8 * MIB)

        assert limiter.check("10.0.0.1", 10 * MIB - 1).allowed
        limiter.record("10.0.0.1", 9 * MIB)
        assert limiter.check("10.0.0.1", 1 * MIB).verdict is Verdict.BUDGET_EXCEEDED

    def test_check_does_not_modify_stale_entry(self, limiter: RateLimiter, clock):
        limiter.record("10.0.0.1", 9 * MIB)
        clock.advance(hours=1)
        before = limiter.get("10.0.0.1")

        assert limiter.check("10.0.0.1", 9 * MIB).bytes_used == 0
        assert limiter.get("10.0.0.1") == before

    def test_clients_are_independent(self, limiter: RateLimiter):
        for _ in range(6):
            limiter.record("10.0.0.1", 9 * MIB)

        assert not limiter.check("10.0.0.1", 1).allowed
        assert limiter.check("10.0.0.2", 9 * MIB).allowed


class TestRecord:
    def test_window_renews_on_every_upload(self, limiter: RateLimiter, clock):
        limiter.record("10.0.0.1", 9 * MIB)
        clock.advance(minutes=50)
        entry = limiter.record("10.0.0.1", 9 * MIB)

        assert entry.bytes_used == 18 * MIB
        assert entry.window_expires_at == clock.epoch() + 3600

        # the first upload is over an hour old but the window was pushed forward
        clock.advance(minutes=30)
        assert limiter.check("10.0.0.1", 1).bytes_used == 18 * MIB

    def test_budget_restored_after_idle_window(self, limiter: RateLimiter, clock):
        for _ in range(5):
            limiter.record("10.0.0.1", 9 * MIB)
        assert not limiter.check("10.0.0.1", 9 * MIB).allowed

        clock.advance(hours=1)

        assert limiter.check("10.0.0.1", 9 * MIB).allowed
        assert limiter.record("10.0.0.1", 9 * MIB).bytes_used == 9 * MIB

    def test_concurrent_records_are_not_lost(self, limiter: RateLimiter):
        threads = [
            threading.Thread(target=limiter.record, args=("10.0.0.1", 1000)) for _ in range(50)
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert limiter.get("10.0.0.1").bytes_used == 50 * 1000


class TestAdmit:
    def test_records_on_success(self, limiter: RateLimiter):
        with limiter.admit("10.0.0.1", 3 * MIB) as decision:
            assert decision.allowed

        assert limiter.get("10.0.0.1").bytes_used == 3 * MIB

    def test_does_not_record_when_body_fails(self, limiter: RateLimiter):
        with pytest.raises(OSError):
            with limiter.admit("10.0.0.1", 3 * MIB):
                raise OSError("disk full")

        assert limiter.get("10.0.0.1") is None

    def test_raises_too_large(self, limiter: RateLimiter):
        with pytest.raises(RequestTooLarge, match="file size limit of 10 MB"):
            with limiter.admit("10.0.0.1", 10 * MIB):
                pass

    def test_raises_budget_exceeded(self, limiter: RateLimiter, clock):
        for _ in range(5):
            limiter.record("10.0.0.1", 9 * MIB)
        clock.advance(minutes=15)

        with pytest.raises(RateLimitExceeded) as exc_info:
            with limiter.admit("10.0.0.1", 6 * MIB):
                pass

        assert exc_info.value.remaining_bytes == 5 * MIB
        assert exc_info.value.wait_minutes == 45
        assert "up to 5,242,880 bytes" in str(exc_info.value)
        assert "wait 45 minutes" in str(exc_info.value)

    def test_concurrent_admissions_cannot_both_pass(self, limiter: RateLimiter):
        limiter.record("10.0.0.1", 40 * MIB)
        inside = threading.Event()
        release = threading.Event()
        outcome = {}

        def first():
            with limiter.admit("10.0.0.1", 6 * MIB):
                inside.set()
                release.wait(5)

        def second():
            inside.wait(5)
            try:
                with limiter.admit("10.0.0.1", 6 * MIB):
                    outcome["second"] = "allowed"
            except RateLimitExceeded:
                outcome["second"] = "rejected"

        t1 = threading.Thread(target=first)
        t2 = threading.Thread(target=second)
        t1.start()
        t2.start()
        inside.wait(5)
        release.set()
        t1.join()
        t2.join()

        assert outcome["second"] == "rejected"
        assert limiter.get("10.0.0.1").bytes_used == 46 * MIB


class TestEviction:
    def test_evicts_only_stale_entries(self, limiter: RateLimiter, clock):
        limiter.record("10.0.0.1", 1)
        clock.advance(minutes=45)
        limiter.record("10.0.0.2", 1)
        clock.advance(minutes=20)

        assert limiter.evict_expired() == 1
        assert limiter.get("10.0.0.1") is None
        assert limiter.get("10.0.0.2") is not None
        assert len(limiter) == 1

    def test_record_after_eviction_starts_fresh(self, limiter: RateLimiter, clock):
        limiter.record("10.0.0.1", 9 * MIB)
        clock.advance(hours=2)
        limiter.evict_expired()

        assert limiter.record("10.0.0.1", 1).bytes_used == 1

    def test_oversized_requests_leave_no_client_state(self, limiter: RateLimiter):
        for i in range(500):
            with pytest.raises(RequestTooLarge):
                with limiter.admit(f"10.1.{i // 256}.{i % 256}", 20 * MIB):
                    pass

        assert len(limiter._locks) == 0
        assert len(limiter) == 0

    def test_failed_and_rejected_admissions_are_evicted(self, limiter: RateLimiter, clock):
        for i in range(20):
            with pytest.raises(OSError):
                with limiter.admit(f"10.2.0.{i}", MIB):
                    raise OSError("disk full")
        for _ in range(5):
            limiter.record("10.3.0.1", 9 * MIB)
        with pytest.raises(RateLimitExceeded):
            with limiter.admit("10.3.0.1", 9 * MIB):
                pass
        assert len(limiter._locks) == 21

        clock.advance(hours=3)

        # only the client with a recorded window counts as evicted
        assert limiter.evict_expired() == 1
        assert len(limiter._locks) == 0
        assert len(limiter) == 0

    def test_held_lock_survives_eviction(self, limiter: RateLimiter):
        with limiter.admit("10.0.0.1", MIB):
            limiter.evict_expired()
            assert "10.0.0.1" in limiter._locks

        assert limiter.get("10.0.0.1").bytes_used == MIB
