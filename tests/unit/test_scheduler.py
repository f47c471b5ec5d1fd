"""
Unit tests for single-flight background jobs.
"""
import threading

import pytest
import redis

from stashbox.core.errors import BackendUnavailable, MetadataStoreError
from stashbox.models import Visibility
from stashbox.services.scheduler import SingleFlightJob, SweepScheduler


class FakeSession:
    closed = False

    def close(self):
        self.closed = True


class FakeRedis:
    """Minimal SET NX / EVAL lock store."""

    def __init__(self, broken=False):
        self.values = {}
        self.broken = broken

    def set(self, key, value, nx=False, ex=None):
        if self.broken:
            raise redis.ConnectionError("redis down")
        if nx and key in self.values:
            return None
        self.values[key] = value
        return True

    def eval(self, script, numkeys, key, token):
        if self.values.get(key) == token:
            del self.values[key]
            return 1
        return 0


def _job(fn, redis_client=None, max_backoff_ticks=8):
    return SingleFlightJob(
        "test_job",
        fn,
        session_factory=FakeSession,
        interval_seconds=60,
        max_backoff_ticks=max_backoff_ticks,
        redis_factory=lambda: redis_client,
    )


@pytest.mark.unit
class TestSingleFlightJob:
    """Test locking and backoff."""

    def test_success_runs_with_fresh_session(self):
        sessions = []
        job = _job(lambda session: sessions.append(session) or "done")

        assert job.run() == "success"
        assert job.last_result == "done"
        assert sessions[0].closed

    def test_overlapping_run_is_skipped(self):
        started, release = threading.Event(), threading.Event()
        outcomes = []

        def slow(session):
            started.set()
            release.wait(5)

        job = _job(slow)
        worker = threading.Thread(target=lambda: outcomes.append(job.run()))
        worker.start()
        started.wait(5)

        assert job.run() == "skipped"
        release.set()
        worker.join(5)
        assert outcomes == ["success"]

    def test_backend_outage_backs_off_exponentially(self):
        def failing(session):
            raise BackendUnavailable("store down")

        job = _job(failing, max_backoff_ticks=4)

        assert job.run() == "backend_unavailable"
        assert job.skip_ticks == 1
        assert job.run() == "backoff"
        assert job.run() == "backend_unavailable"
        assert job.skip_ticks == 2
        assert [job.run(), job.run()] == ["backoff", "backoff"]
        job.run()
        job.run()
        assert job.skip_ticks <= 4

    def test_success_resets_backoff(self):
        calls = {"n": 0}

        def flaky(session):
            calls["n"] += 1
            if calls["n"] == 1:
                raise BackendUnavailable("store down")

        job = _job(flaky)
        job.run()
        job.run()
        assert job.run() == "success"
        assert job.consecutive_failures == 0

    def test_other_errors_do_not_back_off(self):
        def failing(session):
            raise MetadataStoreError("db down")

        job = _job(failing)
        assert job.run() == "failed"
        assert job.skip_ticks == 0

    def test_shared_lock_held_elsewhere_skips(self):
        client = FakeRedis()
        client.values["stashbox:sweep:test_job"] = "other-process"
        ran = []

        assert _job(ran.append, redis_client=client).run() == "skipped"
        assert ran == []

    def test_shared_lock_released_after_run(self):
        client = FakeRedis()
        assert _job(lambda session: None, redis_client=client).run() == "success"
        assert client.values == {}

    def test_redis_outage_fails_open(self):
        ran = []
        assert _job(ran.append, redis_client=FakeRedis(broken=True)).run() == "success"
        assert len(ran) == 1


@pytest.mark.unit
class TestSweepScheduler:
    """Test job registration."""

    def test_registers_all_lifecycle_jobs(self, services):
        scheduler = SweepScheduler(services, services.session_factory)
        assert set(scheduler.jobs) == {
            "deletion_sweep", "expiry_scan", "token_renewal", "orphan_sweep", "usage_reconcile",
        }
        assert not scheduler.running

    def test_run_now_executes_job(self, db, services, tenant):
        services.reconciler.enqueue(db, tenant.id, "stashbox-public", f"{tenant.id}/gone", Visibility.PUBLIC)
        scheduler = SweepScheduler(services, services.session_factory)

        assert scheduler.run_now("deletion_sweep") == "success"
        assert scheduler.jobs["deletion_sweep"].last_result.completed == 1
