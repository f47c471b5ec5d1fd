"""
Background sweeps.

Every periodic job (deletion sweep, expiry scan, token renewal, orphan sweep,
usage reconciliation) runs single-flight: at most one run per process
(threading lock, APScheduler max_instances=1) and, when Redis is configured,
at most one run across processes. A job whose backend is unavailable backs
off exponentially in ticks of its own interval.
"""
import logging
import threading
import time
import uuid
from typing import Any, Callable, Dict, Optional

import redis
from apscheduler.schedulers.background import BackgroundScheduler
from sqlalchemy.orm import Session

from stashbox.core.config import settings
from stashbox.core.errors import BackendUnavailable, StashboxError
from stashbox.core.redis_client import get_redis_client, reset_redis_client
from stashbox.metrics import record_sweep

logger = logging.getLogger(__name__)

LOCK_PREFIX = "stashbox:sweep"

# Lua: delete the lock only if we still own it
_RELEASE_SCRIPT = """
if redis.call('get', KEYS[1]) == ARGV[1] then
    return redis.call('del', KEYS[1])
end
return 0
"""


class SingleFlightJob:
    """
    A periodic job that never overlaps itself.

    Outcomes of run(): "success", "skipped", "backoff", "backend_unavailable"
    or "failed".
    """

    def __init__(
        self,
        name: str,
        fn: Callable[[Session], Any],
        session_factory: Callable[[], Session],
        interval_seconds: int,
        max_backoff_ticks: Optional[int] = None,
        redis_factory: Callable[[], Optional[redis.Redis]] = get_redis_client,
    ):
        self.name = name
        self.fn = fn
        self.session_factory = session_factory
        self.interval_seconds = interval_seconds
        self.max_backoff_ticks = max_backoff_ticks or settings.SWEEP_MAX_BACKOFF_TICKS
        self.redis_factory = redis_factory

        self._lock = threading.Lock()
        self.consecutive_failures = 0
        self.skip_ticks = 0
        self.last_result: Any = None

    @property
    def lock_key(self) -> str:
        return f"{LOCK_PREFIX}:{self.name}"

    def _acquire_shared_lock(self) -> tuple[bool, Optional[str]]:
        client = self.redis_factory()
        if client is None:
            return True, None
        token = uuid.uuid4().hex
        try:
            # Lock expires on its own if this process dies mid-run
            acquired = client.set(self.lock_key, token, nx=True, ex=max(60, self.interval_seconds * 2))
        except redis.RedisError as e:
            logger.warning(f"Sweep lock for {self.name} unavailable, running locally: {e}")
            reset_redis_client()
            return True, None
        return bool(acquired), token if acquired else None

    def _release_shared_lock(self, token: Optional[str]) -> None:
        if token is None:
            return
        client = self.redis_factory()
        if client is None:
            return
        try:
            client.eval(_RELEASE_SCRIPT, 1, self.lock_key, token)
        except redis.RedisError as e:
            logger.warning(f"Could not release sweep lock for {self.name}: {e}")

    def _back_off(self) -> None:
        self.consecutive_failures += 1
        self.skip_ticks = min(2 ** (self.consecutive_failures - 1), self.max_backoff_ticks)

    def run(self) -> str:
        if not self._lock.acquire(blocking=False):
            logger.debug(f"{self.name} already running in this process, skipping")
            return "skipped"

        try:
            if self.skip_ticks > 0:
                self.skip_ticks -= 1
                logger.info(f"{self.name} backing off, {self.skip_ticks} ticks left")
                return "backoff"

            acquired, token = self._acquire_shared_lock()
            if not acquired:
                logger.debug(f"{self.name} running in another process, skipping")
                return "skipped"

            start = time.monotonic()
            session = self.session_factory()
            try:
                self.last_result = self.fn(session)
                status = "success"
                self.consecutive_failures = 0
            except BackendUnavailable as e:
                self._back_off()
                status = "backend_unavailable"
                logger.warning(
                    f"{self.name}: object store unavailable, skipping {self.skip_ticks} ticks: {e}"
                )
            except StashboxError as e:
                status = "failed"
                logger.error(f"{self.name} failed: {e}")
            except Exception as e:
                status = "failed"
                logger.exception(f"{self.name} crashed: {e}")
            finally:
                session.close()
                self._release_shared_lock(token)

            record_sweep(self.name, status, time.monotonic() - start)
            return status
        finally:
            self._lock.release()


class SweepScheduler:
    """APScheduler wrapper that owns the periodic lifecycle jobs"""

    def __init__(self, services, session_factory: Callable[[], Session]):
        self.services = services
        self.session_factory = session_factory
        self.jobs: Dict[str, SingleFlightJob] = {}
        self._scheduler: Optional[BackgroundScheduler] = None

        self._register("deletion_sweep", services.reconciler.run_sweep,
                       settings.DELETION_SWEEP_INTERVAL_SECONDS)
        self._register("expiry_scan", services.reconciler.expire_scheduled,
                       settings.EXPIRY_SCAN_INTERVAL_SECONDS)
        self._register("token_renewal", lambda db: services.issuer.renew_expiring(db, services.catalog),
                       settings.TOKEN_RENEWAL_INTERVAL_SECONDS)
        self._register("orphan_sweep", services.reconciler.sweep_orphans,
                       settings.ORPHAN_SWEEP_INTERVAL_SECONDS)
        self._register("usage_reconcile", services.ledger.reconcile_all,
                       settings.USAGE_RECONCILE_INTERVAL_SECONDS)

    def _register(self, name: str, fn: Callable[[Session], Any], interval_seconds: int) -> None:
        self.jobs[name] = SingleFlightJob(name, fn, self.session_factory, interval_seconds)

    @property
    def running(self) -> bool:
        return self._scheduler is not None and self._scheduler.running

    def start(self) -> None:
        if self.running:
            return
        scheduler = BackgroundScheduler(daemon=True)
        for name, job in self.jobs.items():
            scheduler.add_job(
                job.run,
                "interval",
                seconds=job.interval_seconds,
                id=name,
                name=name,
                max_instances=1,
                coalesce=True,
                replace_existing=True,
            )
        scheduler.start()
        self._scheduler = scheduler
        logger.info(f"Started {len(self.jobs)} background sweeps")

    def shutdown(self) -> None:
        if self.running:
            self._scheduler.shutdown(wait=False)
            logger.info("Background sweeps stopped")
        self._scheduler = None

    def run_now(self, name: str) -> str:
        """Run one job immediately (admin / tests)."""
        return self.jobs[name].run()
