import asyncio
import contextlib
import logging
import random
import time
from typing import Dict, List, Optional, Set

from opentelemetry import trace
from prometheus_client import Counter, Gauge, Histogram

from ..config import Settings
from ..errors import RolloutError, RolloutNotFound
from ..models.action_models import ReconcileResult
from ..models.rollout_models import RolloutKey
from .plan_controller import RolloutPlanController

logger = logging.getLogger("rollout.driver")
tracer = trace.get_tracer(__name__)

# --------------------------------------------------------------------------
# Prometheus metrics
# --------------------------------------------------------------------------

DRIVER_QUEUE_DEPTH = Gauge(
    "rollout_driver_queue_depth",
    "Current depth of the rollout work queue",
)

DRIVER_IN_FLIGHT = Gauge(
    "rollout_driver_in_flight",
    "AppRollouts currently being reconciled",
)

DRIVER_INVOCATIONS_TOTAL = Counter(
    "rollout_driver_invocations_total",
    "Driver invocations by outcome",
    ["result"],  # ok | error | timeout | not_found
)

DRIVER_RETRIES_TOTAL = Counter(
    "rollout_driver_retries_total",
    "Invocations requeued with backoff after a failure",
)

DRIVER_QUEUE_WAIT_SECONDS = Histogram(
    "rollout_driver_queue_wait_seconds",
    "Time a key spent in the work queue before a worker picked it up",
    buckets=(0.001, 0.01, 0.05, 0.1, 0.5, 1, 5, 10, 30),
)


class RolloutDriver:
    """
    Async work queue in front of RolloutPlanController.

    - keys are de-duplicated while queued
    - a key is never reconciled by two workers at once; a key enqueued while
      in flight is queued again once the running invocation finishes
    - each invocation runs in a worker thread, bounded by the reconcile timeout;
      a timed-out invocation keeps its key in flight until the thread returns
    - failures are requeued with exponential backoff plus jitter, reset on success
    - an optional resync loop enqueues every known AppRollout periodically
    """

    def __init__(self, controller: RolloutPlanController, settings: Settings) -> None:
        self.controller = controller
        self.workers = settings.DRIVER_WORKERS
        self.reconcile_timeout = settings.RECONCILE_TIMEOUT_SECONDS
        self.base_backoff_seconds = settings.DRIVER_BASE_BACKOFF_SECONDS
        self.max_backoff_seconds = settings.DRIVER_MAX_BACKOFF_SECONDS
        self.resync_interval = settings.RESYNC_INTERVAL_SECONDS

        self.queue: "asyncio.Queue[RolloutKey]" = asyncio.Queue()
        self._queued: Dict[RolloutKey, float] = {}  # key -> enqueue time
        self._in_flight: Set[RolloutKey] = set()
        self._dirty: Set[RolloutKey] = set()
        self._timers: Dict[RolloutKey, asyncio.TimerHandle] = {}
        self._failures: Dict[RolloutKey, int] = {}

        self._tasks: List[asyncio.Task] = []
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def running(self) -> bool:
        return bool(self._tasks)

    async def start(self) -> None:
        if self._tasks:
            return
        self._loop = asyncio.get_running_loop()
        logger.info("Starting RolloutDriver with %d workers", self.workers)
        for i in range(self.workers):
            self._tasks.append(asyncio.create_task(self._worker(i)))
        if self.resync_interval > 0:
            self._tasks.append(asyncio.create_task(self._resync_loop()))

    async def stop(self) -> None:
        if not self._tasks:
            return
        logger.info("Stopping RolloutDriver")
        for timer in self._timers.values():
            timer.cancel()
        self._timers.clear()
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._tasks = []

    async def join(self) -> None:
        """Wait until the queue is drained (timers not included)."""
        await self.queue.join()

    # ------------------------------------------------------------------
    # Public enqueue API
    # ------------------------------------------------------------------

    def enqueue(self, key: RolloutKey) -> bool:
        """Queue ``key`` for reconciliation. Returns False if it was already pending."""
        if key in self._in_flight:
            self._dirty.add(key)
            return False
        if key in self._queued:
            return False
        self._queued[key] = time.time()
        self.queue.put_nowait(key)
        DRIVER_QUEUE_DEPTH.set(self.queue.qsize())
        return True

    def enqueue_after(self, key: RolloutKey, delay: float) -> None:
        if delay <= 0:
            self.enqueue(key)
            return
        loop = self._loop or asyncio.get_running_loop()
        existing = self._timers.pop(key, None)
        if existing is not None:
            existing.cancel()
        self._timers[key] = loop.call_later(delay, self._fire_timer, key)

    def _fire_timer(self, key: RolloutKey) -> None:
        self._timers.pop(key, None)
        self.enqueue(key)

    async def reconcile_now(self, key: RolloutKey) -> Optional[ReconcileResult]:
        """
        Run one invocation inline and return its result. If the key is
        already being reconciled, it is marked for another pass and None is
        returned.
        """
        if key in self._in_flight:
            self._dirty.add(key)
            return None
        self._in_flight.add(key)
        return await self._process(key)

    # ------------------------------------------------------------------
    # Workers
    # ------------------------------------------------------------------

    async def _worker(self, index: int) -> None:
        while True:
            key = await self.queue.get()
            try:
                enqueued_at = self._queued.pop(key, time.time())
                DRIVER_QUEUE_WAIT_SECONDS.observe(time.time() - enqueued_at)
                DRIVER_QUEUE_DEPTH.set(self.queue.qsize())

                if key in self._in_flight:
                    self._dirty.add(key)
                    continue
                self._in_flight.add(key)
                await self._process(key)
            except Exception:  # noqa: BLE001
                logger.exception("RolloutDriver worker %d failed on %s", index, key)
            finally:
                self.queue.task_done()

    async def _process(self, key: RolloutKey) -> Optional[ReconcileResult]:
        """Run the controller for ``key``. The key must already be in flight."""
        DRIVER_IN_FLIGHT.set(len(self._in_flight))
        loop = asyncio.get_running_loop()
        future = loop.run_in_executor(None, self.controller.reconcile, key)

        try:
            result = await asyncio.wait_for(asyncio.shield(future), timeout=self.reconcile_timeout)
        except asyncio.TimeoutError:
            DRIVER_INVOCATIONS_TOTAL.labels(result="timeout").inc()
            logger.error(
                "Reconcile of %s exceeded %.0fs, waiting for it to finish before retrying",
                key,
                self.reconcile_timeout,
            )
            future.add_done_callback(lambda f: self._on_abandoned_done(key, f))
            return None
        except RolloutNotFound:
            DRIVER_INVOCATIONS_TOTAL.labels(result="not_found").inc()
            logger.info("AppRollout %s is gone, dropping it", key)
            self._failures.pop(key, None)
            self._release(key)
            return None
        except RolloutError as exc:
            DRIVER_INVOCATIONS_TOTAL.labels(result="error").inc()
            logger.warning("Reconcile of %s failed (%s): %s", key, exc.reason, exc.message)
            self._release(key)
            self._retry(key)
            return None
        except Exception:  # noqa: BLE001
            DRIVER_INVOCATIONS_TOTAL.labels(result="error").inc()
            logger.exception("Unexpected error reconciling %s", key)
            self._release(key)
            self._retry(key)
            return None

        DRIVER_INVOCATIONS_TOTAL.labels(result="ok").inc()
        self._failures.pop(key, None)
        self._release(key)
        self._schedule(key, result)
        return result

    def _on_abandoned_done(self, key: RolloutKey, future: "asyncio.Future") -> None:
        if not future.cancelled() and future.exception() is not None:
            logger.warning("Timed-out reconcile of %s ended with: %s", key, future.exception())
        self._release(key)
        self._retry(key)

    def _release(self, key: RolloutKey) -> None:
        self._in_flight.discard(key)
        DRIVER_IN_FLIGHT.set(len(self._in_flight))
        if key in self._dirty:
            self._dirty.discard(key)
            self.enqueue(key)

    def _schedule(self, key: RolloutKey, result: ReconcileResult) -> None:
        if result.requeue_after is None:
            return
        self.enqueue_after(key, result.requeue_after)

    def _compute_backoff(self, attempt: int) -> float:
        base = min(self.max_backoff_seconds, self.base_backoff_seconds * (2 ** attempt))
        jitter = random.uniform(0, base * 0.2)
        return base + jitter

    def _retry(self, key: RolloutKey) -> None:
        attempt = self._failures.get(key, 0)
        self._failures[key] = attempt + 1
        backoff = self._compute_backoff(attempt)
        DRIVER_RETRIES_TOTAL.inc()
        logger.info("Requeueing %s after %.2fs (attempt %d)", key, backoff, attempt + 1)
        self.enqueue_after(key, backoff)

    # ------------------------------------------------------------------
    # Resync
    # ------------------------------------------------------------------

    async def _resync_loop(self) -> None:
        loop = asyncio.get_running_loop()
        while True:
            try:
                keys = await loop.run_in_executor(None, self.controller.status_store.list_keys)
            except RolloutError as exc:
                logger.warning("Resync listing failed: %s", exc.message)
            else:
                for key in keys:
                    self.enqueue(key)
            await asyncio.sleep(self.resync_interval)
