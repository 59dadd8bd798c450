"""Shared fixtures for the rollout controller test suite."""

from __future__ import annotations

import os

# Settings reads the environment at import time.
os.environ.setdefault("ROLLOUT_OTEL_ENABLED", "false")
os.environ.setdefault("ROLLOUT_BACKEND", "memory")
os.environ.setdefault("RESYNC_INTERVAL_SECONDS", "0")

from typing import Callable, List, Optional  # noqa: E402

import pytest  # noqa: E402

from apps.rollout.config import Settings  # noqa: E402
from apps.rollout.models.action_models import ReconcileResult  # noqa: E402
from apps.rollout.models.rollout_models import AppRollout, AppRolloutSpec, RolloutKey  # noqa: E402
from apps.rollout.services.bootstrap import Backend, build_controller  # noqa: E402
from apps.rollout.services.memory_backend import (  # noqa: E402
    MemoryRevisionResolver,
    MemoryStatusStore,
    MemoryWorkloadAccessor,
)
from apps.rollout.services.plan_controller import RolloutPlanController  # noqa: E402
from tests.helpers.builders import (  # noqa: E402
    CLONESET,
    KEY,
    FakeClock,
    make_revision,
    make_spec,
    native_owner,
)

# ---------------------------------------------------------------------------
# Clock + settings
# ---------------------------------------------------------------------------


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def settings() -> Settings:
    s = Settings()
    s.BATCH_VERIFY_INTERVAL_SECONDS = 5
    s.WORKLOAD_NOT_FOUND_GRACE_SECONDS = 60
    s.WORKLOAD_NOT_FOUND_BACKOFF_SECONDS = 5
    s.OWNERSHIP_CONFLICT_BACKOFF_SECONDS = 15
    s.HEALTH_GATE_TIMEOUT_SECONDS = 600
    s.REVISION_NOT_READY_REQUEUE_SECONDS = 5
    s.STATUS_UPDATE_MAX_ATTEMPTS = 3
    s.RESYNC_INTERVAL_SECONDS = 0
    return s


# ---------------------------------------------------------------------------
# In-memory backend
# ---------------------------------------------------------------------------


@pytest.fixture
def store() -> MemoryStatusStore:
    return MemoryStatusStore()


@pytest.fixture
def revisions() -> MemoryRevisionResolver:
    resolver = MemoryRevisionResolver()
    resolver.add_revision(make_revision("app-v1"))
    resolver.add_revision(make_revision("app-v2"))
    return resolver


@pytest.fixture
def workloads() -> MemoryWorkloadAccessor:
    accessor = MemoryWorkloadAccessor()
    accessor.add_workload(CLONESET, desired_replicas=4, owner_reference=native_owner("app-v1"))
    return accessor


# ---------------------------------------------------------------------------
# Controller
# ---------------------------------------------------------------------------


@pytest.fixture
def controller(
    settings: Settings,
    store: MemoryStatusStore,
    revisions: MemoryRevisionResolver,
    workloads: MemoryWorkloadAccessor,
    clock: FakeClock,
) -> RolloutPlanController:
    backend = Backend(status_store=store, revisions=revisions, workloads=workloads)
    return build_controller(settings, backend=backend, clock=clock)


@pytest.fixture
def apply_rollout(store: MemoryStatusStore) -> Callable[..., AppRollout]:
    """Create or edit the AppRollout under KEY."""

    def _apply(spec: Optional[AppRolloutSpec] = None) -> AppRollout:
        return store.apply(
            AppRollout(
                namespace=KEY.namespace,
                name=KEY.name,
                uid="uid-rollout",
                spec=spec or make_spec(),
            )
        )

    return _apply


@pytest.fixture
def run_until_idle(
    controller: RolloutPlanController, clock: FakeClock
) -> Callable[..., List[ReconcileResult]]:
    """
    Reconcile KEY until the controller stops asking for a requeue, moving the
    clock forward by each requested delay.
    """

    def _run(key: RolloutKey = KEY, max_steps: int = 50) -> List[ReconcileResult]:
        results: List[ReconcileResult] = []
        for _ in range(max_steps):
            result = controller.reconcile(key)
            results.append(result)
            if result.requeue_after is None:
                return results
            clock.advance(result.requeue_after)
        raise AssertionError(f"{key} still requeueing after {max_steps} steps: {results[-1]}")

    return _run
