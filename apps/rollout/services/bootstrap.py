"""
Explicit wiring of the rollout controller.

Nothing registers itself globally: the controller gets its store, revision
resolver, workload accessor and ownership manager handed in here, and the
FastAPI app gets the driver handed in by create_app().
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Optional

from ..config import Settings
from .memory_backend import MemoryRevisionResolver, MemoryStatusStore, MemoryWorkloadAccessor
from .ownership import OwnershipManager
from .plan_controller import RolloutPlanController
from .revision_resolver import KubernetesRevisionResolver, RevisionResolver
from .state_machine import RolloutStateMachine
from .status_store import KubernetesStatusStore, StatusStore
from .workload_accessor import KubernetesWorkloadAccessor, WorkloadAccessor

logger = logging.getLogger("rollout.bootstrap")


@dataclass
class Backend:
    status_store: StatusStore
    revisions: RevisionResolver
    workloads: WorkloadAccessor


def build_backend(settings: Settings) -> Backend:
    if settings.BACKEND == "memory":
        logger.info("Using in-memory rollout backend")
        return Backend(
            status_store=MemoryStatusStore(),
            revisions=MemoryRevisionResolver(),
            workloads=MemoryWorkloadAccessor(),
        )
    if settings.BACKEND != "kubernetes":
        raise ValueError(f"unknown ROLLOUT_BACKEND {settings.BACKEND!r}")

    logger.info("Using Kubernetes rollout backend (namespace=%s)", settings.K8S_NAMESPACE)
    return Backend(
        status_store=KubernetesStatusStore(namespace=settings.K8S_NAMESPACE),
        revisions=KubernetesRevisionResolver(),
        workloads=KubernetesWorkloadAccessor(),
    )


def build_controller(
    settings: Settings,
    backend: Optional[Backend] = None,
    clock: Optional[Callable] = None,
) -> RolloutPlanController:
    backend = backend or build_backend(settings)
    return RolloutPlanController(
        status_store=backend.status_store,
        revisions=backend.revisions,
        workloads=backend.workloads,
        ownership=OwnershipManager(),
        state_machine=RolloutStateMachine.from_settings(settings),
        settings=settings,
        clock=clock,
    )
