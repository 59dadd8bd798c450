"""
In-memory backend: workloads, revisions and AppRollouts held in process.

Used for ROLLOUT_BACKEND=memory (local development, demos) and by the test
suite. Workloads simulate their native controller: with ``auto_converge``
a new target count is applied immediately, with ``auto_ready`` the updated
replicas also become ready immediately. Turn either off to step the
simulation by hand with ``converge()``.
"""

from __future__ import annotations

import itertools
import logging
import threading
from dataclasses import dataclass
from typing import Dict, List, Optional

from ..errors import RolloutNotFound, VersionConflict, WorkloadAccessError, WorkloadNotFound
from ..models.rollout_models import AppRollout, AppRolloutSpec, RolloutKey, RolloutStatus
from ..models.workload_models import (
    AppRevision,
    OwnerReference,
    RevisionRollingStatus,
    WorkloadRef,
    WorkloadSnapshot,
)
from .revision_resolver import (
    APP_REVISION_ANNOTATION,
    ROLLOUT_TEMPLATE_ANNOTATION,
    RevisionResolver,
)
from .status_store import StatusStore
from .workload_accessor import WorkloadAccessor, WorkloadHandle

logger = logging.getLogger("rollout.memory")


# ---------------------------------------------------------------------------
# Workloads
# ---------------------------------------------------------------------------

@dataclass
class MemoryWorkload:
    desired_replicas: int
    updated_replicas: int = 0
    updated_ready_replicas: int = 0
    paused: bool = False
    owner_reference: Optional[OwnerReference] = None
    target_replicas: Optional[int] = None


class MemoryWorkloadHandle(WorkloadHandle):
    def __init__(self, ref: WorkloadRef, accessor: "MemoryWorkloadAccessor") -> None:
        super().__init__(ref)
        self._accessor = accessor

    def get_snapshot(self) -> WorkloadSnapshot:
        return self._accessor.snapshot(self.ref)

    def set_pause_flag(self, paused: bool) -> None:
        with self._accessor.lock:
            self._accessor.check_fault(self.ref, "set_pause_flag")
            self._accessor.record(self.ref).paused = paused

    def set_owner_reference(self, owner: Optional[OwnerReference]) -> None:
        with self._accessor.lock:
            self._accessor.check_fault(self.ref, "set_owner_reference")
            self._accessor.record(self.ref).owner_reference = owner

    def set_target_replica_count(self, replicas: int) -> None:
        with self._accessor.lock:
            self._accessor.check_fault(self.ref, "set_target_replica_count")
            record = self._accessor.record(self.ref)
            record.target_replicas = replicas
            self._accessor.simulate(record)


class MemoryWorkloadAccessor(WorkloadAccessor):
    def __init__(self, auto_converge: bool = True, auto_ready: bool = True) -> None:
        self.lock = threading.RLock()
        self.auto_converge = auto_converge
        self.auto_ready = auto_ready
        self._workloads: Dict[WorkloadRef, MemoryWorkload] = {}
        self._faults: Dict[tuple, Exception] = {}
        self.calls: List[str] = []

    # -- setup / inspection -------------------------------------------------

    def add_workload(
        self,
        ref: WorkloadRef,
        desired_replicas: int,
        owner_reference: Optional[OwnerReference] = None,
    ) -> MemoryWorkload:
        with self.lock:
            record = MemoryWorkload(desired_replicas=desired_replicas, owner_reference=owner_reference)
            self._workloads[ref] = record
            return record

    def remove_workload(self, ref: WorkloadRef) -> None:
        with self.lock:
            self._workloads.pop(ref, None)

    def record(self, ref: WorkloadRef) -> MemoryWorkload:
        record = self._workloads.get(ref)
        if record is None:
            raise WorkloadNotFound(f"{ref} not found")
        return record

    def inject_fault(self, ref: WorkloadRef, op: str, exc: Exception) -> None:
        """Make the next ``op`` on ``ref`` raise ``exc``."""
        with self.lock:
            self._faults[(ref, op)] = exc

    def check_fault(self, ref: WorkloadRef, op: str) -> None:
        self.calls.append(f"{op}:{ref.name}")
        exc = self._faults.pop((ref, op), None)
        if exc is not None:
            raise exc

    def simulate(self, record: MemoryWorkload) -> None:
        if record.target_replicas is None:
            return
        if self.auto_converge:
            record.updated_replicas = record.target_replicas
        if self.auto_ready:
            record.updated_ready_replicas = record.updated_replicas

    def converge(self, ref: WorkloadRef, updated: Optional[int] = None, ready: Optional[int] = None) -> None:
        """Step the simulated native controller by hand."""
        with self.lock:
            record = self.record(ref)
            if updated is not None:
                record.updated_replicas = updated
            if ready is not None:
                record.updated_ready_replicas = ready

    def snapshot(self, ref: WorkloadRef) -> WorkloadSnapshot:
        with self.lock:
            self.check_fault(ref, "get_snapshot")
            record = self.record(ref)
            return WorkloadSnapshot(
                desired_replicas=record.desired_replicas,
                total_replicas=record.desired_replicas,
                updated_replicas=record.updated_replicas,
                updated_ready_replicas=record.updated_ready_replicas,
                paused=record.paused,
                owner_reference=record.owner_reference,
            )

    # -- WorkloadAccessor ---------------------------------------------------

    def resolve(self, ref: WorkloadRef) -> WorkloadHandle:
        with self.lock:
            self.check_fault(ref, "resolve")
            self.record(ref)
        return MemoryWorkloadHandle(ref, self)


# ---------------------------------------------------------------------------
# Revisions
# ---------------------------------------------------------------------------

class MemoryRevisionResolver(RevisionResolver):
    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._revisions: Dict[tuple, AppRevision] = {}
        self._annotations: Dict[tuple, Dict[str, str]] = {}

    def add_revision(self, revision: AppRevision, under_rollout: bool = True) -> None:
        with self._lock:
            key = (revision.namespace, revision.name)
            self._revisions[key] = revision.model_copy(deep=True)
            self._annotations[key] = {ROLLOUT_TEMPLATE_ANNOTATION: "true"} if under_rollout else {}

    def annotations(self, namespace: str, name: str) -> Dict[str, str]:
        with self._lock:
            return dict(self._annotations.get((namespace, name), {}))

    def get_revision(self, namespace: str, name: str) -> Optional[AppRevision]:
        with self._lock:
            revision = self._revisions.get((namespace, name))
            return revision.model_copy(deep=True) if revision is not None else None

    def _require(self, revision: AppRevision) -> tuple:
        key = (revision.namespace, revision.name)
        if key not in self._revisions:
            raise WorkloadAccessError(f"revision {revision.namespace}/{revision.name} not found")
        return key

    def mark_inactive(self, revision: AppRevision) -> None:
        with self._lock:
            key = self._require(revision)
            annotations = self._annotations[key]
            annotations.pop(ROLLOUT_TEMPLATE_ANNOTATION, None)
            annotations[APP_REVISION_ANNOTATION] = "true"
            # What the native revision controller does once it sees the annotations.
            self._revisions[key].rolling_status = RevisionRollingStatus.INACTIVE

    def release_rollout_control(self, revision: AppRevision) -> None:
        with self._lock:
            key = self._require(revision)
            self._annotations[key].pop(ROLLOUT_TEMPLATE_ANNOTATION, None)
            self._revisions[key].rolling_status = RevisionRollingStatus.COMPLETED


# ---------------------------------------------------------------------------
# AppRollouts
# ---------------------------------------------------------------------------

class MemoryStatusStore(StatusStore):
    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._rollouts: Dict[RolloutKey, AppRollout] = {}
        self._versions = itertools.count(1)

    def _next_version(self) -> str:
        return str(next(self._versions))

    def apply(self, rollout: AppRollout) -> AppRollout:
        """
        Create or update an AppRollout the way a user would: the spec is
        replaced, an existing status is kept, the version moves.
        """
        with self._lock:
            existing = self._rollouts.get(rollout.key)
            stored = rollout.model_copy(deep=True)
            if existing is not None:
                stored.status = existing.status.model_copy(deep=True)
                stored.uid = existing.uid or stored.uid
            stored.resource_version = self._next_version()
            self._rollouts[rollout.key] = stored
            return stored.model_copy(deep=True)

    def update_spec(self, key: RolloutKey, spec: AppRolloutSpec) -> AppRollout:
        rollout = self.get(key)
        rollout.spec = spec
        return self.apply(rollout)

    def delete(self, key: RolloutKey) -> None:
        with self._lock:
            self._rollouts.pop(key, None)

    def get(self, key: RolloutKey) -> AppRollout:
        with self._lock:
            rollout = self._rollouts.get(key)
            if rollout is None:
                raise RolloutNotFound(f"AppRollout {key} not found")
            return rollout.model_copy(deep=True)

    def update_status(
        self, key: RolloutKey, status: RolloutStatus, expected_version: Optional[str]
    ) -> str:
        with self._lock:
            rollout = self._rollouts.get(key)
            if rollout is None:
                raise RolloutNotFound(f"AppRollout {key} not found")
            if rollout.resource_version != expected_version:
                raise VersionConflict(
                    f"AppRollout {key} is at {rollout.resource_version}, not {expected_version}"
                )
            rollout.status = status.model_copy(deep=True)
            rollout.resource_version = self._next_version()
            return rollout.resource_version

    def list_keys(self) -> List[RolloutKey]:
        with self._lock:
            return sorted(self._rollouts)
