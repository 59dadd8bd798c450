"""
RolloutPlanController: one reconciliation of one AppRollout.

Per invocation:
  1. read the AppRollout (plan + persisted status) fresh
  2. resolve the target/source revisions and the workload being rolled
  3. observe the target workload
  4. ask the state machine for the next status and the actions
  5. execute the actions (all idempotent)
  6. persist the status with optimistic concurrency

Actions run before the status write. If the write fails, the next
invocation recomputes the same actions from the old status and replays
them as no-ops.
"""

from __future__ import annotations

import logging
import time
from datetime import datetime, timezone
from typing import Callable, List, Optional

from opentelemetry import trace
from prometheus_client import Counter, Gauge, Histogram

from ..config import Settings
from ..errors import InvalidPlan, OwnershipConflict, RolloutError, WorkloadNotFound
from ..models.action_models import ReconcileResult, RolloutAction, RolloutActionType
from ..models.rollout_models import (
    ROLLOUT_API_VERSION,
    ROLLOUT_KIND,
    AppRollout,
    ConditionStatus,
    ConditionType,
    RolloutKey,
    RolloutStatus,
)
from ..models.workload_models import AppRevision, OwnerReference
from .ownership import OwnershipManager
from .revision_resolver import RevisionResolver, extract_workloads
from .state_machine import Observation, RolloutStateMachine, Transition, is_settled
from .status_store import StatusStore, persist_status, same_status
from .workload_accessor import WorkloadAccessor, WorkloadHandle

logger = logging.getLogger("rollout.controller")
tracer = trace.get_tracer(__name__)

# --------------------------------------------------------------------------
# Prometheus metrics
# --------------------------------------------------------------------------

RECONCILE_TOTAL = Counter(
    "rollout_reconcile_total",
    "AppRollout reconciliations by outcome",
    ["result"],  # done | requeue | waiting_revision | error
)

RECONCILE_DURATION_SECONDS = Histogram(
    "rollout_reconcile_duration_seconds",
    "Duration of one AppRollout reconciliation",
    buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10, 30, 60),
)

ROLLOUT_ACTIONS_TOTAL = Counter(
    "rollout_actions_total",
    "Actions executed against workloads and revisions",
    ["type", "result"],  # result: ok | error
)

ROLLOUT_CURRENT_BATCH = Gauge(
    "rollout_current_batch",
    "Current batch index per AppRollout (last reconciled)",
    ["namespace", "name"],
)


def utcnow() -> datetime:
    # Condition timestamps are persisted with second precision.
    return datetime.now(timezone.utc).replace(microsecond=0)


class RolloutPlanController:
    def __init__(
        self,
        status_store: StatusStore,
        revisions: RevisionResolver,
        workloads: WorkloadAccessor,
        ownership: OwnershipManager,
        state_machine: RolloutStateMachine,
        settings: Settings,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.status_store = status_store
        self.revisions = revisions
        self.workloads = workloads
        self.ownership = ownership
        self.state_machine = state_machine
        self.settings = settings
        self.clock = clock or utcnow

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    def reconcile(self, key: RolloutKey) -> ReconcileResult:
        """
        Run one invocation for ``key``. Transient failures (workload API
        errors, status conflicts) propagate as RolloutError; the driver
        requeues them with backoff.
        """
        with tracer.start_as_current_span("rollout.reconcile") as span:
            span.set_attribute("rollout.key", str(key))
            start = time.time()
            try:
                result = self._reconcile(key)
            except RolloutError as exc:
                RECONCILE_TOTAL.labels(result="error").inc()
                span.record_exception(exc)
                span.set_attribute("rollout.error_reason", exc.reason)
                raise
            finally:
                RECONCILE_DURATION_SECONDS.observe(time.time() - start)

            if result.rolling_state is not None:
                span.set_attribute("rollout.rolling_state", result.rolling_state.value)
            if result.batch_rolling_state is not None:
                span.set_attribute("rollout.batch_rolling_state", result.batch_rolling_state.value)
            if result.current_batch is not None:
                span.set_attribute("rollout.current_batch", result.current_batch)
                ROLLOUT_CURRENT_BATCH.labels(namespace=key.namespace, name=key.name).set(
                    result.current_batch
                )
            span.set_attribute("rollout.actions", ",".join(result.actions))
            return result

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    def _reconcile(self, key: RolloutKey) -> ReconcileResult:
        rollout = self.status_store.get(key)
        spec, status = rollout.spec, rollout.status
        now = self.clock()
        owner = self._owner_reference(rollout)

        if is_settled(spec, status):
            RECONCILE_TOTAL.labels(result="done").inc()
            return self._result(status, message="rollout terminated, nothing to do")

        if status.is_terminal:
            # Revision pair changed after a terminal state: reset, no I/O needed.
            transition = self.state_machine.reduce(spec, status, Observation(), owner, now)
            return self._finish(rollout, transition)

        target = self.revisions.get_revision(rollout.namespace, spec.target_revision_name)
        source = None
        if target is not None and spec.source_revision_name:
            source = self.revisions.get_revision(rollout.namespace, spec.source_revision_name)

        if target is None or (spec.source_revision_name and source is None):
            missing = spec.target_revision_name if target is None else spec.source_revision_name
            observation = Observation(missing=f"revision {rollout.namespace}/{missing}")
            transition = self.state_machine.reduce(spec, status, observation, owner, now)
            self._execute(rollout, transition, None, owner, target, source, now)
            return self._finish(rollout, transition)

        for revision in (target, source):
            if revision is not None and not revision.ready_for_rollout:
                return self._wait_for_revision(rollout, revision.name)

        try:
            target_ref, source_ref = extract_workloads(spec.component_list, target, source)
        except InvalidPlan as exc:
            new_status = status.model_copy(deep=True)
            new_status.set_condition(
                ConditionType.PLAN_VALID,
                ConditionStatus.FALSE,
                now,
                reason=exc.reason,
                message=exc.message,
            )
            logger.warning("Cannot pick the workload to roll for %s: %s", key, exc.message)
            return self._finish(rollout, Transition(status=new_status, message=exc.message))

        handle: Optional[WorkloadHandle] = None
        try:
            handle = self.workloads.resolve(target_ref)
            observation = Observation(snapshot=handle.get_snapshot())
        except WorkloadNotFound:
            observation = Observation(missing=str(target_ref))

        if observation.snapshot is not None and source_ref is not None and source_ref != target_ref:
            # A separate source workload only has to exist.
            try:
                self.workloads.resolve(source_ref)
            except WorkloadNotFound:
                observation = Observation(missing=str(source_ref))

        transition = self.state_machine.reduce(spec, status, observation, owner, now)
        self._execute(rollout, transition, handle, owner, target, source, now)
        return self._finish(rollout, transition)

    def _wait_for_revision(self, rollout: AppRollout, name: str) -> ReconcileResult:
        logger.info(
            "Revision %s/%s is not ready for rolling yet, rollout %s waits",
            rollout.namespace,
            name,
            rollout.key,
        )
        RECONCILE_TOTAL.labels(result="waiting_revision").inc()
        return self._result(
            rollout.status,
            requeue_after=self.settings.REVISION_NOT_READY_REQUEUE_SECONDS,
            message=f"revision {name} not ready for rolling",
        )

    def _execute(
        self,
        rollout: AppRollout,
        transition: Transition,
        handle: Optional[WorkloadHandle],
        owner: OwnerReference,
        target: Optional[AppRevision],
        source: Optional[AppRevision],
        now: datetime,
    ) -> None:
        for action in transition.actions:
            with tracer.start_as_current_span("rollout.action") as span:
                span.set_attribute("rollout.key", str(rollout.key))
                span.set_attribute("rollout.action", str(action))
                try:
                    self._execute_one(rollout, action, transition, handle, owner, target, source, now)
                except RolloutError as exc:
                    ROLLOUT_ACTIONS_TOTAL.labels(type=action.type.value, result="error").inc()
                    span.record_exception(exc)
                    raise
                ROLLOUT_ACTIONS_TOTAL.labels(type=action.type.value, result="ok").inc()

    def _execute_one(
        self,
        rollout: AppRollout,
        action: RolloutAction,
        transition: Transition,
        handle: Optional[WorkloadHandle],
        owner: OwnerReference,
        target: Optional[AppRevision],
        source: Optional[AppRevision],
        now: datetime,
    ) -> None:
        if action.type == RolloutActionType.MARK_SOURCE_INACTIVE:
            if source is not None:
                self.revisions.mark_inactive(source)
            return

        if action.type == RolloutActionType.RELEASE_ROLLOUT_CONTROL:
            revision = target
            if revision is None or revision.name != action.revision:
                revision = self.revisions.get_revision(rollout.namespace, action.revision or "")
            if revision is None:
                logger.info("Revision %s/%s is gone, nothing to hand back", rollout.namespace, action.revision)
                return
            self.revisions.release_rollout_control(revision)
            return

        if handle is None:
            raise WorkloadNotFound(f"no workload handle for action {action}")

        if action.type == RolloutActionType.CLAIM:
            try:
                self.ownership.claim(handle, owner)
            except OwnershipConflict as exc:
                # Lost a race with another rollout between the read and the claim.
                transition.status.set_condition(
                    ConditionType.OWNERSHIP_CLAIMED,
                    ConditionStatus.FALSE,
                    now,
                    reason=exc.reason,
                    message=exc.message,
                )
                transition.requeue_after = self.settings.OWNERSHIP_CONFLICT_BACKOFF_SECONDS
                transition.message = exc.message
        elif action.type == RolloutActionType.SET_TARGET_REPLICAS:
            handle.set_target_replica_count(action.replicas or 0)
        elif action.type == RolloutActionType.RELEASE:
            self.ownership.release(handle, owner, target.owner_reference())
            self.revisions.release_rollout_control(target)

    def _finish(self, rollout: AppRollout, transition: Transition) -> ReconcileResult:
        updated = False
        if not same_status(rollout.status, transition.status):
            persist_status(
                self.status_store,
                rollout.key,
                rollout.status,
                transition.status,
                rollout.resource_version,
                max_attempts=self.settings.STATUS_UPDATE_MAX_ATTEMPTS,
            )
            updated = True
            logger.info(
                "Rollout %s: %s/%s batch=%d (%s)",
                rollout.key,
                transition.status.rolling_state.value,
                transition.status.batch_rolling_state.value,
                transition.status.current_batch,
                transition.message,
            )

        RECONCILE_TOTAL.labels(
            result="done" if transition.requeue_after is None else "requeue"
        ).inc()
        return self._result(
            transition.status,
            requeue_after=transition.requeue_after,
            actions=[str(a) for a in transition.actions],
            status_updated=updated,
            message=transition.message,
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _owner_reference(rollout: AppRollout) -> OwnerReference:
        return OwnerReference(
            api_version=ROLLOUT_API_VERSION,
            kind=ROLLOUT_KIND,
            name=rollout.name,
            uid=rollout.uid,
        )

    @staticmethod
    def _result(
        status: RolloutStatus,
        requeue_after: Optional[float] = None,
        actions: Optional[List[str]] = None,
        status_updated: bool = False,
        message: str = "",
    ) -> ReconcileResult:
        return ReconcileResult(
            requeue_after=requeue_after,
            rolling_state=status.rolling_state,
            batch_rolling_state=status.batch_rolling_state,
            current_batch=status.current_batch,
            actions=actions or [],
            status_updated=status_updated,
            message=message,
        )
