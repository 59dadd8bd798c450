"""
Rollout state machine.

``RolloutStateMachine.reduce()`` is a pure function of
(plan, prior status, workload observation, owner, now). It returns the next
status plus the side effects the controller must execute and when the next
invocation should happen. It performs no I/O and never mutates its inputs,
so the controller can call it again after a crash or a timeout and land on
the same result.

States:

    Initial -> RollingInBatches -> RolloutSucceeded | RolloutFailed
    RolloutSucceeded | RolloutFailed -> Initial   (revision pair changed)

Per batch, inside RollingInBatches:

    BatchInitial -> BatchInRolling -> BatchVerifying -> BatchReady
    BatchReady -> next BatchInitial | BatchPausing | hold | RolloutSucceeded
    BatchPausing -> BatchPaused -> BatchInitial (when resumed)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional

from ..errors import (
    HealthGateTimeout,
    InvalidPlan,
    PartitionMovedBackward,
    RevisionChanged,
    RolloutError,
    WorkloadNotFound,
)
from ..models.action_models import RolloutAction, RolloutActionType
from ..models.rollout_models import (
    AppRolloutSpec,
    BatchRollingState,
    ConditionStatus,
    ConditionType,
    RollingState,
    RolloutStatus,
)
from ..models.workload_models import ControlledBy, OwnerReference, WorkloadSnapshot
from .batch_planner import compute_batch_targets, validate_plan

logger = logging.getLogger("rollout.state_machine")

REQUEUE_NOW = 0.0


@dataclass
class Observation:
    """What the controller could see of the target workload this invocation."""

    snapshot: Optional[WorkloadSnapshot] = None
    # Human-readable description of the missing object when snapshot is None.
    missing: Optional[str] = None


@dataclass
class Transition:
    status: RolloutStatus
    actions: List[RolloutAction] = field(default_factory=list)
    requeue_after: Optional[float] = None
    message: str = ""


def revisions_match(spec: AppRolloutSpec, status: RolloutStatus) -> bool:
    return (
        status.last_upgraded_target_revision == spec.target_revision_name
        and (status.last_source_revision or None) == (spec.source_revision_name or None)
    )


def is_settled(spec: AppRolloutSpec, status: RolloutStatus) -> bool:
    """Terminal and still describing the same revision pair: nothing to do."""
    return status.is_terminal and revisions_match(spec, status)


class RolloutStateMachine:
    def __init__(
        self,
        verify_interval_seconds: float = 5.0,
        not_found_grace_seconds: float = 60.0,
        not_found_backoff_seconds: float = 5.0,
        ownership_conflict_backoff_seconds: float = 15.0,
        health_gate_timeout_seconds: float = 600.0,
    ) -> None:
        self.verify_interval_seconds = verify_interval_seconds
        self.not_found_grace_seconds = not_found_grace_seconds
        self.not_found_backoff_seconds = not_found_backoff_seconds
        self.ownership_conflict_backoff_seconds = ownership_conflict_backoff_seconds
        self.health_gate_timeout_seconds = health_gate_timeout_seconds

    @classmethod
    def from_settings(cls, settings) -> "RolloutStateMachine":
        return cls(
            verify_interval_seconds=settings.BATCH_VERIFY_INTERVAL_SECONDS,
            not_found_grace_seconds=settings.WORKLOAD_NOT_FOUND_GRACE_SECONDS,
            not_found_backoff_seconds=settings.WORKLOAD_NOT_FOUND_BACKOFF_SECONDS,
            ownership_conflict_backoff_seconds=settings.OWNERSHIP_CONFLICT_BACKOFF_SECONDS,
            health_gate_timeout_seconds=settings.HEALTH_GATE_TIMEOUT_SECONDS,
        )

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    def reduce(
        self,
        spec: AppRolloutSpec,
        status: RolloutStatus,
        observation: Observation,
        owner: OwnerReference,
        now: datetime,
    ) -> Transition:
        status = status.model_copy(deep=True)

        if status.is_terminal:
            if revisions_match(spec, status):
                return Transition(status=status, message="rollout terminated, nothing to do")
            logger.info(
                "rollout target changed, restarting: source=%s target=%s (was %s -> %s)",
                spec.source_revision_name,
                spec.target_revision_name,
                status.last_source_revision,
                status.last_upgraded_target_revision,
            )
            return Transition(
                status=RolloutStatus(),
                requeue_after=REQUEUE_NOW,
                message="revision changed, rollout reset",
            )

        if status.rolling_state == RollingState.INITIAL:
            try:
                validate_plan(spec.rollout_plan)
            except InvalidPlan as exc:
                return self._hold_invalid(status, exc, now)

            status.rolling_state = RollingState.ROLLING_IN_BATCHES
            status.batch_rolling_state = BatchRollingState.INITIAL
            status.current_batch = 0
            status.last_upgraded_target_revision = spec.target_revision_name
            status.last_source_revision = spec.source_revision_name or None
            logger.info(
                "rollout started: source=%s target=%s batches=%d",
                spec.source_revision_name,
                spec.target_revision_name,
                len(spec.rollout_plan.rollout_batches),
            )

        return self._reduce_rolling(spec, status, observation, owner, now)

    # ------------------------------------------------------------------
    # RollingInBatches
    # ------------------------------------------------------------------

    def _reduce_rolling(
        self,
        spec: AppRolloutSpec,
        status: RolloutStatus,
        observation: Observation,
        owner: OwnerReference,
        now: datetime,
    ) -> Transition:
        plan = spec.rollout_plan

        if not revisions_match(spec, status):
            return self._fail(
                status,
                RevisionChanged(
                    f"revisions changed from {status.last_source_revision} -> "
                    f"{status.last_upgraded_target_revision} to "
                    f"{spec.source_revision_name} -> {spec.target_revision_name} "
                    "while rolling"
                ),
                now,
            )

        try:
            validate_plan(plan)
        except InvalidPlan as exc:
            return self._hold_invalid(status, exc, now)

        if status.current_batch >= len(plan.rollout_batches):
            return self._fail(
                status,
                PartitionMovedBackward(
                    f"plan now has {len(plan.rollout_batches)} batches but batch "
                    f"{status.current_batch} is already committed"
                ),
                now,
            )
        if plan.batch_partition is not None and plan.batch_partition < status.current_batch:
            return self._fail(
                status,
                PartitionMovedBackward(
                    f"batchPartition moved back to {plan.batch_partition} after batch "
                    f"{status.current_batch} was committed"
                ),
                now,
            )

        claimed_before = status.is_condition_true(ConditionType.OWNERSHIP_CLAIMED)
        snapshot = observation.snapshot
        if snapshot is None:
            return self._handle_missing(status, observation.missing, claimed_before, now)

        status.set_condition(
            ConditionType.WORKLOAD_RESOLVED,
            ConditionStatus.TRUE,
            now,
            reason="WorkloadResolved",
        )
        status.rollout_target_size = snapshot.desired_replicas
        status.upgraded_replicas = snapshot.updated_replicas
        status.upgraded_ready_replicas = snapshot.updated_ready_replicas

        try:
            targets = compute_batch_targets(plan.rollout_batches, snapshot.desired_replicas)
        except InvalidPlan as exc:
            return self._hold_invalid(status, exc, now)
        status.set_condition(
            ConditionType.PLAN_VALID, ConditionStatus.TRUE, now, reason="PlanValid"
        )

        if not snapshot.is_claimed_by(owner):
            return self._claim(status, snapshot, owner, claimed_before, now)
        status.set_condition(
            ConditionType.OWNERSHIP_CLAIMED,
            ConditionStatus.TRUE,
            now,
            reason="OwnershipClaimed",
            message=f"workload controlled by {owner}",
        )

        target = targets[status.current_batch]
        handler = {
            BatchRollingState.INITIAL: self._batch_initial,
            BatchRollingState.IN_ROLLING: self._batch_in_rolling,
            BatchRollingState.VERIFYING: self._batch_verifying,
            BatchRollingState.READY: self._batch_ready,
            BatchRollingState.PAUSING: self._batch_pausing,
            BatchRollingState.PAUSED: self._batch_paused,
        }[status.batch_rolling_state]
        return handler(spec, status, snapshot, target, now)

    # ------------------------------------------------------------------
    # Pre-batch gates
    # ------------------------------------------------------------------

    def _handle_missing(
        self,
        status: RolloutStatus,
        missing: Optional[str],
        claimed_before: bool,
        now: datetime,
    ) -> Transition:
        what = missing or "target workload"
        if claimed_before:
            return self._fail(
                status,
                WorkloadNotFound(f"{what} disappeared after ownership was claimed"),
                now,
            )

        status.set_condition(
            ConditionType.WORKLOAD_RESOLVED,
            ConditionStatus.FALSE,
            now,
            reason=WorkloadNotFound.reason,
            message=f"{what} not found",
        )
        since = status.get_condition(ConditionType.WORKLOAD_RESOLVED).last_transition_time
        waited = (now - since).total_seconds()
        if waited >= self.not_found_grace_seconds:
            return self._fail(
                status,
                WorkloadNotFound(
                    f"{what} still missing after {int(waited)}s "
                    f"(grace {int(self.not_found_grace_seconds)}s)"
                ),
                now,
            )
        return Transition(
            status=status,
            requeue_after=self.not_found_backoff_seconds,
            message=f"{what} not found, retrying",
        )

    def _claim(
        self,
        status: RolloutStatus,
        snapshot: WorkloadSnapshot,
        owner: OwnerReference,
        claimed_before: bool,
        now: datetime,
    ) -> Transition:
        current = snapshot.owner_reference
        if (
            snapshot.controlled_by == ControlledBy.ROLLOUT_ENGINE
            and not owner.same_as(current)
        ):
            status.set_condition(
                ConditionType.OWNERSHIP_CLAIMED,
                ConditionStatus.FALSE,
                now,
                reason="OwnershipConflict",
                message=f"workload is controlled by another rollout {current}",
            )
            return Transition(
                status=status,
                requeue_after=self.ownership_conflict_backoff_seconds,
                message=f"ownership conflict with {current}",
            )

        if claimed_before:
            logger.warning(
                "ownership of the target workload was lost (owner=%s paused=%s), re-claiming",
                current,
                snapshot.paused,
            )
        # Recorded with the claim so a workload vanishing right after it is
        # treated as owned. The controller flips it back on a lost race.
        status.set_condition(
            ConditionType.OWNERSHIP_CLAIMED,
            ConditionStatus.TRUE,
            now,
            reason="OwnershipClaimed",
            message=f"workload controlled by {owner}",
        )
        return Transition(
            status=status,
            actions=[RolloutAction(type=RolloutActionType.CLAIM)],
            requeue_after=REQUEUE_NOW,
            message="claiming ownership of the target workload",
        )

    # ------------------------------------------------------------------
    # Batch sub-states
    # ------------------------------------------------------------------

    def _batch_initial(self, spec, status, snapshot, target, now) -> Transition:
        if spec.rollout_plan.paused:
            return self._start_pausing(status)

        status.batch_rolling_state = BatchRollingState.IN_ROLLING
        status.set_condition(
            ConditionType.BATCH_READY,
            ConditionStatus.FALSE,
            now,
            reason="BatchInRolling",
            message=f"batch {status.current_batch} rolling to {target} replicas",
        )
        logger.info(
            "batch %d rolling: target=%d desired=%d",
            status.current_batch,
            target,
            snapshot.desired_replicas,
        )
        return Transition(
            status=status,
            actions=[RolloutAction(type=RolloutActionType.SET_TARGET_REPLICAS, replicas=target)],
            requeue_after=self.verify_interval_seconds,
            message=f"batch {status.current_batch} started",
        )

    def _batch_in_rolling(self, spec, status, snapshot, target, now) -> Transition:
        timed_out = self._check_health_gate(spec, status, snapshot, target, now)
        if timed_out is not None:
            return timed_out

        if snapshot.updated_replicas >= target:
            status.batch_rolling_state = BatchRollingState.VERIFYING
            return Transition(
                status=status,
                requeue_after=REQUEUE_NOW,
                message=f"batch {status.current_batch} applied, verifying",
            )

        # Re-issue the (idempotent) mutation in case the last one was lost.
        return Transition(
            status=status,
            actions=[RolloutAction(type=RolloutActionType.SET_TARGET_REPLICAS, replicas=target)],
            requeue_after=self.verify_interval_seconds,
            message=(
                f"batch {status.current_batch} waiting for updated replicas "
                f"{snapshot.updated_replicas}/{target}"
            ),
        )

    def _batch_verifying(self, spec, status, snapshot, target, now) -> Transition:
        timed_out = self._check_health_gate(spec, status, snapshot, target, now)
        if timed_out is not None:
            return timed_out

        if snapshot.updated_ready_replicas >= target:
            status.batch_rolling_state = BatchRollingState.READY
            status.set_condition(
                ConditionType.BATCH_READY,
                ConditionStatus.TRUE,
                now,
                reason="BatchReady",
                message=f"batch {status.current_batch} ready with {target} replicas",
            )
            logger.info("batch %d ready: %d replicas", status.current_batch, target)
            return Transition(
                status=status,
                requeue_after=REQUEUE_NOW,
                message=f"batch {status.current_batch} ready",
            )

        return Transition(
            status=status,
            requeue_after=self.verify_interval_seconds,
            message=(
                f"batch {status.current_batch} waiting for ready replicas "
                f"{snapshot.updated_ready_replicas}/{target}"
            ),
        )

    def _batch_ready(self, spec, status, snapshot, target, now) -> Transition:
        plan = spec.rollout_plan
        last = len(plan.rollout_batches) - 1

        if plan.paused:
            return self._start_pausing(status)

        if status.current_batch >= last:
            return self._succeed(spec, status, now)

        if plan.batch_partition is None or status.current_batch < plan.batch_partition:
            status.current_batch += 1
            status.batch_rolling_state = BatchRollingState.INITIAL
            logger.info("advancing to batch %d", status.current_batch)
            return Transition(
                status=status,
                requeue_after=REQUEUE_NOW,
                message=f"advancing to batch {status.current_batch}",
            )

        return Transition(
            status=status,
            message=f"holding at batch {status.current_batch} (batchPartition={plan.batch_partition})",
        )

    def _batch_pausing(self, spec, status, snapshot, target, now) -> Transition:
        if not spec.rollout_plan.paused:
            status.batch_rolling_state = BatchRollingState.INITIAL
            return Transition(status=status, requeue_after=REQUEUE_NOW, message="pause lifted")

        status.batch_rolling_state = BatchRollingState.PAUSED
        status.set_condition(
            ConditionType.BATCH_PAUSED,
            ConditionStatus.TRUE,
            now,
            reason="BatchPaused",
            message=f"rollout paused at batch {status.current_batch}",
        )
        logger.info("rollout paused at batch %d", status.current_batch)
        return Transition(status=status, message="paused")

    def _batch_paused(self, spec, status, snapshot, target, now) -> Transition:
        if spec.rollout_plan.paused:
            return Transition(status=status, message=f"paused at batch {status.current_batch}")

        status.batch_rolling_state = BatchRollingState.INITIAL
        status.set_condition(
            ConditionType.BATCH_PAUSED,
            ConditionStatus.FALSE,
            now,
            reason="BatchResumed",
            message=f"rollout resumed at batch {status.current_batch}",
        )
        logger.info("rollout resumed at batch %d", status.current_batch)
        return Transition(status=status, requeue_after=REQUEUE_NOW, message="resumed")

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _start_pausing(self, status: RolloutStatus) -> Transition:
        status.batch_rolling_state = BatchRollingState.PAUSING
        return Transition(status=status, requeue_after=REQUEUE_NOW, message="pausing")

    def _check_health_gate(self, spec, status, snapshot, target, now) -> Optional[Transition]:
        timeout = spec.rollout_plan.batch_ready_timeout_seconds
        if timeout is None:
            timeout = self.health_gate_timeout_seconds
        cond = status.get_condition(ConditionType.BATCH_READY)
        if cond is None or cond.status != ConditionStatus.FALSE:
            return None
        elapsed = (now - cond.last_transition_time).total_seconds()
        if elapsed <= timeout:
            return None
        return self._fail(
            status,
            HealthGateTimeout(
                f"batch {status.current_batch} not ready after {int(elapsed)}s: "
                f"updated={snapshot.updated_replicas} ready={snapshot.updated_ready_replicas} "
                f"target={target}"
            ),
            now,
        )

    def _hold_invalid(self, status: RolloutStatus, exc: InvalidPlan, now: datetime) -> Transition:
        status.set_condition(
            ConditionType.PLAN_VALID,
            ConditionStatus.FALSE,
            now,
            reason=exc.reason,
            message=exc.message,
        )
        logger.warning("invalid rollout plan: %s", exc.message)
        # No requeue: only a plan edit can fix this.
        return Transition(status=status, message=f"invalid plan: {exc.message}")

    def _fail(self, status: RolloutStatus, exc: RolloutError, now: datetime) -> Transition:
        status.set_condition(
            ConditionType.ROLLOUT_FAILED,
            ConditionStatus.TRUE,
            now,
            reason=exc.reason,
            message=exc.message,
        )
        status.rolling_state = RollingState.FAILED
        logger.error(
            "rollout failed at batch %d (%s): %s",
            status.current_batch,
            exc.reason,
            exc.message,
        )
        # Replicas stay where they are; only the revision is handed back.
        actions: List[RolloutAction] = []
        if status.last_upgraded_target_revision:
            actions.append(
                RolloutAction(
                    type=RolloutActionType.RELEASE_ROLLOUT_CONTROL,
                    revision=status.last_upgraded_target_revision,
                )
            )
        return Transition(status=status, actions=actions, message=f"rollout failed: {exc.message}")

    def _succeed(self, spec: AppRolloutSpec, status: RolloutStatus, now: datetime) -> Transition:
        status.rolling_state = RollingState.SUCCEEDED
        status.set_condition(
            ConditionType.ROLLOUT_SUCCEEDED,
            ConditionStatus.TRUE,
            now,
            reason="RolloutSucceeded",
            message=f"{spec.target_revision_name} fully rolled out",
        )
        actions: List[RolloutAction] = []
        if spec.source_revision_name:
            actions.append(RolloutAction(type=RolloutActionType.MARK_SOURCE_INACTIVE))
        actions.append(RolloutAction(type=RolloutActionType.RELEASE))
        logger.info(
            "rollout succeeded: source=%s target=%s",
            spec.source_revision_name,
            spec.target_revision_name,
        )
        return Transition(status=status, actions=actions, message="rollout succeeded")
