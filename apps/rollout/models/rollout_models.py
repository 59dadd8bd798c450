"""
Pydantic models for the AppRollout resource: the user-declared plan and the
engine-owned status.

Python attributes are snake_case; the persisted document (the AppRollout
custom resource) uses the camelCase aliases. Always dump with
``by_alias=True`` when writing back to the store.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import List, NamedTuple, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

ROLLOUT_API_VERSION = "core.oam.dev/v1alpha2"
ROLLOUT_KIND = "AppRollout"


class RolloutKey(NamedTuple):
    namespace: str
    name: str

    def __str__(self) -> str:
        return f"{self.namespace}/{self.name}"


# ---------------------------------------------------------------------------
# States
# ---------------------------------------------------------------------------

class RollingState(str, Enum):
    INITIAL = "Initial"
    ROLLING_IN_BATCHES = "RollingInBatches"
    SUCCEEDED = "RolloutSucceeded"
    FAILED = "RolloutFailed"


class BatchRollingState(str, Enum):
    INITIAL = "BatchInitial"
    IN_ROLLING = "BatchInRolling"
    VERIFYING = "BatchVerifying"
    READY = "BatchReady"
    PAUSING = "BatchPausing"
    PAUSED = "BatchPaused"


TERMINAL_STATES = (RollingState.SUCCEEDED, RollingState.FAILED)


# ---------------------------------------------------------------------------
# Conditions
# ---------------------------------------------------------------------------

class ConditionStatus(str, Enum):
    TRUE = "True"
    FALSE = "False"
    UNKNOWN = "Unknown"


class ConditionType(str, Enum):
    PLAN_VALID = "PlanValid"
    WORKLOAD_RESOLVED = "WorkloadResolved"
    OWNERSHIP_CLAIMED = "OwnershipClaimed"
    BATCH_READY = "BatchReady"
    BATCH_PAUSED = "BatchPaused"
    ROLLOUT_SUCCEEDED = "RolloutSucceeded"
    ROLLOUT_FAILED = "RolloutFailed"


class Condition(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    type: ConditionType
    status: ConditionStatus = ConditionStatus.UNKNOWN
    last_transition_time: datetime = Field(..., alias="lastTransitionTime")
    reason: str = ""
    message: str = ""


# ---------------------------------------------------------------------------
# Plan (user input)
# ---------------------------------------------------------------------------

class RolloutBatch(BaseModel):
    replicas: Union[int, str] = Field(
        ...,
        description=(
            "Replicas that should run the target revision once this batch "
            "completes: an absolute count (3) or a share of the desired "
            "replicas ('25%'). Cumulative across batches."
        ),
    )


class RolloutPlan(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    rollout_batches: List[RolloutBatch] = Field(default_factory=list, alias="rolloutBatches")
    batch_partition: Optional[int] = Field(
        default=None,
        alias="batchPartition",
        description="Highest batch index the rollout may advance to. None = all batches.",
    )
    paused: bool = False
    batch_ready_timeout_seconds: Optional[float] = Field(
        default=None,
        alias="batchReadyTimeoutSeconds",
        description="Per-plan override of the health gate timeout.",
    )


class AppRolloutSpec(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    target_revision_name: str = Field(..., alias="targetAppRevisionName")
    source_revision_name: Optional[str] = Field(default=None, alias="sourceAppRevisionName")
    component_list: List[str] = Field(default_factory=list, alias="componentList")
    rollout_plan: RolloutPlan = Field(default_factory=RolloutPlan, alias="rolloutPlan")


# ---------------------------------------------------------------------------
# Status (engine owned)
# ---------------------------------------------------------------------------

class RolloutStatus(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    rolling_state: RollingState = Field(default=RollingState.INITIAL, alias="rollingState")
    batch_rolling_state: BatchRollingState = Field(
        default=BatchRollingState.INITIAL, alias="batchRollingState"
    )
    current_batch: int = Field(default=0, ge=0, alias="currentBatch")
    last_upgraded_target_revision: Optional[str] = Field(
        default=None, alias="lastUpgradedTargetAppRevision"
    )
    last_source_revision: Optional[str] = Field(default=None, alias="lastSourceAppRevision")

    rollout_target_size: Optional[int] = Field(default=None, alias="rolloutTargetSize")
    upgraded_replicas: Optional[int] = Field(default=None, alias="upgradedReplicas")
    upgraded_ready_replicas: Optional[int] = Field(default=None, alias="upgradedReadyReplicas")

    conditions: List[Condition] = Field(default_factory=list)

    @property
    def is_terminal(self) -> bool:
        return self.rolling_state in TERMINAL_STATES

    def get_condition(self, ctype: ConditionType) -> Optional[Condition]:
        for cond in self.conditions:
            if cond.type == ctype:
                return cond
        return None

    def is_condition_true(self, ctype: ConditionType) -> bool:
        cond = self.get_condition(ctype)
        return cond is not None and cond.status == ConditionStatus.TRUE

    def set_condition(
        self,
        ctype: ConditionType,
        status: ConditionStatus,
        now: datetime,
        reason: str = "",
        message: str = "",
    ) -> bool:
        """
        Upsert a condition. lastTransitionTime only moves when ``status``
        changes; identical inputs leave the condition untouched.

        Returns True if anything changed.
        """
        existing = self.get_condition(ctype)
        if existing is None:
            self.conditions.append(
                Condition(
                    type=ctype,
                    status=status,
                    last_transition_time=now,
                    reason=reason,
                    message=message,
                )
            )
            return True

        changed = False
        if existing.status != status:
            existing.status = status
            existing.last_transition_time = now
            changed = True
        if existing.reason != reason or existing.message != message:
            existing.reason = reason
            existing.message = message
            changed = True
        return changed


class AppRollout(BaseModel):
    """An AppRollout as read from the store, with its version token."""

    model_config = ConfigDict(populate_by_name=True)

    namespace: str
    name: str
    uid: str = ""
    resource_version: Optional[str] = Field(default=None, alias="resourceVersion")
    spec: AppRolloutSpec
    status: RolloutStatus = Field(default_factory=RolloutStatus)

    @property
    def key(self) -> RolloutKey:
        return RolloutKey(self.namespace, self.name)
