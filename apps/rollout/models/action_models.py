"""
Pydantic models for the actions emitted by the state machine and for the
controller / HTTP results.

These models are used across:
  - state_machine.reduce() output
  - RolloutPlanController action execution
  - /v1/rollouts/* responses
"""

from __future__ import annotations

from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field

from .rollout_models import BatchRollingState, RollingState, RolloutStatus


# ---------------------------------------------------------------------------
# Action Types
# ---------------------------------------------------------------------------

class RolloutActionType(str, Enum):
    CLAIM = "claim"
    SET_TARGET_REPLICAS = "set_target_replicas"
    RELEASE = "release"
    MARK_SOURCE_INACTIVE = "mark_source_inactive"
    RELEASE_ROLLOUT_CONTROL = "release_rollout_control"


class RolloutAction(BaseModel):
    type: RolloutActionType
    replicas: Optional[int] = Field(
        default=None,
        ge=0,
        description="Target replica count (SET_TARGET_REPLICAS only)",
    )
    revision: Optional[str] = Field(
        default=None,
        description="Revision handed back to its own controller (RELEASE_ROLLOUT_CONTROL only)",
    )

    def __str__(self) -> str:
        if self.type == RolloutActionType.SET_TARGET_REPLICAS:
            return f"{self.type.value}({self.replicas})"
        if self.type == RolloutActionType.RELEASE_ROLLOUT_CONTROL:
            return f"{self.type.value}({self.revision})"
        return self.type.value


# ---------------------------------------------------------------------------
# Controller result
# ---------------------------------------------------------------------------

class ReconcileResult(BaseModel):
    """
    Outcome of one controller invocation.

    requeue_after:
      - None  → do not schedule another pass (wait for a trigger)
      - 0     → requeue immediately
      - > 0   → requeue after that many seconds
    """

    requeue_after: Optional[float] = Field(default=None, ge=0)
    rolling_state: Optional[RollingState] = None
    batch_rolling_state: Optional[BatchRollingState] = None
    current_batch: Optional[int] = None
    actions: List[str] = Field(default_factory=list)
    status_updated: bool = False
    message: str = ""


# ---------------------------------------------------------------------------
# HTTP responses
# ---------------------------------------------------------------------------

class RolloutStatusResponse(BaseModel):
    namespace: str
    name: str
    target_revision: str
    source_revision: Optional[str] = None
    status: RolloutStatus


class ReconcileResponse(BaseModel):
    key: str
    queued: bool
    result: Optional[ReconcileResult] = None
