"""
Error taxonomy for the rollout controller.

Every error carries a ``reason`` that is written verbatim into the
``reason`` field of the status condition it produces, so users see the
same vocabulary in the AppRollout status and in the logs.
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class RolloutError(Exception):
    """Base class for all rollout controller errors."""

    reason = "RolloutError"

    def __init__(self, message: str = "", details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details: Dict[str, Any] = details or {}


class InvalidPlan(RolloutError):
    """Malformed batch declaration. The user has to fix the plan."""

    reason = "InvalidPlan"


class PartitionMovedBackward(InvalidPlan):
    """batchPartition (or the batch list) was moved below the committed batch."""

    reason = "BatchPartitionMovedBackward"


class WorkloadNotFound(RolloutError):
    """A revision or workload referenced by the plan does not exist."""

    reason = "WorkloadNotFound"


class WorkloadAccessError(RolloutError):
    """Any workload API failure other than not-found. Retried, never terminal."""

    reason = "WorkloadAccessError"


class OwnershipConflict(RolloutError):
    """Another in-flight rollout controls the workload."""

    reason = "OwnershipConflict"

    def __init__(
        self,
        message: str = "",
        current_owner: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message, details)
        self.current_owner = current_owner


class VersionConflict(RolloutError):
    """Conditional status update lost against a newer version token."""

    reason = "VersionConflict"


class StatusConflict(RolloutError):
    """Someone else wrote the status while we were reconciling."""

    reason = "StatusConflict"


class HealthGateTimeout(RolloutError):
    """A batch did not become ready within the health gate timeout."""

    reason = "HealthGateTimeout"


class RevisionChanged(RolloutError):
    """Source/target revision changed while batches were rolling."""

    reason = "RevisionChanged"


class RolloutNotFound(RolloutError):
    """The AppRollout object itself is gone."""

    reason = "RolloutNotFound"
