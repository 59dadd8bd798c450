"""
Models for the objects the rollout engine acts on: the scalable workload
(CloneSet-like) and the application revisions that template it.
"""

from __future__ import annotations

from enum import Enum
from typing import Dict, Optional

from pydantic import BaseModel, ConfigDict, Field

from .rollout_models import ROLLOUT_KIND

REVISION_API_VERSION = "core.oam.dev/v1alpha2"
REVISION_KIND = "ApplicationConfiguration"


class WorkloadRef(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    api_version: str = Field(default="apps.kruise.io/v1alpha1", alias="apiVersion")
    kind: str = "CloneSet"
    name: str
    namespace: str

    def __str__(self) -> str:
        return f"{self.kind} {self.namespace}/{self.name}"


class OwnerReference(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    api_version: str = Field(..., alias="apiVersion")
    kind: str
    name: str
    uid: str = ""

    def same_as(self, other: Optional["OwnerReference"]) -> bool:
        """Kind + name identify the owner; uid only counts when both sides know it."""
        if other is None:
            return False
        if self.kind != other.kind or self.name != other.name:
            return False
        if self.uid and other.uid:
            return self.uid == other.uid
        return True

    def __str__(self) -> str:
        return f"{self.kind}/{self.name}"


class ControlledBy(str, Enum):
    NONE = "none"
    ROLLOUT_ENGINE = "rolloutEngine"
    NATIVE_CONTROLLER = "nativeController"


class WorkloadSnapshot(BaseModel):
    """
    Point-in-time view of the target workload. Read every invocation,
    never persisted by the engine.
    """

    model_config = ConfigDict(populate_by_name=True)

    desired_replicas: int = Field(0, ge=0, alias="desiredReplicas")
    total_replicas: int = Field(0, ge=0, alias="totalReplicas")
    updated_replicas: int = Field(0, ge=0, alias="updatedReplicas")
    updated_ready_replicas: int = Field(0, ge=0, alias="updatedReadyReplicas")
    paused: bool = False
    owner_reference: Optional[OwnerReference] = Field(default=None, alias="ownerReference")

    @property
    def controlled_by(self) -> ControlledBy:
        if self.owner_reference is None:
            return ControlledBy.NONE
        if self.owner_reference.kind == ROLLOUT_KIND:
            return ControlledBy.ROLLOUT_ENGINE
        return ControlledBy.NATIVE_CONTROLLER

    def is_claimed_by(self, owner: OwnerReference) -> bool:
        """A claim is complete only when both the owner and the pause flag are set."""
        return self.paused and owner.same_as(self.owner_reference)


class RevisionRollingStatus(str, Enum):
    NONE = ""
    TEMPLATED = "RollingTemplated"
    COMPLETED = "RollingCompleted"
    INACTIVE = "InactiveAfterRollingCompleted"


class AppRevision(BaseModel):
    """An application revision and the workloads it templates, per component."""

    model_config = ConfigDict(populate_by_name=True)

    name: str
    namespace: str
    uid: str = ""
    rolling_status: RevisionRollingStatus = Field(
        default=RevisionRollingStatus.NONE, alias="rollingStatus"
    )
    workloads: Dict[str, WorkloadRef] = Field(default_factory=dict)

    @property
    def ready_for_rollout(self) -> bool:
        # Completed/inactive revisions were templated before; a rollout that
        # crashed right after releasing them must still be able to finish.
        return self.rolling_status != RevisionRollingStatus.NONE

    def owner_reference(self) -> OwnerReference:
        """The native controller reference workloads are handed back to."""
        return OwnerReference(
            api_version=REVISION_API_VERSION,
            kind=REVISION_KIND,
            name=self.name,
            uid=self.uid,
        )
