"""
Workload accessor: resolves a WorkloadRef to a handle on the scalable
resource and exposes the four operations the rollout engine needs.

The Kubernetes implementation drives OpenKruise CloneSets:

- pause flag      -> ``rollout.oam.dev/paused`` annotation, honoured by the
                     native controller (it stops reconciling the CloneSet)
- owner reference -> controller entry of ``metadata.ownerReferences``
- target count    -> ``spec.updateStrategy.partition = desired - n``
                     (CloneSet keeps ``partition`` replicas on the old revision)

Every mutation re-reads the object right before writing and is a no-op when
the object already holds the requested value.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from kubernetes.client import ApiException
from opentelemetry import trace

from ..errors import WorkloadAccessError, WorkloadNotFound
from ..models.workload_models import OwnerReference, WorkloadRef, WorkloadSnapshot
from .k8s_core import CustomObjectClient

logger = logging.getLogger("rollout.workload")
tracer = trace.get_tracer(__name__)

PAUSE_ANNOTATION = "rollout.oam.dev/paused"


# ---------------------------------------------------------------------------
# Interfaces
# ---------------------------------------------------------------------------

class WorkloadHandle(ABC):
    """Handle on one resolved scalable workload."""

    def __init__(self, ref: WorkloadRef) -> None:
        self.ref = ref

    @abstractmethod
    def get_snapshot(self) -> WorkloadSnapshot:
        ...

    @abstractmethod
    def set_pause_flag(self, paused: bool) -> None:
        ...

    @abstractmethod
    def set_owner_reference(self, owner: Optional[OwnerReference]) -> None:
        ...

    @abstractmethod
    def set_target_replica_count(self, replicas: int) -> None:
        ...


class WorkloadAccessor(ABC):
    @abstractmethod
    def resolve(self, ref: WorkloadRef) -> WorkloadHandle:
        """Raises WorkloadNotFound when the workload does not exist."""


# ---------------------------------------------------------------------------
# Kubernetes / CloneSet
# ---------------------------------------------------------------------------

def _map_api_error(exc: ApiException, ref: WorkloadRef, verb: str) -> Exception:
    if exc.status == 404:
        return WorkloadNotFound(f"{ref} not found", details={"verb": verb})
    return WorkloadAccessError(
        f"{verb} {ref} failed: {exc.status} {exc.reason}",
        details={"verb": verb, "status": exc.status},
    )


def snapshot_from_object(obj: Dict[str, Any]) -> WorkloadSnapshot:
    """Build a WorkloadSnapshot from a CloneSet document."""
    metadata = obj.get("metadata") or {}
    spec = obj.get("spec") or {}
    status = obj.get("status") or {}
    annotations = metadata.get("annotations") or {}

    owner = None
    for ref in metadata.get("ownerReferences") or []:
        if ref.get("controller"):
            owner = OwnerReference(
                api_version=ref.get("apiVersion", ""),
                kind=ref.get("kind", ""),
                name=ref.get("name", ""),
                uid=ref.get("uid", ""),
            )
            break

    return WorkloadSnapshot(
        desired_replicas=spec.get("replicas") or 0,
        total_replicas=status.get("replicas") or 0,
        updated_replicas=status.get("updatedReplicas") or 0,
        updated_ready_replicas=status.get("updatedReadyReplicas") or 0,
        paused=str(annotations.get(PAUSE_ANNOTATION, "")).lower() == "true",
        owner_reference=owner,
    )


def _owner_reference_entry(owner: OwnerReference) -> Dict[str, Any]:
    return {
        "apiVersion": owner.api_version,
        "kind": owner.kind,
        "name": owner.name,
        "uid": owner.uid,
        "controller": True,
        "blockOwnerDeletion": True,
    }


class CloneSetHandle(WorkloadHandle):
    def __init__(self, ref: WorkloadRef, client: CustomObjectClient) -> None:
        super().__init__(ref)
        self._client = client

    def _read(self) -> Dict[str, Any]:
        try:
            return self._client.get(self.ref.name, self.ref.namespace)
        except ApiException as exc:
            raise _map_api_error(exc, self.ref, "get") from exc

    def _patch(self, body: Dict[str, Any], verb: str) -> None:
        try:
            self._client.patch(self.ref.name, body, self.ref.namespace)
        except ApiException as exc:
            raise _map_api_error(exc, self.ref, verb) from exc

    def get_snapshot(self) -> WorkloadSnapshot:
        return snapshot_from_object(self._read())

    def set_pause_flag(self, paused: bool) -> None:
        with tracer.start_as_current_span("workload.set_pause_flag") as span:
            span.set_attribute("rollout.workload", str(self.ref))
            span.set_attribute("rollout.workload.paused", paused)

            if self.get_snapshot().paused == paused:
                return
            # Merge patch: null removes the annotation.
            value = "true" if paused else None
            self._patch({"metadata": {"annotations": {PAUSE_ANNOTATION: value}}}, "pause")
            logger.info("Set pause flag on %s to %s", self.ref, paused)

    def set_owner_reference(self, owner: Optional[OwnerReference]) -> None:
        with tracer.start_as_current_span("workload.set_owner_reference") as span:
            span.set_attribute("rollout.workload", str(self.ref))
            span.set_attribute("rollout.workload.owner", str(owner) if owner else "")

            obj = self._read()
            if snapshot_from_object(obj).owner_reference == owner:
                return

            metadata = obj.get("metadata") or {}
            refs: List[Dict[str, Any]] = [
                r for r in (metadata.get("ownerReferences") or []) if not r.get("controller")
            ]
            if owner is not None:
                refs.append(_owner_reference_entry(owner))

            # Carry resourceVersion so a concurrent owner change fails with 409
            # instead of being overwritten.
            body = {
                "metadata": {
                    "resourceVersion": metadata.get("resourceVersion"),
                    "ownerReferences": refs,
                }
            }
            self._patch(body, "set_owner")
            logger.info("Set controller owner of %s to %s", self.ref, owner)

    def set_target_replica_count(self, replicas: int) -> None:
        with tracer.start_as_current_span("workload.set_target_replica_count") as span:
            span.set_attribute("rollout.workload", str(self.ref))
            span.set_attribute("rollout.workload.target_replicas", replicas)

            obj = self._read()
            desired = (obj.get("spec") or {}).get("replicas") or 0
            partition = max(0, desired - replicas)
            strategy = (obj.get("spec") or {}).get("updateStrategy") or {}
            if strategy.get("partition") == partition:
                return

            self._patch({"spec": {"updateStrategy": {"partition": partition}}}, "set_partition")
            logger.info(
                "Set %s partition to %d (target=%d desired=%d)",
                self.ref,
                partition,
                replicas,
                desired,
            )


class KubernetesWorkloadAccessor(WorkloadAccessor):
    def __init__(self, client: Optional[CustomObjectClient] = None) -> None:
        self._client = client or CustomObjectClient("apps.kruise.io", "v1alpha1", "clonesets")

    def resolve(self, ref: WorkloadRef) -> WorkloadHandle:
        if ref.kind != "CloneSet":
            raise WorkloadAccessError(f"unsupported workload kind {ref.kind}")
        handle = CloneSetHandle(ref, self._client)
        # Existence check; raises WorkloadNotFound on 404.
        handle.get_snapshot()
        return handle
