"""
Revision resolution and the two marker annotations the controller manages
on application revisions (ApplicationConfigurations):

- ``app.oam.dev/rollout-template``: the revision is under rollout control;
  its own controller only templates the workload and leaves scaling alone.
- ``app.oam.dev/app-revision: "true"``: the revision is superseded and only
  kept as history.

The native revision controller reacts to these annotations and updates
``status.rollingStatus`` itself; the rollout controller never writes it.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Tuple

from kubernetes.client import ApiException
from opentelemetry import trace

from ..errors import InvalidPlan, WorkloadAccessError
from ..models.workload_models import AppRevision, RevisionRollingStatus, WorkloadRef
from .k8s_core import CustomObjectClient

logger = logging.getLogger("rollout.revisions")
tracer = trace.get_tracer(__name__)

ROLLOUT_TEMPLATE_ANNOTATION = "app.oam.dev/rollout-template"
APP_REVISION_ANNOTATION = "app.oam.dev/app-revision"


class RevisionResolver(ABC):
    @abstractmethod
    def get_revision(self, namespace: str, name: str) -> Optional[AppRevision]:
        """Return the revision, or None when it does not exist."""

    @abstractmethod
    def mark_inactive(self, revision: AppRevision) -> None:
        """Hand a superseded source revision over to history."""

    @abstractmethod
    def release_rollout_control(self, revision: AppRevision) -> None:
        """Let the revision's own controller manage its workloads again."""


def extract_workloads(
    component_list: List[str],
    target: AppRevision,
    source: Optional[AppRevision],
) -> Tuple[WorkloadRef, Optional[WorkloadRef]]:
    """
    Pick the component being rolled and return (target workload, source workload).

    Only one component can be rolled at a time. An explicit component wins;
    otherwise the first target component the source also has, or simply the
    first target component on a first deployment.
    """
    if len(component_list) > 1:
        raise InvalidPlan(
            f"only one component can be rolled out at a time, got {len(component_list)}"
        )

    if component_list:
        component = component_list[0]
        if component not in target.workloads:
            raise InvalidPlan(f"component {component} not found in revision {target.name}")
        if source is not None and component not in source.workloads:
            raise InvalidPlan(f"component {component} not found in revision {source.name}")
    else:
        candidates = [
            c for c in target.workloads if source is None or c in source.workloads
        ]
        if not candidates:
            if source is None:
                raise InvalidPlan(f"revision {target.name} has no workloads")
            raise InvalidPlan(
                f"revisions {source.name} and {target.name} have no common component"
            )
        component = candidates[0]

    source_ref = source.workloads[component] if source is not None else None
    return target.workloads[component], source_ref


# ---------------------------------------------------------------------------
# Kubernetes / ApplicationConfiguration
# ---------------------------------------------------------------------------

def revision_from_object(obj: Dict[str, Any]) -> AppRevision:
    metadata = obj.get("metadata") or {}
    status = obj.get("status") or {}
    namespace = metadata.get("namespace", "")

    workloads: Dict[str, WorkloadRef] = {}
    for entry in status.get("workloads") or []:
        component = entry.get("componentName")
        reference = entry.get("reference") or {}
        if not component or not reference.get("name"):
            continue
        workloads[component] = WorkloadRef(
            api_version=reference.get("apiVersion", "apps.kruise.io/v1alpha1"),
            kind=reference.get("kind", "CloneSet"),
            name=reference["name"],
            namespace=namespace,
        )

    rolling = status.get("rollingStatus") or ""
    try:
        rolling_status = RevisionRollingStatus(rolling)
    except ValueError:
        logger.warning("Unknown rollingStatus %r on revision %s", rolling, metadata.get("name"))
        rolling_status = RevisionRollingStatus.NONE

    return AppRevision(
        name=metadata.get("name", ""),
        namespace=namespace,
        uid=metadata.get("uid", ""),
        rolling_status=rolling_status,
        workloads=workloads,
    )


class KubernetesRevisionResolver(RevisionResolver):
    def __init__(self, client: Optional[CustomObjectClient] = None) -> None:
        self._client = client or CustomObjectClient(
            "core.oam.dev", "v1alpha2", "applicationconfigurations"
        )

    def get_revision(self, namespace: str, name: str) -> Optional[AppRevision]:
        try:
            obj = self._client.get(name, namespace)
        except ApiException as exc:
            if exc.status == 404:
                return None
            raise WorkloadAccessError(
                f"get revision {namespace}/{name} failed: {exc.status} {exc.reason}"
            ) from exc
        return revision_from_object(obj)

    def _patch_annotations(self, revision: AppRevision, annotations: Dict[str, Optional[str]]) -> None:
        try:
            self._client.patch(
                revision.name,
                {"metadata": {"annotations": annotations}},
                revision.namespace,
            )
        except ApiException as exc:
            raise WorkloadAccessError(
                f"annotate revision {revision.namespace}/{revision.name} failed: "
                f"{exc.status} {exc.reason}"
            ) from exc

    def mark_inactive(self, revision: AppRevision) -> None:
        with tracer.start_as_current_span("revision.mark_inactive") as span:
            span.set_attribute("rollout.revision", revision.name)
            self._patch_annotations(
                revision,
                {ROLLOUT_TEMPLATE_ANNOTATION: None, APP_REVISION_ANNOTATION: "true"},
            )
            logger.info("Marked revision %s/%s inactive", revision.namespace, revision.name)

    def release_rollout_control(self, revision: AppRevision) -> None:
        with tracer.start_as_current_span("revision.release_rollout_control") as span:
            span.set_attribute("rollout.revision", revision.name)
            self._patch_annotations(revision, {ROLLOUT_TEMPLATE_ANNOTATION: None})
            logger.info(
                "Released rollout control of revision %s/%s", revision.namespace, revision.name
            )
