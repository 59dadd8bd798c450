"""
Status persistence for AppRollouts, with optimistic concurrency on the
object's resourceVersion.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from kubernetes.client import ApiException
from opentelemetry import trace
from prometheus_client import Counter

from ..errors import RolloutNotFound, StatusConflict, VersionConflict, WorkloadAccessError
from ..models.rollout_models import (
    ROLLOUT_API_VERSION,
    ROLLOUT_KIND,
    AppRollout,
    AppRolloutSpec,
    RolloutKey,
    RolloutStatus,
)
from .k8s_core import CustomObjectClient

logger = logging.getLogger("rollout.status_store")
tracer = trace.get_tracer(__name__)

STATUS_WRITES_TOTAL = Counter(
    "rollout_status_writes_total",
    "AppRollout status write attempts",
    ["result"],  # result: ok | version_conflict | status_conflict
)


class StatusStore(ABC):
    @abstractmethod
    def get(self, key: RolloutKey) -> AppRollout:
        """Raises RolloutNotFound."""

    @abstractmethod
    def update_status(
        self, key: RolloutKey, status: RolloutStatus, expected_version: Optional[str]
    ) -> str:
        """
        Write ``status`` if the stored object is still at ``expected_version``.
        Returns the new version. Raises VersionConflict or RolloutNotFound.
        """

    @abstractmethod
    def list_keys(self) -> List[RolloutKey]:
        ...


def dump_status(status: RolloutStatus) -> Dict[str, Any]:
    return status.model_dump(by_alias=True, mode="json", exclude_none=True)


def same_status(a: RolloutStatus, b: RolloutStatus) -> bool:
    return dump_status(a) == dump_status(b)


def persist_status(
    store: StatusStore,
    key: RolloutKey,
    base_status: RolloutStatus,
    new_status: RolloutStatus,
    version: Optional[str],
    max_attempts: int = 5,
) -> str:
    """
    Conditional status write with bounded retries.

    On VersionConflict the object is read again. If its status is still
    ``base_status`` (only the spec or metadata moved), the write is retried
    with the new version. If the status itself changed, someone else wrote
    it and StatusConflict is raised instead of overwriting their write.
    """
    with tracer.start_as_current_span("rollout.persist_status") as span:
        span.set_attribute("rollout.key", str(key))

        for attempt in range(1, max_attempts + 1):
            try:
                new_version = store.update_status(key, new_status, version)
            except VersionConflict:
                STATUS_WRITES_TOTAL.labels(result="version_conflict").inc()
                latest = store.get(key)
                if not same_status(latest.status, base_status):
                    STATUS_WRITES_TOTAL.labels(result="status_conflict").inc()
                    span.set_attribute("rollout.status.conflict", True)
                    raise StatusConflict(
                        f"status of {key} was changed concurrently (version {latest.resource_version})"
                    ) from None
                logger.info(
                    "Version conflict writing status of %s (attempt %d/%d), retrying on %s",
                    key,
                    attempt,
                    max_attempts,
                    latest.resource_version,
                )
                version = latest.resource_version
                continue

            STATUS_WRITES_TOTAL.labels(result="ok").inc()
            span.set_attribute("rollout.status.attempts", attempt)
            return new_version

        raise VersionConflict(
            f"status of {key} not written after {max_attempts} attempts"
        )


# ---------------------------------------------------------------------------
# Kubernetes / AppRollout
# ---------------------------------------------------------------------------

def rollout_from_object(obj: Dict[str, Any]) -> AppRollout:
    metadata = obj.get("metadata") or {}
    status = obj.get("status") or {}
    return AppRollout(
        namespace=metadata.get("namespace", ""),
        name=metadata.get("name", ""),
        uid=metadata.get("uid", ""),
        resource_version=metadata.get("resourceVersion"),
        spec=AppRolloutSpec.model_validate(obj.get("spec") or {}),
        status=RolloutStatus.model_validate(status) if status else RolloutStatus(),
    )


class KubernetesStatusStore(StatusStore):
    def __init__(
        self,
        client: Optional[CustomObjectClient] = None,
        namespace: Optional[str] = None,
    ) -> None:
        self._client = client or CustomObjectClient("core.oam.dev", "v1alpha2", "approllouts")
        self._namespace = namespace

    def get(self, key: RolloutKey) -> AppRollout:
        try:
            obj = self._client.get(key.name, key.namespace)
        except ApiException as exc:
            if exc.status == 404:
                raise RolloutNotFound(f"AppRollout {key} not found") from exc
            raise WorkloadAccessError(f"get AppRollout {key} failed: {exc.status} {exc.reason}") from exc
        return rollout_from_object(obj)

    def update_status(
        self, key: RolloutKey, status: RolloutStatus, expected_version: Optional[str]
    ) -> str:
        body = {
            "apiVersion": ROLLOUT_API_VERSION,
            "kind": ROLLOUT_KIND,
            "metadata": {
                "name": key.name,
                "namespace": key.namespace,
                "resourceVersion": expected_version,
            },
            "status": dump_status(status),
        }
        try:
            resp = self._client.replace_status(key.name, body, key.namespace)
        except ApiException as exc:
            if exc.status == 409:
                raise VersionConflict(f"AppRollout {key} changed since {expected_version}") from exc
            if exc.status == 404:
                raise RolloutNotFound(f"AppRollout {key} not found") from exc
            raise WorkloadAccessError(
                f"update status of AppRollout {key} failed: {exc.status} {exc.reason}"
            ) from exc
        return (resp.get("metadata") or {}).get("resourceVersion", "")

    def list_keys(self) -> List[RolloutKey]:
        try:
            items = self._client.list(self._namespace)
        except ApiException as exc:
            raise WorkloadAccessError(f"list AppRollouts failed: {exc.status} {exc.reason}") from exc
        keys = []
        for item in items:
            metadata = item.get("metadata") or {}
            keys.append(RolloutKey(metadata.get("namespace", ""), metadata.get("name", "")))
        return keys
