import logging
import time
from typing import Any, Callable, Dict, List, Optional

from kubernetes.client import ApiException, CustomObjectsApi
from opentelemetry import trace
from prometheus_client import Counter, Histogram

from ..config import settings
from ..utils.k8s_client import get_custom_objects_api

logger = logging.getLogger("rollout.k8s")
tracer = trace.get_tracer(__name__)

# -------------------------------------------------------------------------
# Prometheus metrics for Kubernetes operations
# -------------------------------------------------------------------------

K8S_API_CALLS_TOTAL = Counter(
    "rollout_k8s_api_calls_total",
    "Total Kubernetes API calls from the rollout controller",
    ["verb", "resource", "namespace"],
)

K8S_API_ERRORS_TOTAL = Counter(
    "rollout_k8s_api_errors_total",
    "Total failed Kubernetes API calls from the rollout controller",
    ["verb", "resource", "namespace", "code"],
)

K8S_API_LATENCY_SECONDS = Histogram(
    "rollout_k8s_api_latency_seconds",
    "Latency of Kubernetes API calls from the rollout controller",
    ["verb", "resource", "namespace"],
    buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10),
)


# -------------------------------------------------------------------------
# Internal helpers
# -------------------------------------------------------------------------


def _resolve_namespace(namespace: Optional[str]) -> str:
    return namespace or settings.K8S_NAMESPACE


def _call(
    verb: str,
    resource: str,
    namespace: str,
    name: str,
    fn: Callable[..., Any],
    /,
    **kwargs: Any,
) -> Any:
    """
    Run one CustomObjectsApi call with the per-request timeout, metrics and a
    span. ApiException propagates unchanged; callers map status codes.
    """
    labels = {"verb": verb, "resource": resource, "namespace": namespace}

    with tracer.start_as_current_span(f"k8s.{verb}_{resource}") as span:
        span.set_attribute("rollout.k8s.namespace", namespace)
        span.set_attribute("rollout.k8s.resource", resource)
        if name:
            span.set_attribute("rollout.k8s.name", name)

        start = time.time()
        try:
            resp = fn(_request_timeout=settings.K8S_REQUEST_TIMEOUT_SECONDS, **kwargs)
        except ApiException as exc:
            duration = time.time() - start
            K8S_API_CALLS_TOTAL.labels(**labels).inc()
            K8S_API_LATENCY_SECONDS.labels(**labels).observe(duration)
            K8S_API_ERRORS_TOTAL.labels(code=str(exc.status), **labels).inc()
            # 404/409 are routine for a controller, keep them out of ERROR.
            if exc.status in (404, 409):
                logger.info(
                    "k8s %s %s %s/%s returned %s", verb, resource, namespace, name, exc.status
                )
            else:
                logger.error(
                    "Error on k8s %s %s %s/%s: %s", verb, resource, namespace, name, exc
                )
            span.record_exception(exc)
            span.set_attribute("rollout.k8s.status_code", exc.status or 0)
            raise

        duration = time.time() - start
        K8S_API_CALLS_TOTAL.labels(**labels).inc()
        K8S_API_LATENCY_SECONDS.labels(**labels).observe(duration)
        return resp


# -------------------------------------------------------------------------
# Custom object operations
# -------------------------------------------------------------------------


class CustomObjectClient:
    """
    Thin wrapper over CustomObjectsApi for one group/version/plural.

    All methods are synchronous; the driver runs them in a worker thread.
    """

    def __init__(
        self,
        group: str,
        version: str,
        plural: str,
        api: Optional[CustomObjectsApi] = None,
    ) -> None:
        self.group = group
        self.version = version
        self.plural = plural
        self._api = api

    @property
    def api(self) -> CustomObjectsApi:
        if self._api is None:
            self._api = get_custom_objects_api()
        return self._api

    def get(self, name: str, namespace: Optional[str] = None) -> Dict[str, Any]:
        ns = _resolve_namespace(namespace)
        return _call(
            "get",
            self.plural,
            ns,
            name,
            self.api.get_namespaced_custom_object,
            group=self.group,
            version=self.version,
            namespace=ns,
            plural=self.plural,
            name=name,
        )

    def patch(self, name: str, body: Dict[str, Any], namespace: Optional[str] = None) -> Dict[str, Any]:
        """JSON merge patch of the main resource."""
        ns = _resolve_namespace(namespace)
        return _call(
            "patch",
            self.plural,
            ns,
            name,
            self.api.patch_namespaced_custom_object,
            group=self.group,
            version=self.version,
            namespace=ns,
            plural=self.plural,
            name=name,
            body=body,
        )

    def replace_status(
        self, name: str, body: Dict[str, Any], namespace: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        PUT on the status subresource. ``body`` must carry
        metadata.resourceVersion; the API server answers 409 when it is stale.
        """
        ns = _resolve_namespace(namespace)
        return _call(
            "replace_status",
            self.plural,
            ns,
            name,
            self.api.replace_namespaced_custom_object_status,
            group=self.group,
            version=self.version,
            namespace=ns,
            plural=self.plural,
            name=name,
            body=body,
        )

    def list(self, namespace: Optional[str] = None) -> List[Dict[str, Any]]:
        ns = _resolve_namespace(namespace)
        resp = _call(
            "list",
            self.plural,
            ns,
            "",
            self.api.list_namespaced_custom_object,
            group=self.group,
            version=self.version,
            namespace=ns,
            plural=self.plural,
        )
        return list(resp.get("items") or [])
