from typing import List

from fastapi import APIRouter, HTTPException, Query, Request
from fastapi.concurrency import run_in_threadpool
from opentelemetry import trace

from ..errors import RolloutError, RolloutNotFound
from ..models.action_models import ReconcileResponse, RolloutStatusResponse
from ..models.rollout_models import RolloutKey

router = APIRouter(
    prefix="/rollouts",
    tags=["rollouts"],
)

tracer = trace.get_tracer(__name__)


def _controller(request: Request):
    return request.app.state.controller


def _driver(request: Request):
    return request.app.state.driver


# ---------------------------------------------------------------------------
# List AppRollouts
# ---------------------------------------------------------------------------

@router.get("", response_model=List[str])
def list_rollouts(request: Request):
    """Keys (namespace/name) of every known AppRollout."""
    with tracer.start_as_current_span("router.rollouts.list"):
        try:
            keys = _controller(request).status_store.list_keys()
        except RolloutError as exc:
            raise HTTPException(status_code=502, detail=exc.message)
        return [str(k) for k in keys]


# ---------------------------------------------------------------------------
# Get AppRollout status
# ---------------------------------------------------------------------------

@router.get("/{namespace}/{name}", response_model=RolloutStatusResponse)
def get_rollout(namespace: str, name: str, request: Request):
    key = RolloutKey(namespace, name)
    with tracer.start_as_current_span("router.rollouts.get") as span:
        span.set_attribute("rollout.key", str(key))
        try:
            rollout = _controller(request).status_store.get(key)
        except RolloutNotFound as exc:
            raise HTTPException(status_code=404, detail=exc.message)
        except RolloutError as exc:
            raise HTTPException(status_code=502, detail=exc.message)

        return RolloutStatusResponse(
            namespace=rollout.namespace,
            name=rollout.name,
            target_revision=rollout.spec.target_revision_name,
            source_revision=rollout.spec.source_revision_name,
            status=rollout.status,
        )


# ---------------------------------------------------------------------------
# Trigger reconciliation
# ---------------------------------------------------------------------------

@router.post("/{namespace}/{name}/reconcile", response_model=ReconcileResponse)
async def reconcile_rollout(
    namespace: str,
    name: str,
    request: Request,
    wait: bool = Query(default=False, description="Run one invocation inline and return its result."),
):
    """
    Trigger reconciliation of one AppRollout. Without ``wait`` the key is
    queued for the driver; with ``wait=true`` one invocation runs now.
    """
    key = RolloutKey(namespace, name)
    driver = _driver(request)

    with tracer.start_as_current_span("router.rollouts.reconcile") as span:
        span.set_attribute("rollout.key", str(key))
        span.set_attribute("rollout.wait", wait)

        if not wait:
            queued = driver.enqueue(key)
            return ReconcileResponse(key=str(key), queued=queued)

        # reconcile_now() turns controller errors into a retry; report
        # a missing AppRollout to the caller first.
        try:
            await run_in_threadpool(_controller(request).status_store.get, key)
        except RolloutNotFound as exc:
            raise HTTPException(status_code=404, detail=exc.message)

        result = await driver.reconcile_now(key)
        return ReconcileResponse(key=str(key), queued=result is None, result=result)
