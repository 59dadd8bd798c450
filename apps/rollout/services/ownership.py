"""
Ownership transfer: hand the target workload from its native controller to
the rollout engine and back.

A claim is complete only when the workload carries both our owner reference
and the pause flag. The two writes are separate API calls, so a claim can be
left half done by a crash or a timeout; the next claim() sees what is
missing and finishes it.
"""

from __future__ import annotations

import logging
from typing import Optional

from opentelemetry import trace
from prometheus_client import Counter

from ..errors import OwnershipConflict
from ..models.workload_models import ControlledBy, OwnerReference
from .workload_accessor import WorkloadHandle

logger = logging.getLogger("rollout.ownership")
tracer = trace.get_tracer(__name__)

OWNERSHIP_TRANSFERS_TOTAL = Counter(
    "rollout_ownership_transfers_total",
    "Ownership transfer attempts on target workloads",
    ["op", "result"],  # op: claim|release  result: changed|noop|conflict
)


class OwnershipManager:
    def _check_conflict(self, handle: WorkloadHandle, owner: OwnerReference, op: str) -> Optional[OwnerReference]:
        snapshot = handle.get_snapshot()
        current = snapshot.owner_reference
        if snapshot.controlled_by == ControlledBy.ROLLOUT_ENGINE and not owner.same_as(current):
            OWNERSHIP_TRANSFERS_TOTAL.labels(op=op, result="conflict").inc()
            logger.warning(
                "Ownership conflict on %s: wanted by %s, controlled by %s",
                handle.ref,
                owner,
                current,
            )
            raise OwnershipConflict(
                f"{handle.ref} is controlled by {current}",
                current_owner=str(current),
            )
        return current

    def claim(self, handle: WorkloadHandle, owner: OwnerReference) -> bool:
        """
        Take control of ``handle`` for ``owner``. Owner reference first, then
        the pause flag. Returns True if anything was written.
        """
        with tracer.start_as_current_span("ownership.claim") as span:
            span.set_attribute("rollout.workload", str(handle.ref))
            span.set_attribute("rollout.owner", str(owner))

            current = self._check_conflict(handle, owner, "claim")
            changed = False

            if not owner.same_as(current):
                handle.set_owner_reference(owner)
                changed = True
            if not handle.get_snapshot().paused:
                handle.set_pause_flag(True)
                changed = True

            OWNERSHIP_TRANSFERS_TOTAL.labels(
                op="claim", result="changed" if changed else "noop"
            ).inc()
            span.set_attribute("rollout.ownership.changed", changed)
            if changed:
                logger.info("Claimed %s for %s (previous owner %s)", handle.ref, owner, current)
            return changed

    def release(
        self,
        handle: WorkloadHandle,
        owner: OwnerReference,
        native_owner: OwnerReference,
    ) -> bool:
        """
        Give ``handle`` back to ``native_owner``: restore the owner reference,
        then clear the pause flag. Returns True if anything was written.
        """
        with tracer.start_as_current_span("ownership.release") as span:
            span.set_attribute("rollout.workload", str(handle.ref))
            span.set_attribute("rollout.owner", str(owner))
            span.set_attribute("rollout.native_owner", str(native_owner))

            current = self._check_conflict(handle, owner, "release")
            changed = False

            if not native_owner.same_as(current):
                handle.set_owner_reference(native_owner)
                changed = True
            if handle.get_snapshot().paused:
                handle.set_pause_flag(False)
                changed = True

            OWNERSHIP_TRANSFERS_TOTAL.labels(
                op="release", result="changed" if changed else "noop"
            ).inc()
            span.set_attribute("rollout.ownership.changed", changed)
            if changed:
                logger.info("Released %s back to %s", handle.ref, native_owner)
            return changed
