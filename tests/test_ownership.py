"""Tests for ownership claim/release on workloads."""

from __future__ import annotations

import pytest

from apps.rollout.errors import OwnershipConflict, WorkloadAccessError
from apps.rollout.models.workload_models import ControlledBy
from apps.rollout.services.memory_backend import MemoryWorkloadAccessor
from apps.rollout.services.ownership import OwnershipManager
from tests.helpers.builders import CLONESET, native_owner, rollout_owner

OWNER = rollout_owner()
NATIVE = native_owner("app-v2")


@pytest.fixture
def manager() -> OwnershipManager:
    return OwnershipManager()


@pytest.fixture
def handle(workloads: MemoryWorkloadAccessor):
    return workloads.resolve(CLONESET)


class TestClaim:
    def test_claim_sets_owner_and_pause(self, manager, handle) -> None:
        assert manager.claim(handle, OWNER) is True

        snapshot = handle.get_snapshot()
        assert snapshot.paused is True
        assert snapshot.owner_reference == OWNER
        assert snapshot.controlled_by == ControlledBy.ROLLOUT_ENGINE
        assert snapshot.is_claimed_by(OWNER)

    def test_claim_writes_owner_before_pause(self, manager, handle, workloads) -> None:
        workloads.calls.clear()
        manager.claim(handle, OWNER)
        writes = [c for c in workloads.calls if c.startswith("set_")]
        assert writes == ["set_owner_reference:web", "set_pause_flag:web"]

    def test_claim_is_idempotent(self, manager, handle) -> None:
        manager.claim(handle, OWNER)
        assert manager.claim(handle, OWNER) is False
        assert handle.get_snapshot().is_claimed_by(OWNER)

    def test_completes_claim_with_owner_only(self, manager, handle, workloads) -> None:
        handle.set_owner_reference(OWNER)
        workloads.calls.clear()

        assert manager.claim(handle, OWNER) is True
        assert [c for c in workloads.calls if c.startswith("set_")] == ["set_pause_flag:web"]
        assert handle.get_snapshot().is_claimed_by(OWNER)

    def test_completes_claim_with_pause_only(self, manager, handle, workloads) -> None:
        handle.set_pause_flag(True)
        workloads.calls.clear()

        assert manager.claim(handle, OWNER) is True
        assert [c for c in workloads.calls if c.startswith("set_")] == ["set_owner_reference:web"]
        assert handle.get_snapshot().is_claimed_by(OWNER)

    def test_failed_pause_leaves_partial_claim(self, manager, handle, workloads) -> None:
        workloads.inject_fault(CLONESET, "set_pause_flag", WorkloadAccessError("timeout"))
        with pytest.raises(WorkloadAccessError):
            manager.claim(handle, OWNER)

        snapshot = handle.get_snapshot()
        assert snapshot.owner_reference == OWNER
        assert snapshot.paused is False
        assert not snapshot.is_claimed_by(OWNER)

        # Next attempt finishes the job instead of reporting a conflict.
        assert manager.claim(handle, OWNER) is True
        assert handle.get_snapshot().is_claimed_by(OWNER)

    def test_conflict_with_other_rollout(self, manager, handle) -> None:
        other = rollout_owner(name="other-rollout", uid="uid-other")
        manager.claim(handle, other)

        with pytest.raises(OwnershipConflict) as exc_info:
            manager.claim(handle, OWNER)
        assert "other-rollout" in exc_info.value.current_owner
        assert handle.get_snapshot().owner_reference == other

    def test_only_one_of_two_rollouts_holds_the_claim(self, manager, handle) -> None:
        other = rollout_owner(name="other-rollout", uid="uid-other")
        manager.claim(handle, OWNER)
        with pytest.raises(OwnershipConflict):
            manager.claim(handle, other)

        snapshot = handle.get_snapshot()
        assert snapshot.is_claimed_by(OWNER)
        assert not snapshot.is_claimed_by(other)


class TestRelease:
    def test_release_restores_native_owner(self, manager, handle) -> None:
        manager.claim(handle, OWNER)
        assert manager.release(handle, OWNER, NATIVE) is True

        snapshot = handle.get_snapshot()
        assert snapshot.paused is False
        assert snapshot.owner_reference == NATIVE
        assert snapshot.controlled_by == ControlledBy.NATIVE_CONTROLLER

    def test_release_writes_owner_before_unpause(self, manager, handle, workloads) -> None:
        manager.claim(handle, OWNER)
        workloads.calls.clear()
        manager.release(handle, OWNER, NATIVE)
        writes = [c for c in workloads.calls if c.startswith("set_")]
        assert writes == ["set_owner_reference:web", "set_pause_flag:web"]

    def test_release_is_idempotent(self, manager, handle) -> None:
        manager.claim(handle, OWNER)
        manager.release(handle, OWNER, NATIVE)
        assert manager.release(handle, OWNER, NATIVE) is False

    def test_release_refuses_other_rollouts_workload(self, manager, handle) -> None:
        other = rollout_owner(name="other-rollout", uid="uid-other")
        manager.claim(handle, other)
        with pytest.raises(OwnershipConflict):
            manager.release(handle, OWNER, NATIVE)
        assert handle.get_snapshot().is_claimed_by(other)
