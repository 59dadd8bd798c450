"""Tests for the batch planner."""

from __future__ import annotations

import pytest

from apps.rollout.errors import InvalidPlan
from apps.rollout.models.rollout_models import RolloutBatch
from apps.rollout.services.batch_planner import (
    compute_batch_target,
    compute_batch_targets,
    parse_batch_size,
    validate_plan,
)
from tests.helpers.builders import make_plan


def _batches(*values):
    return [RolloutBatch(replicas=v) for v in values]


class TestParseBatchSize:
    def test_int_count(self) -> None:
        assert parse_batch_size(3, 0) == ("count", 3.0)

    def test_numeric_string_count(self) -> None:
        assert parse_batch_size("3", 0) == ("count", 3.0)

    def test_percentage(self) -> None:
        assert parse_batch_size("25%", 0) == ("percent", 25.0)

    @pytest.mark.parametrize("value", [-1, "-10%", "abc", "%", "101%", True])
    def test_rejects_bad_values(self, value) -> None:
        with pytest.raises(InvalidPlan):
            parse_batch_size(value, 2)

    def test_error_names_the_batch(self) -> None:
        with pytest.raises(InvalidPlan, match="batch 2"):
            parse_batch_size("abc", 2)


class TestComputeBatchTargets:
    def test_percentages_are_cumulative(self) -> None:
        assert compute_batch_targets(_batches("25%", "50%", "100%"), 4) == [1, 2, 4]

    def test_percentages_round_down(self) -> None:
        assert compute_batch_targets(_batches("33%", "66%", "100%"), 10) == [3, 6, 10]

    def test_last_batch_is_the_rest(self) -> None:
        assert compute_batch_targets(_batches("10%", "50%"), 7) == [0, 7]
        assert compute_batch_targets(_batches(1, 2), 5) == [1, 5]

    def test_sequence_never_decreases(self) -> None:
        targets = compute_batch_targets(_batches("50%", "20%", 1, "100%"), 10)
        assert targets == [5, 5, 5, 10]
        assert all(a <= b for a, b in zip(targets, targets[1:]))

    def test_mixed_counts_and_percentages(self) -> None:
        assert compute_batch_targets(_batches(2, "50%", "90%"), 8) == [2, 4, 8]

    def test_single_batch(self) -> None:
        assert compute_batch_targets(_batches("10%"), 6) == [6]

    def test_zero_replicas(self) -> None:
        assert compute_batch_targets(_batches("50%", "100%"), 0) == [0, 0]

    def test_count_above_total_is_invalid(self) -> None:
        with pytest.raises(InvalidPlan, match="exceeds"):
            compute_batch_targets(_batches(5, "100%"), 4)

    def test_empty_is_invalid(self) -> None:
        with pytest.raises(InvalidPlan):
            compute_batch_targets([], 4)

    @pytest.mark.parametrize("total", [1, 3, 4, 7, 10, 33, 100])
    def test_last_target_equals_total(self, total: int) -> None:
        targets = compute_batch_targets(_batches("10%", "35%", 1, "60%", "90%"), total)
        assert targets[-1] == total
        assert all(a <= b for a, b in zip(targets, targets[1:]))


class TestComputeBatchTarget:
    def test_single_index(self) -> None:
        assert compute_batch_target(_batches("25%", "50%", "100%"), 1, 4) == 2

    def test_index_out_of_range(self) -> None:
        with pytest.raises(InvalidPlan, match="out of range"):
            compute_batch_target(_batches("25%", "100%"), 2, 4)


class TestValidatePlan:
    def test_valid_plan(self) -> None:
        validate_plan(make_plan(batch_partition=2))

    def test_empty_batches(self) -> None:
        with pytest.raises(InvalidPlan, match="must not be empty"):
            validate_plan(make_plan(batches=()))

    @pytest.mark.parametrize("partition", [-1, 3])
    def test_partition_out_of_range(self, partition: int) -> None:
        with pytest.raises(InvalidPlan, match="batchPartition"):
            validate_plan(make_plan(batch_partition=partition))

    def test_negative_weight(self) -> None:
        with pytest.raises(InvalidPlan):
            validate_plan(make_plan(batches=("-5%", "100%")))

    @pytest.mark.parametrize("timeout", [0, -30])
    def test_non_positive_ready_timeout(self, timeout: float) -> None:
        with pytest.raises(InvalidPlan, match="batchReadyTimeoutSeconds"):
            validate_plan(make_plan(batch_ready_timeout_seconds=timeout))
