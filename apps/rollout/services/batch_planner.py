"""
Batch planner: turns the declared batch list into cumulative replica targets.

Batch sizes are cumulative: batch ``i`` says how many replicas should run the
target revision once it completes. Percentages round down, the final batch
always resolves to exactly the desired replica count, and the resulting
sequence never decreases.
"""

from __future__ import annotations

import math
from typing import List, Sequence, Tuple, Union

from ..errors import InvalidPlan
from ..models.rollout_models import RolloutBatch, RolloutPlan

BatchSize = Tuple[str, float]  # ("count" | "percent", value)


def parse_batch_size(value: Union[int, str], index: int) -> BatchSize:
    """
    Parse one batch size declaration.

    Examples:
        3       -> ("count", 3)
        "3"     -> ("count", 3)
        "25%"   -> ("percent", 25.0)
    """
    if isinstance(value, bool):
        raise InvalidPlan(f"batch {index}: replicas must be a number or a percentage")

    if isinstance(value, int):
        if value < 0:
            raise InvalidPlan(f"batch {index}: replicas must not be negative, got {value}")
        return "count", float(value)

    text = str(value).strip()
    try:
        if text.endswith("%"):
            pct = float(text[:-1])
            kind = "percent"
            number = pct
        else:
            number = float(int(text))
            kind = "count"
    except ValueError:
        raise InvalidPlan(f"batch {index}: cannot parse replicas {value!r}") from None

    if math.isnan(number) or number < 0:
        raise InvalidPlan(f"batch {index}: replicas must not be negative, got {value!r}")
    if kind == "percent" and number > 100:
        raise InvalidPlan(f"batch {index}: percentage {value!r} exceeds 100%")
    return kind, number


def validate_plan(plan: RolloutPlan) -> None:
    """
    Structural checks that do not need the workload: batches present and
    parseable, partition in range, a positive ready timeout.
    """
    batches = plan.rollout_batches
    if not batches:
        raise InvalidPlan("rolloutBatches must not be empty")

    for index, batch in enumerate(batches):
        parse_batch_size(batch.replicas, index)

    if plan.batch_partition is not None:
        if plan.batch_partition < 0 or plan.batch_partition >= len(batches):
            raise InvalidPlan(
                f"batchPartition {plan.batch_partition} out of range "
                f"[0, {len(batches) - 1}]"
            )

    timeout = plan.batch_ready_timeout_seconds
    if timeout is not None and timeout <= 0:
        raise InvalidPlan(f"batchReadyTimeoutSeconds must be positive, got {timeout}")


def compute_batch_targets(
    batches: Sequence[RolloutBatch],
    total_desired_replicas: int,
) -> List[int]:
    """
    Resolve every batch to its cumulative replica target.

    Raises InvalidPlan when a batch is malformed or an absolute count
    exceeds ``total_desired_replicas``.
    """
    if not batches:
        raise InvalidPlan("rolloutBatches must not be empty")
    if total_desired_replicas < 0:
        raise InvalidPlan(f"desired replicas must not be negative, got {total_desired_replicas}")

    targets: List[int] = []
    floor = 0
    last = len(batches) - 1

    for index, batch in enumerate(batches):
        kind, number = parse_batch_size(batch.replicas, index)

        if kind == "count":
            if number > total_desired_replicas:
                raise InvalidPlan(
                    f"batch {index}: {int(number)} replicas exceeds the "
                    f"{total_desired_replicas} desired replicas"
                )
            resolved = int(number)
        else:
            resolved = int(math.floor(total_desired_replicas * number / 100.0))

        if index == last:
            # The last batch is "the rest", whatever was declared.
            resolved = total_desired_replicas

        floor = max(floor, resolved)
        targets.append(floor)

    return targets


def compute_batch_target(
    batches: Sequence[RolloutBatch],
    batch_index: int,
    total_desired_replicas: int,
) -> int:
    """Replicas that should run the target revision once ``batch_index`` completes."""
    if batch_index < 0 or batch_index >= len(batches):
        raise InvalidPlan(f"batch index {batch_index} out of range [0, {len(batches) - 1}]")
    return compute_batch_targets(batches, total_desired_replicas)[batch_index]
