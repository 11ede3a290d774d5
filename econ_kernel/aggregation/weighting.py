"""
Quality-weighted averaging of learning updates.

new_weights = Σ (quality_i / Σ quality_j) × delta_i over producers with quality > 0.
Producers at or below zero are left out of the sum and of the normalization.
"""

import hashlib
import math
from typing import Dict, Iterable, List, Tuple

import numpy as np

from econ_kernel.models.aggregation import LearningUpdate


class NoValidUpdates(Exception):
    """Every received update was excluded from the weighted sum."""

    def __init__(self, excluded: List[str]) -> None:
        self.excluded = excluded
        super().__init__(
            f"No update has a positive quality score (excluded: {', '.join(excluded) or 'none'})"
        )


class IncompatibleUpdates(Exception):
    """Deltas cannot be combined element-wise."""
    pass


def digest(blob: bytes) -> str:
    return hashlib.sha256(blob).hexdigest()


def normalized_weights(updates: Iterable[LearningUpdate]) -> Tuple[Dict[str, float], List[str]]:
    """
    Normalized weight per participating producer, plus the excluded producers.

    Raises:
        NoValidUpdates: if no producer has a positive, finite quality score.
    """
    scores: Dict[str, float] = {}
    excluded: List[str] = []
    for update in updates:
        if math.isfinite(update.quality_score) and update.quality_score > 0:
            scores[update.producer_id] = update.quality_score
        else:
            excluded.append(update.producer_id)

    if not scores:
        raise NoValidUpdates(sorted(excluded))

    total = sum(scores.values())
    return {p: scores[p] / total for p in sorted(scores)}, sorted(excluded)


def weighted_average(
    updates: Iterable[LearningUpdate],
    dtype: str = "<f8",
) -> Tuple[bytes, Dict[str, float], List[str]]:
    """
    Combine deltas into one blob of the same dtype.
    Returns (weights, contributors -> normalized weight, excluded producers).

    Raises:
        NoValidUpdates: if every update is excluded.
        IncompatibleUpdates: if participating deltas differ in length or
            are not whole multiples of the dtype size.
    """
    updates = list(updates)
    by_producer = {u.producer_id: u for u in updates}
    weights, excluded = normalized_weights(updates)

    element = np.dtype(dtype)
    arrays: Dict[str, np.ndarray] = {}
    for producer_id in weights:
        blob = by_producer[producer_id].delta_weights
        if len(blob) % element.itemsize:
            raise IncompatibleUpdates(
                f"Delta from {producer_id} is {len(blob)} bytes, "
                f"not a multiple of {element.itemsize}"
            )
        arrays[producer_id] = np.frombuffer(blob, dtype=element)

    sizes = {a.size for a in arrays.values()}
    if len(sizes) > 1:
        raise IncompatibleUpdates(f"Deltas have differing lengths: {sorted(sizes)}")

    total = np.zeros(sizes.pop(), dtype=np.float64)
    for producer_id in sorted(arrays):
        total += weights[producer_id] * arrays[producer_id].astype(np.float64)

    return total.astype(element).tobytes(), weights, excluded
