"""Discrepancy: point value difference without spatial search."""

from __future__ import annotations

import numpy as np

from voxcompare.core.types import DISCREPANCY_NO_OVERLAP, ComparisonConfig
from voxcompare.methods.base import ComparisonMetric
from voxcompare.methods.registry import register_method
from voxcompare.spatial.search import ReferenceIndex, nearest_voxel, relative_difference


@register_method("discrepancy")
class DiscrepancyMethod(ComparisonMetric):
    """Difference between the test value and the co-located reference value."""

    description = "Point value discrepancy, ignoring spatial shifts."
    recommended_for = "Aligned grids where only value differences matter."

    def evaluate(
        self,
        index: ReferenceIndex,
        points: np.ndarray,
        values: np.ndarray,
        config: ComparisonConfig,
        aligned: bool = False,
    ) -> np.ndarray:
        if aligned:
            ids = index.locate_many(points)
        else:
            ids = np.array(
                [_or_missing(nearest_voxel(index, p)) for p in points], dtype=np.int64
            )

        results = np.full(len(values), DISCREPANCY_NO_OVERLAP, dtype=np.float64)
        found = ids >= 0
        if not np.any(found):
            return results

        reference = index.values_of(ids[found])
        test = np.asarray(values, dtype=np.float64)[found]
        if config.discrepancy_type == "absolute":
            diff = np.abs(test - reference)
        else:
            diff = relative_difference(test, reference)
        # Reference voxels outside the reference range are stored as NaN.
        results[found] = np.where(np.isfinite(reference), diff, DISCREPANCY_NO_OVERLAP)
        return results

    def not_found(self, results: np.ndarray, config: ComparisonConfig) -> np.ndarray:
        return np.isnan(results)


def _or_missing(voxel_id: int | None) -> int:
    return -1 if voxel_id is None else voxel_id
