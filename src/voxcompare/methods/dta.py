"""Distance-to-agreement: distance to the nearest agreeing reference value."""

from __future__ import annotations

import numpy as np

from voxcompare.core.types import ComparisonConfig, dta_not_found
from voxcompare.methods.base import ComparisonMetric
from voxcompare.methods.registry import register_method
from voxcompare.spatial.search import ReferenceIndex, find_agreement


@register_method("dta")
class DTAMethod(ComparisonMetric):
    """Exhaustive shell search for a reference voxel matching the test value."""

    description = "Distance (mm) to the nearest reference voxel with a matching value."
    recommended_for = "Detecting spatial shifts between fields."

    def evaluate(
        self,
        index: ReferenceIndex,
        points: np.ndarray,
        values: np.ndarray,
        config: ComparisonConfig,
        aligned: bool = False,
    ) -> np.ndarray:
        sentinel = dta_not_found(config.dta_max)
        results = np.empty(len(values), dtype=np.float64)
        for i, (point, value) in enumerate(zip(points, values)):
            hit = find_agreement(
                index,
                point,
                float(value),
                abs_tol=config.dta_abs_tol,
                rel_tol=config.dta_rel_tol,
                max_radius=config.dta_max,
            )
            results[i] = sentinel if hit is None else hit.distance
        return results

    def not_found(self, results: np.ndarray, config: ComparisonConfig) -> np.ndarray:
        return results >= dta_not_found(config.dta_max)
