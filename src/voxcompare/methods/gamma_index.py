"""Gamma-index (Low et al. 1998, doi:10.1118/1.598248)."""

from __future__ import annotations

import numpy as np

from voxcompare.core.types import (
    GAMMA_ABOVE_ONE,
    GAMMA_NOT_FOUND,
    ComparisonConfig,
)
from voxcompare.methods.base import ComparisonMetric
from voxcompare.methods.registry import register_method
from voxcompare.spatial.search import ReferenceIndex, minimise_gamma


@register_method("gamma-index")
class GammaIndexMethod(ComparisonMetric):
    """Combined distance and discrepancy criterion; gamma <= 1 passes."""

    description = "Composite of distance-to-agreement and relative discrepancy (pass if <= 1)."
    recommended_for = "Dose distribution QA with tolerance for small misalignments."

    def evaluate(
        self,
        index: ReferenceIndex,
        points: np.ndarray,
        values: np.ndarray,
        config: ComparisonConfig,
        aligned: bool = False,
    ) -> np.ndarray:
        terminate = config.gamma_terminate_above_one
        results = np.empty(len(values), dtype=np.float64)
        for i, (point, value) in enumerate(zip(points, values)):
            gamma, terminated = minimise_gamma(
                index,
                point,
                float(value),
                dta_threshold=config.gamma_dta_threshold,
                disc_threshold=config.gamma_disc_threshold,
                max_radius=config.dta_max,
                terminate_above_one=terminate,
            )
            if terminated or (terminate and 1.0 < gamma < np.inf):
                gamma = GAMMA_ABOVE_ONE
            elif not np.isfinite(gamma):
                gamma = GAMMA_NOT_FOUND
            results[i] = gamma
        return results

    def not_found(self, results: np.ndarray, config: ComparisonConfig) -> np.ndarray:
        return np.isinf(results)

    def passed(self, results: np.ndarray) -> int | None:
        return int(np.count_nonzero(results <= 1.0))
