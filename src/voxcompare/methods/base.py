"""Abstract base class for per-voxel comparison metrics."""

from __future__ import annotations

from abc import ABC, abstractmethod

import numpy as np

from voxcompare.core.types import ComparisonConfig
from voxcompare.spatial.search import ReferenceIndex


class ComparisonMetric(ABC):
    """Base class for all test-versus-reference voxel metrics."""

    name: str = ""
    description: str = ""
    recommended_for: str = ""

    @abstractmethod
    def evaluate(
        self,
        index: ReferenceIndex,
        points: np.ndarray,
        values: np.ndarray,
        config: ComparisonConfig,
        aligned: bool = False,
    ) -> np.ndarray:
        """Compute the metric for test voxels at ``points`` [M, 3] with ``values`` [M].

        ``aligned`` is True when every point coincides with a reference voxel
        centre. Never raises for valid input; non-findings become sentinels.
        """
        ...

    def not_found(self, results: np.ndarray, config: ComparisonConfig) -> np.ndarray:
        """Mask of results that are the 'no agreement found' sentinel."""
        return np.zeros(results.shape, dtype=bool)

    def passed(self, results: np.ndarray) -> int | None:
        """Number of passing voxels, for metrics with a pass criterion."""
        return None
