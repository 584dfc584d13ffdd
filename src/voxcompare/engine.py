"""Parallel voxel driver: apply a comparison metric across test volumes.

Every configuration problem is raised before any test voxel is written.
Each test slice is one task on a bounded thread pool; a task writes only
its own slice, and the shared reference index is read-only.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass

import numpy as np

from voxcompare.core.errors import ConfigurationError
from voxcompare.core.types import ComparisonConfig, ComparisonReport
from voxcompare.core.volume import Contour, ImageSlice, Volume
from voxcompare.methods.base import ComparisonMetric
from voxcompare.methods.registry import get_method
from voxcompare.roi import slice_roi_mask
from voxcompare.spatial.grid import is_aligned
from voxcompare.spatial.index import RectilinearIndex

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[str, int | None, int | None], None]
"""Callback for reporting comparison progress.

Args:
    description: Human-readable step description.
    current: Slices completed so far.
    total: Total number of slices in the volume.
"""


@dataclass
class _SliceOutcome:
    processed: int = 0
    skipped_roi: int = 0
    skipped_threshold: int = 0
    not_found: int = 0
    passed: int | None = None
    vmin: float = np.inf
    vmax: float = -np.inf


def compare_volumes(
    test_volumes: list[Volume],
    reference: Volume,
    config: ComparisonConfig,
    contours: list[Contour] | None = None,
    progress: ProgressCallback | None = None,
) -> list[ComparisonReport]:
    """Compare each test volume against the reference, overwriting test voxels.

    ``contours`` restricts processing to voxels inside them; None processes
    every voxel. Raises ConfigurationError (including NonRectilinearGridError)
    before touching any voxel.
    """
    metric = get_method(config.method)
    _check_channel(reference, config.channel, "reference")
    for volume in test_volumes:
        _check_channel(volume, config.channel, "test")
    if contours is not None and not contours:
        raise ConfigurationError("No contours selected. Cannot continue.")

    ref_values = reference.channel_values(config.channel)
    ref_lower = config.ref_lower.resolve(ref_values)
    ref_upper = config.ref_upper.resolve(ref_values)
    index = RectilinearIndex.from_volume(reference, config.channel, ref_lower, ref_upper)
    logger.info(
        f"Reference '{reference.name}': grid {index.grid.shape}, "
        f"spacing {tuple(round(s, 4) for s in index.grid.spacing)} mm, "
        f"values in [{ref_lower:g}, {ref_upper:g}]"
    )

    bounds = []
    for volume in test_volumes:
        values = volume.channel_values(config.channel)
        bounds.append((config.test_lower.resolve(values), config.test_upper.resolve(values)))

    return [
        _compare_volume(volume, lower, upper, index, metric, config, contours, progress)
        for volume, (lower, upper) in zip(test_volumes, bounds)
    ]


def _check_channel(volume: Volume, channel: int, role: str) -> None:
    if not volume.slices:
        raise ConfigurationError(f"The {role} volume '{volume.name}' contains no slices")
    if channel >= volume.channels:
        raise ConfigurationError(
            f"Channel {channel} is not available in the {role} volume "
            f"'{volume.name}' ({volume.channels} channel(s))"
        )


def _compare_volume(
    volume: Volume,
    lower: float,
    upper: float,
    index: RectilinearIndex,
    metric: ComparisonMetric,
    config: ComparisonConfig,
    contours: list[Contour] | None,
    progress: ProgressCallback | None,
) -> ComparisonReport:
    start = time.time()
    total = len(volume.slices)
    lock = threading.Lock()
    completed = 0

    def task(image_slice: ImageSlice) -> _SliceOutcome:
        nonlocal completed
        outcome = _compare_slice(image_slice, lower, upper, index, metric, config, contours)
        with lock:
            completed += 1
            logger.debug(
                f"Completed {completed} of {total} --> "
                f"{int(1000.0 * completed / total) / 10.0}% done"
            )
            if progress is not None:
                progress(f"Comparing {volume.name or 'volume'}", completed, total)
        return outcome

    with ThreadPoolExecutor(max_workers=config.max_workers) as pool:
        outcomes = list(pool.map(task, volume.slices))

    report = ComparisonReport(
        volume_name=volume.name,
        method_name=metric.name,
        voxels_total=volume.voxel_count,
        voxels_processed=sum(o.processed for o in outcomes),
        skipped_roi=sum(o.skipped_roi for o in outcomes),
        skipped_threshold=sum(o.skipped_threshold for o in outcomes),
        not_found=sum(o.not_found for o in outcomes),
        processing_time=time.time() - start,
    )
    passes = [o.passed for o in outcomes if o.passed is not None]
    if passes:
        report.passed = sum(passes)
    if report.voxels_processed == 0:
        report.warnings.append("No voxels were within the ROI and test threshold range")
    if report.not_found:
        report.warnings.append(f"{report.not_found} voxels found no agreement")

    _update_metadata(volume, metric.name, outcomes)
    logger.info(
        f"Compared '{volume.name}' ({metric.name}): {report.voxels_processed} of "
        f"{report.voxels_total} voxels in {report.processing_time:.1f}s"
    )
    return report


def _compare_slice(
    image_slice: ImageSlice,
    lower: float,
    upper: float,
    index: RectilinearIndex,
    metric: ComparisonMetric,
    config: ComparisonConfig,
    contours: list[Contour] | None,
) -> _SliceOutcome:
    channel = config.channel
    values = image_slice.pixels[:, :, channel]
    with np.errstate(invalid="ignore"):
        in_range = (values >= lower) & (values <= upper)
    if contours is None:
        roi = np.ones(values.shape, dtype=bool)
    else:
        roi = slice_roi_mask(image_slice, contours)
    selected = roi & in_range

    outcome = _SliceOutcome(
        skipped_roi=int(np.count_nonzero(~roi)),
        skipped_threshold=int(np.count_nonzero(roi & ~in_range)),
    )
    if not np.any(selected):
        return outcome

    points = image_slice.voxel_positions()[selected]
    aligned = is_aligned(image_slice, index.grid)
    results = metric.evaluate(index, points, values[selected], config, aligned=aligned)
    image_slice.pixels[selected, channel] = results

    outcome.processed = int(results.size)
    outcome.not_found = int(np.count_nonzero(metric.not_found(results, config)))
    outcome.passed = metric.passed(results)
    finite = results[np.isfinite(results)]
    if finite.size:
        outcome.vmin, outcome.vmax = float(finite.min()), float(finite.max())
    return outcome


def _update_metadata(volume: Volume, method_name: str, outcomes: list[_SliceOutcome]) -> None:
    """Record the comparison in the description and fit the display window."""
    label = f"Compared ({method_name})"
    volume.description = f"{label}: {volume.description}" if volume.description else label
    vmin = min((o.vmin for o in outcomes), default=np.inf)
    vmax = max((o.vmax for o in outcomes), default=-np.inf)
    if np.isfinite(vmin) and np.isfinite(vmax):
        volume.window_center = 0.5 * (vmin + vmax)
        volume.window_width = max(vmax - vmin, 1.0e-6)
