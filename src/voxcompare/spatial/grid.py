"""Grid descriptor: spatial layout of a volume and its rectilinearity check."""

from __future__ import annotations

import logging
from dataclasses import dataclass

import numpy as np

from voxcompare.core.errors import NonRectilinearGridError
from voxcompare.core.volume import ImageSlice, Volume

logger = logging.getLogger(__name__)

# Geometric tolerances in mm and for direction cosines.
_ATOL = 1.0e-4
_RTOL = 1.0e-5


@dataclass(frozen=True)
class GridDescriptor:
    """Uniform axis-aligned lattice covering a rectilinear volume.

    Axes are ordered (slice, row, column). ``axes[0]`` is the stack normal,
    ``axes[1]`` the direction of increasing row index and ``axes[2]`` the
    direction of increasing column index. ``slice_order[k]`` is the position
    in ``Volume.slices`` of the k-th slice along the normal.
    """

    origin: np.ndarray  # float64 [3], centre of voxel (0, 0, 0)
    axes: np.ndarray  # float64 [3, 3]
    spacing: tuple[float, float, float]
    shape: tuple[int, int, int]
    slice_order: tuple[int, ...]

    @property
    def min_spacing(self) -> float:
        return min(self.spacing)

    @property
    def max_spacing(self) -> float:
        return max(self.spacing)

    @property
    def size(self) -> int:
        return self.shape[0] * self.shape[1] * self.shape[2]

    def to_fractional(self, points: np.ndarray) -> np.ndarray:
        """Map points [..., 3] to fractional (k, r, c) voxel coordinates."""
        rel = np.asarray(points, dtype=np.float64) - self.origin
        return (rel @ self.axes.T) / np.asarray(self.spacing)

    def to_points(self, indices: np.ndarray) -> np.ndarray:
        """Map (k, r, c) voxel coordinates [..., 3] to positions in mm."""
        scaled = np.asarray(indices, dtype=np.float64) * np.asarray(self.spacing)
        return self.origin + scaled @ self.axes

    def contains(self, fractional: np.ndarray) -> np.ndarray:
        """Whether fractional coordinates fall inside a voxel of the grid."""
        rounded = np.floor(np.asarray(fractional) + 0.5)
        upper = np.asarray(self.shape) - 1
        return np.all((rounded >= 0) & (rounded <= upper), axis=-1)


def describe_grid(volume: Volume) -> GridDescriptor:
    """Build the grid descriptor of a volume, verifying it is rectilinear.

    Raises NonRectilinearGridError if the slices do not share spacing,
    orientation and extents, or are not evenly stacked along their normal.
    """
    slices = volume.slices
    if not slices:
        raise NonRectilinearGridError(f"Volume '{volume.name}' contains no slices")

    first = slices[0]
    if abs(float(np.dot(first.row_unit, first.col_unit))) > _ATOL:
        raise NonRectilinearGridError(
            f"Volume '{volume.name}' is not rectilinear: row and column directions are not orthogonal"
        )
    for i, s in enumerate(slices[1:], start=1):
        problem = _in_plane_mismatch(first, s)
        if problem:
            raise NonRectilinearGridError(
                f"Volume '{volume.name}' is not rectilinear: slice {i} {problem}"
            )

    normal = first.normal
    heights = np.array([float(np.dot(s.offset - first.offset, normal)) for s in slices])
    order = np.argsort(heights, kind="stable")
    heights = heights[order]

    if len(slices) == 1:
        slice_spacing = first.thickness if first.thickness > 0 else min(first.pixel_spacing)
    else:
        gaps = np.diff(heights)
        slice_spacing = float(gaps.mean())
        if np.any(gaps <= _ATOL):
            raise NonRectilinearGridError(
                f"Volume '{volume.name}' is not rectilinear: overlapping slices"
            )
        if not np.allclose(gaps, slice_spacing, rtol=_RTOL, atol=_ATOL):
            raise NonRectilinearGridError(
                f"Volume '{volume.name}' is not rectilinear: uneven slice spacing "
                f"({gaps.min():.4f} to {gaps.max():.4f} mm)"
            )
        base = slices[order[0]].offset
        for k in order:
            drift = slices[k].offset - base
            drift = drift - np.dot(drift, normal) * normal
            if np.linalg.norm(drift) > _ATOL:
                raise NonRectilinearGridError(
                    f"Volume '{volume.name}' is not rectilinear: slice {k} is shifted "
                    f"in-plane by {np.linalg.norm(drift):.4f} mm"
                )

    row_spacing, col_spacing = first.pixel_spacing
    grid = GridDescriptor(
        origin=slices[order[0]].offset.copy(),
        axes=np.stack([normal, first.col_unit, first.row_unit]),
        spacing=(float(slice_spacing), row_spacing, col_spacing),
        shape=(len(slices), first.rows, first.columns),
        slice_order=tuple(int(k) for k in order),
    )
    logger.debug(f"Grid for '{volume.name}': shape={grid.shape}, spacing={grid.spacing}")
    return grid


def is_rectilinear(volume: Volume) -> bool:
    try:
        describe_grid(volume)
    except NonRectilinearGridError:
        return False
    return True


def is_aligned(image_slice: ImageSlice, grid: GridDescriptor) -> bool:
    """Whether every voxel centre of the slice coincides with a grid voxel centre.

    Requires equal orientation and in-plane spacing, and a slice offset that
    is a whole number of grid spacings away from the grid origin.
    """
    if not (
        np.allclose(image_slice.row_unit, grid.axes[2], atol=_ATOL)
        and np.allclose(image_slice.col_unit, grid.axes[1], atol=_ATOL)
    ):
        return False
    if not np.allclose(image_slice.pixel_spacing, grid.spacing[1:], rtol=_RTOL, atol=_ATOL):
        return False
    frac = grid.to_fractional(image_slice.offset)
    # Offsets are compared in mm so the tolerance does not scale with spacing.
    return bool(np.allclose((frac - np.round(frac)) * np.asarray(grid.spacing), 0.0, atol=_ATOL))


def _in_plane_mismatch(a: ImageSlice, b: ImageSlice) -> str | None:
    if (a.rows, a.columns) != (b.rows, b.columns):
        return f"has extent {b.rows}x{b.columns}, expected {a.rows}x{a.columns}"
    if not np.allclose(a.pixel_spacing, b.pixel_spacing, rtol=_RTOL, atol=_ATOL):
        return f"has pixel spacing {b.pixel_spacing}, expected {a.pixel_spacing}"
    if not (
        np.allclose(a.row_unit, b.row_unit, atol=_ATOL)
        and np.allclose(a.col_unit, b.col_unit, atol=_ATOL)
    ):
        return "has a different orientation"
    return None
