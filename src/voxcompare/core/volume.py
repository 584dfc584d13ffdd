"""Volume data structures: planar image slices, volumes and ROI contours."""

from __future__ import annotations

from dataclasses import dataclass, field

import numpy as np


@dataclass
class ImageSlice:
    """One planar grid of voxels with its own spatial transform.

    Geometry follows DICOM conventions: ``offset`` is the centre of pixel
    (0, 0), ``row_unit`` points along a row (increasing column index) and
    ``col_unit`` points down a column (increasing row index).
    """

    pixels: np.ndarray  # float64 [rows, cols, channels]
    offset: np.ndarray  # float64 [3]
    row_unit: np.ndarray = field(default_factory=lambda: np.array([1.0, 0.0, 0.0]))
    col_unit: np.ndarray = field(default_factory=lambda: np.array([0.0, 1.0, 0.0]))
    pixel_spacing: tuple[float, float] = (1.0, 1.0)  # (row spacing, column spacing)
    thickness: float = 1.0
    metadata: dict = field(default_factory=dict)

    def __post_init__(self):
        pixels = np.asarray(self.pixels, dtype=np.float64)
        if pixels.ndim == 2:
            pixels = pixels[:, :, np.newaxis]
        if pixels.ndim != 3:
            raise ValueError(f"Slice pixels must be 2D or 3D, got shape {pixels.shape}")
        self.pixels = pixels
        self.offset = np.asarray(self.offset, dtype=np.float64)
        self.row_unit = _unit(self.row_unit)
        self.col_unit = _unit(self.col_unit)
        self.pixel_spacing = (float(self.pixel_spacing[0]), float(self.pixel_spacing[1]))
        self.thickness = float(self.thickness)

    @property
    def rows(self) -> int:
        return self.pixels.shape[0]

    @property
    def columns(self) -> int:
        return self.pixels.shape[1]

    @property
    def channels(self) -> int:
        return self.pixels.shape[2]

    @property
    def normal(self) -> np.ndarray:
        return _unit(np.cross(self.row_unit, self.col_unit))

    def voxel_positions(self) -> np.ndarray:
        """Return voxel centre positions as float64 [rows, cols, 3]."""
        rr, cc = np.meshgrid(
            np.arange(self.rows, dtype=np.float64),
            np.arange(self.columns, dtype=np.float64),
            indexing="ij",
        )
        row_spacing, col_spacing = self.pixel_spacing
        return (
            self.offset
            + (cc * col_spacing)[..., np.newaxis] * self.row_unit
            + (rr * row_spacing)[..., np.newaxis] * self.col_unit
        )

    def position(self, row: int, col: int) -> np.ndarray:
        row_spacing, col_spacing = self.pixel_spacing
        return self.offset + col * col_spacing * self.row_unit + row * row_spacing * self.col_unit


@dataclass
class Volume:
    """Ordered collection of image slices, possibly irregularly spaced."""

    slices: list[ImageSlice]
    name: str = ""
    description: str = ""
    window_center: float | None = None
    window_width: float | None = None
    metadata: dict = field(default_factory=dict)

    @property
    def channels(self) -> int:
        """Number of channels available in every slice."""
        if not self.slices:
            return 0
        return min(s.channels for s in self.slices)

    @property
    def voxel_count(self) -> int:
        return sum(s.rows * s.columns for s in self.slices)

    def channel_values(self, channel: int) -> np.ndarray:
        """Flattened values of one channel across all slices."""
        if not self.slices:
            return np.empty(0, dtype=np.float64)
        return np.concatenate([s.pixels[:, :, channel].ravel() for s in self.slices])


@dataclass
class Contour:
    """Closed planar polygon belonging to a named region of interest."""

    points: np.ndarray  # float64 [N, 3]
    roi_name: str = ""

    def __post_init__(self):
        self.points = np.asarray(self.points, dtype=np.float64).reshape(-1, 3)


def _unit(v) -> np.ndarray:
    v = np.asarray(v, dtype=np.float64)
    norm = np.linalg.norm(v)
    if norm == 0:
        raise ValueError("Direction vector must be non-zero")
    return v / norm
