"""Spatial index over reference voxels.

Voxels are addressed by integer ids whose ascending order is the
enumeration order used everywhere: slice, then row, then column.
Values outside the reference threshold range are stored as NaN so that
searches skip them.
"""

from __future__ import annotations

import logging
import math
import threading
from typing import Iterator

import numpy as np
from scipy.spatial import cKDTree

from voxcompare.core.errors import NonRectilinearGridError
from voxcompare.core.volume import Volume
from voxcompare.spatial.grid import GridDescriptor, describe_grid

logger = logging.getLogger(__name__)

# Distances this close below a shell boundary (relative to the shell width)
# are counted in the outer shell.
SHELL_BOUNDARY_EPS = 1.0e-9

# Offset tables above this many entries are not built; shells that would
# need one are measured over their bounding box instead.
MAX_OFFSET_TABLE = 1 << 21

# (dk, dr, dc) offsets of the six face-connected neighbours.
_FACE_OFFSETS = np.array(
    [[-1, 0, 0], [1, 0, 0], [0, -1, 0], [0, 1, 0], [0, 0, -1], [0, 0, 1]],
    dtype=np.int64,
)


def mask_to_range(values: np.ndarray, lower: float, upper: float) -> np.ndarray:
    """Copy of ``values`` with everything outside [lower, upper] set to NaN."""
    values = np.array(values, dtype=np.float64)
    with np.errstate(invalid="ignore"):
        keep = (values >= lower) & (values <= upper)
    values[~keep] = np.nan
    return values


def _shell_members(distances: np.ndarray, radius: float, delta: float) -> np.ndarray:
    adjusted = distances + SHELL_BOUNDARY_EPS * delta
    return (adjusted >= radius) & (adjusted < radius + delta)


def _build_offset_table(
    radius: float, spacing: np.ndarray
) -> tuple[float, np.ndarray, np.ndarray] | None:
    reach = np.floor(radius / spacing).astype(np.int64)
    if math.prod(2 * int(m) + 1 for m in reach) > 2 * MAX_OFFSET_TABLE:
        return None
    dk, dr, dc = np.meshgrid(
        *(np.arange(-m, m + 1) for m in reach), indexing="ij"
    )
    offsets = np.stack([dk.ravel(), dr.ravel(), dc.ravel()], axis=-1)
    lengths = np.linalg.norm(offsets * spacing, axis=-1)
    keep = lengths <= radius
    if np.count_nonzero(keep) > MAX_OFFSET_TABLE:
        return None
    offsets, lengths = offsets[keep], lengths[keep]
    order = np.argsort(lengths, kind="stable")
    return radius, offsets[order], lengths[order]


class RectilinearIndex:
    """O(1) point-to-voxel lookup on a uniform lattice."""

    rectilinear = True

    def __init__(self, grid: GridDescriptor, values: np.ndarray):
        values = np.asarray(values, dtype=np.float64)
        if values.shape != grid.shape:
            raise ValueError(f"Values shape {values.shape} does not match grid {grid.shape}")
        self.grid = grid
        self._values = values.ravel()
        self._shape = np.asarray(grid.shape, dtype=np.int64)
        self._spacing = np.asarray(grid.spacing, dtype=np.float64)
        corners = np.array(
            [[k, r, c] for k in (0, 1) for r in (0, 1) for c in (0, 1)], dtype=np.float64
        )
        self._corners = grid.to_points(corners * (self._shape - 1))
        # (radius, offsets [N, 3], distances [N]) sorted by distance
        self._table: tuple[float, np.ndarray, np.ndarray] | None = None
        self._table_lock = threading.Lock()

    @classmethod
    def from_volume(
        cls,
        volume: Volume,
        channel: int,
        lower: float = float("-inf"),
        upper: float = float("inf"),
    ) -> RectilinearIndex:
        grid = describe_grid(volume)
        stacked = np.stack(
            [volume.slices[k].pixels[:, :, channel] for k in grid.slice_order]
        )
        return cls(grid, mask_to_range(stacked, lower, upper))

    @property
    def size(self) -> int:
        return self._values.size

    @property
    def step(self) -> float:
        """Shell width: the smallest grid spacing."""
        return self.grid.min_spacing

    @property
    def edge_reach(self) -> float:
        """Longest edge between face-connected voxel centres."""
        return self.grid.max_spacing

    def positions_of(self, ids: np.ndarray) -> np.ndarray:
        idx = np.stack(np.unravel_index(np.asarray(ids, dtype=np.int64), self.grid.shape), axis=-1)
        return self.grid.to_points(idx)

    def values_of(self, ids: np.ndarray) -> np.ndarray:
        return self._values[np.asarray(ids, dtype=np.int64)]

    def locate(self, point: np.ndarray) -> int | None:
        """Id of the voxel whose cell contains ``point``, or None outside the grid."""
        idx = np.floor(self.grid.to_fractional(point) + 0.5).astype(np.int64)
        if np.any(idx < 0) or np.any(idx >= self._shape):
            return None
        return int(np.ravel_multi_index(tuple(idx), self.grid.shape))

    def locate_many(self, points: np.ndarray) -> np.ndarray:
        """Vectorised ``locate``: ids [M], -1 where a point is outside the grid."""
        idx = np.floor(self.grid.to_fractional(points) + 0.5).astype(np.int64)
        inside = np.all((idx >= 0) & (idx < self._shape), axis=-1)
        ids = np.full(idx.shape[0], -1, dtype=np.int64)
        if np.any(inside):
            ids[inside] = np.ravel_multi_index(tuple(idx[inside].T), self.grid.shape)
        return ids

    def distance_to_grid(self, point: np.ndarray) -> float:
        """Lower bound on the distance from ``point`` to any voxel centre."""
        frac = np.clip(self.grid.to_fractional(point), 0, self._shape - 1)
        return float(np.linalg.norm(self.grid.to_points(frac) - point))

    def max_distance_to_grid(self, point: np.ndarray) -> float:
        """Distance from ``point`` to the farthest voxel centre (a grid corner)."""
        point = np.asarray(point, dtype=np.float64)
        return float(np.linalg.norm(self._corners - point, axis=-1).max())

    def shells(
        self, point: np.ndarray, first: int, last: int, delta: float
    ) -> Iterator[tuple[int, np.ndarray, np.ndarray]]:
        """Yield (n, ids, distances) for shells ``first`` to ``last`` of width ``delta``."""
        for n in range(first, last + 1):
            ids, distances = self.neighbours_at_shell(point, n * delta, delta)
            yield n, ids, distances

    def neighbours_at_shell(
        self, point: np.ndarray, radius: float, delta: float
    ) -> tuple[np.ndarray, np.ndarray]:
        """Voxels with centres in [radius, radius + delta) of ``point``.

        Returns (ids, distances) in enumeration order.

        Candidates come from the offset table around the voxel nearest to
        ``point``. An offset's distance from that voxel differs from its
        distance to ``point`` by at most ``slack``, so only a band of the
        table is measured per shell.
        """
        point = np.asarray(point, dtype=np.float64)
        frac = self.grid.to_fractional(point)
        base = np.floor(frac + 0.5)
        slack = float(np.linalg.norm((frac - base) * self._spacing)) + SHELL_BOUNDARY_EPS * delta
        table = self._offset_table(radius + delta + slack)
        if table is None:
            return self._scan_box(point, frac, radius, delta)

        _, offsets, aligned = table
        lo = np.searchsorted(aligned, radius - slack - SHELL_BOUNDARY_EPS * delta, side="left")
        hi = np.searchsorted(aligned, radius + delta + slack, side="right")
        idx = base.astype(np.int64) + offsets[lo:hi]
        idx = idx[np.all((idx >= 0) & (idx < self._shape), axis=-1)]
        distances = np.linalg.norm((idx - frac) * self._spacing, axis=-1)
        members = _shell_members(distances, radius, delta)
        ids = np.ravel_multi_index(tuple(idx[members].T), self.grid.shape).astype(np.int64)
        order = np.argsort(ids)
        return ids[order], distances[members][order]

    def _offset_table(self, reach: float) -> tuple[float, np.ndarray, np.ndarray] | None:
        """Integer (dk, dr, dc) offsets within ``reach`` mm, sorted by length.

        The table is shared by all queries and grown on demand. Returns None
        when a table that large would exceed MAX_OFFSET_TABLE entries.
        """
        table = self._table
        if table is not None and table[0] >= reach:
            return table
        with self._table_lock:
            table = self._table
            if table is not None and table[0] >= reach:
                return table
            grown = 2.0 * table[0] if table is not None else 8.0 * self.grid.max_spacing
            built = _build_offset_table(max(reach, grown), self._spacing)
            if built is None and grown > reach:
                built = _build_offset_table(reach, self._spacing)
            if built is not None:
                logger.debug(f"Offset table: {len(built[2])} offsets within {built[0]:.1f} mm")
                self._table = built
            return built

    def _scan_box(
        self, point: np.ndarray, frac: np.ndarray, radius: float, delta: float
    ) -> tuple[np.ndarray, np.ndarray]:
        reach = (radius + delta) / self._spacing
        lo = np.maximum(np.ceil(frac - reach), 0).astype(np.int64)
        hi = np.minimum(np.floor(frac + reach), self._shape - 1).astype(np.int64)
        if np.any(lo > hi):
            return np.empty(0, dtype=np.int64), np.empty(0, dtype=np.float64)

        kk, rr, cc = np.meshgrid(
            np.arange(lo[0], hi[0] + 1),
            np.arange(lo[1], hi[1] + 1),
            np.arange(lo[2], hi[2] + 1),
            indexing="ij",
        )
        idx = np.stack([kk.ravel(), rr.ravel(), cc.ravel()], axis=-1)
        distances = np.linalg.norm(self.grid.to_points(idx) - point, axis=-1)
        members = _shell_members(distances, radius, delta)
        ids = np.ravel_multi_index(tuple(idx[members].T), self.grid.shape)
        return ids.astype(np.int64), distances[members]

    def face_neighbours(self, ids: np.ndarray) -> np.ndarray:
        """Face-connected neighbour ids [M, 6]; -1 where outside the grid."""
        idx = np.stack(np.unravel_index(np.asarray(ids, dtype=np.int64), self.grid.shape), axis=-1)
        nb = idx[:, np.newaxis, :] + _FACE_OFFSETS[np.newaxis, :, :]
        inside = np.all((nb >= 0) & (nb < self._shape), axis=-1)
        out = np.full(inside.shape, -1, dtype=np.int64)
        if np.any(inside):
            out[inside] = np.ravel_multi_index(tuple(nb[inside].T), self.grid.shape)
        return out


class GeneralIndex:
    """Bounded nearest-neighbour lookup for grids that are not rectilinear.

    Backed by a KD-tree over every voxel centre. Edges for crossing tests
    only connect voxels within the same slice.
    """

    rectilinear = False

    def __init__(
        self,
        volume: Volume,
        channel: int,
        lower: float = float("-inf"),
        upper: float = float("inf"),
    ):
        if not volume.slices:
            raise ValueError(f"Volume '{volume.name}' contains no slices")
        self._dims = np.array([(s.rows, s.columns) for s in volume.slices], dtype=np.int64)
        counts = self._dims[:, 0] * self._dims[:, 1]
        self._starts = np.concatenate([[0], np.cumsum(counts)[:-1]]).astype(np.int64)
        self._positions = np.concatenate(
            [s.voxel_positions().reshape(-1, 3) for s in volume.slices]
        )
        self._values = mask_to_range(volume.channel_values(channel), lower, upper)
        self._tree = cKDTree(self._positions)
        lo, hi = self._positions.min(axis=0), self._positions.max(axis=0)
        self._corners = np.array(
            [[x, y, z] for x in (lo[0], hi[0]) for y in (lo[1], hi[1]) for z in (lo[2], hi[2])]
        )

        spacings = np.array([s.pixel_spacing for s in volume.slices])
        thickness = np.array([s.thickness for s in volume.slices])
        self._step = float(spacings.min())
        self._edge_reach = float(spacings.max())
        self._capture = float(
            0.5 * np.sqrt(spacings[:, 0] ** 2 + spacings[:, 1] ** 2 + thickness**2).max()
        )
        logger.debug(
            f"General index for '{volume.name}': {len(self._values)} voxels, step={self._step}"
        )

    @property
    def size(self) -> int:
        return self._values.size

    @property
    def step(self) -> float:
        return self._step

    @property
    def edge_reach(self) -> float:
        return self._edge_reach

    def positions_of(self, ids: np.ndarray) -> np.ndarray:
        return self._positions[np.asarray(ids, dtype=np.int64)]

    def values_of(self, ids: np.ndarray) -> np.ndarray:
        return self._values[np.asarray(ids, dtype=np.int64)]

    def locate(self, point: np.ndarray) -> int | None:
        """Nearest voxel within half a cell diagonal of ``point``."""
        distance, i = self._tree.query(np.asarray(point, dtype=np.float64),
                                       distance_upper_bound=self._capture)
        if not np.isfinite(distance):
            return None
        return int(i)

    def locate_many(self, points: np.ndarray) -> np.ndarray:
        distances, ids = self._tree.query(np.asarray(points, dtype=np.float64),
                                          distance_upper_bound=self._capture)
        return np.where(np.isfinite(distances), ids, -1).astype(np.int64)

    def distance_to_grid(self, point: np.ndarray) -> float:
        distance, _ = self._tree.query(np.asarray(point, dtype=np.float64))
        return float(distance)

    def max_distance_to_grid(self, point: np.ndarray) -> float:
        """Upper bound on the distance to any voxel centre, from the bounding box."""
        point = np.asarray(point, dtype=np.float64)
        return float(np.linalg.norm(self._corners - point, axis=-1).max())

    def shells(
        self, point: np.ndarray, first: int, last: int, delta: float
    ) -> Iterator[tuple[int, np.ndarray, np.ndarray]]:
        """Yield (n, ids, distances) for shells ``first`` to ``last`` of width ``delta``.

        The tree is queried in balls of doubling radius and each ball is split
        into the shells it fully covers.
        """
        point = np.asarray(point, dtype=np.float64)
        n = first
        reach = (first + 1) * delta
        while n <= last:
            ids = np.array(self._tree.query_ball_point(point, reach), dtype=np.int64)
            distances = np.linalg.norm(self._positions[ids] - point, axis=-1)
            numbers = np.floor((distances + SHELL_BOUNDARY_EPS * delta) / delta).astype(np.int64)
            covered = min(last, int(math.floor(reach / delta)) - 1)
            keep = (numbers >= n) & (numbers <= covered)
            ids, distances, numbers = ids[keep], distances[keep], numbers[keep]
            order = np.lexsort((ids, numbers))
            ids, distances, numbers = ids[order], distances[order], numbers[order]
            bounds = np.searchsorted(numbers, np.arange(n, covered + 2))
            for j, m in enumerate(range(n, covered + 1)):
                yield m, ids[bounds[j]:bounds[j + 1]], distances[bounds[j]:bounds[j + 1]]
            n = max(n, covered + 1)
            reach *= 2.0

    def face_neighbours(self, ids: np.ndarray) -> np.ndarray:
        ids = np.asarray(ids, dtype=np.int64)
        k = np.searchsorted(self._starts, ids, side="right") - 1
        local = ids - self._starts[k]
        cols = self._dims[k, 1]
        r, c = local // cols, local % cols
        out = np.full((ids.size, 6), -1, dtype=np.int64)
        for j, (dr, dc) in enumerate([(-1, 0), (1, 0), (0, -1), (0, 1)], start=2):
            nr, nc = r + dr, c + dc
            inside = (nr >= 0) & (nr < self._dims[k, 0]) & (nc >= 0) & (nc < cols)
            out[inside, j] = self._starts[k[inside]] + nr[inside] * cols[inside] + nc[inside]
        return out


def build_spatial_index(
    volume: Volume,
    channel: int,
    lower: float = float("-inf"),
    upper: float = float("inf"),
    require_rectilinear: bool = True,
) -> RectilinearIndex | GeneralIndex:
    """Build the index for a reference volume.

    With ``require_rectilinear`` a non-rectilinear volume raises
    NonRectilinearGridError; otherwise it falls back to a GeneralIndex.
    """
    if require_rectilinear:
        return RectilinearIndex.from_volume(volume, channel, lower, upper)

    try:
        return RectilinearIndex.from_volume(volume, channel, lower, upper)
    except NonRectilinearGridError as e:
        logger.info(f"Falling back to nearest-neighbour index: {e}")
        return GeneralIndex(volume, channel, lower, upper)
