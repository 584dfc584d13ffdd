"""Expanding-shell candidate search over a reference index.

Shells of width ``index.step`` grow outwards from the query point. Besides
the voxels of each shell, the edges from each shell voxel to its already
visited face neighbours are tested: when ``reference - target`` changes sign
along an edge, the intermediate-value theorem places an agreement point on
it, at the linear crossing fraction. Distances found this way can overestimate
the true distance by up to one cell diagonal.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Iterator, Protocol

import numpy as np


class ReferenceIndex(Protocol):
    step: float
    edge_reach: float

    def positions_of(self, ids: np.ndarray) -> np.ndarray: ...
    def values_of(self, ids: np.ndarray) -> np.ndarray: ...
    def locate(self, point: np.ndarray) -> int | None: ...
    def locate_many(self, points: np.ndarray) -> np.ndarray: ...
    def distance_to_grid(self, point: np.ndarray) -> float: ...
    def max_distance_to_grid(self, point: np.ndarray) -> float: ...
    def shells(
        self, point: np.ndarray, first: int, last: int, delta: float
    ) -> Iterator[tuple[int, np.ndarray, np.ndarray]]: ...
    def face_neighbours(self, ids: np.ndarray) -> np.ndarray: ...


@dataclass
class Shell:
    """Voxels of one shell, in enumeration order."""

    number: int
    radius: float
    ids: np.ndarray
    distances: np.ndarray
    width: float = 0.0

    @property
    def outer_radius(self) -> float:
        return self.radius + self.width


@dataclass
class SearchHit:
    """Nearest agreement found by a search."""

    distance: float
    voxel_id: int
    crossing: bool = False  # True when interpolated along an edge


def relative_difference(test, reference):
    """Percent difference of ``test`` relative to ``reference``.

    Zero when the values are equal (including both zero), infinite when only
    the reference is zero.
    """
    test = np.asarray(test, dtype=np.float64)
    reference = np.asarray(reference, dtype=np.float64)
    diff = np.abs(test - reference)
    with np.errstate(divide="ignore", invalid="ignore"):
        out = 100.0 * diff / np.abs(reference)
    return np.where(diff == 0, 0.0, out)


def normalised(numerator, threshold: float):
    """``numerator / threshold``, mapping a zero threshold to 0 or infinity."""
    numerator = np.asarray(numerator, dtype=np.float64)
    if threshold > 0:
        return numerator / threshold
    return np.where(numerator > 0, np.inf, 0.0)


def iter_shells(index: ReferenceIndex, point: np.ndarray, max_radius: float) -> Iterator[Shell]:
    """Yield shells around ``point`` whose inner radius does not exceed ``max_radius``.

    Shells that cannot contain a voxel (closer than the grid itself or
    beyond its farthest voxel) are skipped, so an infinite ``max_radius``
    still ends.
    """
    point = np.asarray(point, dtype=np.float64)
    step = index.step
    first = int(math.floor(index.distance_to_grid(point) / step + 1.0e-9))
    reach = min(max_radius, index.max_distance_to_grid(point))
    last = int(math.floor(reach / step + 1.0e-9))
    for n, ids, distances in index.shells(point, first, last, step):
        yield Shell(number=n, radius=n * step, ids=ids, distances=distances, width=step)


def edge_crossings(
    index: ReferenceIndex,
    point: np.ndarray,
    shell: Shell,
    target: float,
    exclude: np.ndarray | None = None,
) -> tuple[np.ndarray, np.ndarray]:
    """Points where the reference crosses ``target`` on visited edges.

    Returns (distances, ids of the shell voxels starting each edge).

    Edges join each voxel of ``shell`` to face neighbours already visited
    (closer than the shell's outer radius). Voxels flagged in ``exclude``
    (already agreeing) do not start an edge.
    """
    none = (np.empty(0, dtype=np.float64), np.empty(0, dtype=np.int64))
    ids = shell.ids if exclude is None else shell.ids[~exclude]
    if ids.size == 0:
        return none

    g = index.values_of(ids) - target
    nb = index.face_neighbours(ids)
    valid = nb >= 0
    safe_nb = np.where(valid, nb, 0)
    gn = index.values_of(safe_nb.ravel()).reshape(nb.shape) - target

    pos = index.positions_of(ids)
    pos_nb = index.positions_of(safe_nb.ravel()).reshape(nb.shape + (3,))
    d_nb = np.linalg.norm(pos_nb - point, axis=-1)

    with np.errstate(invalid="ignore"):
        crossing = valid & (d_nb < shell.outer_radius) & (g[:, np.newaxis] * gn < 0)
    if not np.any(crossing):
        return none

    rows, cols = np.nonzero(crossing)
    ga, gb = g[rows], gn[rows, cols]
    t = ga / (ga - gb)
    p = pos[rows] + t[:, np.newaxis] * (pos_nb[rows, cols] - pos[rows])
    return np.linalg.norm(p - point, axis=-1), ids[rows]


def find_agreement(
    index: ReferenceIndex,
    point: np.ndarray,
    target: float,
    abs_tol: float,
    rel_tol: float,
    max_radius: float,
) -> SearchHit | None:
    """Nearest reference location whose value agrees with ``target``.

    A voxel agrees when it is within ``abs_tol`` of the target or within
    ``rel_tol`` percent of it. The search stops at the first shell with a
    voxel match or an edge crossing; the minimum distance in that shell is
    reported, ties going to the earliest voxel in enumeration order.
    Matches beyond ``max_radius`` are ignored.
    """
    point = np.asarray(point, dtype=np.float64)
    for shell in iter_shells(index, point, max_radius):
        if shell.ids.size == 0:
            continue
        values = index.values_of(shell.ids)
        with np.errstate(invalid="ignore"):
            match = (np.abs(values - target) <= abs_tol) | (
                relative_difference(target, values) <= rel_tol
            )
        match &= np.isfinite(values)

        distances = shell.distances[match]
        ids = shell.ids[match]
        crossings, starts = edge_crossings(index, point, shell, target, exclude=match)

        in_reach = distances <= max_radius
        distances, ids = distances[in_reach], ids[in_reach]
        in_reach = crossings <= max_radius
        crossings, starts = crossings[in_reach], starts[in_reach]
        if distances.size == 0 and crossings.size == 0:
            continue

        best_voxel = int(np.argmin(distances)) if distances.size else None
        best_cross = int(np.argmin(crossings)) if crossings.size else None
        if best_cross is None or (
            best_voxel is not None and distances[best_voxel] <= crossings[best_cross]
        ):
            return SearchHit(float(distances[best_voxel]), int(ids[best_voxel]))
        return SearchHit(float(crossings[best_cross]), int(starts[best_cross]), crossing=True)
    return None


def minimise_gamma(
    index: ReferenceIndex,
    point: np.ndarray,
    target: float,
    dta_threshold: float,
    disc_threshold: float,
    max_radius: float,
    terminate_above_one: bool = False,
) -> tuple[float, bool]:
    """Smallest gamma-index over reference candidates within ``max_radius``.

    Returns (gamma, terminated_early). The search stops exactly once the
    geometric term of the closest unvisited shell reaches the running
    minimum. With ``terminate_above_one`` it also stops once that term
    exceeds 1 and some candidate exists, since gamma is then known to fail.
    The closest unvisited location is taken one edge length inside the
    shell radius because edge crossings may lie there. Returns infinity
    when no candidate exists.
    """
    point = np.asarray(point, dtype=np.float64)
    best = math.inf
    terminated = False
    for shell in iter_shells(index, point, max_radius):
        nearest_possible = max(0.0, shell.radius - index.edge_reach)
        geometric = float(normalised(nearest_possible, dta_threshold))
        if geometric >= best:
            break
        if terminate_above_one and geometric > 1.0 and best < math.inf:
            terminated = True
            break
        if shell.ids.size == 0:
            continue

        values = index.values_of(shell.ids)
        if terminate_above_one and geometric > 1.0:
            # Nothing seen yet: only whether any candidate exists is still open.
            if np.any(np.isfinite(values) & (shell.distances <= max_radius)):
                terminated = True
                break
            continue

        finite = np.isfinite(values) & (shell.distances <= max_radius)
        if np.any(finite):
            gamma = np.hypot(
                normalised(shell.distances[finite], dta_threshold),
                normalised(relative_difference(target, values[finite]), disc_threshold),
            )
            best = min(best, float(gamma.min()))

        crossings, _ = edge_crossings(index, point, shell, target)
        crossings = crossings[crossings <= max_radius]
        if crossings.size:
            best = min(best, float(normalised(crossings.min(), dta_threshold)))
    return best, terminated


def nearest_voxel(index: ReferenceIndex, point: np.ndarray) -> int | None:
    """Nearest reference voxel to a point inside the grid, by shell search from radius 0."""
    point = np.asarray(point, dtype=np.float64)
    if index.locate(point) is None:
        return None
    for shell in iter_shells(index, point, math.inf):
        if shell.ids.size:
            return int(shell.ids[np.argmin(shell.distances)])
    return None
