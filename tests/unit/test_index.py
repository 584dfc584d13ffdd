"""Unit tests for the reference spatial indexes."""

from __future__ import annotations

import numpy as np
import pytest

from voxcompare.core.errors import NonRectilinearGridError
from voxcompare.core.volume import ImageSlice, Volume
from voxcompare.spatial.index import (
    GeneralIndex,
    RectilinearIndex,
    build_spatial_index,
    mask_to_range,
)


@pytest.fixture
def row_index(make_volume) -> RectilinearIndex:
    """Three voxels along x at 0, 1 and 2 mm with values 10, 20, 30."""
    return RectilinearIndex.from_volume(make_volume([[[10.0, 20.0, 30.0]]]), 0)


@pytest.fixture
def irregular_volume() -> Volume:
    """Two slices with different pixel spacing."""
    return Volume(
        slices=[
            ImageSlice(pixels=np.zeros((2, 2)), offset=[0.0, 0.0, 0.0]),
            ImageSlice(
                pixels=np.arange(4.0).reshape(2, 2),
                offset=[0.0, 0.0, 1.0],
                pixel_spacing=(2.0, 2.0),
            ),
        ],
        name="irregular",
    )


def test_mask_to_range_replaces_out_of_range_with_nan():
    masked = mask_to_range(np.array([1.0, 5.0, 10.0, np.nan]), 2.0, 10.0)
    assert np.isnan(masked[0])
    assert masked[1] == 5.0
    assert masked[2] == 10.0
    assert np.isnan(masked[3])


def test_ids_follow_slice_row_column_order(make_volume):
    values = np.arange(24.0).reshape(2, 3, 4)
    index = RectilinearIndex.from_volume(make_volume(values), 0)
    np.testing.assert_array_equal(index.values_of(np.arange(24)), np.arange(24.0))
    np.testing.assert_allclose(index.positions_of(np.array([23])), [[3.0, 2.0, 1.0]])


def test_from_volume_masks_reference_range(make_volume):
    index = RectilinearIndex.from_volume(make_volume([[[10.0, 20.0, 30.0]]]), 0, 15.0, 25.0)
    values = index.values_of(np.arange(3))
    assert np.isnan(values[0])
    assert values[1] == 20.0
    assert np.isnan(values[2])


def test_locate_rounds_to_nearest_voxel(row_index):
    assert row_index.locate(np.array([0.4, 0.0, 0.0])) == 0
    assert row_index.locate(np.array([0.6, 0.0, 0.0])) == 1
    assert row_index.locate(np.array([-0.4, 0.0, 0.0])) == 0
    assert row_index.locate(np.array([-0.6, 0.0, 0.0])) is None
    assert row_index.locate(np.array([1.0, 0.0, 0.7])) is None


def test_locate_many_marks_outside_points(row_index):
    points = np.array([[0.0, 0.0, 0.0], [2.0, 0.0, 0.0], [3.0, 0.0, 0.0]])
    np.testing.assert_array_equal(row_index.locate_many(points), [0, 2, -1])


def test_distance_to_grid(row_index):
    assert row_index.distance_to_grid(np.array([1.0, 0.0, 0.0])) == pytest.approx(0.0)
    assert row_index.distance_to_grid(np.array([5.0, 0.0, 0.0])) == pytest.approx(3.0)


def test_shell_boundary_goes_to_outer_shell(row_index):
    origin = np.zeros(3)
    ids0, d0 = row_index.neighbours_at_shell(origin, 0.0, 1.0)
    ids1, d1 = row_index.neighbours_at_shell(origin, 1.0, 1.0)
    ids2, _ = row_index.neighbours_at_shell(origin, 2.0, 1.0)
    np.testing.assert_array_equal(ids0, [0])
    np.testing.assert_array_equal(ids1, [1])
    np.testing.assert_array_equal(ids2, [2])
    assert d1[0] == pytest.approx(1.0)


def test_shells_partition_the_grid(make_volume):
    index = RectilinearIndex.from_volume(make_volume(np.zeros((3, 4, 5))), 0)
    point = np.array([1.3, 2.1, 0.4])
    seen = []
    for n in range(10):
        ids, distances = index.neighbours_at_shell(point, n * 1.0, 1.0)
        assert np.all(distances >= n - 1e-6)
        assert np.all(np.diff(ids) > 0)
        seen.extend(ids.tolist())
    assert sorted(seen) == list(range(index.size))


def test_max_distance_to_grid(row_index):
    assert row_index.max_distance_to_grid(np.array([0.0, 0.0, 0.0])) == pytest.approx(2.0)
    assert row_index.max_distance_to_grid(np.array([-3.0, 4.0, 0.0])) == pytest.approx(
        np.hypot(5.0, 4.0)
    )


def test_offset_table_matches_box_scan(make_volume, monkeypatch):
    values = np.zeros((4, 5, 6))
    index = RectilinearIndex.from_volume(make_volume(values, spacing=(2.5, 1.0, 1.5)), 0)
    point = np.array([2.7, 1.2, 3.1])

    from_table = [index.neighbours_at_shell(point, n * 1.0, 1.0) for n in range(12)]
    monkeypatch.setattr("voxcompare.spatial.index.MAX_OFFSET_TABLE", 0)
    scanned = RectilinearIndex.from_volume(make_volume(values, spacing=(2.5, 1.0, 1.5)), 0)
    for n, (ids, distances) in enumerate(from_table):
        expected_ids, expected_distances = scanned.neighbours_at_shell(point, n * 1.0, 1.0)
        np.testing.assert_array_equal(ids, expected_ids)
        np.testing.assert_allclose(distances, expected_distances)


def test_offset_table_is_reused_across_queries(make_volume):
    index = RectilinearIndex.from_volume(make_volume(np.zeros((3, 8, 8))), 0)
    index.neighbours_at_shell(np.zeros(3), 2.0, 1.0)
    table = index._table
    index.neighbours_at_shell(np.array([3.0, 4.0, 1.0]), 3.0, 1.0)
    assert index._table is table


def test_shells_stop_at_last(make_volume):
    index = RectilinearIndex.from_volume(make_volume(np.zeros((1, 1, 5))), 0)
    shells = list(index.shells(np.zeros(3), 1, 3, 1.0))
    assert [n for n, _, _ in shells] == [1, 2, 3]
    assert [ids.tolist() for _, ids, _ in shells] == [[1], [2], [3]]


def test_face_neighbours(row_index):
    nb = row_index.face_neighbours(np.array([0, 1]))
    np.testing.assert_array_equal(nb[0], [-1, -1, -1, -1, -1, 1])
    np.testing.assert_array_equal(nb[1], [-1, -1, -1, -1, 0, 2])


def test_values_shape_must_match_grid(row_index):
    with pytest.raises(ValueError, match="does not match"):
        RectilinearIndex(row_index.grid, np.zeros((2, 2, 2)))


# --- general index tests ---


def test_build_spatial_index_requires_rectilinear_by_default(irregular_volume):
    with pytest.raises(NonRectilinearGridError):
        build_spatial_index(irregular_volume, 0)


def test_build_spatial_index_falls_back_to_general(irregular_volume):
    index = build_spatial_index(irregular_volume, 0, require_rectilinear=False)
    assert isinstance(index, GeneralIndex)
    assert not index.rectilinear
    assert index.size == 8
    assert index.step == pytest.approx(1.0)
    assert index.edge_reach == pytest.approx(2.0)


def test_general_index_locate(irregular_volume):
    index = GeneralIndex(irregular_volume, 0)
    assert index.locate(np.array([2.0, 2.0, 1.0])) == 7
    assert index.locate(np.array([0.1, 0.0, 0.0])) == 0
    assert index.locate(np.array([50.0, 50.0, 50.0])) is None
    np.testing.assert_array_equal(
        index.locate_many(np.array([[2.0, 0.0, 1.0], [50.0, 0.0, 0.0]])), [5, -1]
    )


def test_general_index_face_neighbours_stay_in_slice(irregular_volume):
    index = GeneralIndex(irregular_volume, 0)
    nb = index.face_neighbours(np.array([4]))
    np.testing.assert_array_equal(nb[0], [-1, -1, -1, 6, -1, 5])


def test_general_index_shells(irregular_volume):
    index = GeneralIndex(irregular_volume, 0)
    [(n, ids, distances)] = list(index.shells(np.zeros(3), 1, 1, 1.0))
    assert n == 1
    # Everything but the origin voxel in slice 0, plus slice 1's origin voxel.
    np.testing.assert_array_equal(ids, [1, 2, 3, 4])
    np.testing.assert_allclose(distances, [1.0, 1.0, np.sqrt(2.0), 1.0])


def test_general_index_shells_partition_all_voxels(irregular_volume):
    index = GeneralIndex(irregular_volume, 0)
    point = np.array([0.3, 0.6, 0.2])
    last = int(np.floor(index.max_distance_to_grid(point)))
    shells = list(index.shells(point, 0, last, 1.0))
    assert [n for n, _, _ in shells] == list(range(last + 1))
    seen = []
    for n, ids, distances in shells:
        assert np.all(np.diff(ids) > 0)
        assert np.all((distances >= n - 1e-6) & (distances < n + 1.0))
        seen.extend(ids.tolist())
    assert sorted(seen) == list(range(index.size))


def test_general_index_max_distance_bounds_every_voxel(irregular_volume):
    index = GeneralIndex(irregular_volume, 0)
    point = np.array([5.0, -1.0, 0.5])
    farthest = np.linalg.norm(index.positions_of(np.arange(index.size)) - point, axis=-1).max()
    assert index.max_distance_to_grid(point) >= farthest - 1e-9
