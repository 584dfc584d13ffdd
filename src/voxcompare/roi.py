"""Region-of-interest selection and per-slice point containment."""

from __future__ import annotations

import logging
import re

import numpy as np
from skimage.measure import points_in_poly

from voxcompare.core.errors import ConfigurationError
from voxcompare.core.volume import Contour, ImageSlice

logger = logging.getLogger(__name__)

# Contours within this distance (mm) of a zero-thickness slice plane count as on it.
_PLANE_TOL = 1.0e-3


def select_contours(contours: list[Contour], roi_regex: str = ".*") -> list[Contour]:
    """Contours whose ROI name fully matches ``roi_regex`` (case-insensitive).

    Runs of whitespace in ROI names are collapsed to a single space before
    matching. Raises ConfigurationError when nothing is selected.
    """
    try:
        pattern = re.compile(roi_regex, re.IGNORECASE)
    except re.error as e:
        raise ConfigurationError(f"Invalid ROI regex '{roi_regex}': {e}")

    selected = [
        c for c in contours if pattern.fullmatch(" ".join(c.roi_name.split()))
    ]
    if not selected:
        raise ConfigurationError("No contours selected. Cannot continue.")
    names = sorted({c.roi_name for c in selected})
    logger.info(f"Selected {len(selected)} contours from ROIs: {', '.join(names)}")
    return selected


def slice_roi_mask(image_slice: ImageSlice, contours: list[Contour]) -> np.ndarray:
    """Boolean [rows, cols] mask of voxel centres inside any contour on this slice.

    A contour lies on the slice when all its points are within half the
    slice thickness of the slice plane.
    """
    rows, cols = image_slice.rows, image_slice.columns
    mask = np.zeros((rows, cols), dtype=bool)
    half = max(image_slice.thickness / 2.0, _PLANE_TOL)
    normal = image_slice.normal

    coords = None
    for contour in contours:
        if len(contour.points) < 3:
            continue
        rel = contour.points - image_slice.offset
        if np.any(np.abs(rel @ normal) > half):
            continue
        if coords is None:
            row_spacing, col_spacing = image_slice.pixel_spacing
            rr, cc = np.meshgrid(np.arange(rows), np.arange(cols), indexing="ij")
            coords = np.stack([cc.ravel() * col_spacing, rr.ravel() * row_spacing], axis=-1)
        verts = np.stack([rel @ image_slice.row_unit, rel @ image_slice.col_unit], axis=-1)
        mask |= points_in_poly(coords, verts).reshape(rows, cols)
    return mask
