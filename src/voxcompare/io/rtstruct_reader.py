"""RTSTRUCT reader: ROI names and closed planar contours."""

from __future__ import annotations

import logging
from pathlib import Path

import numpy as np
import pydicom

from voxcompare.core.volume import Contour

logger = logging.getLogger(__name__)


def load_contours(path: Path) -> list[Contour]:
    """Read every CLOSED_PLANAR contour from an RTSTRUCT file."""
    path = Path(path)
    if not path.is_file():
        raise FileNotFoundError(f"Path not found: {path}")

    ds = pydicom.dcmread(str(path))
    if getattr(ds, "Modality", "") != "RTSTRUCT":
        raise ValueError(f"{path.name} is not an RTSTRUCT file")

    names = {
        int(roi.ROINumber): str(getattr(roi, "ROIName", ""))
        for roi in getattr(ds, "StructureSetROISequence", [])
    }

    contours = []
    skipped = 0
    for roi_contour in getattr(ds, "ROIContourSequence", []):
        name = names.get(int(roi_contour.ReferencedROINumber), "")
        for item in getattr(roi_contour, "ContourSequence", []):
            if getattr(item, "ContourGeometricType", "CLOSED_PLANAR") != "CLOSED_PLANAR":
                skipped += 1
                continue
            points = np.array([float(x) for x in item.ContourData]).reshape(-1, 3)
            contours.append(Contour(points=points, roi_name=name))

    if skipped:
        logger.debug(f"Skipped {skipped} non-planar contours in {path.name}")
    logger.info(f"Loaded {len(contours)} contours from {len(names)} ROIs in {path.name}")
    return contours
