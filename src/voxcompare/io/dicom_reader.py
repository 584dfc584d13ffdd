"""DICOM reader: load a directory, group by series, assemble volumes slice by slice."""

from __future__ import annotations

import logging
from pathlib import Path

import numpy as np
import pydicom
from pydicom.errors import InvalidDicomError

from voxcompare.core.volume import ImageSlice, Volume

logger = logging.getLogger(__name__)

# Modalities that carry contours or plans rather than pixel data.
_NON_IMAGE_MODALITIES = {"RTSTRUCT", "RTPLAN", "RTRECORD", "SR", "PR", "REG"}


def load_volume(input_path: Path, series_uid: str | None = None) -> Volume:
    """Load one image series from a DICOM file or directory.

    With ``series_uid`` (partial match supported) that series is loaded,
    otherwise the series with the most slices.
    """
    input_path = Path(input_path)
    if input_path.is_file():
        datasets = [pydicom.dcmread(str(input_path))]
        return _build_volume(datasets, getattr(datasets[0], "SeriesInstanceUID", ""))

    if not input_path.is_dir():
        raise FileNotFoundError(f"Path not found: {input_path}")

    series_groups = _group_by_series(_scan_dicom_files(input_path))
    if not series_groups:
        raise ValueError(f"No valid DICOM image files found in {input_path}")

    if series_uid:
        selected_uid = _match_series_uid(series_groups, series_uid)
    else:
        selected_uid = _select_best_series(series_groups)

    datasets = series_groups[selected_uid]
    logger.info(f"Selected series {selected_uid} with {len(datasets)} files")
    return _build_volume(datasets, selected_uid)


def load_volumes(input_path: Path) -> list[Volume]:
    """Load every image series in a DICOM file or directory, one volume each."""
    input_path = Path(input_path)
    if input_path.is_file():
        return [load_volume(input_path)]
    if not input_path.is_dir():
        raise FileNotFoundError(f"Path not found: {input_path}")

    series_groups = _group_by_series(_scan_dicom_files(input_path))
    if not series_groups:
        raise ValueError(f"No valid DICOM image files found in {input_path}")
    logger.info(f"Found {len(series_groups)} series in {input_path}")
    return [_build_volume(datasets, uid) for uid, datasets in series_groups.items()]


def list_series(input_path: Path) -> list[dict]:
    """List all DICOM image series found in a directory."""
    input_path = Path(input_path)
    if not input_path.is_dir():
        raise ValueError(f"Not a directory: {input_path}")

    series_groups = _group_by_series(_scan_dicom_files(input_path))

    result = []
    for uid, datasets in series_groups.items():
        ds = datasets[0]
        result.append(
            {
                "series_uid": uid,
                "modality": getattr(ds, "Modality", "Unknown"),
                "description": getattr(ds, "SeriesDescription", ""),
                "slice_count": sum(_frame_count(d) for d in datasets),
            }
        )
    return result


def _scan_dicom_files(directory: Path) -> list[pydicom.Dataset]:
    """Scan directory recursively for DICOM files carrying pixel data."""
    datasets = []
    for path in sorted(directory.rglob("*")):
        if not path.is_file():
            continue
        try:
            ds = pydicom.dcmread(str(path))
        except (InvalidDicomError, OSError):
            continue
        if getattr(ds, "Modality", "") in _NON_IMAGE_MODALITIES or "PixelData" not in ds:
            continue
        if _frame_count(ds) > 1 and "GridFrameOffsetVector" not in ds:
            logger.warning(f"Skipping multi-frame file {path.name} without GridFrameOffsetVector")
            continue
        datasets.append(ds)
    return datasets


def _group_by_series(
    datasets: list[pydicom.Dataset],
) -> dict[str, list[pydicom.Dataset]]:
    """Group datasets by Series Instance UID."""
    groups: dict[str, list[pydicom.Dataset]] = {}
    for ds in datasets:
        uid = getattr(ds, "SeriesInstanceUID", "unknown")
        groups.setdefault(uid, []).append(ds)
    return groups


def _match_series_uid(
    series_groups: dict[str, list[pydicom.Dataset]], partial_uid: str
) -> str:
    """Find series UID matching partial string."""
    matches = [uid for uid in series_groups if partial_uid in uid]
    if not matches:
        available = "\n  ".join(series_groups.keys())
        raise ValueError(
            f"No series matching '{partial_uid}'. Available:\n  {available}"
        )
    if len(matches) > 1:
        logger.warning(
            f"Multiple series match '{partial_uid}', using first: {matches[0]}"
        )
    return matches[0]


def _select_best_series(
    series_groups: dict[str, list[pydicom.Dataset]],
) -> str:
    """Select the series with the most slices."""
    return max(
        series_groups, key=lambda uid: sum(_frame_count(ds) for ds in series_groups[uid])
    )


def _build_volume(datasets: list[pydicom.Dataset], series_uid: str) -> Volume:
    """Assemble a volume with one ImageSlice per frame, sorted along the normal."""
    slices = _sort_along_normal([s for ds in datasets for s in _build_slices(ds)])

    ds = datasets[0]
    description = getattr(ds, "SeriesDescription", "")
    modality = getattr(ds, "Modality", "Unknown")
    return Volume(
        slices=slices,
        name=description or f"{modality} {series_uid[-8:]}",
        description=description,
        metadata={
            "series_uid": series_uid,
            "modality": modality,
            "patient_name": str(getattr(ds, "PatientName", "")),
            "study_description": getattr(ds, "StudyDescription", ""),
        },
    )


def _build_slices(ds: pydicom.Dataset) -> list[ImageSlice]:
    """Convert a dataset to ImageSlices (rescale applied), one per frame.

    Frames of a multi-frame dataset (RTDOSE) are stacked along the slice
    normal at the distances given by GridFrameOffsetVector.
    """
    frames = _frame_count(ds)
    pixels = ds.pixel_array.astype(np.float64)
    if frames == 1:
        pixels = pixels[np.newaxis]
    slope = float(getattr(ds, "RescaleSlope", 1.0) or 1.0)
    intercept = float(getattr(ds, "RescaleIntercept", 0.0) or 0.0)
    # RTDOSE stores its scaling separately.
    slope *= float(getattr(ds, "DoseGridScaling", 1.0) or 1.0)
    pixels = pixels * slope + intercept

    orientation = [float(x) for x in getattr(ds, "ImageOrientationPatient", [1, 0, 0, 0, 1, 0])]
    position = np.array([float(x) for x in getattr(ds, "ImagePositionPatient", [0, 0, 0])])
    row_unit, col_unit = np.array(orientation[:3]), np.array(orientation[3:])
    normal = np.cross(row_unit, col_unit)

    heights = _get_frame_offsets(ds, frames, position, normal)
    if frames > 1 and not getattr(ds, "SliceThickness", None):
        thickness = float(np.abs(np.diff(heights)).min())
    else:
        thickness = _get_slice_thickness(ds)

    return [
        ImageSlice(
            pixels=pixels[k],
            offset=position + heights[k] * normal,
            row_unit=row_unit,
            col_unit=col_unit,
            pixel_spacing=_get_pixel_spacing(ds),
            thickness=thickness,
            metadata={
                "sop_instance_uid": str(getattr(ds, "SOPInstanceUID", "")),
                "instance_number": int(getattr(ds, "InstanceNumber", 0) or 0),
                "filename": str(getattr(ds, "filename", "")),
                "frame": k,
            },
        )
        for k in range(frames)
    ]


def _frame_count(ds: pydicom.Dataset) -> int:
    return int(getattr(ds, "NumberOfFrames", 1) or 1)


def _get_frame_offsets(
    ds: pydicom.Dataset, frames: int, position: np.ndarray, normal: np.ndarray
) -> np.ndarray:
    """Distance of each frame from ImagePositionPatient along the normal."""
    if frames == 1:
        return np.zeros(1)
    vector = getattr(ds, "GridFrameOffsetVector", None)
    if not vector:
        raise ValueError(
            f"Multi-frame dataset {getattr(ds, 'filename', '')} has no GridFrameOffsetVector"
        )
    offsets = np.array([float(v) for v in vector])
    if len(offsets) != frames:
        raise ValueError(
            f"GridFrameOffsetVector has {len(offsets)} entries for {frames} frames "
            f"in {getattr(ds, 'filename', 'dataset')}"
        )
    if offsets[0] != 0.0:
        # Absolute positions along the normal rather than relative offsets.
        offsets = offsets - float(np.dot(position, normal))
    return offsets


def _sort_along_normal(slices: list[ImageSlice]) -> list[ImageSlice]:
    """Sort slices by their offset projected onto the first slice's normal."""
    if len(slices) < 2:
        return slices
    normal = slices[0].normal
    return sorted(slices, key=lambda s: float(np.dot(s.offset, normal)))


def _get_pixel_spacing(ds: pydicom.Dataset) -> tuple[float, float]:
    """Extract pixel spacing from dataset."""
    spacing = getattr(ds, "PixelSpacing", None)
    if spacing:
        return (float(spacing[0]), float(spacing[1]))

    spacing = getattr(ds, "ImagerPixelSpacing", None)
    if spacing:
        return (float(spacing[0]), float(spacing[1]))

    logger.warning("No pixel spacing found, using default 1.0mm")
    return (1.0, 1.0)


def _get_slice_thickness(ds: pydicom.Dataset) -> float:
    thickness = getattr(ds, "SliceThickness", None)
    if thickness:
        return float(thickness)
    logger.warning("No slice thickness found, using default 1.0mm")
    return 1.0
