"""Shared test fixtures: synthetic volumes and DICOM data."""

from __future__ import annotations

from pathlib import Path

import numpy as np
import pydicom
import pytest
from pydicom.dataset import Dataset, FileDataset
from pydicom.sequence import Sequence
from pydicom.uid import ExplicitVRLittleEndian, generate_uid

from voxcompare.core.volume import ImageSlice, Volume

CT_IMAGE_STORAGE = "1.2.840.10008.5.1.4.1.1.2"
RT_STRUCTURE_SET_STORAGE = "1.2.840.10008.5.1.4.1.1.481.3"
RT_DOSE_STORAGE = "1.2.840.10008.5.1.4.1.1.481.2"


def build_volume(
    values,
    spacing=(1.0, 1.0, 1.0),
    origin=(0.0, 0.0, 0.0),
    name: str = "",
) -> Volume:
    """Axis-aligned volume from values [slices, rows, cols].

    ``spacing`` is (slice, row, column) in mm; column index runs along +x,
    row index along +y and slice index along +z.
    """
    values = np.asarray(values, dtype=np.float64)
    if values.ndim == 2:
        values = values[np.newaxis]
    slice_spacing, row_spacing, col_spacing = spacing
    origin = np.asarray(origin, dtype=np.float64)
    slices = [
        ImageSlice(
            pixels=values[k].copy(),
            offset=origin + np.array([0.0, 0.0, k * slice_spacing]),
            pixel_spacing=(row_spacing, col_spacing),
            thickness=slice_spacing,
        )
        for k in range(values.shape[0])
    ]
    return Volume(slices=slices, name=name)


@pytest.fixture
def make_volume():
    """Factory for axis-aligned synthetic volumes."""
    return build_volume


@pytest.fixture
def gradient_volume() -> Volume:
    """4x6x6 volume whose value rises by 10 per mm along x, starting at 100."""
    cols = np.arange(6, dtype=np.float64)
    values = np.broadcast_to(100.0 + 10.0 * cols, (4, 6, 6)).copy()
    return build_volume(values, name="gradient")


@pytest.fixture
def dicom_directory(tmp_path) -> Path:
    """Directory with one 5-slice synthetic CT series."""
    directory = tmp_path / "ct"
    directory.mkdir()
    series_uid = generate_uid()
    for i in range(5):
        _write_synthetic_dicom(
            directory / f"slice_{i:03d}.dcm",
            series_uid=series_uid,
            instance_number=i + 1,
            slice_location=2.0 * i,
            description="Planned dose",
        )
    return directory


@pytest.fixture
def rtstruct_file(tmp_path) -> Path:
    """RTSTRUCT with a square 'PTV  High' ROI and a small 'Cord' ROI on every slice."""
    directory = tmp_path / "structures"
    directory.mkdir()
    path = directory / "rtstruct.dcm"
    squares = {
        "PTV  High": (3.5, 12.5),
        "Cord": (0.5, 2.5),
    }
    rois = {}
    for number, (name, (lo, hi)) in enumerate(squares.items(), start=1):
        rois[number] = (name, [
            [(lo, lo, z), (hi, lo, z), (hi, hi, z), (lo, hi, z)]
            for z in (0.0, 2.0, 4.0, 6.0, 8.0)
        ])
    _write_rtstruct(path, rois)
    return path


@pytest.fixture
def make_rtdose(tmp_path):
    """Factory for multi-frame RTDOSE files in tmp_path/"dose" (four frames by default).

    Frame k holds 10*(k+1) Gy plus 0.1 Gy per column.
    """
    directory = tmp_path / "dose"
    directory.mkdir(exist_ok=True)

    def make(frame_offsets=(0.0, 2.0, 4.0, 6.0), name="rtdose.dcm") -> Path:
        path = directory / name
        _write_rtdose(path, frame_offsets)
        return path

    return make


@pytest.fixture
def rtdose_file(make_rtdose) -> Path:
    """Multi-frame RTDOSE with relative frame offsets starting at z=10."""
    return make_rtdose()


def _write_synthetic_dicom(
    path: Path,
    series_uid: str,
    instance_number: int,
    slice_location: float,
    rows: int = 16,
    cols: int = 16,
    description: str = "",
    rescale_slope: float = 0.5,
) -> None:
    """Write a single synthetic DICOM file with a value gradient along x."""
    file_meta = pydicom.Dataset()
    file_meta.MediaStorageSOPClassUID = CT_IMAGE_STORAGE
    file_meta.MediaStorageSOPInstanceUID = generate_uid()
    file_meta.TransferSyntaxUID = ExplicitVRLittleEndian

    ds = FileDataset(str(path), {}, file_meta=file_meta, preamble=b"\x00" * 128)

    ds.SOPClassUID = CT_IMAGE_STORAGE
    ds.SOPInstanceUID = file_meta.MediaStorageSOPInstanceUID
    ds.SeriesInstanceUID = series_uid
    ds.StudyInstanceUID = generate_uid()
    ds.Modality = "CT"
    ds.SeriesDescription = description
    ds.InstanceNumber = instance_number
    ds.ImagePositionPatient = [0.0, 0.0, slice_location]
    ds.ImageOrientationPatient = [1, 0, 0, 0, 1, 0]
    ds.PixelSpacing = [1.0, 1.0]
    ds.SliceThickness = 2.0
    ds.SliceLocation = slice_location
    ds.Rows = rows
    ds.Columns = cols
    ds.BitsAllocated = 16
    ds.BitsStored = 16
    ds.HighBit = 15
    ds.PixelRepresentation = 0
    ds.SamplesPerPixel = 1
    ds.PhotometricInterpretation = "MONOCHROME2"
    ds.RescaleSlope = rescale_slope
    ds.RescaleIntercept = 0.0

    _, xx = np.mgrid[0:rows, 0:cols]
    pixel_data = (200 + 20 * xx).astype(np.uint16)

    ds.PixelData = pixel_data.tobytes()
    ds.save_as(str(path))


def _write_rtstruct(path: Path, rois: dict[int, tuple[str, list]]) -> None:
    """Write an RTSTRUCT holding CLOSED_PLANAR contours for each ROI."""
    file_meta = pydicom.Dataset()
    file_meta.MediaStorageSOPClassUID = RT_STRUCTURE_SET_STORAGE
    file_meta.MediaStorageSOPInstanceUID = generate_uid()
    file_meta.TransferSyntaxUID = ExplicitVRLittleEndian

    ds = FileDataset(str(path), {}, file_meta=file_meta, preamble=b"\x00" * 128)
    ds.SOPClassUID = RT_STRUCTURE_SET_STORAGE
    ds.SOPInstanceUID = file_meta.MediaStorageSOPInstanceUID
    ds.SeriesInstanceUID = generate_uid()
    ds.StudyInstanceUID = generate_uid()
    ds.Modality = "RTSTRUCT"

    roi_items = []
    contour_items = []
    for number, (name, polygons) in rois.items():
        roi = Dataset()
        roi.ROINumber = number
        roi.ROIName = name
        roi_items.append(roi)

        contours = []
        for polygon in polygons:
            contour = Dataset()
            contour.ContourGeometricType = "CLOSED_PLANAR"
            contour.NumberOfContourPoints = len(polygon)
            contour.ContourData = [float(v) for point in polygon for v in point]
            contours.append(contour)
        roi_contour = Dataset()
        roi_contour.ReferencedROINumber = number
        roi_contour.ContourSequence = Sequence(contours)
        contour_items.append(roi_contour)

    ds.StructureSetROISequence = Sequence(roi_items)
    ds.ROIContourSequence = Sequence(contour_items)
    ds.save_as(str(path))


def _write_rtdose(
    path: Path,
    frame_offsets,
    rows: int = 8,
    cols: int = 6,
    position=(-5.0, -5.0, 10.0),
) -> None:
    """Write a multi-frame RTDOSE whose dose rises along x and from frame to frame."""
    file_meta = pydicom.Dataset()
    file_meta.MediaStorageSOPClassUID = RT_DOSE_STORAGE
    file_meta.MediaStorageSOPInstanceUID = generate_uid()
    file_meta.TransferSyntaxUID = ExplicitVRLittleEndian

    ds = FileDataset(str(path), {}, file_meta=file_meta, preamble=b"\x00" * 128)
    ds.SOPClassUID = RT_DOSE_STORAGE
    ds.SOPInstanceUID = file_meta.MediaStorageSOPInstanceUID
    ds.SeriesInstanceUID = generate_uid()
    ds.StudyInstanceUID = generate_uid()
    ds.Modality = "RTDOSE"
    ds.SeriesDescription = "Calculated dose"
    ds.ImagePositionPatient = list(position)
    ds.ImageOrientationPatient = [1, 0, 0, 0, 1, 0]
    ds.PixelSpacing = [2.5, 2.5]
    ds.NumberOfFrames = len(frame_offsets)
    ds.GridFrameOffsetVector = list(frame_offsets)
    ds.FrameIncrementPointer = 0x3004000C
    ds.DoseGridScaling = 0.01
    ds.DoseUnits = "GY"
    ds.Rows = rows
    ds.Columns = cols
    ds.BitsAllocated = 16
    ds.BitsStored = 16
    ds.HighBit = 15
    ds.PixelRepresentation = 0
    ds.SamplesPerPixel = 1
    ds.PhotometricInterpretation = "MONOCHROME2"

    frames = np.arange(len(frame_offsets))[:, np.newaxis, np.newaxis]
    _, _, xx = np.mgrid[0:1, 0:rows, 0:cols]
    pixel_data = (1000 * (frames + 1) + 10 * xx).astype(np.uint16)

    ds.PixelData = pixel_data.tobytes()
    ds.save_as(str(path))
