"""Export compared volumes to NumPy archives."""

from __future__ import annotations

from pathlib import Path

import numpy as np

from voxcompare.core.volume import Volume


def export_npz(volume: Volume, output_path: Path, channel: int = 0) -> None:
    """Write one channel of a volume, with per-slice geometry, to a .npz archive.

    Keys: ``values_NNN``, ``offset_NNN``, ``orientation_NNN`` (row and column
    direction cosines) and ``spacing_NNN`` per slice, plus ``name`` and
    ``description``.
    """
    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)

    arrays: dict[str, np.ndarray] = {
        "name": np.array(volume.name),
        "description": np.array(volume.description),
    }
    for i, s in enumerate(volume.slices):
        arrays[f"values_{i:03d}"] = s.pixels[:, :, channel].astype(np.float32)
        arrays[f"offset_{i:03d}"] = s.offset
        arrays[f"orientation_{i:03d}"] = np.concatenate([s.row_unit, s.col_unit])
        arrays[f"spacing_{i:03d}"] = np.array([*s.pixel_spacing, s.thickness])
    np.savez_compressed(output_path, **arrays)
