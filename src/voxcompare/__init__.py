"""voxcompare: per-voxel comparison of 3D scalar fields."""

__version__ = "0.1.0"
