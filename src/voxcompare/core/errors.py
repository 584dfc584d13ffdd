"""Exceptions raised while setting up a comparison."""

from __future__ import annotations


class ConfigurationError(ValueError):
    """Invalid comparison setup, raised before any voxel is written."""


class NonRectilinearGridError(ConfigurationError):
    """The reference volume does not lie on a uniform axis-aligned lattice."""
