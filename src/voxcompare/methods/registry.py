"""Method registry with decorator-based registration."""

from __future__ import annotations

from typing import Type

from voxcompare.core.errors import ConfigurationError
from voxcompare.methods.base import ComparisonMetric

_registry: dict[str, Type[ComparisonMetric]] = {}


def register_method(name: str):
    """Decorator to register a comparison metric."""

    def decorator(cls: Type[ComparisonMetric]):
        cls.name = name
        _registry[name] = cls
        return cls

    return decorator


def resolve_method_name(name: str) -> str:
    """Canonical method name for a case-insensitive name or unique prefix.

    "gamma", "g" and "GAMMA-INDEX" all resolve to "gamma-index"; "d" is
    ambiguous between "dta" and "discrepancy".
    """
    _ensure_methods_loaded()
    key = name.strip().lower()
    if key in _registry:
        return key
    matches = [m for m in _registry if key and m.startswith(key)]
    available = ", ".join(_registry.keys())
    if not matches:
        raise ConfigurationError(f"Unknown method '{name}'. Available: {available}")
    if len(matches) > 1:
        raise ConfigurationError(
            f"Ambiguous method '{name}': matches {', '.join(matches)}"
        )
    return matches[0]


def get_method(name: str) -> ComparisonMetric:
    """Get an instance of a registered method by name or unique prefix."""
    return _registry[resolve_method_name(name)]()


def list_methods() -> list[dict[str, str]]:
    """List all registered methods with their info."""
    _ensure_methods_loaded()
    return [
        {
            "name": name,
            "description": cls.description,
            "recommended_for": cls.recommended_for,
        }
        for name, cls in _registry.items()
    ]


def _ensure_methods_loaded():
    """Import method modules to trigger registration."""
    import voxcompare.methods.discrepancy  # noqa: F401
    import voxcompare.methods.dta  # noqa: F401
    import voxcompare.methods.gamma_index  # noqa: F401
