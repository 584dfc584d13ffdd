"""Volume selection by position or name."""

from __future__ import annotations

import re

from voxcompare.core.errors import ConfigurationError
from voxcompare.core.volume import Volume

_POSITION = re.compile(r"^#(-?\d+)$")


def select_volumes(volumes: list[Volume], selector: str = "all") -> list[Volume]:
    """Select volumes with a selector string.

    Accepts: "all", "none", "first", "last", "#N" / "#-N" (zero-based
    position, negative counts from the end), or a regex fully matching the
    volume name (case-insensitive).
    """
    choice = selector.strip()
    lowered = choice.lower()
    if lowered == "all":
        return list(volumes)
    if lowered == "none":
        return []
    if lowered == "first":
        return volumes[:1]
    if lowered == "last":
        return volumes[-1:]

    m = _POSITION.match(choice)
    if m:
        idx = int(m.group(1))
        if -len(volumes) <= idx < len(volumes):
            return [volumes[idx]]
        return []

    try:
        pattern = re.compile(choice, re.IGNORECASE)
    except re.error as e:
        raise ConfigurationError(f"Invalid volume selector '{selector}': {e}")
    return [v for v in volumes if pattern.fullmatch(v.name)]


def select_reference(volumes: list[Volume], selector: str = "last") -> Volume:
    """Select exactly one reference volume, raising ConfigurationError otherwise."""
    selected = select_volumes(volumes, selector)
    if len(selected) != 1:
        raise ConfigurationError(
            f"Only one reference volume can be specified; selector '{selector}' "
            f"matched {len(selected)}."
        )
    return selected[0]
