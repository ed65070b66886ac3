"""Surface style validation.

Surface styles are the card palettes attached to goals, buckets and history
entries. The remote schema enforces the same closed list through a CHECK
constraint, so anything outside it must never be pushed.
"""

from typing import Any, Optional

from taskwatch.types import DEFAULT_SURFACE_STYLE, SURFACE_STYLES

_SURFACE_SET = frozenset(SURFACE_STYLES)


def sanitize_surface_style(value: Any) -> Optional[str]:
    """Return the style if it is a known surface, else None."""
    if isinstance(value, str) and value in _SURFACE_SET:
        return value
    return None


def ensure_surface_style(value: Any, fallback: str = DEFAULT_SURFACE_STYLE) -> str:
    """Return the style if known, else ``fallback``."""
    return sanitize_surface_style(value) or fallback
