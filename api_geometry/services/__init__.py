# api_geometry/services/__init__.py
"""
Services géométriques réutilisables (validation, découpe, fusion, mesures).
"""

from .validation import (
    validate_geometry,
    check_within_boundary,
    simplify_geometry,
    split_polygon,
    merge_polygons,
    calculate_geometry_metrics,
    buffer_geometry,
)

__all__ = [
    'validate_geometry',
    'check_within_boundary',
    'simplify_geometry',
    'split_polygon',
    'merge_polygons',
    'calculate_geometry_metrics',
    'buffer_geometry',
]
