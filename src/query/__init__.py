"""Spatial query module - nearest sample and height lookups."""

from .spatial import SpatialIndex, SpatialQuery, raycast_height

__all__ = [
    'SpatialIndex',
    'SpatialQuery',
    'raycast_height',
]
