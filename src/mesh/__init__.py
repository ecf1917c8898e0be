"""Mesh module - triangulation of sample points and vertex colouring."""

from .builder import MeshBuilder, TerrainMesh
from .colors import ElevationColorRamp, color_for_elevation, lerp

__all__ = [
    'ElevationColorRamp',
    'MeshBuilder',
    'TerrainMesh',
    'color_for_elevation',
    'lerp',
]
