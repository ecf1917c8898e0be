"""Domain layer - terrain models, settings and errors."""
from domain.errors import ElevationFetchError, MeshBuildError, TerrainConfigError
from domain.models import GridCoordinate, Origin, SamplePoint, TerrainSettings

__all__ = [
    'ElevationFetchError',
    'GridCoordinate',
    'MeshBuildError',
    'Origin',
    'SamplePoint',
    'TerrainConfigError',
    'TerrainSettings',
]
