"""Pytest configuration and fixtures for terrain mesh tests."""

import sys
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest

# Add src directory to path for imports
src_path = Path(__file__).parent.parent / 'src'
sys.path.insert(0, str(src_path))

from cache.store import MemoryBlobStore  # noqa: E402
from domain.models import TerrainSettings  # noqa: E402
from elevation.fetcher import FetchResult  # noqa: E402
from shared.constants import TopologyKind  # noqa: E402


def _default_elevation(coord):
    return 100.0 + coord[0] * 2.0 + coord[1]


@pytest.fixture
def elevation_of():
    """Elevation the fake fetcher reports for a grid coordinate."""
    return _default_elevation


@pytest.fixture
def make_fetcher():
    """Factory for a fetcher double that resolves every point except ``fail``."""

    def factory(fail=(), elevation=_default_elevation):
        async def fetch_many(points, on_progress=None):
            return [
                FetchResult(
                    coord=p.coord,
                    latitude=p.latitude,
                    longitude=p.longitude,
                    elevation=None if p.coord in fail else elevation(p.coord),
                    attempts=1,
                )
                for p in points
            ]

        fetcher = MagicMock()
        fetcher.fetch_many = AsyncMock(side_effect=fetch_many)
        return fetcher

    return factory


@pytest.fixture
def square_settings():
    """4x4 square grid with a 10 m step."""
    return TerrainSettings(origin_lat=47.0, origin_lon=11.0, grid_size_m=20.0, resolution=4)


@pytest.fixture
def hex_settings():
    """Two-ring hex grid with a 10 m step."""
    return TerrainSettings(
        origin_lat=47.0,
        origin_lon=11.0,
        topology=TopologyKind.HEX,
        grid_size_m=20.0,
        resolution=2,
    )


@pytest.fixture
def store():
    return MemoryBlobStore()
