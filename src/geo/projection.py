"""Flat local projection around a fixed origin (east = x, north = z, meters)."""

from __future__ import annotations

import math
from typing import TYPE_CHECKING

import numpy as np

from shared.constants import METERS_PER_DEG_LAT

if TYPE_CHECKING:
    from domain.models import Origin


class LocalProjection:
    """Equirectangular offsets from ``origin`` using a fixed meters-per-degree."""

    def __init__(self, origin: Origin) -> None:
        self.origin = origin
        self.meters_per_deg_lat = METERS_PER_DEG_LAT
        self.meters_per_deg_lon = METERS_PER_DEG_LAT * math.cos(
            math.radians(origin.latitude)
        )

    def to_local(self, latitude: float, longitude: float) -> tuple[float, float]:
        x = (longitude - self.origin.longitude) * self.meters_per_deg_lon
        z = (latitude - self.origin.latitude) * self.meters_per_deg_lat
        return x, z

    def to_geo(self, x: float, z: float) -> tuple[float, float]:
        """Inverse of :meth:`to_local`; returns (latitude, longitude)."""
        latitude = self.origin.latitude + z / self.meters_per_deg_lat
        longitude = self.origin.longitude + x / self.meters_per_deg_lon
        return latitude, longitude

    def to_local_many(
        self, latitudes: np.ndarray, longitudes: np.ndarray
    ) -> np.ndarray:
        """Vectorised :meth:`to_local`; returns an (N, 2) array of (x, z)."""
        lat = np.asarray(latitudes, dtype=np.float64)
        lon = np.asarray(longitudes, dtype=np.float64)
        out = np.empty((lat.shape[0], 2), dtype=np.float64)
        out[:, 0] = (lon - self.origin.longitude) * self.meters_per_deg_lon
        out[:, 1] = (lat - self.origin.latitude) * self.meters_per_deg_lat
        return out
