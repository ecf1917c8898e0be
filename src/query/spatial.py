"""Nearest-sample and height-at-point lookups over cached points."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

import numpy as np
from scipy.spatial import cKDTree

from shared.constants import HeightPolicy

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable

    from domain.models import GridCoordinate, SamplePoint
    from geo.projection import LocalProjection
    from mesh.builder import TerrainMesh

logger = logging.getLogger(__name__)

# Допуск попадания луча: точки на рёбрах треугольника считаются попаданием
_HIT_EPS = 1e-9


class SpatialIndex:
    """Resolved points with a k-d tree over their projected (x, z).

    The tree is rebuilt lazily after points are added. Results match a
    brute-force scan exactly, including ties (lowest insertion index wins).
    """

    def __init__(self, projection: LocalProjection) -> None:
        self.projection = projection
        self._points: list[SamplePoint] = []
        self._xz: list[tuple[float, float]] = []
        self._slot: dict[GridCoordinate, int] = {}
        self._tree: cKDTree | None = None
        self._xz_arr: np.ndarray | None = None
        self._dirty = False

    def __len__(self) -> int:
        return len(self._points)

    @property
    def points(self) -> list[SamplePoint]:
        return list(self._points)

    def add(self, points: Iterable[SamplePoint]) -> int:
        """Index resolved points; a known coordinate is replaced in place.

        Returns the number of newly indexed coordinates.
        """
        added = 0
        for point in points:
            if point.elevation is None:
                continue
            xz = self.projection.to_local(point.latitude, point.longitude)
            slot = self._slot.get(point.coord)
            if slot is not None:
                self._points[slot] = point
                self._xz[slot] = xz
            else:
                self._slot[point.coord] = len(self._points)
                self._points.append(point)
                self._xz.append(xz)
                added += 1
            self._dirty = True
        return added

    def _ensure_tree(self) -> tuple[cKDTree, np.ndarray]:
        if self._dirty or self._tree is None or self._xz_arr is None:
            self._xz_arr = np.asarray(self._xz, dtype=np.float64).reshape(-1, 2)
            self._tree = cKDTree(self._xz_arr)
            self._dirty = False
            logger.debug('Spatial index rebuilt: %d points', len(self._points))
        return self._tree, self._xz_arr

    def nearest(self, x: float, z: float) -> SamplePoint | None:
        if not self._points:
            return None
        tree, xz_arr = self._ensure_tree()
        dist, _ = tree.query([x, z], k=1)
        # все точки на том же расстоянии: выбираем первую по порядку вставки
        radius = float(dist) * (1.0 + 1e-9) + 1e-9
        candidates = tree.query_ball_point([x, z], radius)
        best_idx = -1
        best_d2 = float('inf')
        for idx in sorted(candidates):
            dx = xz_arr[idx, 0] - x
            dz = xz_arr[idx, 1] - z
            d2 = dx * dx + dz * dz
            if d2 < best_d2:
                best_d2 = d2
                best_idx = idx
        return self._points[best_idx]

    def nearest_bruteforce(self, x: float, z: float) -> SamplePoint | None:
        """Linear scan; the reference for :meth:`nearest`."""
        best: SamplePoint | None = None
        best_d2 = float('inf')
        for point, (px, pz) in zip(self._points, self._xz):
            d2 = (px - x) * (px - x) + (pz - z) * (pz - z)
            if d2 < best_d2:
                best_d2 = d2
                best = point
        return best


def raycast_height(mesh: TerrainMesh, x: float, z: float) -> float | None:
    """Highest mesh-space height hit by a vertical ray at (x, z); None on miss."""
    if mesh.triangle_count == 0:
        return None
    tris = mesh.triangles().astype(np.float64)
    ax, az = tris[:, 0, 0], tris[:, 0, 2]
    bx, bz = tris[:, 1, 0], tris[:, 1, 2]
    cx, cz = tris[:, 2, 0], tris[:, 2, 2]

    in_box = (
        (np.minimum(np.minimum(ax, bx), cx) <= x)
        & (x <= np.maximum(np.maximum(ax, bx), cx))
        & (np.minimum(np.minimum(az, bz), cz) <= z)
        & (z <= np.maximum(np.maximum(az, bz), cz))
    )
    if not in_box.any():
        return None
    t = tris[in_box]
    ax, az, ay = t[:, 0, 0], t[:, 0, 2], t[:, 0, 1]
    bx, bz, by = t[:, 1, 0], t[:, 1, 2], t[:, 1, 1]
    cx, cz, cy = t[:, 2, 0], t[:, 2, 2], t[:, 2, 1]

    det = (bz - cz) * (ax - cx) + (cx - bx) * (az - cz)
    valid = np.abs(det) > 1e-12
    safe = np.where(valid, det, 1.0)
    w0 = ((bz - cz) * (x - cx) + (cx - bx) * (z - cz)) / safe
    w1 = ((cz - az) * (x - cx) + (ax - cx) * (z - cz)) / safe
    w2 = 1.0 - w0 - w1
    hit = valid & (w0 >= -_HIT_EPS) & (w1 >= -_HIT_EPS) & (w2 >= -_HIT_EPS)
    if not hit.any():
        return None
    heights = w0 * ay + w1 * by + w2 * cy
    return float(heights[hit].max())


class SpatialQuery:
    """``nearest`` and ``height_at`` for movement and physics consumers.

    ``height_at`` answers in mesh space, ``(elevation - reference) * scale``,
    under both policies and returns 0.0 when nothing can be answered.
    """

    def __init__(
        self,
        index: SpatialIndex,
        *,
        height_policy: HeightPolicy = HeightPolicy.NEAREST,
        mesh_provider: Callable[[], TerrainMesh | None] | None = None,
        reference_elevation_m: float = 0.0,
        elevation_scale: float = 1.0,
    ) -> None:
        self.index = index
        self.height_policy = HeightPolicy(height_policy)
        self.mesh_provider = mesh_provider
        self.reference_elevation_m = float(reference_elevation_m)
        self.elevation_scale = float(elevation_scale)

    def nearest(self, x: float, z: float) -> SamplePoint | None:
        return self.index.nearest(x, z)

    def height_at(self, x: float, z: float) -> float:
        if self.height_policy is HeightPolicy.RAYCAST:
            mesh = self.mesh_provider() if self.mesh_provider is not None else None
            if mesh is None:
                return 0.0
            hit = raycast_height(mesh, x, z)
            return 0.0 if hit is None else hit
        point = self.index.nearest(x, z)
        if point is None or point.elevation is None:
            return 0.0
        return (point.elevation - self.reference_elevation_m) * self.elevation_scale
