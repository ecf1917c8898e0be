"""Triangulated ground surface from sample points.

Square grids are triangulated block by block; hexagonal grids are stitched
ring to ring by an angular two-pointer merge. Every candidate triangle goes
through the same plausibility filters (3-D edge length, 2-D footprint area
and, optionally, overshadow).
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import TYPE_CHECKING

import numpy as np
from scipy.spatial import cKDTree

from domain.errors import MeshBuildError
from geo.topology import HexTopology, SquareTopology
from mesh.colors import ElevationColorRamp
from shared.constants import (
    DEFAULT_ELEVATION_M,
    ELEVATION_SCALE_DEFAULT,
    MAX_EDGE_LENGTH_M_DEFAULT,
    MAX_TRIANGLE_AREA_M2_DEFAULT,
    MismatchPolicy,
)
from shared.diagnostics import estimate_mesh_buffer_mb, log_memory_usage

if TYPE_CHECKING:
    from collections.abc import Sequence
    from pathlib import Path

    from domain.models import GridCoordinate, SamplePoint, TerrainSettings
    from geo.topology import GridTopology

logger = logging.getLogger(__name__)

# Допуск барицентрического теста: точки на рёбрах не считаются внутренними
_INSIDE_EPS = 1e-9
# Равные углы соседних колец: внутреннее кольцо продвигается первым
_ANGLE_EPS = 1e-9


@dataclass(frozen=True, eq=False)
class TerrainMesh:
    """Immutable render buffers plus build statistics."""

    positions: np.ndarray
    colors: np.ndarray
    indices: np.ndarray
    coordinates: tuple[GridCoordinate, ...] = ()
    skipped_blocks: int = 0
    skipped_triangles: int = 0
    synthesized: int = 0
    defaulted: int = 0
    collisions: int = 0
    reference_elevation_m: float = 0.0
    elevation_scale: float = 1.0

    def __post_init__(self) -> None:
        for arr in (self.positions, self.colors, self.indices):
            arr.flags.writeable = False

    @classmethod
    def empty(cls) -> TerrainMesh:
        return cls(
            positions=np.zeros((0, 3), dtype=np.float32),
            colors=np.zeros((0, 3), dtype=np.float32),
            indices=np.zeros((0, 3), dtype=np.uint32),
        )

    @property
    def vertex_count(self) -> int:
        return int(self.positions.shape[0])

    @property
    def triangle_count(self) -> int:
        return int(self.indices.shape[0])

    @property
    def is_empty(self) -> bool:
        return self.triangle_count == 0

    def triangles(self) -> np.ndarray:
        """(M, 3, 3) array of triangle corner positions."""
        return self.positions[self.indices.astype(np.int64)]

    def to_npz(self, path: str | Path) -> None:
        np.savez_compressed(
            path,
            positions=self.positions,
            colors=self.colors,
            indices=self.indices,
            coordinates=np.asarray(self.coordinates, dtype=np.int64).reshape(-1, 2),
        )


def triangle_area_2d(p0: np.ndarray, p1: np.ndarray, p2: np.ndarray) -> float:
    """Area of the (x, z) footprint of a triangle."""
    ux, uz = p1[0] - p0[0], p1[2] - p0[2]
    vx, vz = p2[0] - p0[0], p2[2] - p0[2]
    return 0.5 * abs(ux * vz - uz * vx)


def barycentric_2d(
    px: float, pz: float, a: np.ndarray, b: np.ndarray, c: np.ndarray
) -> tuple[float, float, float] | None:
    """Barycentric weights of (px, pz) in the (x, z) footprint; None if degenerate."""
    det = (b[2] - c[2]) * (a[0] - c[0]) + (c[0] - b[0]) * (a[2] - c[2])
    if abs(det) < 1e-12:
        return None
    w0 = ((b[2] - c[2]) * (px - c[0]) + (c[0] - b[0]) * (pz - c[2])) / det
    w1 = ((c[2] - a[2]) * (px - c[0]) + (a[0] - c[0]) * (pz - c[2])) / det
    return w0, w1, 1.0 - w0 - w1


class MeshBuilder:
    """Build :class:`TerrainMesh` objects for one topology instance.

    Usage:
        builder = MeshBuilder.from_settings(topology, settings)
        mesh = builder.build_full(cache.points)
    """

    def __init__(
        self,
        topology: GridTopology,
        *,
        max_edge_length_m: float = MAX_EDGE_LENGTH_M_DEFAULT,
        max_triangle_area_m2: float = MAX_TRIANGLE_AREA_M2_DEFAULT,
        overshadow_filter: bool = False,
        elevation_scale: float = ELEVATION_SCALE_DEFAULT,
        reference_elevation_m: float = 0.0,
        default_elevation_m: float = DEFAULT_ELEVATION_M,
        mismatch_policy: MismatchPolicy = MismatchPolicy.SYNTHESIZE,
        color_ramp: ElevationColorRamp | None = None,
    ) -> None:
        self.topology = topology
        self.max_edge_length_m = float(max_edge_length_m)
        self.max_triangle_area_m2 = float(max_triangle_area_m2)
        self.overshadow_filter = bool(overshadow_filter)
        self.elevation_scale = float(elevation_scale)
        self.reference_elevation_m = float(reference_elevation_m)
        self.default_elevation_m = float(default_elevation_m)
        self.mismatch_policy = MismatchPolicy(mismatch_policy)
        self.color_ramp = color_ramp or ElevationColorRamp(
            reference=self.reference_elevation_m
        )

    @classmethod
    def from_settings(cls, topology: GridTopology, settings: TerrainSettings) -> MeshBuilder:
        return cls(
            topology,
            max_edge_length_m=settings.max_edge_length_m,
            max_triangle_area_m2=settings.max_triangle_area_m2,
            overshadow_filter=settings.overshadow_filter,
            elevation_scale=settings.elevation_scale,
            reference_elevation_m=settings.reference_elevation_m,
            default_elevation_m=settings.default_elevation_m,
            mismatch_policy=settings.mismatch_policy,
            color_ramp=ElevationColorRamp(
                low=settings.color_low,
                high=settings.color_high,
                vmin=settings.color_min_m,
                vmax=settings.color_max_m,
                reference=settings.reference_elevation_m,
            ),
        )

    def height_of(self, elevation: float) -> float:
        """Mesh-space height (``y``) of an elevation in meters."""
        return (elevation - self.reference_elevation_m) * self.elevation_scale

    # --- Подготовка ячеек

    def assign_cells(
        self, points: Sequence[SamplePoint]
    ) -> tuple[dict[GridCoordinate, tuple[SamplePoint, float, float]], int]:
        """Bucket resolved points into their nearest topology cells.

        Returns:
            (cell -> (point, x, z), number of collisions resolved)
        """
        topo = self.topology
        cells: dict[GridCoordinate, tuple[SamplePoint, float, float]] = {}
        dist2: dict[GridCoordinate, float] = {}
        collisions = 0
        outside = 0
        for point in points:
            if point.elevation is None:
                continue
            x, z = topo.projection.to_local(point.latitude, point.longitude)
            coord = topo.cell_of(x, z)
            if not topo.contains(coord):
                outside += 1
                continue
            cx, cz = topo.cell_center(coord)
            d2 = (x - cx) ** 2 + (z - cz) ** 2
            if coord in cells:
                collisions += 1
                kept = cells[coord][0]
                if d2 < dist2[coord]:
                    cells[coord] = (point, x, z)
                    dist2[coord] = d2
                logger.warning(
                    'Cell %s collision: points %s and %s; keeping the closer one',
                    coord,
                    kept.coord,
                    point.coord,
                )
                continue
            cells[coord] = (point, x, z)
            dist2[coord] = d2
        if outside:
            logger.warning('%d points fall outside the grid and were ignored', outside)
        return cells, collisions

    def fill_missing(
        self, resolved: dict[GridCoordinate, float]
    ) -> tuple[dict[GridCoordinate, float], int, int]:
        """Elevation for every cell; missing cells averaged from resolved neighbours.

        Returns:
            (cell -> elevation, synthesized count, defaulted count)
        """
        out: dict[GridCoordinate, float] = {}
        synthesized = 0
        defaulted = 0
        for coord in self.topology.coordinates():
            value = resolved.get(coord)
            if value is not None:
                out[coord] = value
                continue
            around = [resolved[n] for n in self.topology.neighbors(coord) if n in resolved]
            if around:
                out[coord] = sum(around) / len(around)
                synthesized += 1
            else:
                out[coord] = self.default_elevation_m
                defaulted += 1
        return out, synthesized, defaulted

    # --- Фильтры треугольников

    def passes_shape(self, p0: np.ndarray, p1: np.ndarray, p2: np.ndarray) -> bool:
        """Edge length (3-D) and footprint area (2-D) limits."""
        limit = self.max_edge_length_m
        if (
            float(np.linalg.norm(p1 - p0)) > limit
            or float(np.linalg.norm(p2 - p1)) > limit
            or float(np.linalg.norm(p0 - p2)) > limit
        ):
            return False
        return triangle_area_2d(p0, p1, p2) <= self.max_triangle_area_m2

    def overshadows(
        self,
        tri: tuple[int, int, int],
        positions: np.ndarray,
        tree: cKDTree,
    ) -> bool:
        """True if another sample lies inside the footprint below the lowest corner."""
        a, b, c = (positions[i] for i in tri)
        cx = (a[0] + b[0] + c[0]) / 3.0
        cz = (a[2] + b[2] + c[2]) / 3.0
        radius = max(math.hypot(p[0] - cx, p[2] - cz) for p in (a, b, c))
        min_y = min(a[1], b[1], c[1])
        for idx in tree.query_ball_point([cx, cz], radius + 1e-6):
            if idx in tri:
                continue
            cand = positions[idx]
            if cand[1] >= min_y:
                continue
            w = barycentric_2d(cand[0], cand[2], a, b, c)
            if w is not None and min(w) > _INSIDE_EPS:
                return True
        return False

    # --- Сборка

    def _vertex_buffers(
        self,
        coords: list[GridCoordinate],
        xz: np.ndarray,
        elevations: np.ndarray,
    ) -> tuple[np.ndarray, np.ndarray]:
        positions = np.empty((len(coords), 3), dtype=np.float64)
        positions[:, 0] = xz[:, 0]
        positions[:, 1] = (elevations - self.reference_elevation_m) * self.elevation_scale
        positions[:, 2] = xz[:, 1]
        colors = self.color_ramp.colors(elevations)
        return positions, colors

    def _finish(
        self,
        coords: list[GridCoordinate],
        positions: np.ndarray,
        colors: np.ndarray,
        triangles: list[tuple[int, int, int]],
        **stats: int,
    ) -> TerrainMesh:
        indices = (
            np.asarray(triangles, dtype=np.uint32).reshape(-1, 3)
            if triangles
            else np.zeros((0, 3), dtype=np.uint32)
        )
        return TerrainMesh(
            positions=positions.astype(np.float32),
            colors=colors.astype(np.float32),
            indices=indices,
            coordinates=tuple(coords),
            reference_elevation_m=self.reference_elevation_m,
            elevation_scale=self.elevation_scale,
            **stats,
        )

    def build_full(self, points: Sequence[SamplePoint]) -> TerrainMesh:
        """Triangulate the whole grid from ``points``.

        Missing cells are synthesized from neighbours (``synthesize`` policy)
        or rejected with MeshBuildError (``abort`` policy).
        """
        points = list(points)
        if not points:
            msg = 'Нет точек для построения меша'
            raise MeshBuildError(msg)

        capacity = self.topology.capacity
        if len(points) != capacity:
            if self.mismatch_policy is MismatchPolicy.ABORT:
                msg = f'Число точек {len(points)} не совпадает с ёмкостью сетки {capacity}'
                raise MeshBuildError(msg)
            logger.warning(
                'Point count %d differs from grid capacity %d; missing cells are synthesized',
                len(points),
                capacity,
            )

        cells, collisions = self.assign_cells(points)
        if self.mismatch_policy is MismatchPolicy.ABORT and len(cells) != capacity:
            msg = f'Заполнено {len(cells)} из {capacity} ячеек сетки'
            raise MeshBuildError(msg)

        resolved = {coord: float(p.elevation) for coord, (p, _, _) in cells.items()}
        elevations_by_cell, synthesized, defaulted = self.fill_missing(resolved)
        if synthesized or defaulted:
            logger.warning(
                'Synthesized %d cells from neighbours, %d set to default elevation %.1f m',
                synthesized,
                defaulted,
                self.default_elevation_m,
            )

        coords = list(self.topology.coordinates())
        xz = np.empty((len(coords), 2), dtype=np.float64)
        for i, coord in enumerate(coords):
            hit = cells.get(coord)
            if hit is not None:
                xz[i] = (hit[1], hit[2])
            else:
                xz[i] = self.topology.cell_center(coord)
        elevations = np.array([elevations_by_cell[c] for c in coords], dtype=np.float64)
        positions, colors = self._vertex_buffers(coords, xz, elevations)
        index_of = {coord: i for i, coord in enumerate(coords)}
        tree = cKDTree(positions[:, [0, 2]]) if self.overshadow_filter else None

        topo = self.topology
        if isinstance(topo, SquareTopology):
            triangles, skipped_blocks, skipped = self._triangulate_square(
                topo, index_of, positions, tree
            )
        elif isinstance(topo, HexTopology):
            triangles, skipped = self._triangulate_rings(topo, index_of, positions, tree)
            skipped_blocks = 0
        else:
            msg = f'Неподдерживаемая топология: {type(self.topology).__name__}'
            raise MeshBuildError(msg)

        mesh = self._finish(
            coords,
            positions,
            colors,
            triangles,
            skipped_blocks=skipped_blocks,
            skipped_triangles=skipped,
            synthesized=synthesized,
            defaulted=defaulted,
            collisions=collisions,
        )
        logger.info(
            'Mesh built: %d vertices, %d triangles, %d skipped (%s), buffers %.3fMB',
            mesh.vertex_count,
            mesh.triangle_count,
            skipped,
            self.topology.kind.value,
            estimate_mesh_buffer_mb(mesh.vertex_count, mesh.triangle_count),
        )
        log_memory_usage('after mesh build')
        return mesh

    def _triangulate_square(
        self,
        topo: SquareTopology,
        index_of: dict[GridCoordinate, int],
        positions: np.ndarray,
        tree: cKDTree | None,
    ) -> tuple[list[tuple[int, int, int]], int, int]:
        rows, cols = topo.rows, topo.cols
        if rows < 2 or cols < 2:
            return [], 0, 0

        grid = positions.reshape(rows, cols, 3)
        a = grid[:-1, :-1]
        b = grid[:-1, 1:]
        c = grid[1:, :-1]
        d = grid[1:, 1:]

        def _len(p: np.ndarray, q: np.ndarray) -> np.ndarray:
            return np.linalg.norm(p - q, axis=-1)

        def _area(p: np.ndarray, q: np.ndarray, r: np.ndarray) -> np.ndarray:
            return 0.5 * np.abs(
                (q[..., 0] - p[..., 0]) * (r[..., 2] - p[..., 2])
                - (q[..., 2] - p[..., 2]) * (r[..., 0] - p[..., 0])
            )

        limit = self.max_edge_length_m
        edges_ok = (
            (_len(a, c) <= limit)
            & (_len(c, b) <= limit)
            & (_len(b, a) <= limit)
            & (_len(c, d) <= limit)
            & (_len(d, b) <= limit)
        )
        area_ok = (_area(a, c, b) <= self.max_triangle_area_m2) & (
            _area(b, c, d) <= self.max_triangle_area_m2
        )
        ok = edges_ok & area_ok

        triangles: list[tuple[int, int, int]] = []
        skipped_blocks = 0
        for i in range(rows - 1):
            for j in range(cols - 1):
                if not ok[i, j]:
                    skipped_blocks += 1
                    continue
                ia = i * cols + j
                ib = ia + 1
                ic = ia + cols
                id_ = ic + 1
                t1 = (ia, ic, ib)
                t2 = (ib, ic, id_)
                if tree is not None and (
                    self.overshadows(t1, positions, tree)
                    or self.overshadows(t2, positions, tree)
                ):
                    skipped_blocks += 1
                    continue
                triangles.append(t1)
                triangles.append(t2)
        return triangles, skipped_blocks, 2 * skipped_blocks

    def _stitch(
        self,
        inner: list[int],
        outer: list[int],
        positions: np.ndarray,
        tree: cKDTree | None,
    ) -> tuple[list[tuple[int, int, int]], int]:
        """Stitch two rings of vertex indices with an angular two-pointer merge."""
        if not inner or not outer:
            return [], 0

        def _sorted(ring: list[int]) -> tuple[list[int], list[float]]:
            ang = [math.atan2(positions[i][2], positions[i][0]) for i in ring]
            order = sorted(range(len(ring)), key=lambda k: (ang[k], ring[k]))
            idx = [ring[k] for k in order]
            th = [ang[k] for k in order]
            th.append(th[0] + 2.0 * math.pi)
            return idx, th

        ins, th_in = _sorted(inner)
        outs, th_out = _sorted(outer)
        ni, no = len(ins), len(outs)
        triangles: list[tuple[int, int, int]] = []
        skipped = 0
        i = j = 0
        while i < ni or j < no:
            advance_inner = j >= no or (
                i < ni and th_in[i + 1] <= th_out[j + 1] + _ANGLE_EPS
            )
            if advance_inner:
                tri = (ins[i % ni], ins[(i + 1) % ni], outs[j % no])
                i += 1
            else:
                tri = (ins[i % ni], outs[(j + 1) % no], outs[j % no])
                j += 1
            if len(set(tri)) < 3:
                continue
            p0, p1, p2 = positions[tri[0]], positions[tri[1]], positions[tri[2]]
            if not self.passes_shape(p0, p1, p2) or (
                tree is not None and self.overshadows(tri, positions, tree)
            ):
                skipped += 1
                continue
            triangles.append(tri)
        return triangles, skipped

    def _triangulate_rings(
        self,
        topo: HexTopology,
        index_of: dict[GridCoordinate, int],
        positions: np.ndarray,
        tree: cKDTree | None,
    ) -> tuple[list[tuple[int, int, int]], int]:
        triangles: list[tuple[int, int, int]] = []
        skipped = 0
        prev = [index_of[c] for c in topo.ring_coordinates(0)]
        for k in range(1, topo.rings + 1):
            ring = [index_of[c] for c in topo.ring_coordinates(k)]
            band, band_skipped = self._stitch(prev, ring, positions, tree)
            triangles.extend(band)
            skipped += band_skipped
            prev = ring
        return triangles, skipped

    def build_band(
        self,
        inner: Sequence[SamplePoint],
        outer: Sequence[SamplePoint],
    ) -> TerrainMesh:
        """Standalone mesh stitching two rings of points (a single expansion band).

        Unresolved points take the default elevation.
        """
        pts = [*inner, *outer]
        if not pts:
            msg = 'Нет точек для построения полосы'
            raise MeshBuildError(msg)
        proj = self.topology.projection
        coords = [p.coord for p in pts]
        xz = np.array(
            [proj.to_local(p.latitude, p.longitude) for p in pts], dtype=np.float64
        ).reshape(-1, 2)
        elevations = np.array(
            [
                self.default_elevation_m if p.elevation is None else p.elevation
                for p in pts
            ],
            dtype=np.float64,
        )
        positions, colors = self._vertex_buffers(coords, xz, elevations)
        tree = cKDTree(positions[:, [0, 2]]) if self.overshadow_filter else None
        n_in = len(inner)
        triangles, skipped = self._stitch(
            list(range(n_in)), list(range(n_in, len(pts))), positions, tree
        )
        logger.debug(
            'Band built: %d + %d points, %d triangles, %d skipped',
            n_in,
            len(outer),
            len(triangles),
            skipped,
        )
        return self._finish(coords, positions, colors, triangles, skipped_triangles=skipped)
