"""Grid topologies: deterministic mapping from grid slots to geographic points.

Two layouts are supported:

- ``SquareTopology``: a ``rows × cols`` lattice addressed by ``(row, col)``,
  rows growing northward and columns eastward. It can be extended one edge
  row/column at a time.
- ``HexTopology``: hexagonal rings around the origin addressed by axial
  ``(q, r)``. It can be extended one ring at a time.

Both produce :class:`SamplePoint` objects with unresolved elevation, in a
stable order, so a partially filled cache can be resumed by index.
"""

from __future__ import annotations

import math
from typing import TYPE_CHECKING

from domain.errors import TerrainConfigError
from domain.models import SamplePoint
from geo.projection import LocalProjection
from shared.constants import METERS_PER_DEG_LAT, WORLD_LAT_MAX_DEG, Edge, TopologyKind

if TYPE_CHECKING:
    from collections.abc import Iterator

    from domain.models import GridCoordinate, Origin, TerrainSettings

SQRT3_2 = math.sqrt(3.0) / 2.0

# Шаги обхода кольца: старт в (k, 0), k шагов в каждом направлении
HEX_RING_DIRECTIONS: tuple[tuple[int, int], ...] = (
    (-1, 1),
    (-1, 0),
    (0, -1),
    (1, -1),
    (1, 0),
    (0, 1),
)

HEX_NEIGHBOR_OFFSETS: tuple[tuple[int, int], ...] = (
    (1, 0),
    (0, 1),
    (-1, 1),
    (-1, 0),
    (0, -1),
    (1, -1),
)

SQUARE_NEIGHBOR_OFFSETS: tuple[tuple[int, int], ...] = (
    (-1, -1),
    (-1, 0),
    (-1, 1),
    (0, -1),
    (0, 1),
    (1, -1),
    (1, 0),
    (1, 1),
)


def _round_half_up(v: float) -> int:
    return math.floor(v + 0.5)


class GridTopology:
    """Common behaviour of grid layouts."""

    kind: TopologyKind

    def __init__(self, origin: Origin, step_m: float) -> None:
        if not (step_m > 0.0 and math.isfinite(step_m)):
            msg = f'Шаг сетки должен быть положительным: step_m={step_m}'
            raise TerrainConfigError(msg)
        if abs(origin.latitude) >= WORLD_LAT_MAX_DEG:
            # на полюсе шаг по долготе не определён
            msg = f'Начало координат на полюсе недопустимо: latitude={origin.latitude}'
            raise TerrainConfigError(msg)
        self.origin = origin
        self.step_m = float(step_m)
        self.projection = LocalProjection(origin)

    @property
    def capacity(self) -> int:
        raise NotImplementedError

    def coordinates(self) -> Iterator[GridCoordinate]:
        raise NotImplementedError

    def contains(self, coord: GridCoordinate) -> bool:
        raise NotImplementedError

    def neighbors(self, coord: GridCoordinate) -> list[GridCoordinate]:
        raise NotImplementedError

    def cell_center(self, coord: GridCoordinate) -> tuple[float, float]:
        raise NotImplementedError

    def cell_of(self, x: float, z: float) -> GridCoordinate:
        raise NotImplementedError

    def point_at(self, coord: GridCoordinate) -> SamplePoint:
        x, z = self.cell_center(coord)
        latitude, longitude = self.projection.to_geo(x, z)
        return SamplePoint(coord=coord, latitude=latitude, longitude=longitude)

    def generate(self, start_index: int = 0, count: int | None = None) -> list[SamplePoint]:
        """Return unresolved sample points for a slice of the ordered grid.

        Args:
            start_index: Position in the full ordered sequence to start from
                (resume after a partial cache load).
            count: Number of points to produce; None means "to the end".

        Returns:
            List of SamplePoint with ``elevation=None``.
        """
        if start_index < 0 or (count is not None and count < 0):
            msg = f'Некорректный диапазон генерации: start={start_index} count={count}'
            raise TerrainConfigError(msg)
        stop = self.capacity if count is None else min(self.capacity, start_index + count)
        out: list[SamplePoint] = []
        for idx, coord in enumerate(self.coordinates()):
            if idx >= stop:
                break
            if idx >= start_index:
                out.append(self.point_at(coord))
        return out


class SquareTopology(GridTopology):
    """Square lattice centred on the origin.

    The initial lattice is ``[0, resolution)²``; ``(row, col)`` is offset
    from the origin by ``(row - (resolution-1)/2) * step`` northward and
    ``(col - (resolution-1)/2) * step`` eastward.
    """

    kind = TopologyKind.SQUARE

    def __init__(self, origin: Origin, step_m: float, resolution: int) -> None:
        super().__init__(origin, step_m)
        if resolution < 1:
            msg = f'Разрешение сетки должно быть >= 1: resolution={resolution}'
            raise TerrainConfigError(msg)
        self.resolution = int(resolution)
        self.center = (self.resolution - 1) / 2.0
        self.delta_lat = self.step_m / METERS_PER_DEG_LAT
        self.delta_lon = self.step_m / (
            METERS_PER_DEG_LAT * math.cos(math.radians(origin.latitude))
        )
        self.row_min = 0
        self.row_max = self.resolution - 1
        self.col_min = 0
        self.col_max = self.resolution - 1

    @property
    def rows(self) -> int:
        return self.row_max - self.row_min + 1

    @property
    def cols(self) -> int:
        return self.col_max - self.col_min + 1

    @property
    def capacity(self) -> int:
        return self.rows * self.cols

    def coordinates(self) -> Iterator[GridCoordinate]:
        for row in range(self.row_min, self.row_max + 1):
            for col in range(self.col_min, self.col_max + 1):
                yield (row, col)

    def contains(self, coord: GridCoordinate) -> bool:
        row, col = coord
        return self.row_min <= row <= self.row_max and self.col_min <= col <= self.col_max

    def neighbors(self, coord: GridCoordinate) -> list[GridCoordinate]:
        row, col = coord
        return [
            (row + dr, col + dc)
            for dr, dc in SQUARE_NEIGHBOR_OFFSETS
            if self.contains((row + dr, col + dc))
        ]

    def cell_center(self, coord: GridCoordinate) -> tuple[float, float]:
        row, col = coord
        return (col - self.center) * self.step_m, (row - self.center) * self.step_m

    def cell_of(self, x: float, z: float) -> GridCoordinate:
        return (
            _round_half_up(z / self.step_m + self.center),
            _round_half_up(x / self.step_m + self.center),
        )

    def point_at(self, coord: GridCoordinate) -> SamplePoint:
        row, col = coord
        return SamplePoint(
            coord=coord,
            latitude=self.origin.latitude + (row - self.center) * self.delta_lat,
            longitude=self.origin.longitude + (col - self.center) * self.delta_lon,
        )

    def edge_extent(self, edge: Edge) -> float:
        """Distance in meters from the origin to the given boundary."""
        if edge is Edge.NORTH:
            return (self.row_max - self.center) * self.step_m
        if edge is Edge.SOUTH:
            return (self.center - self.row_min) * self.step_m
        if edge is Edge.EAST:
            return (self.col_max - self.center) * self.step_m
        return (self.center - self.col_min) * self.step_m

    @property
    def half_extent(self) -> float:
        return min(self.edge_extent(edge) for edge in Edge)

    def extend(self, edge: Edge) -> list[SamplePoint]:
        """Grow the lattice by one row or column on ``edge``; return the new band."""
        if edge is Edge.NORTH:
            self.row_max += 1
            band = [(self.row_max, c) for c in range(self.col_min, self.col_max + 1)]
        elif edge is Edge.SOUTH:
            self.row_min -= 1
            band = [(self.row_min, c) for c in range(self.col_min, self.col_max + 1)]
        elif edge is Edge.EAST:
            self.col_max += 1
            band = [(r, self.col_max) for r in range(self.row_min, self.row_max + 1)]
        else:
            self.col_min -= 1
            band = [(r, self.col_min) for r in range(self.row_min, self.row_max + 1)]
        return [self.point_at(coord) for coord in band]


def hex_distance(coord: GridCoordinate) -> int:
    """Ring index of an axial coordinate (hex distance from the centre)."""
    q, r = coord
    return (abs(q) + abs(r) + abs(q + r)) // 2


class HexTopology(GridTopology):
    """Hexagonal rings around the origin in axial coordinates.

    Neighbouring cells are ``step_m`` apart; ring ``k`` holds ``6k`` cells.
    """

    kind = TopologyKind.HEX

    def __init__(self, origin: Origin, step_m: float, rings: int) -> None:
        super().__init__(origin, step_m)
        if rings < 1:
            msg = f'Число колец должно быть >= 1: rings={rings}'
            raise TerrainConfigError(msg)
        self.rings = int(rings)

    @staticmethod
    def capacity_for(rings: int) -> int:
        return 1 + 3 * rings * (rings + 1)

    @property
    def capacity(self) -> int:
        return self.capacity_for(self.rings)

    @property
    def covered_radius(self) -> float:
        return self.rings * self.step_m

    @staticmethod
    def ring_coordinates(k: int) -> list[GridCoordinate]:
        if k == 0:
            return [(0, 0)]
        out: list[GridCoordinate] = []
        q, r = k, 0
        for dq, dr in HEX_RING_DIRECTIONS:
            for _ in range(k):
                out.append((q, r))
                q += dq
                r += dr
        return out

    def coordinates(self) -> Iterator[GridCoordinate]:
        for k in range(self.rings + 1):
            yield from self.ring_coordinates(k)

    def contains(self, coord: GridCoordinate) -> bool:
        return hex_distance(coord) <= self.rings

    def neighbors(self, coord: GridCoordinate) -> list[GridCoordinate]:
        q, r = coord
        return [
            (q + dq, r + dr)
            for dq, dr in HEX_NEIGHBOR_OFFSETS
            if self.contains((q + dq, r + dr))
        ]

    def cell_center(self, coord: GridCoordinate) -> tuple[float, float]:
        q, r = coord
        return self.step_m * (q + r / 2.0), self.step_m * SQRT3_2 * r

    def cell_of(self, x: float, z: float) -> GridCoordinate:
        fr = z / (self.step_m * SQRT3_2)
        fq = x / self.step_m - fr / 2.0
        fs = -fq - fr
        q, r, s = round(fq), round(fr), round(fs)
        dq, dr, ds = abs(q - fq), abs(r - fr), abs(s - fs)
        if dq > dr and dq > ds:
            q = -r - s
        elif dr > ds:
            r = -q - s
        return (int(q), int(r))

    def add_ring(self) -> list[SamplePoint]:
        """Grow coverage by one ring; return the new band."""
        self.rings += 1
        return [self.point_at(coord) for coord in self.ring_coordinates(self.rings)]


def make_topology(settings: TerrainSettings) -> GridTopology:
    if settings.topology is TopologyKind.SQUARE:
        return SquareTopology(settings.origin, settings.step_m, settings.resolution)
    if settings.topology is TopologyKind.HEX:
        return HexTopology(settings.origin, settings.step_m, settings.resolution)
    msg = f'Неизвестная топология: {settings.topology}'
    raise TerrainConfigError(msg)
