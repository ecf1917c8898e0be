"""Owner object for one topology instance.

A :class:`TerrainSession` holds everything that belongs to one origin:
settings, topology, point cache, mesh builder, spatial index, the current
mesh and the expansion controller. Nothing is looked up globally.
"""

from __future__ import annotations

import logging
import time
from typing import TYPE_CHECKING

from cache.point_cache import PointCache
from cache.store import MemoryBlobStore, SqliteBlobStore
from elevation.fetcher import ElevationFetcher
from geo.topology import HexTopology, SquareTopology, make_topology
from infrastructure.http.client import make_http_session, resolve_cache_dir
from mesh.builder import MeshBuilder
from query.spatial import SpatialIndex, SpatialQuery
from shared.diagnostics import log_memory_usage
from terrain.controller import ExpansionController

if TYPE_CHECKING:
    from collections.abc import Sequence

    from cache.point_cache import SaveReport
    from cache.store import BlobStore
    from domain.models import SamplePoint, TerrainSettings
    from mesh.builder import TerrainMesh
    from shared.constants import Edge

logger = logging.getLogger(__name__)


class TerrainSession:
    """Cached elevation samples and the mesh built from them.

    Usage:
        session = TerrainSession(settings)
        mesh = await session.initialize()
        y = session.update_observer(x, z)
        await session.controller.tick()
    """

    def __init__(
        self,
        settings: TerrainSettings,
        *,
        store: BlobStore | None = None,
        fetcher: ElevationFetcher | None = None,
    ) -> None:
        self.settings = settings
        self.origin = settings.origin
        self.topology = make_topology(settings)
        self._owns_store = store is None
        if store is None:
            cache_file = settings.cache_file
            store = SqliteBlobStore(cache_file) if cache_file else MemoryBlobStore()
        self.store = store
        self.cache = PointCache(
            store,
            self.topology.capacity,
            key=settings.cache_key,
            accepts=self.topology.contains,
        )
        self.builder = MeshBuilder.from_settings(self.topology, settings)
        self.index = SpatialIndex(self.topology.projection)
        self.query = SpatialQuery(
            self.index,
            height_policy=settings.height_policy,
            mesh_provider=lambda: self._mesh,
            reference_elevation_m=settings.reference_elevation_m,
            elevation_scale=settings.elevation_scale,
        )
        self.fetcher = fetcher
        self.controller = ExpansionController(self, settings.expansion_fraction)
        self.epoch = 0
        self._mesh: TerrainMesh | None = None

    @property
    def current_mesh(self) -> TerrainMesh | None:
        """Latest complete mesh; replaced as a whole on every rebuild."""
        return self._mesh

    def swap_mesh(self, mesh: TerrainMesh) -> TerrainMesh | None:
        previous, self._mesh = self._mesh, mesh
        self.epoch += 1
        return previous

    # --- Кэш

    def load_cached(self) -> list[SamplePoint]:
        points = self.cache.load()
        self.index.add(points)
        return points

    def pending_points(self) -> list[SamplePoint]:
        """Grid points not yet cached, resuming after a partial cache."""
        n = len(self.cache)
        prefix = [c for c, _ in zip(self.topology.coordinates(), range(n))]
        if len(prefix) == n and all(c in self.cache for c in prefix):
            return self.topology.generate(start_index=n)
        logger.info('Cached points are not a prefix of the grid; scanning for gaps')
        return [
            self.topology.point_at(c)
            for c in self.topology.coordinates()
            if c not in self.cache
        ]

    def merge(self, points: Sequence[SamplePoint]) -> SaveReport:
        report = self.cache.save(points)
        self.index.add(p for p in points if p.coord in self.cache)
        return report

    # --- Загрузка высот

    async def fetch(self, points: Sequence[SamplePoint]) -> list[SamplePoint]:
        """Resolve elevations; failed points come back unresolved."""
        if not points:
            return []
        if self.fetcher is not None:
            results = await self.fetcher.fetch_many(points)
        else:
            use_cache = self.settings.http_cache_enabled
            cache_dir = resolve_cache_dir() if use_cache else None
            async with make_http_session(cache_dir, use_cache=use_cache) as client:
                fetcher = ElevationFetcher.from_settings(client, self.settings)
                results = await fetcher.fetch_many(points)
        return [r.to_point() for r in results]

    # --- Меш

    def rebuild(self) -> TerrainMesh:
        mesh = self.builder.build_full(self.cache.points)
        self.swap_mesh(mesh)
        return mesh

    async def initialize(self, *, fetch: bool = True) -> TerrainMesh | None:
        """Load the cache, fetch what is missing, save it and build the mesh.

        With ``fetch=False`` only cached points are used. Returns None when
        there is nothing to build from.
        """
        started = time.perf_counter()
        cached = self.load_cached()
        logger.info(
            'Session init: %s grid, %d/%d points cached',
            self.topology.kind.value,
            len(cached),
            self.topology.capacity,
        )
        if fetch:
            pending = self.pending_points()
            if pending:
                fetched = await self.fetch(pending)
                report = self.merge(fetched)
                if report.unresolved:
                    logger.warning(
                        '%d points stayed unresolved and will be synthesized',
                        report.unresolved,
                    )
        if len(self.cache) == 0:
            logger.warning('No resolved points available; mesh not built')
            return None
        mesh = self.rebuild()
        logger.info('Session ready in %.2fs', time.perf_counter() - started)
        log_memory_usage('after session init')
        return mesh

    # --- Расширение

    def grow(self, edge: Edge | None) -> list[SamplePoint]:
        """Extend the topology by one band and return its unresolved points."""
        topo = self.topology
        if isinstance(topo, SquareTopology):
            if edge is None:
                msg = 'Для квадратной сетки требуется направление расширения'
                raise ValueError(msg)
            band = topo.extend(edge)
        elif isinstance(topo, HexTopology):
            band = topo.add_ring()
        else:
            msg = f'Неподдерживаемая топология: {type(topo).__name__}'
            raise TypeError(msg)
        self.cache.capacity = topo.capacity
        return band

    # --- Запросы

    def nearest(self, x: float, z: float) -> SamplePoint | None:
        return self.query.nearest(x, z)

    def height_at(self, x: float, z: float) -> float:
        return self.query.height_at(x, z)

    def update_observer(self, x: float, z: float) -> float:
        return self.controller.update_observer(x, z)

    async def close(self) -> None:
        """Finish any in-flight expansion and release the owned store."""
        await self.controller.wait_in_flight()
        if self._owns_store and isinstance(self.store, SqliteBlobStore):
            self.store.close()
