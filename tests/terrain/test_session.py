"""Tests for TerrainSession."""

from dataclasses import replace

import pytest

from cache.point_cache import PointCache
from geo.topology import make_topology
from shared.constants import Edge, HeightPolicy
from terrain.session import TerrainSession


def _seed(store, settings, elevation_of, chosen):
    """Pre-populate the point cache as a previous session would have."""
    topo = make_topology(settings)
    points = topo.generate()
    if isinstance(chosen, int):
        points = points[:chosen]
    else:
        points = [p for p in points if p.coord in chosen]
    PointCache(store, topo.capacity, key=settings.cache_key).save(
        [replace(p, elevation=elevation_of(p.coord)) for p in points]
    )


class TestInitialize:
    """Cold start and resume."""

    @pytest.mark.asyncio
    async def test_cold_start_fetches_whole_grid(self, square_settings, store, make_fetcher):
        fetcher = make_fetcher()
        session = TerrainSession(square_settings, store=store, fetcher=fetcher)
        mesh = await session.initialize()

        requested = fetcher.fetch_many.await_args.args[0]
        assert [p.coord for p in requested] == list(session.topology.coordinates())
        assert len(session.cache) == 16
        assert len(session.index) == 16
        assert mesh is session.current_mesh
        assert mesh.vertex_count == 16
        assert mesh.triangle_count == 18
        assert session.epoch == 1

    @pytest.mark.asyncio
    async def test_resume_fetches_only_remaining_suffix(
        self, square_settings, store, make_fetcher, elevation_of
    ):
        _seed(store, square_settings, elevation_of, 6)
        fetcher = make_fetcher()
        session = TerrainSession(square_settings, store=store, fetcher=fetcher)
        await session.initialize()

        requested = fetcher.fetch_many.await_args.args[0]
        assert [p.coord for p in requested] == list(session.topology.coordinates())[6:]
        assert len(session.cache) == 16

    @pytest.mark.asyncio
    async def test_gaps_scanned_when_not_a_prefix(
        self, square_settings, store, make_fetcher, elevation_of
    ):
        _seed(store, square_settings, elevation_of, {(0, 3), (2, 1)})
        fetcher = make_fetcher()
        session = TerrainSession(square_settings, store=store, fetcher=fetcher)
        await session.initialize()

        requested = {p.coord for p in fetcher.fetch_many.await_args.args[0]}
        assert len(requested) == 14
        assert (0, 3) not in requested
        assert (2, 1) not in requested

    @pytest.mark.asyncio
    async def test_full_cache_skips_fetch(
        self, square_settings, store, make_fetcher, elevation_of
    ):
        _seed(store, square_settings, elevation_of, 16)
        fetcher = make_fetcher()
        session = TerrainSession(square_settings, store=store, fetcher=fetcher)
        mesh = await session.initialize()
        fetcher.fetch_many.assert_not_awaited()
        assert mesh.triangle_count == 18

    @pytest.mark.asyncio
    async def test_failed_points_synthesized(self, square_settings, store, make_fetcher):
        session = TerrainSession(
            square_settings, store=store, fetcher=make_fetcher(fail={(1, 1)})
        )
        mesh = await session.initialize()
        assert len(session.cache) == 15
        assert (1, 1) not in session.cache
        assert mesh.synthesized == 1
        assert mesh.vertex_count == 16

    @pytest.mark.asyncio
    async def test_restart_after_expansion_refetches_gap(
        self, square_settings, store, make_fetcher
    ):
        """Band points from a grown grid do not crowd out a missing in-grid cell."""
        first = TerrainSession(
            square_settings, store=store, fetcher=make_fetcher(fail={(1, 1)})
        )
        await first.initialize()
        band = first.grow(Edge.NORTH)
        first.merge(await first.fetch(band))
        assert len(first.cache) == 19

        fetcher = make_fetcher()
        second = TerrainSession(square_settings, store=store, fetcher=fetcher)
        mesh = await second.initialize()

        requested = [p.coord for p in fetcher.fetch_many.await_args.args[0]]
        assert requested == [(1, 1)]
        assert (1, 1) in second.cache
        assert len(second.cache) == 16
        assert all(second.topology.contains(p.coord) for p in second.cache.points)
        assert len(second.index) == 16
        assert mesh.synthesized == 0

    @pytest.mark.asyncio
    async def test_cache_only_without_points(self, square_settings, store, make_fetcher):
        fetcher = make_fetcher()
        session = TerrainSession(square_settings, store=store, fetcher=fetcher)
        assert await session.initialize(fetch=False) is None
        assert session.current_mesh is None
        fetcher.fetch_many.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_owned_sqlite_store_closed(self, square_settings, tmp_path, make_fetcher):
        settings = square_settings.model_copy(
            update={'cache_path': str(tmp_path / 'points.sqlite')}
        )
        session = TerrainSession(settings, fetcher=make_fetcher())
        await session.initialize()
        await session.close()
        with pytest.raises(RuntimeError):
            session.store.get(settings.cache_key)

        reopened = TerrainSession(settings, fetcher=make_fetcher())
        assert len(reopened.load_cached()) == 16
        await reopened.close()


class TestQueries:
    """Queries answered from the session's index and mesh."""

    @pytest.mark.asyncio
    async def test_nearest_and_height(self, square_settings, store, make_fetcher, elevation_of):
        session = TerrainSession(square_settings, store=store, fetcher=make_fetcher())
        await session.initialize()
        # (2, 2) находится в (5, 5) м от начала координат
        point = session.nearest(6.0, 4.0)
        assert point.coord == (2, 2)
        assert session.height_at(6.0, 4.0) == pytest.approx(elevation_of((2, 2)))

    @pytest.mark.asyncio
    async def test_raycast_policy(self, square_settings, store, make_fetcher):
        settings = square_settings.model_copy(update={'height_policy': HeightPolicy.RAYCAST})
        session = TerrainSession(
            settings, store=store, fetcher=make_fetcher(elevation=lambda c: 50.0)
        )
        await session.initialize()
        assert session.height_at(0.0, 0.0) == pytest.approx(50.0)
        assert session.height_at(999.0, 0.0) == 0.0

    def test_height_before_initialize(self, square_settings, store):
        session = TerrainSession(square_settings, store=store)
        assert session.height_at(0.0, 0.0) == 0.0
        assert session.nearest(0.0, 0.0) is None


class TestGrow:
    """Topology growth keeps the cache capacity in step."""

    def test_square_edge(self, square_settings, store):
        session = TerrainSession(square_settings, store=store)
        band = session.grow(Edge.EAST)
        assert [p.coord for p in band] == [(r, 4) for r in range(4)]
        assert session.cache.capacity == 20

    def test_square_requires_edge(self, square_settings, store):
        session = TerrainSession(square_settings, store=store)
        with pytest.raises(ValueError):
            session.grow(None)

    def test_hex_ring(self, hex_settings, store):
        session = TerrainSession(hex_settings, store=store)
        band = session.grow(None)
        assert len(band) == 18
        assert session.cache.capacity == 37

    def test_merge_indexes_only_cached(self, square_settings, store):
        session = TerrainSession(square_settings, store=store)
        points = [replace(p, elevation=1.0) for p in session.topology.generate()]
        session.cache.capacity = 3
        report = session.merge(points[:5])
        assert report.saved == 3
        assert report.dropped == 2
        assert len(session.index) == 3
