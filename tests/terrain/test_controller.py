"""Tests for ExpansionController."""

from unittest.mock import patch

import pytest

from domain.errors import MeshBuildError
from shared.constants import Edge
from terrain.controller import ExpansionController, ExpansionRequest, ExpansionState
from terrain.session import TerrainSession


async def _ready_session(settings, store, fetcher):
    session = TerrainSession(settings, store=store, fetcher=fetcher)
    await session.initialize()
    return session


async def _drive(controller, limit=50):
    """Tick until idle, collecting distinct consecutive states."""
    states = []
    for _ in range(limit):
        state = await controller.tick()
        if not states or states[-1] is not state:
            states.append(state)
        if state is ExpansionState.IDLE and not controller.busy:
            break
    return states


class TestTrigger:
    """When and where growth is requested."""

    def test_fraction_validated(self, square_settings, store):
        session = TerrainSession(square_settings, store=store)
        with pytest.raises(ValueError):
            ExpansionController(session, 0.0)
        with pytest.raises(ValueError):
            ExpansionController(session, 1.5)

    def test_inside_no_trigger(self, square_settings, store):
        controller = TerrainSession(square_settings, store=store).controller
        # крайние центры ячеек в 15 м, порог 0.8 * 15 = 12 м
        assert controller.check_trigger(11.0, 0.0) is None
        assert controller.check_trigger(0.0, -11.9) is None

    @pytest.mark.parametrize(
        ('x', 'z', 'edge'),
        [(13.0, 1.0, Edge.EAST), (-13.0, 2.0, Edge.WEST), (3.0, 14.0, Edge.NORTH), (0.0, -20.0, Edge.SOUTH)],
    )
    def test_square_edge_from_displacement(self, square_settings, store, x, z, edge):
        controller = TerrainSession(square_settings, store=store).controller
        assert controller.check_trigger(x, z) == ExpansionRequest(edge=edge, x=x, z=z)

    def test_movement_direction_picks_edge(self, square_settings, store):
        """The dominant axis of the last move wins over the position."""
        session = TerrainSession(square_settings, store=store)
        controller = session.controller
        controller.update_observer(11.0, 0.0)
        controller.update_observer(11.0, 9.0)
        assert controller.pending.edge is Edge.NORTH

    def test_hex_uses_covered_radius(self, hex_settings, store):
        controller = TerrainSession(hex_settings, store=store).controller
        # два кольца по 10 м: порог 16 м
        assert controller.check_trigger(15.0, 0.0) is None
        request = controller.check_trigger(0.0, 17.0)
        assert request is not None
        assert request.edge is None


class TestObserver:
    """update_observer answers immediately and queues at most one request."""

    @pytest.mark.asyncio
    async def test_height_answered_from_cache(
        self, square_settings, store, make_fetcher, elevation_of
    ):
        session = await _ready_session(square_settings, store, make_fetcher())
        height = session.update_observer(14.0, 14.0)
        assert height == pytest.approx(elevation_of((3, 3)))
        assert session.controller.pending is not None
        assert session.controller.state is ExpansionState.IDLE

    @pytest.mark.asyncio
    async def test_single_pending_slot(self, square_settings, store, make_fetcher):
        session = await _ready_session(square_settings, store, make_fetcher())
        controller = session.controller
        controller.update_observer(13.0, 0.0)
        controller.update_observer(0.0, -13.0)
        assert controller.pending.edge is Edge.EAST

    @pytest.mark.asyncio
    async def test_trigger_ignored_while_in_flight(self, square_settings, store, make_fetcher):
        session = await _ready_session(square_settings, store, make_fetcher())
        controller = session.controller
        controller.update_observer(13.0, 0.0)
        await controller.tick()
        assert controller.state is ExpansionState.FETCHING
        controller.update_observer(-13.0, 0.0)
        assert controller.pending is None
        await controller.run_until_idle()
        assert controller.expansions == 1
        assert session.topology.col_min == 0


class TestExpansionPipeline:
    """Fetch -> Merge -> Rebuild driven by tick()."""

    @pytest.mark.asyncio
    async def test_square_expansion(self, square_settings, store, make_fetcher):
        fetcher = make_fetcher()
        session = await _ready_session(square_settings, store, fetcher)
        old_mesh = session.current_mesh
        session.update_observer(13.0, 0.0)

        states = await _drive(session.controller)

        assert states == [
            ExpansionState.FETCHING,
            ExpansionState.MERGING,
            ExpansionState.BUILDING,
            ExpansionState.READY,
            ExpansionState.IDLE,
        ]
        band = fetcher.fetch_many.await_args.args[0]
        assert [p.coord for p in band] == [(r, 4) for r in range(4)]
        assert len(session.cache) == 20
        assert session.current_mesh is not old_mesh
        assert session.current_mesh.vertex_count == 20
        assert session.current_mesh.triangle_count == 24
        assert session.controller.expansions == 1
        assert session.controller.last_report.saved == 4
        assert session.epoch == 2

    @pytest.mark.asyncio
    async def test_hex_expansion_adds_ring(self, hex_settings, store, make_fetcher):
        session = await _ready_session(hex_settings, store, make_fetcher())
        session.update_observer(17.0, 0.0)
        await session.controller.run_until_idle()
        assert session.topology.rings == 3
        assert len(session.cache) == 37
        assert session.current_mesh.triangle_count == 6 * 3 * 3

    @pytest.mark.asyncio
    async def test_fetch_failure_keeps_previous_mesh(self, square_settings, store, make_fetcher):
        fetcher = make_fetcher()
        session = await _ready_session(square_settings, store, fetcher)
        old_mesh = session.current_mesh
        fetcher.fetch_many.side_effect = RuntimeError('service down')

        session.update_observer(13.0, 0.0)
        await session.controller.run_until_idle()

        assert session.controller.state is ExpansionState.IDLE
        assert session.controller.failures == 1
        assert session.controller.expansions == 0
        assert session.current_mesh is old_mesh

    @pytest.mark.asyncio
    async def test_rebuild_failure_keeps_previous_mesh(
        self, square_settings, store, make_fetcher
    ):
        session = await _ready_session(square_settings, store, make_fetcher())
        old_mesh = session.current_mesh
        session.update_observer(13.0, 0.0)
        with patch.object(session, 'rebuild', side_effect=MeshBuildError('broken')):
            await session.controller.run_until_idle()
        assert session.controller.failures == 1
        assert session.current_mesh is old_mesh
        assert len(session.cache) == 20

    @pytest.mark.asyncio
    async def test_idle_tick_without_request(self, square_settings, store):
        controller = TerrainSession(square_settings, store=store).controller
        assert await controller.tick() is ExpansionState.IDLE
        assert await controller.run_until_idle() == 0

    @pytest.mark.asyncio
    async def test_close_finishes_in_flight_expansion(
        self, square_settings, store, make_fetcher
    ):
        session = await _ready_session(square_settings, store, make_fetcher())
        session.update_observer(13.0, 0.0)
        await session.controller.tick()
        assert session.controller.state is ExpansionState.FETCHING
        await session.close()
        assert session.controller.state is ExpansionState.IDLE
        assert session.controller.expansions == 1
        assert len(session.cache) == 20
