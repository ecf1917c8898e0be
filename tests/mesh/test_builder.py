"""Tests for MeshBuilder and TerrainMesh."""

import math
from dataclasses import replace

import numpy as np
import pytest
from scipy.spatial import cKDTree

from domain.errors import MeshBuildError
from domain.models import Origin, TerrainSettings
from geo.topology import HexTopology, SquareTopology
from mesh.builder import MeshBuilder, TerrainMesh, barycentric_2d, triangle_area_2d
from shared.constants import MismatchPolicy, TopologyKind

ORIGIN = Origin(latitude=46.5, longitude=8.0)


def _resolved(topology, elevation=lambda coord: 0.0):
    return [replace(p, elevation=float(elevation(p.coord))) for p in topology.generate()]


def _builder(topology, **kwargs):
    defaults = {'max_edge_length_m': 1000.0, 'max_triangle_area_m2': 1e9}
    defaults.update(kwargs)
    return MeshBuilder(topology, **defaults)


def _vertex(mesh, coord):
    return mesh.coordinates.index(coord)


class TestSquareTriangulation:
    """Block triangulation of square grids."""

    def test_flat_grid_fully_triangulated(self):
        topo = SquareTopology(ORIGIN, 10.0, 4)
        mesh = _builder(topo).build_full(_resolved(topo))
        assert mesh.vertex_count == 16
        assert mesh.triangle_count == 2 * 3 * 3
        assert mesh.skipped_blocks == 0

    def test_block_corner_order(self):
        """Single block gives (a, c, b) and (b, c, d)."""
        topo = SquareTopology(ORIGIN, 10.0, 2)
        mesh = _builder(topo).build_full(_resolved(topo))
        a, b = _vertex(mesh, (0, 0)), _vertex(mesh, (0, 1))
        c, d = _vertex(mesh, (1, 0)), _vertex(mesh, (1, 1))
        assert mesh.indices.tolist() == [[a, c, b], [b, c, d]]

    def test_long_edge_skips_whole_block(self):
        """A spike corner drops both triangles of its block without raising."""
        topo = SquareTopology(ORIGIN, 10.0, 3)
        spike = _resolved(topo, lambda coord: 500.0 if coord == (2, 2) else 0.0)
        mesh = _builder(topo, max_edge_length_m=50.0).build_full(spike)
        assert mesh.skipped_blocks == 1
        assert mesh.triangle_count == 6
        spike_idx = _vertex(mesh, (2, 2))
        assert spike_idx not in mesh.indices

    def test_single_block_skipped(self):
        topo = SquareTopology(ORIGIN, 10.0, 2)
        points = _resolved(topo, lambda coord: 100.0 if coord == (1, 1) else 0.0)
        mesh = _builder(topo, max_edge_length_m=50.0).build_full(points)
        assert mesh.triangle_count == 0
        assert mesh.skipped_blocks == 1
        assert mesh.skipped_triangles == 2

    def test_area_filter(self):
        """Block triangles of a 10 m grid have 50 m^2 footprints."""
        topo = SquareTopology(ORIGIN, 10.0, 3)
        assert _builder(topo, max_triangle_area_m2=50.5).build_full(_resolved(topo)).triangle_count == 8
        assert _builder(topo, max_triangle_area_m2=40.0).build_full(_resolved(topo)).triangle_count == 0

    def test_every_triangle_within_limits(self):
        rng = np.random.default_rng(7)
        topo = SquareTopology(ORIGIN, 10.0, 12)
        heights = {c: float(rng.normal(0.0, 15.0)) for c in topo.coordinates()}
        builder = _builder(topo, max_edge_length_m=25.0, max_triangle_area_m2=60.0)
        mesh = builder.build_full(_resolved(topo, heights.__getitem__))
        assert mesh.skipped_blocks > 0
        for tri in mesh.triangles().astype(np.float64):
            for i in range(3):
                p, q = tri[i], tri[(i + 1) % 3]
                assert np.linalg.norm(p - q) <= 25.0 + 1e-4
                assert math.hypot(p[0] - q[0], p[2] - q[2]) <= 25.0 + 1e-4
            assert triangle_area_2d(tri[0], tri[1], tri[2]) <= 60.0 + 1e-3


class TestVertexBuffers:
    """Positions and colours."""

    def test_positions_scaled_from_reference(self):
        topo = SquareTopology(ORIGIN, 10.0, 3)
        builder = _builder(topo, elevation_scale=2.0, reference_elevation_m=100.0)
        mesh = builder.build_full(_resolved(topo, lambda coord: 130.0))
        center = mesh.positions[_vertex(mesh, (1, 1))]
        assert center[0] == pytest.approx(0.0, abs=1e-4)
        assert center[2] == pytest.approx(0.0, abs=1e-4)
        assert center[1] == pytest.approx(60.0)
        east = mesh.positions[_vertex(mesh, (1, 2))]
        north = mesh.positions[_vertex(mesh, (2, 1))]
        assert east[0] == pytest.approx(10.0, abs=1e-3)
        assert north[2] == pytest.approx(10.0, abs=1e-3)

    def test_color_ramp(self):
        topo = SquareTopology(ORIGIN, 10.0, 3)
        heights = {(0, 0): -5.0, (0, 1): 40.0, (0, 2): 200.0}
        mesh = _builder(topo).build_full(_resolved(topo, lambda c: heights.get(c, 0.0)))
        assert mesh.colors[_vertex(mesh, (0, 0))].tolist() == pytest.approx([0.0, 0.0, 1.0])
        assert mesh.colors[_vertex(mesh, (0, 1))].tolist() == pytest.approx([0.5, 0.0, 0.5])
        assert mesh.colors[_vertex(mesh, (0, 2))].tolist() == pytest.approx([1.0, 0.0, 0.0])

    def test_buffers_dtypes_and_immutability(self):
        topo = SquareTopology(ORIGIN, 10.0, 3)
        mesh = _builder(topo).build_full(_resolved(topo))
        assert mesh.positions.dtype == np.float32
        assert mesh.colors.dtype == np.float32
        assert mesh.indices.dtype == np.uint32
        with pytest.raises(ValueError):
            mesh.positions[0, 0] = 1.0

    def test_to_npz(self, tmp_path):
        topo = SquareTopology(ORIGIN, 10.0, 3)
        mesh = _builder(topo).build_full(_resolved(topo))
        path = tmp_path / 'mesh.npz'
        mesh.to_npz(path)
        data = np.load(path)
        assert data['positions'].shape == (9, 3)
        assert data['indices'].shape == (8, 3)
        assert data['coordinates'].shape == (9, 2)

    def test_empty_mesh(self):
        mesh = TerrainMesh.empty()
        assert mesh.is_empty
        assert mesh.vertex_count == 0


class TestMissingCells:
    """Point count mismatch handling."""

    def test_missing_cell_synthesized_from_neighbours(self):
        topo = SquareTopology(ORIGIN, 10.0, 3)
        points = [
            p for p in _resolved(topo, lambda c: float(c[0] * 3 + c[1])) if p.coord != (1, 1)
        ]
        mesh = _builder(topo).build_full(points)
        assert mesh.synthesized == 1
        neighbours = [0, 1, 2, 3, 5, 6, 7, 8]
        assert mesh.positions[_vertex(mesh, (1, 1))][1] == pytest.approx(
            sum(neighbours) / 8
        )

    def test_isolated_cell_uses_default(self):
        topo = SquareTopology(ORIGIN, 10.0, 3)
        points = [p for p in _resolved(topo, lambda c: 20.0) if p.coord == (0, 0)]
        mesh = _builder(topo, default_elevation_m=-3.0).build_full(points)
        # (0,1), (1,0), (1,1) touch (0,0); the other five do not
        assert mesh.synthesized == 3
        assert mesh.defaulted == 5
        assert mesh.positions[_vertex(mesh, (2, 2))][1] == pytest.approx(-3.0)

    def test_abort_policy_raises(self):
        topo = SquareTopology(ORIGIN, 10.0, 3)
        points = _resolved(topo)[:-1]
        builder = _builder(topo, mismatch_policy=MismatchPolicy.ABORT)
        with pytest.raises(MeshBuildError):
            builder.build_full(points)

    def test_abort_policy_full_grid_ok(self):
        topo = SquareTopology(ORIGIN, 10.0, 3)
        builder = _builder(topo, mismatch_policy=MismatchPolicy.ABORT)
        assert builder.build_full(_resolved(topo)).triangle_count == 8

    def test_empty_points_raise(self):
        topo = SquareTopology(ORIGIN, 10.0, 3)
        with pytest.raises(MeshBuildError):
            _builder(topo).build_full([])

    def test_collision_keeps_closer_point(self):
        """Two points landing in one cell: the one nearer the centre wins."""
        topo = SquareTopology(ORIGIN, 10.0, 3)
        points = _resolved(topo, lambda c: 1.0)
        proj = topo.projection
        # точка (0,1) смещена в ячейку (0,0), на 2 м от её центра
        lat, lon = proj.to_geo(-8.0, -10.0)
        points = [
            replace(p, latitude=lat, longitude=lon, elevation=9.0) if p.coord == (0, 1) else p
            for p in points
        ]
        mesh = _builder(topo).build_full(points)
        assert mesh.collisions == 1
        assert mesh.positions[_vertex(mesh, (0, 0))][1] == pytest.approx(1.0)
        assert mesh.synthesized == 1


class TestHexTriangulation:
    """Ring stitching for hexagonal grids."""

    @pytest.mark.parametrize('rings', [1, 2, 4])
    def test_triangle_count(self, rings):
        topo = HexTopology(ORIGIN, 10.0, rings)
        mesh = _builder(topo).build_full(_resolved(topo))
        assert mesh.vertex_count == topo.capacity
        assert mesh.triangle_count == 6 * rings * rings

    def test_triangles_tile_the_hexagon(self):
        """Footprints add up to the outer hexagon without overlap."""
        topo = HexTopology(ORIGIN, 10.0, 2)
        mesh = _builder(topo).build_full(_resolved(topo))
        tris = mesh.triangles().astype(np.float64)
        total = sum(triangle_area_2d(t[0], t[1], t[2]) for t in tris)
        assert total == pytest.approx(1.5 * math.sqrt(3.0) * 20.0**2, rel=1e-4)
        for t in tris:
            edges = [np.linalg.norm(t[i] - t[(i + 1) % 3]) for i in range(3)]
            assert edges == pytest.approx([10.0, 10.0, 10.0], rel=1e-4)

    def test_no_degenerate_triangles(self):
        topo = HexTopology(ORIGIN, 10.0, 3)
        mesh = _builder(topo).build_full(_resolved(topo))
        for tri in mesh.indices.tolist():
            assert len(set(tri)) == 3

    def test_edge_filter_applies_to_rings(self):
        topo = HexTopology(ORIGIN, 10.0, 2)
        points = _resolved(topo, lambda c: 300.0 if c == (2, 0) else 0.0)
        mesh = _builder(topo, max_edge_length_m=50.0).build_full(points)
        assert 0 < mesh.skipped_triangles
        assert mesh.triangle_count == 24 - mesh.skipped_triangles

    def test_build_band(self):
        topo = HexTopology(ORIGIN, 10.0, 1)
        inner = _resolved(topo)[:1]
        outer = _resolved(topo)[1:]
        band = _builder(topo).build_band(inner, outer)
        assert band.vertex_count == 7
        assert band.triangle_count == 6

    def test_from_settings(self):
        settings = TerrainSettings(
            origin_lat=46.5,
            origin_lon=8.0,
            topology=TopologyKind.HEX,
            grid_size_m=30.0,
            resolution=3,
            overshadow_filter=True,
        )
        topo = HexTopology(settings.origin, settings.step_m, settings.resolution)
        builder = MeshBuilder.from_settings(topo, settings)
        assert builder.overshadow_filter
        assert builder.build_full(_resolved(topo)).triangle_count == 54


class TestOvershadow:
    """Overshadow filter."""

    def _positions(self, probe_y):
        return np.array(
            [
                [0.0, 10.0, 0.0],
                [30.0, 10.0, 0.0],
                [0.0, 10.0, 30.0],
                [5.0, probe_y, 5.0],
                [50.0, -100.0, 50.0],
            ]
        )

    def test_lower_point_inside_rejects(self):
        positions = self._positions(probe_y=2.0)
        tree = cKDTree(positions[:, [0, 2]])
        builder = _builder(SquareTopology(ORIGIN, 10.0, 2), overshadow_filter=True)
        assert builder.overshadows((0, 1, 2), positions, tree)

    def test_higher_point_inside_accepted(self):
        positions = self._positions(probe_y=20.0)
        tree = cKDTree(positions[:, [0, 2]])
        builder = _builder(SquareTopology(ORIGIN, 10.0, 2), overshadow_filter=True)
        assert not builder.overshadows((0, 1, 2), positions, tree)

    def test_own_vertices_ignored(self):
        positions = self._positions(probe_y=2.0)
        tree = cKDTree(positions[:, [0, 2]])
        builder = _builder(SquareTopology(ORIGIN, 10.0, 2), overshadow_filter=True)
        assert not builder.overshadows((0, 1, 3), positions, tree)

    def test_regular_grid_unaffected(self):
        topo = SquareTopology(ORIGIN, 10.0, 5)
        rng = np.random.default_rng(3)
        heights = {c: float(rng.uniform(0.0, 5.0)) for c in topo.coordinates()}
        points = _resolved(topo, heights.__getitem__)
        plain = _builder(topo).build_full(points)
        filtered = _builder(topo, overshadow_filter=True).build_full(points)
        assert filtered.triangle_count == plain.triangle_count

    def test_barycentric(self):
        a = np.array([0.0, 0.0, 0.0])
        b = np.array([1.0, 0.0, 0.0])
        c = np.array([0.0, 0.0, 1.0])
        w = barycentric_2d(0.25, 0.25, a, b, c)
        assert sum(w) == pytest.approx(1.0)
        assert min(w) > 0
        assert barycentric_2d(0.0, 0.0, a, a, c) is None
