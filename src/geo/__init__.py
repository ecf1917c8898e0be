"""Geo module - local projection and grid topologies."""

from .projection import LocalProjection
from .topology import (
    GridTopology,
    HexTopology,
    SquareTopology,
    hex_distance,
    make_topology,
)

__all__ = [
    'GridTopology',
    'HexTopology',
    'LocalProjection',
    'SquareTopology',
    'hex_distance',
    'make_topology',
]
