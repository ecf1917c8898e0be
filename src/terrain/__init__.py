"""Terrain module - session owner and expansion state machine."""

from .controller import ExpansionController, ExpansionRequest, ExpansionState
from .session import TerrainSession

__all__ = [
    'ExpansionController',
    'ExpansionRequest',
    'ExpansionState',
    'TerrainSession',
]
