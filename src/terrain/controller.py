"""Demand-driven coverage growth.

The controller is an explicit state machine advanced by an external
scheduler calling :meth:`ExpansionController.tick`::

    IDLE -> FETCHING -> MERGING -> BUILDING -> READY -> IDLE

At most one expansion is in flight. Observer updates are answered at once
from already cached data; a triggered expansion only occupies the single
pending slot and is started by the next tick.
"""

from __future__ import annotations

import asyncio
import logging
import math
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING

from geo.topology import HexTopology, SquareTopology
from shared.constants import EXPANSION_FRACTION_DEFAULT, Edge

if TYPE_CHECKING:
    from cache.point_cache import SaveReport
    from domain.models import SamplePoint
    from terrain.session import TerrainSession

logger = logging.getLogger(__name__)


class ExpansionState(str, Enum):
    IDLE = 'idle'
    FETCHING = 'fetching'
    MERGING = 'merging'
    BUILDING = 'building'
    READY = 'ready'


@dataclass(frozen=True)
class ExpansionRequest:
    """One queued growth step: an edge (square) or the next ring (edge=None)."""

    edge: Edge | None
    x: float
    z: float


class ExpansionController:
    """Decide when to grow coverage and drive Fetch -> Merge -> Rebuild."""

    def __init__(
        self,
        session: TerrainSession,
        fraction: float = EXPANSION_FRACTION_DEFAULT,
    ) -> None:
        if not (0.0 < fraction <= 1.0):
            msg = f'fraction must be in (0, 1], got {fraction}'
            raise ValueError(msg)
        self.session = session
        self.fraction = float(fraction)
        self.state = ExpansionState.IDLE
        self.expansions = 0
        self.failures = 0
        self.last_report: SaveReport | None = None
        self._pending: ExpansionRequest | None = None
        self._active: ExpansionRequest | None = None
        self._task: asyncio.Task[list[SamplePoint]] | None = None
        self._fetched: list[SamplePoint] = []
        self._last_xz = (0.0, 0.0)

    @property
    def pending(self) -> ExpansionRequest | None:
        return self._pending

    @property
    def busy(self) -> bool:
        """True while an expansion is queued or in flight."""
        return self._pending is not None or self.state is not ExpansionState.IDLE

    def _pick_edge(self, x: float, z: float) -> Edge:
        dx = x - self._last_xz[0]
        dz = z - self._last_xz[1]
        if dx == 0.0 and dz == 0.0:
            # нет смещения: решает положение наблюдателя
            dx, dz = x, z
        if abs(dx) >= abs(dz):
            return Edge.EAST if dx >= 0.0 else Edge.WEST
        return Edge.NORTH if dz >= 0.0 else Edge.SOUTH

    def check_trigger(self, x: float, z: float) -> ExpansionRequest | None:
        """Expansion request for an observer at (x, z), or None if still well inside."""
        topo = self.session.topology
        distance = math.hypot(x, z)
        if isinstance(topo, SquareTopology):
            edge = self._pick_edge(x, z)
            limit = self.fraction * topo.edge_extent(edge)
            if distance > limit:
                return ExpansionRequest(edge=edge, x=x, z=z)
            return None
        if isinstance(topo, HexTopology):
            if distance > self.fraction * topo.covered_radius:
                return ExpansionRequest(edge=None, x=x, z=z)
            return None
        return None

    def update_observer(self, x: float, z: float) -> float:
        """Answer ``height_at`` immediately and queue an expansion if needed."""
        height = self.session.height_at(x, z)
        request = self.check_trigger(x, z)
        self._last_xz = (x, z)
        if request is not None:
            if self.busy:
                logger.debug(
                    'Expansion towards %s ignored: another one is in flight',
                    request.edge.value if request.edge else 'ring',
                )
            else:
                self._pending = request
                logger.info(
                    'Expansion queued (%s) for observer at (%.1f, %.1f)',
                    request.edge.value if request.edge else 'ring',
                    x,
                    z,
                )
        return height

    async def tick(self) -> ExpansionState:
        """Advance the pipeline by one step; returns the new state."""
        if self.state is ExpansionState.IDLE:
            if self._pending is not None:
                self._start(self._pending)
        elif self.state is ExpansionState.FETCHING:
            await self._poll_fetch()
        elif self.state is ExpansionState.MERGING:
            self.last_report = self.session.merge(self._fetched)
            self.state = ExpansionState.BUILDING
        elif self.state is ExpansionState.BUILDING:
            try:
                self.session.rebuild()
            except Exception:
                logger.exception('Mesh rebuild after expansion failed; keeping previous mesh')
                self._fail()
            else:
                self.state = ExpansionState.READY
        elif self.state is ExpansionState.READY:
            self.expansions += 1
            logger.info(
                'Expansion %d done: %d points cached of %d',
                self.expansions,
                len(self.session.cache),
                self.session.cache.capacity,
            )
            self._reset()
        return self.state

    def _start(self, request: ExpansionRequest) -> None:
        self._pending = None
        self._active = request
        band = self.session.grow(request.edge)
        logger.info(
            'Expansion started (%s): %d new coordinates',
            request.edge.value if request.edge else 'ring',
            len(band),
        )
        self._task = asyncio.create_task(self.session.fetch(band))
        self.state = ExpansionState.FETCHING

    async def _poll_fetch(self) -> None:
        task = self._task
        if task is None:
            self._fail()
            return
        if not task.done():
            # дать задаче загрузки продвинуться
            await asyncio.sleep(0)
            return
        try:
            self._fetched = task.result()
        except Exception:
            logger.exception('Expansion fetch failed; keeping previous mesh')
            self._fail()
            return
        self._task = None
        self.state = ExpansionState.MERGING

    def _fail(self) -> None:
        self.failures += 1
        self._reset()

    def _reset(self) -> None:
        self._task = None
        self._active = None
        self._fetched = []
        self.state = ExpansionState.IDLE

    async def run_until_idle(self, max_ticks: int | None = None) -> int:
        """Tick until nothing is queued or in flight; returns ticks spent."""
        ticks = 0
        while self.busy:
            if max_ticks is not None and ticks >= max_ticks:
                break
            await self.tick()
            ticks += 1
        return ticks

    async def wait_in_flight(self) -> None:
        """Let a started fetch finish and be merged (there is no cancellation)."""
        if self.state is not ExpansionState.IDLE:
            if self._task is not None:
                await asyncio.wait({self._task})
            while self.state is not ExpansionState.IDLE:
                await self.tick()
