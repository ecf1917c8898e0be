"""Capacity-bounded persisted collection of resolved sample points.

The whole point array lives in one blob under one key. Loading repairs a
corrupted or oversized blob and writes the repaired array back; saving
merges a batch by coordinate and drops whatever does not fit.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

from domain.models import SamplePoint
from shared.constants import POINT_CACHE_KEY_DEFAULT

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable

    from cache.store import BlobStore
    from domain.models import GridCoordinate

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SaveReport:
    """Result of one :meth:`PointCache.save` call."""

    saved: int
    dropped: int
    updated: int = 0
    unresolved: int = 0

    @property
    def changed(self) -> bool:
        return self.saved > 0 or self.updated > 0


class PointCache:
    """Resolved sample points persisted in a keyed blob store.

    Usage:
        cache = PointCache(SqliteBlobStore(path), capacity=topology.capacity)
        points = cache.load()
        report = cache.save(batch)
    """

    def __init__(
        self,
        store: BlobStore,
        capacity: int,
        key: str = POINT_CACHE_KEY_DEFAULT,
        *,
        accepts: Callable[[GridCoordinate], bool] | None = None,
    ) -> None:
        if capacity < 0:
            msg = f'capacity must be >= 0, got {capacity}'
            raise ValueError(msg)
        self.store = store
        self.key = key
        self._capacity = int(capacity)
        self.accepts = accepts
        self._points: list[SamplePoint] = []
        self._index: dict[GridCoordinate, int] = {}
        self._loaded = False

    @property
    def capacity(self) -> int:
        return self._capacity

    @capacity.setter
    def capacity(self, value: int) -> None:
        if value < 0:
            msg = f'capacity must be >= 0, got {value}'
            raise ValueError(msg)
        self._capacity = int(value)

    def __len__(self) -> int:
        self._ensure_loaded()
        return len(self._points)

    def __contains__(self, coord: object) -> bool:
        self._ensure_loaded()
        return coord in self._index

    @property
    def points(self) -> list[SamplePoint]:
        self._ensure_loaded()
        return list(self._points)

    def get(self, coord: GridCoordinate) -> SamplePoint | None:
        self._ensure_loaded()
        idx = self._index.get(coord)
        return None if idx is None else self._points[idx]

    def _ensure_loaded(self) -> None:
        if not self._loaded:
            self.load()

    def _decode(self, raw: str) -> tuple[list[SamplePoint], bool]:
        """Parse the stored blob; second item tells whether repair was needed."""
        try:
            data = json.loads(raw)
        except ValueError:
            logger.warning('Point cache %r is not valid JSON; resetting it', self.key)
            return [], True
        if not isinstance(data, list):
            logger.warning(
                'Point cache %r holds %s instead of a list; resetting it',
                self.key,
                type(data).__name__,
            )
            return [], True

        points: list[SamplePoint] = []
        position: dict[GridCoordinate, int] = {}
        bad = 0
        duplicates = 0
        for entry in data:
            try:
                point = SamplePoint.from_dict(entry)
            except (KeyError, TypeError, ValueError):
                bad += 1
                continue
            if point.elevation is None:
                bad += 1
                continue
            existing = position.get(point.coord)
            if existing is not None:
                points[existing] = point
                duplicates += 1
                continue
            position[point.coord] = len(points)
            points.append(point)
        if bad or duplicates:
            logger.warning(
                'Point cache %r: discarded %d malformed and %d duplicate entries',
                self.key,
                bad,
                duplicates,
            )
        return points, bool(bad or duplicates)

    def _persist(self) -> None:
        payload = json.dumps([p.to_dict() for p in self._points], separators=(',', ':'))
        self.store.set(self.key, payload)

    def _reindex(self) -> None:
        self._index = {p.coord: i for i, p in enumerate(self._points)}

    def load(self) -> list[SamplePoint]:
        """Return the persisted points, truncated to ``capacity``.

        Points rejected by ``accepts`` are discarded before truncation. Any
        repair or truncation is written back to the store.
        """
        raw = self.store.get(self.key)
        if raw is None:
            points, repaired = [], False
        else:
            points, repaired = self._decode(raw)

        if self.accepts is not None:
            kept = [p for p in points if self.accepts(p.coord)]
            if len(kept) < len(points):
                logger.warning(
                    'Point cache %r: discarded %d points outside the grid',
                    self.key,
                    len(points) - len(kept),
                )
                points, repaired = kept, True

        truncated = 0
        if len(points) > self._capacity:
            truncated = len(points) - self._capacity
            points = points[: self._capacity]
            logger.warning(
                'Point cache %r holds %d points over capacity %d; truncated',
                self.key,
                truncated,
                self._capacity,
            )

        self._points = points
        self._reindex()
        self._loaded = True
        if repaired or truncated:
            self._persist()
        logger.info(
            'Point cache %r loaded: %d/%d points', self.key, len(points), self._capacity
        )
        return list(points)

    def save(self, batch: Iterable[SamplePoint]) -> SaveReport:
        """Merge ``batch`` into the cache and persist it.

        Points whose coordinate is already cached replace the stored entry
        in place. New coordinates are appended while room remains; the rest
        are dropped and counted. Unresolved points are never persisted.
        """
        self._ensure_loaded()
        pending: list[SamplePoint] = []
        pending_pos: dict[GridCoordinate, int] = {}
        updated = 0
        unresolved = 0
        for point in batch:
            if point.elevation is None:
                unresolved += 1
                continue
            existing = self._index.get(point.coord)
            if existing is not None:
                self._points[existing] = point
                updated += 1
                continue
            pos = pending_pos.get(point.coord)
            if pos is not None:
                pending[pos] = point
                continue
            pending_pos[point.coord] = len(pending)
            pending.append(point)

        available = max(0, self._capacity - len(self._points))
        accepted = pending[:available]
        dropped = len(pending) - len(accepted)
        for point in accepted:
            self._index[point.coord] = len(self._points)
            self._points.append(point)

        if accepted or updated:
            self._persist()
        if dropped:
            logger.warning(
                'Point cache %r full (%d/%d): dropped %d of %d new points',
                self.key,
                len(self._points),
                self._capacity,
                dropped,
                len(pending),
            )
        logger.info(
            'Point cache %r saved: +%d new, %d updated, now %d/%d',
            self.key,
            len(accepted),
            updated,
            len(self._points),
            self._capacity,
        )
        return SaveReport(
            saved=len(accepted), dropped=dropped, updated=updated, unresolved=unresolved
        )

    def clear(self) -> None:
        self._points = []
        self._index = {}
        self._loaded = True
        self.store.delete(self.key)
        logger.info('Point cache %r cleared', self.key)
