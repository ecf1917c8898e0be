"""Elevation sample fetching with bounded concurrency and retries.

A fixed pool of workers pulls sample points from one shared cursor, so every
point is requested by exactly one worker. Each request is retried with
exponential backoff; a point that still fails is reported with
``elevation=None`` and never aborts the batch.
"""

from __future__ import annotations

import asyncio
import logging
import math
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import aiohttp

from domain.errors import ElevationFetchError
from domain.models import SamplePoint
from shared.constants import (
    ASYNC_MAX_CONCURRENCY,
    ELEVATION_ENDPOINT_URL,
    ELEVATION_NODATA_VALUE,
    ELEVATION_UNITS_DEFAULT,
    FETCH_LOG_MEMORY_EVERY_POINTS,
    HTTP_2XX_MAX,
    HTTP_2XX_MIN,
    HTTP_RETRIES_DEFAULT,
    HTTP_RETRY_BASE_DELAY_S,
    HTTP_TIMEOUT_DEFAULT,
)
from shared.diagnostics import log_memory_usage

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Iterable

    from domain.models import GridCoordinate, TerrainSettings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FetchResult:
    """Outcome of fetching one sample point."""

    coord: GridCoordinate
    latitude: float
    longitude: float
    elevation: float | None
    attempts: int
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.elevation is not None

    def to_point(self) -> SamplePoint:
        return SamplePoint(
            coord=self.coord,
            latitude=self.latitude,
            longitude=self.longitude,
            elevation=self.elevation,
        )


def parse_elevation_payload(payload: Any) -> float:
    """Extract the numeric ``value`` field from a service response.

    Raises:
        ElevationFetchError: the payload is malformed (retryable) or reports
            no data for the location (not retryable).
    """
    if not isinstance(payload, dict) or 'value' not in payload:
        msg = f'Некорректный ответ сервиса высот: {payload!r}'
        raise ElevationFetchError(msg)
    raw = payload['value']
    if isinstance(raw, bool) or not isinstance(raw, (int, float, str)):
        msg = f'Поле value не является числом: {raw!r}'
        raise ElevationFetchError(msg)
    try:
        value = float(raw)
    except ValueError:
        msg = f'Поле value не является числом: {raw!r}'
        raise ElevationFetchError(msg) from None
    if not math.isfinite(value):
        msg = f'Поле value не является конечным числом: {raw!r}'
        raise ElevationFetchError(msg)
    if value == ELEVATION_NODATA_VALUE:
        msg = 'Сервис высот не имеет данных для точки'
        raise ElevationFetchError(msg, retryable=False)
    return value


class ElevationFetcher:
    """Resolve (longitude, latitude) pairs to elevations via an HTTP service.

    Usage:
        async with make_http_session(cache_dir) as session:
            fetcher = ElevationFetcher(session, concurrency=10, max_retries=3)
            results = await fetcher.fetch_many(points)
    """

    def __init__(
        self,
        client: aiohttp.ClientSession,
        *,
        endpoint_url: str = ELEVATION_ENDPOINT_URL,
        units: str = ELEVATION_UNITS_DEFAULT,
        concurrency: int = ASYNC_MAX_CONCURRENCY,
        max_retries: int = HTTP_RETRIES_DEFAULT,
        base_delay_s: float = HTTP_RETRY_BASE_DELAY_S,
        timeout_s: float = HTTP_TIMEOUT_DEFAULT,
    ) -> None:
        if concurrency < 1:
            msg = f'concurrency must be >= 1, got {concurrency}'
            raise ValueError(msg)
        if max_retries < 0:
            msg = f'max_retries must be >= 0, got {max_retries}'
            raise ValueError(msg)
        self.client = client
        self.endpoint_url = endpoint_url
        self.units = units
        self.concurrency = int(concurrency)
        self.max_retries = int(max_retries)
        self.base_delay_s = float(base_delay_s)
        self.timeout_s = float(timeout_s)

        self._stats_requests = 0
        self._stats_retries = 0
        self._stats_resolved = 0
        self._stats_failed = 0

    @classmethod
    def from_settings(
        cls, client: aiohttp.ClientSession, settings: TerrainSettings
    ) -> ElevationFetcher:
        return cls(
            client,
            endpoint_url=settings.endpoint_url,
            units=settings.units,
            concurrency=settings.concurrency,
            max_retries=settings.max_retries,
            base_delay_s=settings.retry_base_delay_s,
            timeout_s=settings.request_timeout_s,
        )

    @property
    def stats(self) -> dict[str, int]:
        return {
            'requests': self._stats_requests,
            'retries': self._stats_retries,
            'resolved': self._stats_resolved,
            'failed': self._stats_failed,
        }

    def retry_delay(self, attempt: int) -> float:
        """Delay before retrying after failed attempt number ``attempt`` (0-based)."""
        return (2**attempt) * self.base_delay_s

    async def fetch_elevation(self, longitude: float, latitude: float) -> float:
        """Perform one request; raise ElevationFetchError on any failure."""
        params = {
            'x': str(longitude),
            'y': str(latitude),
            'units': self.units,
            'output': 'json',
        }
        timeout = aiohttp.ClientTimeout(total=self.timeout_s)
        self._stats_requests += 1
        try:
            resp = await self.client.get(self.endpoint_url, params=params, timeout=timeout)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            msg = f'Ошибка сети при запросе высоты ({latitude:.5f}, {longitude:.5f}): {e!r}'
            raise ElevationFetchError(msg) from e
        try:
            sc = resp.status
            if not (HTTP_2XX_MIN <= sc < HTTP_2XX_MAX):
                msg = f'HTTP {sc} при запросе высоты ({latitude:.5f}, {longitude:.5f})'
                raise ElevationFetchError(msg)
            try:
                payload = await resp.json(content_type=None)
            except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
                msg = f'Ответ не является JSON ({latitude:.5f}, {longitude:.5f}): {e!r}'
                raise ElevationFetchError(msg) from e
            return parse_elevation_payload(payload)
        finally:
            # Освобождение ресурсов ответа (aiohttp и CachedResponse)
            release = getattr(resp, 'release', None)
            if callable(release):
                result = release()
                if asyncio.iscoroutine(result):
                    await result

    async def fetch_with_retry(
        self, longitude: float, latitude: float
    ) -> tuple[float | None, int]:
        """Fetch one elevation, retrying up to ``max_retries`` times.

        Returns:
            (elevation or None after exhausting retries, attempts made)
        """
        elevation, attempts, _ = await self._fetch_point(longitude, latitude)
        return elevation, attempts

    async def _fetch_point(
        self, longitude: float, latitude: float
    ) -> tuple[float | None, int, ElevationFetchError | None]:
        last_exc: ElevationFetchError | None = None
        attempts = 0
        for attempt in range(self.max_retries + 1):
            attempts = attempt + 1
            try:
                return await self.fetch_elevation(longitude, latitude), attempts, None
            except ElevationFetchError as e:
                last_exc = e
                if not e.retryable:
                    break
            if attempt < self.max_retries:
                delay = self.retry_delay(attempt)
                self._stats_retries += 1
                logger.debug(
                    'Retrying elevation fetch for (%.5f, %.5f) - attempt %d in %.2fs: %s',
                    latitude,
                    longitude,
                    attempt + 2,
                    delay,
                    last_exc,
                )
                await asyncio.sleep(delay)
        logger.warning(
            'Elevation fetch failed for (%.5f, %.5f) after %d attempt(s): %s',
            latitude,
            longitude,
            attempts,
            last_exc,
        )
        return None, attempts, last_exc

    async def fetch_many(
        self,
        points: Iterable[SamplePoint],
        *,
        on_progress: Callable[[int], Awaitable[None]] | None = None,
    ) -> list[FetchResult]:
        """Fetch elevations for many points with a fixed worker pool.

        Workers share one monotonically advancing cursor; each keeps its own
        result buffer and the buffers are merged after all workers finish.
        Results are returned in input order.
        """
        queue = list(points)
        if not queue:
            return []
        cursor = 0
        completed = 0

        async def _worker() -> list[tuple[int, FetchResult]]:
            nonlocal cursor, completed
            local: list[tuple[int, FetchResult]] = []
            while cursor < len(queue):
                idx = cursor
                cursor += 1
                point = queue[idx]
                elevation, attempts, error = await self._fetch_point(
                    point.longitude, point.latitude
                )
                if elevation is None:
                    self._stats_failed += 1
                else:
                    self._stats_resolved += 1
                local.append(
                    (
                        idx,
                        FetchResult(
                            coord=point.coord,
                            latitude=point.latitude,
                            longitude=point.longitude,
                            elevation=elevation,
                            attempts=attempts,
                            error=str(error) if error is not None else None,
                        ),
                    )
                )
                completed += 1
                if on_progress is not None:
                    try:
                        await on_progress(1)
                    except Exception:
                        logger.debug('Progress callback failed', exc_info=True)
                if completed % FETCH_LOG_MEMORY_EVERY_POINTS == 0:
                    log_memory_usage(f'after {completed} elevation samples')
            return local

        workers = min(self.concurrency, len(queue))
        chunks = await asyncio.gather(*(_worker() for _ in range(workers)))
        merged = sorted((item for chunk in chunks for item in chunk), key=lambda t: t[0])
        results = [result for _, result in merged]
        failed = sum(1 for r in results if not r.ok)
        logger.info(
            'Elevation batch done: %d points, %d resolved, %d failed (%d workers)',
            len(results),
            len(results) - failed,
            failed,
            workers,
        )
        return results
