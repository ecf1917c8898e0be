from __future__ import annotations

import contextlib
import logging
import os
import sqlite3
import ssl
import time
from datetime import timedelta
from pathlib import Path

import aiohttp
import certifi
from aiohttp_client_cache import CachedSession, SQLiteBackend

from elevation.fetcher import parse_elevation_payload
from shared.constants import (
    HTTP_2XX_MAX,
    HTTP_2XX_MIN,
    HTTP_CACHE_DIR,
    HTTP_CACHE_ENABLED,
    HTTP_CACHE_EXPIRE_HOURS,
    HTTP_CACHE_RESPECT_HEADERS,
    HTTP_CACHE_STALE_IF_ERROR_HOURS,
)

logger = logging.getLogger(__name__)

APP_DIR_NAME = 'TerrainMesh'
HTTP_CACHE_FILENAME = 'http_cache.sqlite'


def resolve_cache_dir() -> Path | None:
    """Directory of the HTTP response cache for elevation requests."""
    configured = Path(HTTP_CACHE_DIR)
    if configured.is_absolute():
        return configured
    local = os.getenv('LOCALAPPDATA')
    base = Path(local) / APP_DIR_NAME / '.cache' if local else Path.home() / '.terrain_mesh_cache'
    return (base / 'elevation').resolve()


def http_cache_file(cache_dir: Path) -> Path:
    return cache_dir / HTTP_CACHE_FILENAME


def cleanup_sqlite_cache(cache_dir: Path) -> None:
    """Checkpoint the WAL of the response cache so the file can be moved or removed."""
    cache_file = http_cache_file(cache_dir)
    if not cache_file.exists():
        return
    conn = sqlite3.connect(cache_file)
    try:
        conn.execute('PRAGMA wal_checkpoint(TRUNCATE);')
    finally:
        conn.close()
    # Windows отпускает файл не сразу
    time.sleep(0.1)


def _connector() -> aiohttp.TCPConnector:
    # SSL-контекст с сертификатами из certifi
    ssl_context = ssl.create_default_context(cafile=certifi.where())
    return aiohttp.TCPConnector(ssl=ssl_context)


def _cached_session(cache_dir: Path) -> CachedSession:
    cache_dir.mkdir(parents=True, exist_ok=True)
    cache_file = http_cache_file(cache_dir)
    if not cache_file.exists():
        with contextlib.suppress(sqlite3.Error), sqlite3.connect(cache_file) as conn:
            conn.execute('PRAGMA journal_mode=WAL;')
    expire_after = timedelta(hours=max(0, int(HTTP_CACHE_EXPIRE_HOURS)))
    stale_hours = int(HTTP_CACHE_STALE_IF_ERROR_HOURS)
    stale_if_error: bool | timedelta = (
        timedelta(hours=stale_hours) if stale_hours > 0 else False
    )
    logger.debug('HTTP response cache: %s', cache_file)
    return CachedSession(
        cache=SQLiteBackend(str(cache_file), expire_after=expire_after),
        connector=_connector(),
        expire_after=expire_after,
        cache_control=bool(HTTP_CACHE_RESPECT_HEADERS),
        stale_if_error=stale_if_error,
    )


def make_http_session(
    cache_dir: Path | None,
    *,
    use_cache: bool = HTTP_CACHE_ENABLED,
) -> aiohttp.ClientSession:
    """Create an aiohttp session, backed by an SQLite response cache when enabled.

    Usage:
        async with make_http_session(resolve_cache_dir()) as client:
            fetcher = ElevationFetcher(client)
    """
    if use_cache and cache_dir is not None:
        return _cached_session(cache_dir)
    return aiohttp.ClientSession(connector=_connector())


async def validate_elevation_api(
    endpoint_url: str,
    latitude: float,
    longitude: float,
    units: str = 'Meters',
) -> float:
    """Быстрая проверка доступности сервиса высот; возвращает высоту в точке."""
    params = {'x': str(longitude), 'y': str(latitude), 'units': units, 'output': 'json'}
    timeout = aiohttp.ClientTimeout(total=10, connect=10, sock_connect=10, sock_read=10)
    try:
        async with (
            aiohttp.ClientSession(connector=_connector()) as client,
            client.get(endpoint_url, params=params, timeout=timeout) as resp,
        ):
            sc = resp.status
            if not (HTTP_2XX_MIN <= sc < HTTP_2XX_MAX):
                msg = f'Ошибка доступа к сервису высот (HTTP {sc}). Повторите попытку позже.'
                raise RuntimeError(msg)
            payload = await resp.json(content_type=None)
    except (TimeoutError, aiohttp.ClientConnectorError, aiohttp.ClientOSError):
        msg = (
            'Нет соединения с интернетом или сервис высот недоступен. '
            'Проверьте подключение к сети.'
        )
        raise RuntimeError(msg) from None
    return parse_elevation_payload(payload)
