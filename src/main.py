"""Command line entry point for the terrain mesh builder."""

import argparse
import asyncio
import logging
import os
import sys
from pathlib import Path

from pydantic import ValidationError

from domain.errors import MeshBuildError, TerrainConfigError
from domain.models import TerrainSettings
from infrastructure.http.client import (
    cleanup_sqlite_cache,
    resolve_cache_dir,
    validate_elevation_api,
)
from profiles import load_profile
from shared.diagnostics import ResourceMonitor, log_thread_status
from terrain.session import TerrainSession

logger = logging.getLogger(__name__)

APP_DIR_NAME = 'TerrainMesh'


def setup_logging(level: int = logging.INFO) -> Path:
    """Configure logging to stdout and a per-user log file.

    Returns:
        Path of the log file.
    """
    local_base = (
        Path(os.getenv('LOCALAPPDATA') or Path.home() / '.local' / 'state') / APP_DIR_NAME
    )
    log_dir = local_base / 'log'
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / 'terrain_mesh.log'

    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=[
            logging.StreamHandler(sys.stdout),
            logging.FileHandler(str(log_file), encoding='utf-8'),
        ],
    )
    return log_file


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description='Terrain mesh - кэш высот и построение сетки рельефа'
    )
    parser.add_argument('--debug', action='store_true', help='Подробный лог')

    common = argparse.ArgumentParser(add_help=False)
    common.add_argument('--profile', help='Имя профиля или путь к TOML')
    common.add_argument('--lat', type=float, help='Широта начала координат')
    common.add_argument('--lon', type=float, help='Долгота начала координат')
    common.add_argument('--topology', choices=['square', 'hex'])
    common.add_argument('--resolution', type=int)
    common.add_argument('--grid-size', type=float, dest='grid_size_m')
    common.add_argument('--cache', dest='cache_path', help='Файл кэша точек (SQLite)')

    sub = parser.add_subparsers(dest='command', required=True)
    p_build = sub.add_parser('build', parents=[common], help='Загрузить высоты и построить меш')
    p_build.add_argument('--output', default='mesh.npz', help='Файл .npz для буферов меша')

    p_query = sub.add_parser('query', parents=[common], help='Запрос по кэшированным точкам')
    p_query.add_argument('--x', type=float, required=True)
    p_query.add_argument('--z', type=float, required=True)

    sub.add_parser('cache-info', parents=[common], help='Заполненность кэша точек')
    sub.add_parser('check', parents=[common], help='Проверка сервиса высот')
    return parser


def resolve_settings(args: argparse.Namespace) -> TerrainSettings:
    """Profile values overridden by any explicit command line options."""
    data = load_profile(args.profile).model_dump() if args.profile else {}
    overrides = {
        'origin_lat': args.lat,
        'origin_lon': args.lon,
        'topology': args.topology,
        'resolution': args.resolution,
        'grid_size_m': args.grid_size_m,
        'cache_path': args.cache_path,
    }
    data.update({k: v for k, v in overrides.items() if v is not None})
    return TerrainSettings.model_validate(data)


async def cmd_build(settings: TerrainSettings, output: str) -> int:
    session = TerrainSession(settings)
    try:
        with ResourceMonitor('build'):
            mesh = await session.initialize()
    finally:
        await session.close()
        if settings.http_cache_enabled:
            cache_dir = resolve_cache_dir()
            if cache_dir is not None:
                cleanup_sqlite_cache(cache_dir)
    if mesh is None:
        logger.error('Mesh was not built: no elevation samples')
        return 1
    mesh.to_npz(output)
    logger.info(
        'Mesh saved to %s: %d vertices, %d triangles, %d synthesized cells',
        output,
        mesh.vertex_count,
        mesh.triangle_count,
        mesh.synthesized + mesh.defaulted,
    )
    return 0


async def cmd_query(settings: TerrainSettings, x: float, z: float) -> int:
    session = TerrainSession(settings)
    try:
        await session.initialize(fetch=False)
        point = session.nearest(x, z)
        height = session.height_at(x, z)
    finally:
        await session.close()
    if point is None:
        print('nearest: -')
    else:
        print(
            f'nearest: coord={point.coord} lat={point.latitude:.6f} '
            f'lon={point.longitude:.6f} elevation={point.elevation}'
        )
    print(f'height_at: {height:.3f} ({settings.height_policy.value})')
    return 0


async def cmd_cache_info(settings: TerrainSettings) -> int:
    session = TerrainSession(settings)
    try:
        points = session.load_cached()
        print(f'{len(points)}/{session.cache.capacity} points cached ({settings.cache_key})')
    finally:
        await session.close()
    return 0


async def cmd_check(settings: TerrainSettings) -> int:
    try:
        value = await validate_elevation_api(
            settings.endpoint_url,
            settings.origin_lat,
            settings.origin_lon,
            settings.units,
        )
    except RuntimeError as e:
        logger.error('%s', e)
        return 1
    print(f'elevation at origin: {value} {settings.units}')
    return 0


def main(argv: list[str] | None = None) -> int:
    """Main application entry point."""
    args = build_parser().parse_args(argv)
    setup_logging(logging.DEBUG if args.debug else logging.INFO)
    log_thread_status('startup')

    try:
        settings = resolve_settings(args)
    except (FileNotFoundError, ValidationError) as e:
        logger.error('Некорректные параметры: %s', e)
        return 2

    try:
        if args.command == 'build':
            return asyncio.run(cmd_build(settings, args.output))
        if args.command == 'query':
            return asyncio.run(cmd_query(settings, args.x, args.z))
        if args.command == 'cache-info':
            return asyncio.run(cmd_cache_info(settings))
        if args.command == 'check':
            return asyncio.run(cmd_check(settings))
    except (TerrainConfigError, MeshBuildError) as e:
        logger.error('%s', e)
        return 1
    return 2


if __name__ == '__main__':
    sys.exit(main())
