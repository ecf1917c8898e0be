from enum import Enum

# --- Геодезия: плоская проекция вокруг начала координат
# Метров на градус широты (фиксированная константа, долгота корректируется cos(lat0))
METERS_PER_DEG_LAT = 111_000.0
# Допустимые диапазоны географических координат
WORLD_LAT_MAX_DEG = 90.0
WORLD_LNG_HALF_SPAN_DEG = 180.0

# --- Сервис высот (USGS EPQS)
ELEVATION_ENDPOINT_URL = 'https://epqs.nationalmap.gov/v1/json'
ELEVATION_UNITS_DEFAULT = 'Meters'
# Значение EPQS для точек без данных
ELEVATION_NODATA_VALUE = -1000000.0

# --- Параметры сетевых запросов по умолчанию
HTTP_TIMEOUT_DEFAULT = 20.0
HTTP_RETRIES_DEFAULT = 3
# Задержка ретрая: 2**attempt * HTTP_RETRY_BASE_DELAY_S
HTTP_RETRY_BASE_DELAY_S = 0.1
# Максимальное число параллельных HTTP-запросов
ASYNC_MAX_CONCURRENCY = 10

# HTTP статусы
HTTP_OK = 200
HTTP_2XX_MIN = 200
HTTP_2XX_MAX = 300

# --- HTTP кэш (aiohttp-client-cache)
HTTP_CACHE_ENABLED = True
HTTP_CACHE_DIR = '.cache/elevation'
HTTP_CACHE_EXPIRE_HOURS = 24 * 30
HTTP_CACHE_RESPECT_HEADERS = False
HTTP_CACHE_STALE_IF_ERROR_HOURS = 24 * 7

# --- Кэш точек
POINT_CACHE_FILENAME = 'terrain_points.sqlite'
POINT_CACHE_KEY_DEFAULT = 'terrainPoints'

# --- Сетка
GRID_SIZE_M_DEFAULT = 500.0
GRID_RESOLUTION_DEFAULT = 100

# --- Меш
MAX_EDGE_LENGTH_M_DEFAULT = 400.0
MAX_TRIANGLE_AREA_M2_DEFAULT = 80_000.0
ELEVATION_SCALE_DEFAULT = 1.0
DEFAULT_ELEVATION_M = 0.0
# Цветовая шкала: синий (низко) -> красный (высоко), метры над опорной высотой
COLOR_LOW = (0.0, 0.0, 1.0)
COLOR_HIGH = (1.0, 0.0, 0.0)
COLOR_MIN_M = 0.0
COLOR_MAX_M = 80.0

# --- Расширение покрытия
# Доля покрытого радиуса, после которой запускается расширение
EXPANSION_FRACTION_DEFAULT = 0.8

# Логировать память каждые N загруженных точек
FETCH_LOG_MEMORY_EVERY_POINTS = 500


class TopologyKind(str, Enum):
    SQUARE = 'square'
    HEX = 'hex'


class MismatchPolicy(str, Enum):
    """Поведение build_full при несовпадении числа точек с ёмкостью сетки."""

    SYNTHESIZE = 'synthesize'
    ABORT = 'abort'


class HeightPolicy(str, Enum):
    """Способ ответа на height_at(x, z)."""

    NEAREST = 'nearest'
    RAYCAST = 'raycast'


class Edge(str, Enum):
    NORTH = 'north'
    SOUTH = 'south'
    EAST = 'east'
    WEST = 'west'
