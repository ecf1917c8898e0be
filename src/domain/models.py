from __future__ import annotations

import math
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, field_validator

from domain.errors import TerrainConfigError
from shared.constants import (
    ASYNC_MAX_CONCURRENCY,
    COLOR_HIGH,
    COLOR_LOW,
    COLOR_MAX_M,
    COLOR_MIN_M,
    DEFAULT_ELEVATION_M,
    ELEVATION_ENDPOINT_URL,
    ELEVATION_SCALE_DEFAULT,
    ELEVATION_UNITS_DEFAULT,
    EXPANSION_FRACTION_DEFAULT,
    GRID_RESOLUTION_DEFAULT,
    GRID_SIZE_M_DEFAULT,
    HTTP_RETRIES_DEFAULT,
    HTTP_RETRY_BASE_DELAY_S,
    HTTP_TIMEOUT_DEFAULT,
    MAX_EDGE_LENGTH_M_DEFAULT,
    MAX_TRIANGLE_AREA_M2_DEFAULT,
    POINT_CACHE_KEY_DEFAULT,
    WORLD_LAT_MAX_DEG,
    WORLD_LNG_HALF_SPAN_DEG,
    HeightPolicy,
    MismatchPolicy,
    TopologyKind,
)

# (row, col) для квадратной сетки или осевые (q, r) для гексагональной
GridCoordinate = tuple[int, int]


def _check_latitude(v: float) -> float:
    if not (-WORLD_LAT_MAX_DEG <= v <= WORLD_LAT_MAX_DEG):
        msg = f'Широта вне диапазона [-90, 90]: {v}'
        raise ValueError(msg)
    return v


def _check_longitude(v: float) -> float:
    if not (-WORLD_LNG_HALF_SPAN_DEG <= v <= WORLD_LNG_HALF_SPAN_DEG):
        msg = f'Долгота вне диапазона [-180, 180]: {v}'
        raise ValueError(msg)
    return v


class Origin(BaseModel):
    """Immutable geographic anchor of a terrain session."""

    model_config = ConfigDict(frozen=True)

    latitude: float
    longitude: float

    @field_validator('latitude')
    @classmethod
    def validate_latitude(cls, v: float) -> float:
        return _check_latitude(v)

    @field_validator('longitude')
    @classmethod
    def validate_longitude(cls, v: float) -> float:
        return _check_longitude(v)


@dataclass
class SamplePoint:
    """One grid slot with its geographic position and elevation.

    ``elevation`` is None until a fetch resolves it.
    """

    coord: GridCoordinate
    latitude: float
    longitude: float
    elevation: float | None = None

    @property
    def is_resolved(self) -> bool:
        return self.elevation is not None

    def to_dict(self) -> dict[str, Any]:
        return {
            'coord': [self.coord[0], self.coord[1]],
            'latitude': self.latitude,
            'longitude': self.longitude,
            'elevation': self.elevation,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SamplePoint:
        """Parse a persisted entry; raises ValueError/KeyError/TypeError on bad data."""
        a, b = data['coord']
        elevation = data.get('elevation')
        if elevation is not None:
            elevation = float(elevation)
            if not math.isfinite(elevation):
                msg = f'Non-finite elevation: {elevation}'
                raise ValueError(msg)
        return cls(
            coord=(int(a), int(b)),
            latitude=float(data['latitude']),
            longitude=float(data['longitude']),
            elevation=elevation,
        )


class TerrainSettings(BaseModel):
    """
    Все параметры сессии рельефа, задаваемые вызывающей стороной,
    собраны в одну плоскую модель.
    """

    model_config = {
        'extra': 'ignore',  # игнорировать лишние поля из профилей
    }

    # Начало координат (WGS84, градусы)
    origin_lat: float
    origin_lon: float

    # Топология сетки
    topology: TopologyKind = TopologyKind.SQUARE
    # Полуразмер квадратной сетки или радиус гексагональной (м)
    grid_size_m: float = GRID_SIZE_M_DEFAULT
    # Точек на сторону (square) или число колец (hex)
    resolution: int = GRID_RESOLUTION_DEFAULT

    # Сервис высот
    endpoint_url: str = ELEVATION_ENDPOINT_URL
    units: str = ELEVATION_UNITS_DEFAULT
    concurrency: int = ASYNC_MAX_CONCURRENCY
    max_retries: int = HTTP_RETRIES_DEFAULT
    retry_base_delay_s: float = HTTP_RETRY_BASE_DELAY_S
    request_timeout_s: float = HTTP_TIMEOUT_DEFAULT
    http_cache_enabled: bool = True

    # Фильтры треугуляции
    max_edge_length_m: float = MAX_EDGE_LENGTH_M_DEFAULT
    max_triangle_area_m2: float = MAX_TRIANGLE_AREA_M2_DEFAULT
    overshadow_filter: bool = False

    # Высоты и цвет
    elevation_scale: float = ELEVATION_SCALE_DEFAULT
    reference_elevation_m: float = 0.0
    default_elevation_m: float = DEFAULT_ELEVATION_M
    color_low: tuple[float, float, float] = COLOR_LOW
    color_high: tuple[float, float, float] = COLOR_HIGH
    color_min_m: float = COLOR_MIN_M
    color_max_m: float = COLOR_MAX_M

    # Политики
    mismatch_policy: MismatchPolicy = MismatchPolicy.SYNTHESIZE
    height_policy: HeightPolicy = HeightPolicy.NEAREST
    expansion_fraction: float = EXPANSION_FRACTION_DEFAULT

    # Кэш точек
    cache_path: str | None = None
    cache_key: str = POINT_CACHE_KEY_DEFAULT

    @field_validator('origin_lat')
    @classmethod
    def validate_origin_lat(cls, v: float) -> float:
        v = _check_latitude(v)
        if abs(v) >= WORLD_LAT_MAX_DEG:
            msg = f'Начало координат не может лежать на полюсе: {v}'
            raise TerrainConfigError(msg)
        return v

    @field_validator('origin_lon')
    @classmethod
    def validate_origin_lon(cls, v: float) -> float:
        return _check_longitude(v)

    @field_validator(
        'grid_size_m',
        'max_edge_length_m',
        'max_triangle_area_m2',
        'request_timeout_s',
        'elevation_scale',
    )
    @classmethod
    def validate_positive(cls, v: float | str) -> float:
        v = float(v)
        if not (v > 0.0 and math.isfinite(v)):
            msg = 'Значение должно быть положительным'
            raise ValueError(msg)
        return v

    @field_validator('resolution', 'concurrency')
    @classmethod
    def validate_at_least_one(cls, v: int) -> int:
        if v < 1:
            msg = 'Значение должно быть не меньше 1'
            raise ValueError(msg)
        return v

    @field_validator('max_retries')
    @classmethod
    def validate_retries(cls, v: int) -> int:
        if v < 0:
            msg = 'Число повторов не может быть отрицательным'
            raise ValueError(msg)
        return v

    @field_validator('retry_base_delay_s')
    @classmethod
    def validate_delay(cls, v: float) -> float:
        if v < 0.0:
            msg = 'Задержка не может быть отрицательной'
            raise ValueError(msg)
        return v

    @field_validator('expansion_fraction')
    @classmethod
    def validate_fraction(cls, v: float) -> float:
        if not (0.0 < v <= 1.0):
            msg = 'Значение должно быть в диапазоне (0.0, 1.0]'
            raise ValueError(msg)
        return v

    @field_validator('color_low', 'color_high')
    @classmethod
    def validate_color(
        cls, v: tuple[float, float, float]
    ) -> tuple[float, float, float]:
        if any(not (0.0 <= c <= 1.0) for c in v):
            msg = 'Компоненты цвета должны быть в диапазоне [0.0, 1.0]'
            raise ValueError(msg)
        return v

    @property
    def origin(self) -> Origin:
        return Origin(latitude=self.origin_lat, longitude=self.origin_lon)

    @property
    def step_m(self) -> float:
        """Spacing between neighbouring samples in meters."""
        if self.topology is TopologyKind.SQUARE:
            return 2.0 * self.grid_size_m / self.resolution
        return self.grid_size_m / self.resolution

    @property
    def cache_file(self) -> Path | None:
        return Path(self.cache_path) if self.cache_path else None
