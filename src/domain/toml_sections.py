"""Mapping layer between flat TerrainSettings fields and sectioned TOML format.

TerrainSettings remains a flat Pydantic model. This module provides two functions:
- flat_to_sectioned(): flat dict → sectioned dict (for TOML save)
- sectioned_to_flat(): sectioned dict → flat dict (for TOML load)
"""

from __future__ import annotations

# {section_name: {flat_field_name: short_name_in_toml}}
SECTION_MAP: dict[str, dict[str, str]] = {
    'origin': {
        'origin_lat': 'latitude',
        'origin_lon': 'longitude',
    },
    'grid': {
        'topology': 'topology',
        'grid_size_m': 'size_m',
        'resolution': 'resolution',
    },
    'fetch': {
        'endpoint_url': 'endpoint_url',
        'units': 'units',
        'concurrency': 'concurrency',
        'max_retries': 'max_retries',
        'retry_base_delay_s': 'retry_base_delay_s',
        'request_timeout_s': 'request_timeout_s',
        'http_cache_enabled': 'http_cache_enabled',
    },
    'mesh': {
        'max_edge_length_m': 'max_edge_length_m',
        'max_triangle_area_m2': 'max_triangle_area_m2',
        'overshadow_filter': 'overshadow_filter',
        'elevation_scale': 'elevation_scale',
        'reference_elevation_m': 'reference_elevation_m',
        'default_elevation_m': 'default_elevation_m',
        'color_low': 'color_low',
        'color_high': 'color_high',
        'color_min_m': 'color_min_m',
        'color_max_m': 'color_max_m',
        'mismatch_policy': 'mismatch_policy',
    },
    'query': {
        'height_policy': 'height_policy',
        'expansion_fraction': 'expansion_fraction',
    },
    'cache': {
        'cache_path': 'path',
        'cache_key': 'key',
    },
}

# Reverse index: flat_field → (section, short_name)
_FLAT_TO_SECTION: dict[str, tuple[str, str]] = {}
for _section, _fields in SECTION_MAP.items():
    for _flat, _short in _fields.items():
        _FLAT_TO_SECTION[_flat] = (_section, _short)

# Reverse index: (section, short_name) → flat_field
_SECTION_TO_FLAT: dict[str, dict[str, str]] = {}
for _section, _fields in SECTION_MAP.items():
    _SECTION_TO_FLAT[_section] = {v: k for k, v in _fields.items()}


def flat_to_sectioned(flat: dict) -> dict:
    """Convert flat TerrainSettings dict to sectioned dict for TOML output.

    TOML has no null, so None values are omitted.
    """
    result: dict = {'common': {}}
    for key, value in flat.items():
        if value is None:
            continue
        if key in _FLAT_TO_SECTION:
            section, short_name = _FLAT_TO_SECTION[key]
            if section not in result:
                result[section] = {}
            result[section][short_name] = value
        else:
            result['common'][key] = value
    if not result['common']:
        del result['common']
    return result


def sectioned_to_flat(data: dict) -> dict:
    """Convert sectioned TOML dict to flat dict for TerrainSettings validation."""
    flat: dict = {}
    for key, value in data.items():
        if isinstance(value, dict) and key in _SECTION_TO_FLAT:
            # Known section: expand short names to flat names
            mapping = _SECTION_TO_FLAT[key]
            for short_name, field_value in value.items():
                flat_name = mapping.get(short_name, short_name)
                flat[flat_name] = field_value
        elif isinstance(value, dict):
            # common or unknown section: pass through keys as-is
            flat.update(value)
        else:
            # Top-level key (flat legacy TOML)
            flat[key] = value
    return flat
