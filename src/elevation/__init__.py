"""Elevation module - sample fetching from a point elevation service."""

from .fetcher import ElevationFetcher, FetchResult, parse_elevation_payload

__all__ = [
    'ElevationFetcher',
    'FetchResult',
    'parse_elevation_payload',
]
