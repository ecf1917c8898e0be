"""HTTP client infrastructure."""
from infrastructure.http.client import (
    cleanup_sqlite_cache,
    http_cache_file,
    make_http_session,
    resolve_cache_dir,
    validate_elevation_api,
)

__all__ = [
    'cleanup_sqlite_cache',
    'http_cache_file',
    'make_http_session',
    'resolve_cache_dir',
    'validate_elevation_api',
]
