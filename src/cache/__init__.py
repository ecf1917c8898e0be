"""Point cache module - persisted sample points and blob stores."""

from .point_cache import PointCache, SaveReport
from .store import BlobStore, MemoryBlobStore, SqliteBlobStore

__all__ = [
    'BlobStore',
    'MemoryBlobStore',
    'PointCache',
    'SaveReport',
    'SqliteBlobStore',
]
