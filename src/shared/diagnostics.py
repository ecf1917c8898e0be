"""
Diagnostic utilities.

Process memory and thread snapshots logged around elevation batches, mesh
builds and CLI commands.
"""

from __future__ import annotations

import logging
import threading
import time
import types
from dataclasses import dataclass
from typing import Any

import psutil

logger = logging.getLogger(__name__)

_MB = 1024 * 1024
# float32 xyz + float32 rgb на вершину, три uint32 индекса на треугольник
_BYTES_PER_VERTEX = 3 * 4 + 3 * 4
_BYTES_PER_TRIANGLE = 3 * 4


@dataclass(frozen=True)
class ResourceSnapshot:
    rss_mb: float
    available_mb: float
    threads: int


def take_snapshot() -> ResourceSnapshot | None:
    """Current RSS, available system memory and thread count; None if psutil fails."""
    try:
        process = psutil.Process()
        rss = process.memory_info().rss
        available = psutil.virtual_memory().available
        threads = process.num_threads()
    except psutil.Error as e:
        logger.debug('Resource snapshot unavailable: %s', e)
        return None
    return ResourceSnapshot(
        rss_mb=round(rss / _MB, 2),
        available_mb=round(available / _MB, 2),
        threads=threads,
    )


def get_memory_info() -> dict[str, Any]:
    """Process and system memory usage in megabytes."""
    try:
        mem = psutil.Process().memory_info()
        system = psutil.virtual_memory()
    except psutil.Error as e:
        return {'error': f'Failed to get memory info: {e}'}
    return {
        'process_rss_mb': round(mem.rss / _MB, 2),
        'process_vms_mb': round(mem.vms / _MB, 2),
        'system_total_mb': round(system.total / _MB, 2),
        'system_available_mb': round(system.available / _MB, 2),
        'system_used_percent': system.percent,
    }


def get_thread_info() -> dict[str, Any]:
    info: dict[str, Any] = {
        'active_count': threading.active_count(),
        'thread_names': [t.name for t in threading.enumerate()],
    }
    try:
        info['system_threads'] = psutil.Process().num_threads()
    except psutil.Error as e:
        logger.debug('Failed to get system thread count: %s', e)
    return info


def estimate_mesh_buffer_mb(vertex_count: int, triangle_count: int) -> float:
    """Size of the position, colour and index buffers of a mesh."""
    total = vertex_count * _BYTES_PER_VERTEX + triangle_count * _BYTES_PER_TRIANGLE
    return round(total / _MB, 3)


def log_memory_usage(context: str = '') -> None:
    info = get_memory_info()
    label = f' ({context})' if context else ''
    logger.info(
        'Memory usage%s: RSS=%sMB, Available=%sMB',
        label,
        info.get('process_rss_mb', 'N/A'),
        info.get('system_available_mb', 'N/A'),
    )


def log_thread_status(context: str = '') -> None:
    info = get_thread_info()
    label = f' ({context})' if context else ''
    logger.info(
        'Thread status%s: Active=%s, System=%s',
        label,
        info['active_count'],
        info.get('system_threads', 'N/A'),
    )


class ResourceMonitor:
    """Context manager logging duration and RSS growth of an operation.

    Usage:
        with ResourceMonitor('build') as monitor:
            mesh = await session.initialize()
        monitor.duration_s, monitor.rss_delta_mb
    """

    def __init__(self, operation_name: str) -> None:
        self.operation_name = operation_name
        self.start_time: float | None = None
        self.duration_s: float | None = None
        self.rss_delta_mb: float | None = None
        self._start: ResourceSnapshot | None = None

    def __enter__(self) -> ResourceMonitor:
        self.start_time = time.perf_counter()
        self._start = take_snapshot()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: types.TracebackType | None,
    ) -> None:
        _ = exc_tb
        if self.start_time is None:
            msg = 'Unexpected missing start_time in ResourceMonitor'
            raise RuntimeError(msg)
        self.duration_s = time.perf_counter() - self.start_time
        end = take_snapshot()
        if self._start is not None and end is not None:
            self.rss_delta_mb = round(end.rss_mb - self._start.rss_mb, 2)
        logger.info(
            "Operation '%s' completed in %.2f seconds (RSS %+.2fMB)",
            self.operation_name,
            self.duration_s,
            self.rss_delta_mb or 0.0,
        )
        if exc_type:
            logger.error(
                "Operation '%s' failed with %s: %s",
                self.operation_name,
                exc_type.__name__,
                exc_val,
            )
